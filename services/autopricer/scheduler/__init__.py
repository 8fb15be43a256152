# Autopricer Scheduler
# Fixed-interval background jobs

"""
Scheduler module.

Components:
- Scheduler: independent fixed-interval timers for named jobs
- ScheduledTask: per-job run counters
"""

from .scheduler import ScheduledTask, Scheduler

__all__ = [
    "ScheduledTask",
    "Scheduler",
]
