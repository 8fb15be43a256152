"""
Autopricer Errors

Exceptions raised across module boundaries. Per-item pricing failures are
carried by result types (see pricing.pipeline); only conditions that should
stop a caller are raised.
"""


class AutopricerError(Exception):
    """Base class for autopricer errors."""


class StoreUnavailableError(AutopricerError):
    """The relational store cannot be reached. Aborts the current pass."""


class InsufficientDataError(AutopricerError, ValueError):
    """Not enough samples to compute an estimate."""


class BaselineUnavailableError(AutopricerError):
    """The baseline reference feed has no usable quote for an item."""


class ExternalPriceError(AutopricerError):
    """A secondary external market lookup failed or returned nothing usable."""
