"""
Listing Event Validation

Decides whether a raw stream event becomes a listing upsert, a listing
delete, or a counted drop. Dropping is never an error: the reason is
returned so the ingestor can count it.

Update events must pass, in order:
    missing_item -> not_allowed -> missing_user_agent -> invalid_currencies
    -> spells -> blocked_attribute -> excluded_owner -> excluded_description
    -> unresolved_item

Delete events only need an item name, an intent and an owner.
"""

import logging
import re
import time
import unicodedata
from dataclasses import dataclass
from typing import Any, Optional

from ..core.currency import parse_currencies
from ..core.item_schema import ItemSchema
from ..core.types import EventType, Listing, Side

logger = logging.getLogger(__name__)


class DropReason:
    MISSING_ITEM = "missing_item"
    UNKNOWN_EVENT = "unknown_event"
    INVALID_INTENT = "invalid_intent"
    NOT_ALLOWED = "not_allowed"
    MISSING_USER_AGENT = "missing_user_agent"
    INVALID_CURRENCIES = "invalid_currencies"
    SPELLS = "spells"
    BLOCKED_ATTRIBUTE = "blocked_attribute"
    EXCLUDED_OWNER = "excluded_owner"
    EXCLUDED_DESCRIPTION = "excluded_description"
    UNRESOLVED_ITEM = "unresolved_item"
    MISSING_OWNER = "missing_owner"


@dataclass
class FilterDecision:
    """
    Outcome of validating one event.

    Accepted updates carry `listing`; accepted deletes carry `name`,
    `side` and `owner_id`.
    """

    accepted: bool
    event: Optional[EventType] = None
    reason: Optional[str] = None
    listing: Optional[Listing] = None
    name: Optional[str] = None
    side: Optional[Side] = None
    owner_id: Optional[str] = None

    @classmethod
    def drop(cls, reason: str, event: Optional[EventType] = None) -> "FilterDecision":
        return cls(accepted=False, event=event, reason=reason)


def normalize_text(text: str) -> str:
    """NFKD-normalize, lowercase and trim free text before matching."""
    return unicodedata.normalize("NFKD", text).lower().strip()


class EventFilter:
    """
    Validation policy for stream events.

    Usage:
        event_filter = EventFilter(schema, excluded_owners={"7656..."})
        decision = event_filter.evaluate(raw_event)
        if not decision.accepted:
            record_stream_drop(decision.reason)
    """

    def __init__(
        self,
        schema: ItemSchema,
        allowed_names: Optional[set[str]] = None,
        excluded_owners: Optional[set[str]] = None,
        excluded_descriptions: Optional[list[str]] = None,
        blocked_attributes: Optional[dict[str, Any]] = None,
    ):
        self.schema = schema
        self.allowed_names = allowed_names or set()
        self.excluded_owners = excluded_owners or set()
        self.blocked_attributes = blocked_attributes or {}
        self._blocked_values = {str(v) for v in self.blocked_attributes.values()}
        self._description_patterns = [
            re.compile(rf"\b{re.escape(normalize_text(d))}\b", re.IGNORECASE)
            for d in (excluded_descriptions or [])
            if d
        ]

    def is_allowed(self, name: str) -> bool:
        """An empty allow-list admits every item."""
        return not self.allowed_names or name in self.allowed_names

    def has_blocked_attribute(self, name: str, attributes: Any) -> bool:
        """
        True if any attribute's float value is blocked.

        An item whose name contains one of the blocked attribute names is
        exempt (the attribute is what the item is).
        """
        if not isinstance(attributes, list) or not self._blocked_values:
            return False
        if any(key in name for key in self.blocked_attributes):
            return False
        for attribute in attributes:
            if not isinstance(attribute, dict):
                continue
            value = attribute.get("float_value")
            if value and str(value) in self._blocked_values:
                return True
        return False

    def has_excluded_description(self, details: Optional[str]) -> bool:
        if not details or not self._description_patterns:
            return False
        text = normalize_text(details)
        return any(pattern.search(text) for pattern in self._description_patterns)

    def evaluate(self, raw: Any, now: Optional[int] = None) -> FilterDecision:
        """Validate one raw event."""
        if not isinstance(raw, dict):
            return FilterDecision.drop(DropReason.MISSING_ITEM)

        try:
            event = EventType(raw.get("event"))
        except ValueError:
            return FilterDecision.drop(DropReason.UNKNOWN_EVENT)

        payload = raw.get("payload")
        item = payload.get("item") if isinstance(payload, dict) else None
        name = item.get("name") if isinstance(item, dict) else None
        if not name:
            return FilterDecision.drop(DropReason.MISSING_ITEM, event)

        if not self.is_allowed(name):
            return FilterDecision.drop(DropReason.NOT_ALLOWED, event)

        try:
            side = Side(payload.get("intent"))
        except ValueError:
            return FilterDecision.drop(DropReason.INVALID_INTENT, event)

        owner_id = payload.get("steamid")
        if not owner_id:
            return FilterDecision.drop(DropReason.MISSING_OWNER, event)
        owner_id = str(owner_id)

        if event == EventType.LISTING_DELETE:
            return FilterDecision(accepted=True, event=event, name=name, side=side, owner_id=owner_id)

        return self._evaluate_update(payload, item, name, side, owner_id, now)

    def _evaluate_update(
        self,
        payload: dict,
        item: dict,
        name: str,
        side: Side,
        owner_id: str,
        now: Optional[int],
    ) -> FilterDecision:
        event = EventType.LISTING_UPDATE

        if not payload.get("userAgent"):
            return FilterDecision.drop(DropReason.MISSING_USER_AGENT, event)

        currencies = parse_currencies(payload.get("currencies"))
        if currencies is None:
            return FilterDecision.drop(DropReason.INVALID_CURRENCIES, event)

        spells = item.get("spells")
        if isinstance(spells, list) and spells:
            logger.debug(f"[filter] Ignored {name}: spells are not priced")
            return FilterDecision.drop(DropReason.SPELLS, event)

        if self.has_blocked_attribute(name, item.get("attributes")):
            return FilterDecision.drop(DropReason.BLOCKED_ATTRIBUTE, event)

        if owner_id in self.excluded_owners:
            return FilterDecision.drop(DropReason.EXCLUDED_OWNER, event)

        if self.has_excluded_description(payload.get("details")):
            return FilterDecision.drop(DropReason.EXCLUDED_DESCRIPTION, event)

        item_id = self.schema.resolve_id(name)
        if not item_id:
            return FilterDecision.drop(DropReason.UNRESOLVED_ITEM, event)

        updated = payload.get("bumpedAt") or payload.get("listedAt")
        if not isinstance(updated, (int, float)) or isinstance(updated, bool):
            updated = now if now is not None else int(time.time())

        listing = Listing(
            name=name,
            item_id=item_id,
            side=side,
            currencies=currencies,
            owner_id=owner_id,
            updated=int(updated),
        )
        return FilterDecision(
            accepted=True,
            event=event,
            listing=listing,
            name=name,
            side=side,
            owner_id=owner_id,
        )
