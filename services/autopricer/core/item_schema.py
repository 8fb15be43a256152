"""
Item Schema Mapping

Translation between marketplace item names and stable item identifiers
(`defindex;quality[;attributes...]`). The real schema service is external;
this module defines the interface the ingestor and pipeline consume plus a
file-backed mapping used in deployments that ship a pre-resolved table.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

from .constants import KEY_ITEM_ID, KEY_ITEM_NAME

logger = logging.getLogger(__name__)


class ItemSchema(Protocol):
    """Name <-> id translation consumed as a black box."""

    def resolve_id(self, name: str) -> Optional[str]:
        """Return the stable item id for a name, or None if unknown."""
        ...

    def resolve_name(self, item_id: str) -> Optional[dict[str, Any]]:
        """Return canonical attributes (at least `name`) for an item id."""
        ...


# =============================================================================
# File-backed Mapping
# =============================================================================

class MappingItemSchema:
    """
    In-memory schema built from a name -> id table.

    File format (JSON):
        {"items": {"Mann Co. Supply Crate Key": "5021;6", ...}}

    The key item is always present.
    """

    def __init__(self, mapping: Optional[dict[str, str]] = None):
        self._by_name: dict[str, str] = {KEY_ITEM_NAME: KEY_ITEM_ID}
        self._by_id: dict[str, str] = {KEY_ITEM_ID: KEY_ITEM_NAME}
        for name, item_id in (mapping or {}).items():
            self.add(name, item_id)

    @classmethod
    def from_file(cls, path: str) -> "MappingItemSchema":
        schema_path = Path(path)
        if not schema_path.exists():
            logger.warning(f"Item schema file not found: {schema_path}, using key-only schema")
            return cls()

        data = json.loads(schema_path.read_text())
        items = data.get("items", {}) if isinstance(data, dict) else {}
        schema = cls(items)
        logger.info(f"Loaded item schema with {len(schema)} entries from {schema_path}")
        return schema

    def add(self, name: str, item_id: str) -> None:
        self._by_name[name] = item_id
        # First name registered for an id is treated as canonical
        self._by_id.setdefault(item_id, name)

    def resolve_id(self, name: str) -> Optional[str]:
        item_id = self._by_name.get(name)
        if item_id is None and name.startswith("The "):
            item_id = self._by_name.get(name[4:])
        return item_id

    def resolve_name(self, item_id: str) -> Optional[dict[str, Any]]:
        name = self._by_id.get(item_id)
        if name is None:
            return None
        parts = item_id.split(";")
        return {
            "name": name,
            "defindex": int(parts[0]) if parts[0].isdigit() else None,
            "quality": int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else None,
        }

    def items(self) -> list[tuple[str, str]]:
        """All (item_id, canonical name) pairs."""
        return list(self._by_id.items())

    def __len__(self) -> int:
        return len(self._by_id)
