"""Reference definitions exchanged between sites.

An entity never points at another one by local id on the wire.  It carries
a *reference definition*: a small dict naming the target by type, bundle and
UUID plus the connection it travels on.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class EmbedMode(StrEnum):
    """How a referenced entity takes part in an export walk."""

    REFERENCE_ONLY = "reference_only"
    EXPORT_AS_DEPENDENCY = "export_as_dependency"
    EXPORT_IF_CONFIGURED = "export_if_configured"


REFERENCE_KEYS = frozenset(
    {
        "api",
        "pool",
        "type",
        "bundle",
        "version",
        "uuid",
        "id",
        "auto_export",
        "connection_id",
        "next_connection_id",
        "label",
    }
)


def is_reference(value: Any) -> bool:
    return isinstance(value, dict) and bool(value.get("type")) and bool(value.get("uuid") or value.get("id"))


def reference_details(definition: dict[str, Any]) -> dict[str, Any]:
    """Return the caller-supplied extras of a definition (e.g. an image alt text)."""
    return {k: v for k, v in definition.items() if k not in REFERENCE_KEYS}


def placeholder_uri(entity_type: str, uuid: str) -> str:
    """Link target used while the referenced entity has not arrived yet."""
    return f"internal:/{entity_type}/{uuid}"
