"""contentsync storage layer: status ledger and unresolved dependency queue on SQLite."""

from contentsync.storage.database import Database
from contentsync.storage.ledger import StatusLedger
from contentsync.storage.models import (
    EntityStatus,
    StatusFlag,
    SyncRun,
    UnresolvedDependency,
)

__all__ = [
    "Database",
    "EntityStatus",
    "StatusFlag",
    "StatusLedger",
    "SyncRun",
    "UnresolvedDependency",
]
