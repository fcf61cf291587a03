"""Sync module: intents, dependency queue and the engine facade."""

from contentsync.sync.dependencies import MissingDependencyManager
from contentsync.sync.engine import NO_FLOW, SyncEngine, SyncStats, UnitOutcome, WorkUnit
from contentsync.sync.export import ExportContext, ExportIntent
from contentsync.sync.imports import ImportIntent
from contentsync.sync.intent import ExportResult, ImportResult, IntentState, SyncResult, SyncServices

__all__ = [
    "NO_FLOW",
    "ExportContext",
    "ExportIntent",
    "ExportResult",
    "ImportIntent",
    "ImportResult",
    "IntentState",
    "MissingDependencyManager",
    "SyncEngine",
    "SyncResult",
    "SyncServices",
    "SyncStats",
    "UnitOutcome",
    "WorkUnit",
]
