"""Pydantic models for the contentsync storage layer."""

from __future__ import annotations

from datetime import datetime
from enum import IntFlag
from typing import Any, Literal

from pydantic import BaseModel, Field

SyncRunStatus = Literal["running", "completed", "failed"]


class StatusFlag(IntFlag):
    UNUSED_CLONED = 0x1
    DELETED = 0x2
    USER_ALLOWED_EXPORT = 0x4
    EDIT_OVERRIDE = 0x8
    IS_SOURCE_ENTITY = 0x10
    EXPORT_ENABLED = 0x20
    DEPENDENCY_EXPORT_ENABLED = 0x40
    LAST_EXPORT_RESET = 0x80
    LAST_IMPORT_RESET = 0x100
    EXPORT_FAILED = 0x200
    IMPORT_FAILED = 0x400
    EXPORT_FAILED_SOFT = 0x800
    IMPORT_FAILED_SOFT = 0x1000


ANY_FAILURE = (
    StatusFlag.EXPORT_FAILED
    | StatusFlag.IMPORT_FAILED
    | StatusFlag.EXPORT_FAILED_SOFT
    | StatusFlag.IMPORT_FAILED_SOFT
)


class EntityStatus(BaseModel):
    """Ledger row for one entity in one Flow/Pool."""

    id: int | None = None
    entity_type: str
    entity_uuid: str
    flow: str
    pool: str
    last_export: float | None = None
    last_import: float | None = None
    entity_type_version: str | None = None
    source_url: str | None = None
    flags: int = 0
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def has(self, flag: StatusFlag) -> bool:
        return bool(self.flags & flag)

    @property
    def flag_names(self) -> list[str]:
        return [f.name for f in StatusFlag if f.name and self.flags & f]

    @property
    def export_failure(self) -> dict[str, Any] | None:
        return self.data.get("export_failure")

    @property
    def import_failure(self) -> dict[str, Any] | None:
        return self.data.get("import_failure")

    @property
    def is_deleted(self) -> bool:
        return self.has(StatusFlag.DELETED)


class UnresolvedDependency(BaseModel):
    """A reference seen during import whose target did not exist locally yet."""

    id: int | None = None
    referenced_type: str
    referenced_uuid: str
    owner_type: str
    owner_uuid: str
    field: str
    flow: str | None = None
    reason: str | None = None
    data: dict[str, Any] | None = None
    created_at: datetime | None = None


class SyncRun(BaseModel):
    """Record of a bulk run (push-all, pull-all, config export)."""

    id: int | None = None
    kind: str
    started_at: datetime
    finished_at: datetime | None = None
    status: SyncRunStatus
    stats_json: str | None = None
    error_message: str | None = None
