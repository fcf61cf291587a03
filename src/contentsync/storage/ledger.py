"""StatusLedger: per (entity, flow, pool) reconciliation state."""

from __future__ import annotations

import time
from typing import Any

import structlog

from contentsync.errors import ExportFailure, ImportFailure
from contentsync.storage.database import Database
from contentsync.storage.models import EntityStatus, StatusFlag

log = structlog.get_logger(__name__)

_EXPORT_FAILURE_KEY = "export_failure"
_IMPORT_FAILURE_KEY = "import_failure"


def _failure_entry(
    reason: ExportFailure | ImportFailure,
    *,
    action: str | None,
    mode: str | None,
    message: str,
    code: str | None,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "error": reason.value,
        "action": action,
        "reason": mode,
        "message": message,
    }
    if code:
        entry["code"] = code
    return entry


class StatusLedger:
    """Semantic operations over the ``entity_status`` table.

    Every write only touches the bits and data keys of its own direction;
    an export result never changes import flags or timestamps and vice
    versa.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @property
    def db(self) -> Database:
        return self._db

    async def get(self, entity_type: str, uuid: str, flow: str, pool: str) -> EntityStatus:
        return await self._db.get_or_create_status(entity_type, uuid, flow, pool)

    async def find(self, entity_type: str, uuid: str, flow: str, pool: str) -> EntityStatus | None:
        return await self._db.find_status(entity_type, uuid, flow, pool)

    # -- results --------------------------------------------------------------

    async def mark_export_result(
        self,
        status: EntityStatus,
        success: bool,
        reason: ExportFailure | None = None,
        *,
        action: str | None = None,
        mode: str | None = None,
        message: str = "",
        code: str | None = None,
        version: str | None = None,
        timestamp: float | None = None,
        set_flags: StatusFlag | int = 0,
    ) -> EntityStatus:
        assert status.id is not None  # noqa: S101
        if success:
            return await self._db.update_status(
                status.id,
                set_flags=set_flags,
                clear_flags=StatusFlag.EXPORT_FAILED | StatusFlag.EXPORT_FAILED_SOFT | StatusFlag.LAST_EXPORT_RESET,
                last_export=timestamp if timestamp is not None else time.time(),
                entity_type_version=version if version is not None else status.entity_type_version,
                data_remove=[_EXPORT_FAILURE_KEY],
            )

        if reason is None:
            reason = ExportFailure.INTERNAL_ERROR
        flag = StatusFlag.EXPORT_FAILED_SOFT if reason.is_soft else StatusFlag.EXPORT_FAILED
        log.info(
            "export_failure_recorded",
            entity_type=status.entity_type,
            uuid=status.entity_uuid,
            flow=status.flow,
            pool=status.pool,
            reason=reason.value,
        )
        return await self._db.update_status(
            status.id,
            set_flags=flag | set_flags,
            data_set={
                _EXPORT_FAILURE_KEY: _failure_entry(reason, action=action, mode=mode, message=message, code=code),
            },
        )

    async def mark_import_result(
        self,
        status: EntityStatus,
        success: bool,
        reason: ImportFailure | None = None,
        *,
        action: str | None = None,
        mode: str | None = None,
        message: str = "",
        code: str | None = None,
        version: str | None = None,
        timestamp: float | None = None,
        set_flags: StatusFlag | int = 0,
        source_url: str | None = None,
    ) -> EntityStatus:
        assert status.id is not None  # noqa: S101
        if success:
            kw: dict[str, Any] = {}
            if source_url is not None:
                kw["source_url"] = source_url
            return await self._db.update_status(
                status.id,
                set_flags=set_flags,
                clear_flags=StatusFlag.IMPORT_FAILED | StatusFlag.IMPORT_FAILED_SOFT | StatusFlag.LAST_IMPORT_RESET,
                last_import=timestamp if timestamp is not None else time.time(),
                entity_type_version=version if version is not None else status.entity_type_version,
                data_remove=[_IMPORT_FAILURE_KEY],
                **kw,
            )

        if reason is None:
            reason = ImportFailure.INTERNAL_ERROR
        flag = StatusFlag.IMPORT_FAILED_SOFT if reason.is_soft else StatusFlag.IMPORT_FAILED
        log.info(
            "import_failure_recorded",
            entity_type=status.entity_type,
            uuid=status.entity_uuid,
            flow=status.flow,
            pool=status.pool,
            reason=reason.value,
        )
        return await self._db.update_status(
            status.id,
            set_flags=flag | set_flags,
            data_set={
                _IMPORT_FAILURE_KEY: _failure_entry(reason, action=action, mode=mode, message=message, code=code),
            },
        )

    # -- single flags ---------------------------------------------------------

    async def set_flag(self, status: EntityStatus, flag: StatusFlag) -> EntityStatus:
        assert status.id is not None  # noqa: S101
        return await self._db.update_status(status.id, set_flags=flag)

    async def clear_flag(self, status: EntityStatus, flag: StatusFlag) -> EntityStatus:
        assert status.id is not None  # noqa: S101
        return await self._db.update_status(status.id, clear_flags=flag)

    async def enable_export(self, entity_type: str, uuid: str, flow: str, pool: str) -> EntityStatus:
        """Record that a user selected *pool* for an entity whose pool usage is ``allow``."""
        status = await self.get(entity_type, uuid, flow, pool)
        return await self.set_flag(status, StatusFlag.EXPORT_ENABLED | StatusFlag.USER_ALLOWED_EXPORT)

    # -- reset ----------------------------------------------------------------

    async def reset(self, pool: str | None = None) -> int:
        """Forget every last export/import timestamp, optionally for one pool only.

        Rows are kept; the LAST_*_RESET flags mark which timestamps were dropped.
        """
        count = await self._db.reset_statuses(pool)
        log.info("status_reset", pool=pool, rows=count)
        return count

    # -- queries --------------------------------------------------------------

    async def rows_for_uuid(self, uuid: str) -> list[EntityStatus]:
        return await self._db.list_statuses(entity_uuid=uuid)

    async def rows_for_entity(self, entity_type: str, uuid: str) -> list[EntityStatus]:
        return await self._db.list_statuses(entity_type=entity_type, entity_uuid=uuid)

    async def last_export_anywhere(self, entity_type: str, uuid: str) -> float | None:
        stamps = [s.last_export for s in await self.rows_for_entity(entity_type, uuid) if s.last_export]
        return max(stamps) if stamps else None

    async def last_import_anywhere(self, entity_type: str, uuid: str) -> float | None:
        stamps = [s.last_import for s in await self.rows_for_entity(entity_type, uuid) if s.last_import]
        return max(stamps) if stamps else None

    async def count_by_flag(self) -> dict[str, int]:
        return await self._db.count_by_flag()

    async def count_by_pool(self) -> list[dict[str, Any]]:
        return await self._db.count_by_pool()

    async def recent_failures(self, *, limit: int = 20) -> list[EntityStatus]:
        return await self._db.recent_failures(limit=limit)
