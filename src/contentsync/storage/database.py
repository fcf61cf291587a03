"""Async SQLite database for the contentsync storage layer."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from contentsync.storage.models import ANY_FAILURE, EntityStatus, StatusFlag, SyncRun, UnresolvedDependency

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS entity_status (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL,
    entity_uuid TEXT NOT NULL,
    flow TEXT NOT NULL,
    pool TEXT NOT NULL,
    last_export REAL,
    last_import REAL,
    entity_type_version TEXT,
    source_url TEXT,
    flags INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(entity_type, entity_uuid, flow, pool)
);

CREATE INDEX IF NOT EXISTS ix_entity_status_uuid ON entity_status(entity_uuid);

CREATE TABLE IF NOT EXISTS unresolved_dependency (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    referenced_type TEXT NOT NULL,
    referenced_uuid TEXT NOT NULL,
    owner_type TEXT NOT NULL,
    owner_uuid TEXT NOT NULL,
    field TEXT NOT NULL,
    flow TEXT,
    reason TEXT,
    data TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(referenced_type, referenced_uuid, owner_type, owner_uuid, field)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL CHECK(status IN ('running', 'completed', 'failed')),
    stats_json TEXT,
    error_message TEXT
);
"""

_UNSET: Any = object()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Async SQLite database wrapper for contentsync."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- entity_status --------------------------------------------------------

    async def get_or_create_status(self, entity_type: str, entity_uuid: str, flow: str, pool: str) -> EntityStatus:
        now = _now_iso()
        await self.conn.execute(
            """
            INSERT INTO entity_status (entity_type, entity_uuid, flow, pool, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (entity_type, entity_uuid, flow, pool) DO NOTHING
            """,
            (entity_type, entity_uuid, flow, pool, now, now),
        )
        await self.conn.commit()
        status = await self.find_status(entity_type, entity_uuid, flow, pool)
        assert status is not None  # noqa: S101
        return status

    async def find_status(self, entity_type: str, entity_uuid: str, flow: str, pool: str) -> EntityStatus | None:
        cur = await self.conn.execute(
            "SELECT * FROM entity_status WHERE entity_type = ? AND entity_uuid = ? AND flow = ? AND pool = ?",
            (entity_type, entity_uuid, flow, pool),
        )
        row = await cur.fetchone()
        return self._row_to_status(row) if row else None

    async def update_status(
        self,
        status_id: int,
        *,
        set_flags: int = 0,
        clear_flags: int = 0,
        last_export: float | None = _UNSET,
        last_import: float | None = _UNSET,
        entity_type_version: str | None = _UNSET,
        source_url: str | None = _UNSET,
        data_set: dict[str, Any] | None = None,
        data_remove: list[str] | None = None,
    ) -> EntityStatus:
        """Apply a partial update to one row in a single statement.

        Flags are masked in SQL (``(flags & ~clear) | set``) and the data
        blob is edited key by key, so two writers touching different bits or
        keys never overwrite each other.
        """
        assignments = ["flags = (flags & ~?) | ?", "updated_at = ?"]
        params: list[Any] = [int(clear_flags), int(set_flags), _now_iso()]
        for column, value in (
            ("last_export", last_export),
            ("last_import", last_import),
            ("entity_type_version", entity_type_version),
            ("source_url", source_url),
        ):
            if value is not _UNSET:
                assignments.append(f"{column} = ?")
                params.append(value)

        data_expr = "data"
        data_params: list[Any] = []
        for key in data_remove or []:
            data_expr = f"json_remove({data_expr}, ?)"
            data_params.append(f"$.{key}")
        for key, value in (data_set or {}).items():
            data_expr = f"json_set({data_expr}, ?, json(?))"
            data_params.extend([f"$.{key}", json.dumps(value)])
        if data_params:
            assignments.append(f"data = {data_expr}")
            params.extend(data_params)

        params.append(status_id)
        cur = await self.conn.execute(
            f"UPDATE entity_status SET {', '.join(assignments)} WHERE id = ? RETURNING *",  # noqa: S608
            params,
        )
        row = await cur.fetchone()
        await self.conn.commit()
        if row is None:
            msg = f"Entity status {status_id} does not exist"
            raise LookupError(msg)
        return self._row_to_status(row)

    async def reset_statuses(self, pool: str | None = None) -> int:
        scope = " AND pool = ?" if pool else ""
        args: tuple = (pool,) if pool else ()
        await self.conn.execute(
            f"UPDATE entity_status SET flags = flags | ? WHERE last_export IS NOT NULL{scope}",  # noqa: S608
            (int(StatusFlag.LAST_EXPORT_RESET), *args),
        )
        await self.conn.execute(
            f"UPDATE entity_status SET flags = flags | ? WHERE last_import IS NOT NULL{scope}",  # noqa: S608
            (int(StatusFlag.LAST_IMPORT_RESET), *args),
        )
        cur = await self.conn.execute(
            "UPDATE entity_status SET last_export = NULL, last_import = NULL, updated_at = ?"
            + (" WHERE pool = ?" if pool else ""),
            (_now_iso(), *args),
        )
        await self.conn.commit()
        return cur.rowcount

    async def list_statuses(
        self,
        *,
        entity_uuid: str | None = None,
        entity_type: str | None = None,
        pool: str | None = None,
    ) -> list[EntityStatus]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (("entity_uuid", entity_uuid), ("entity_type", entity_type), ("pool", pool)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = await self.conn.execute(f"SELECT * FROM entity_status{where} ORDER BY id", params)  # noqa: S608
        rows = await cur.fetchall()
        return [self._row_to_status(r) for r in rows]

    async def count_by_flag(self) -> dict[str, int]:
        flags = [f for f in StatusFlag if f.name]
        sums = ", ".join(f"SUM((flags & {int(f)}) != 0) AS {f.name.lower()}" for f in flags)
        cur = await self.conn.execute(f"SELECT COUNT(*) AS total, {sums} FROM entity_status")  # noqa: S608
        row = await cur.fetchone()
        result = {"total": row["total"]}
        for f in flags:
            result[f.name.lower()] = row[f.name.lower()] or 0
        return result

    async def count_by_pool(self) -> list[dict[str, Any]]:
        cur = await self.conn.execute(
            """
            SELECT pool,
                   COUNT(*) AS total,
                   SUM(last_export IS NOT NULL) AS exported,
                   SUM(last_import IS NOT NULL) AS imported,
                   SUM((flags & ?) != 0) AS failed
            FROM entity_status
            GROUP BY pool
            ORDER BY pool
            """,
            (int(ANY_FAILURE),),
        )
        rows = await cur.fetchall()
        return [dict(r) for r in rows]

    async def recent_failures(self, *, limit: int = 20) -> list[EntityStatus]:
        cur = await self.conn.execute(
            "SELECT * FROM entity_status WHERE (flags & ?) != 0 ORDER BY updated_at DESC, id DESC LIMIT ?",
            (int(ANY_FAILURE), limit),
        )
        rows = await cur.fetchall()
        return [self._row_to_status(r) for r in rows]

    # -- unresolved_dependency ------------------------------------------------

    async def add_unresolved(
        self,
        *,
        referenced_type: str,
        referenced_uuid: str,
        owner_type: str,
        owner_uuid: str,
        field: str,
        flow: str | None = None,
        reason: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> UnresolvedDependency:
        cur = await self.conn.execute(
            """
            INSERT INTO unresolved_dependency
                (referenced_type, referenced_uuid, owner_type, owner_uuid, field, flow, reason, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (referenced_type, referenced_uuid, owner_type, owner_uuid, field) DO UPDATE SET
                flow = excluded.flow,
                reason = excluded.reason,
                data = excluded.data
            RETURNING *
            """,
            (
                referenced_type,
                referenced_uuid,
                owner_type,
                owner_uuid,
                field,
                flow,
                reason,
                json.dumps(data) if data is not None else None,
                _now_iso(),
            ),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_unresolved(row)

    async def list_unresolved(
        self,
        referenced_type: str | None = None,
        referenced_uuid: str | None = None,
    ) -> list[UnresolvedDependency]:
        if referenced_type is not None and referenced_uuid is not None:
            cur = await self.conn.execute(
                "SELECT * FROM unresolved_dependency WHERE referenced_type = ? AND referenced_uuid = ? ORDER BY id",
                (referenced_type, referenced_uuid),
            )
        else:
            cur = await self.conn.execute("SELECT * FROM unresolved_dependency ORDER BY id")
        rows = await cur.fetchall()
        return [self._row_to_unresolved(r) for r in rows]

    async def delete_unresolved(self, dependency_id: int) -> None:
        await self.conn.execute("DELETE FROM unresolved_dependency WHERE id = ?", (dependency_id,))
        await self.conn.commit()

    # -- sync_runs ------------------------------------------------------------

    async def start_sync_run(self, *, kind: str) -> SyncRun:
        cur = await self.conn.execute(
            """
            INSERT INTO sync_runs (kind, started_at, status)
            VALUES (?, ?, 'running')
            RETURNING *
            """,
            (kind, _now_iso()),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row)

    async def finish_sync_run(
        self,
        run_id: int,
        *,
        status: str,
        stats_json: str | None = None,
        error_message: str | None = None,
    ) -> SyncRun:
        cur = await self.conn.execute(
            """
            UPDATE sync_runs SET finished_at = ?, status = ?, stats_json = ?, error_message = ?
            WHERE id = ?
            RETURNING *
            """,
            (_now_iso(), status, stats_json, error_message, run_id),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row)

    async def list_sync_runs(self, *, limit: int = 20) -> list[SyncRun]:
        cur = await self.conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,))
        rows = await cur.fetchall()
        return [self._row_to_sync_run(r) for r in rows]

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_status(row: aiosqlite.Row) -> EntityStatus:
        return EntityStatus(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_uuid=row["entity_uuid"],
            flow=row["flow"],
            pool=row["pool"],
            last_export=row["last_export"],
            last_import=row["last_import"],
            entity_type_version=row["entity_type_version"],
            source_url=row["source_url"],
            flags=row["flags"],
            data=json.loads(row["data"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_unresolved(row: aiosqlite.Row) -> UnresolvedDependency:
        return UnresolvedDependency(
            id=row["id"],
            referenced_type=row["referenced_type"],
            referenced_uuid=row["referenced_uuid"],
            owner_type=row["owner_type"],
            owner_uuid=row["owner_uuid"],
            field=row["field"],
            flow=row["flow"],
            reason=row["reason"],
            data=json.loads(row["data"]) if row["data"] else None,
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_sync_run(row: aiosqlite.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            kind=row["kind"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            status=row["status"],
            stats_json=row["stats_json"],
            error_message=row["error_message"],
        )
