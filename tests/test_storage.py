"""Tests for the contentsync storage layer."""

from __future__ import annotations

import asyncio
import json

import pytest

from contentsync.errors import ExportFailure, ImportFailure
from contentsync.storage import Database, StatusFlag, StatusLedger

# ---------------------------------------------------------------------------
# Schema / connect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_connect_creates_tables(db: Database):
    cur = await db.conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
    tables = {row["name"] for row in await cur.fetchall()}
    assert tables >= {"entity_status", "unresolved_dependency", "sync_runs"}


@pytest.mark.asyncio()
async def test_not_connected_raises(tmp_path):
    database = Database(tmp_path / "x.db")
    with pytest.raises(RuntimeError, match="not connected"):
        _ = database.conn


# ---------------------------------------------------------------------------
# entity_status rows
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_get_creates_row_once(ledger: StatusLedger):
    first = await ledger.get("node", "n-1", "content", "main")
    second = await ledger.get("node", "n-1", "content", "main")
    assert first.id is not None
    assert second.id == first.id
    assert first.flags == 0
    assert first.last_export is None


@pytest.mark.asyncio()
async def test_find_missing_returns_none(ledger: StatusLedger):
    assert await ledger.find("node", "nope", "content", "main") is None


@pytest.mark.asyncio()
async def test_rows_are_per_flow_and_pool(ledger: StatusLedger):
    await ledger.get("node", "n-1", "content", "main")
    await ledger.get("node", "n-1", "content", "backup")
    await ledger.get("node", "n-1", "other", "main")
    assert len(await ledger.rows_for_entity("node", "n-1")) == 3
    assert len(await ledger.rows_for_uuid("n-1")) == 3


# ---------------------------------------------------------------------------
# Export / import results
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_export_success_stamps_timestamp_and_version(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.mark_export_result(status, True, version="v1", timestamp=100.0)
    assert status.last_export == 100.0
    assert status.entity_type_version == "v1"
    assert status.export_failure is None


@pytest.mark.asyncio()
async def test_soft_export_failure_sets_soft_flag(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.mark_export_result(status, False, ExportFailure.UNCHANGED, action="update")
    assert status.has(StatusFlag.EXPORT_FAILED_SOFT)
    assert not status.has(StatusFlag.EXPORT_FAILED)
    assert status.export_failure["error"] == ExportFailure.UNCHANGED.value
    assert status.export_failure["action"] == "update"


@pytest.mark.asyncio()
async def test_hard_export_failure_keeps_code(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.mark_export_result(
        status, False, ExportFailure.INVALID_STATUS_CODE, message="boom", code="500"
    )
    assert status.has(StatusFlag.EXPORT_FAILED)
    assert status.export_failure == {
        "error": ExportFailure.INVALID_STATUS_CODE.value,
        "action": None,
        "reason": None,
        "message": "boom",
        "code": "500",
    }


@pytest.mark.asyncio()
async def test_success_clears_previous_failure(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.mark_export_result(status, False, ExportFailure.REQUEST_FAILED)
    status = await ledger.mark_export_result(status, True)
    assert not status.has(StatusFlag.EXPORT_FAILED)
    assert status.export_failure is None
    assert status.last_export is not None


@pytest.mark.asyncio()
async def test_export_failure_leaves_import_state_alone(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.mark_import_result(status, True, timestamp=50.0, source_url="https://a/node/1")
    status = await ledger.mark_import_result(status, False, ImportFailure.DIFFERENT_VERSION)
    assert status.has(StatusFlag.IMPORT_FAILED_SOFT)

    status = await ledger.mark_export_result(status, False, ExportFailure.INTERNAL_ERROR)

    assert status.last_import == 50.0
    assert status.source_url == "https://a/node/1"
    assert status.has(StatusFlag.IMPORT_FAILED_SOFT)
    assert status.import_failure["error"] == ImportFailure.DIFFERENT_VERSION.value
    assert status.has(StatusFlag.EXPORT_FAILED)


@pytest.mark.asyncio()
async def test_import_success_leaves_export_state_alone(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.mark_export_result(status, True, timestamp=10.0)
    status = await ledger.mark_export_result(status, False, ExportFailure.REQUEST_FAILED)

    status = await ledger.mark_import_result(status, True, timestamp=20.0)

    assert status.last_export == 10.0
    assert status.last_import == 20.0
    assert status.has(StatusFlag.EXPORT_FAILED)
    assert status.export_failure is not None


@pytest.mark.asyncio()
async def test_concurrent_flag_writes_do_not_clobber(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    # Both writers start from the same stale snapshot.
    await asyncio.gather(
        ledger.set_flag(status, StatusFlag.EDIT_OVERRIDE),
        ledger.set_flag(status, StatusFlag.IS_SOURCE_ENTITY),
        ledger.mark_export_result(status, False, ExportFailure.NO_POOL),
    )
    fresh = await ledger.find("node", "n-1", "content", "main")
    assert fresh is not None
    assert fresh.has(StatusFlag.EDIT_OVERRIDE)
    assert fresh.has(StatusFlag.IS_SOURCE_ENTITY)
    assert fresh.has(StatusFlag.EXPORT_FAILED_SOFT)


@pytest.mark.asyncio()
async def test_clear_flag(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.set_flag(status, StatusFlag.DELETED | StatusFlag.EDIT_OVERRIDE)
    status = await ledger.clear_flag(status, StatusFlag.DELETED)
    assert not status.is_deleted
    assert status.has(StatusFlag.EDIT_OVERRIDE)
    assert status.flag_names == ["EDIT_OVERRIDE"]


@pytest.mark.asyncio()
async def test_enable_export(ledger: StatusLedger):
    status = await ledger.enable_export("node", "n-1", "content", "main")
    assert status.has(StatusFlag.EXPORT_ENABLED)
    assert status.has(StatusFlag.USER_ALLOWED_EXPORT)


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_reset_keeps_rows_and_marks_dropped_timestamps(ledger: StatusLedger):
    exported = await ledger.get("node", "n-1", "content", "main")
    await ledger.mark_export_result(exported, True)
    imported = await ledger.get("node", "n-2", "content", "main")
    await ledger.mark_import_result(imported, True)
    await ledger.get("node", "n-3", "content", "main")

    count = await ledger.reset()

    assert count == 3
    rows = {s.entity_uuid: s for s in await ledger.db.list_statuses()}
    assert len(rows) == 3
    assert rows["n-1"].last_export is None
    assert rows["n-1"].has(StatusFlag.LAST_EXPORT_RESET)
    assert not rows["n-1"].has(StatusFlag.LAST_IMPORT_RESET)
    assert rows["n-2"].last_import is None
    assert rows["n-2"].has(StatusFlag.LAST_IMPORT_RESET)
    assert rows["n-3"].flags == 0


@pytest.mark.asyncio()
async def test_reset_scoped_to_pool(ledger: StatusLedger):
    a = await ledger.get("node", "n-1", "content", "main")
    await ledger.mark_export_result(a, True)
    b = await ledger.get("node", "n-1", "content", "backup")
    await ledger.mark_export_result(b, True)

    assert await ledger.reset("main") == 1

    main = await ledger.find("node", "n-1", "content", "main")
    backup = await ledger.find("node", "n-1", "content", "backup")
    assert main is not None and main.last_export is None
    assert backup is not None and backup.last_export is not None
    assert not backup.has(StatusFlag.LAST_EXPORT_RESET)


@pytest.mark.asyncio()
async def test_next_export_clears_reset_flag(ledger: StatusLedger):
    status = await ledger.get("node", "n-1", "content", "main")
    await ledger.mark_export_result(status, True)
    await ledger.reset()
    status = await ledger.get("node", "n-1", "content", "main")
    status = await ledger.mark_export_result(status, True)
    assert not status.has(StatusFlag.LAST_EXPORT_RESET)


@pytest.mark.asyncio()
async def test_last_export_anywhere(ledger: StatusLedger):
    a = await ledger.get("node", "n-1", "content", "main")
    await ledger.mark_export_result(a, True, timestamp=10.0)
    b = await ledger.get("node", "n-1", "content", "backup")
    await ledger.mark_export_result(b, True, timestamp=30.0)
    assert await ledger.last_export_anywhere("node", "n-1") == 30.0
    assert await ledger.last_import_anywhere("node", "n-1") is None


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_count_by_flag_and_pool(ledger: StatusLedger):
    a = await ledger.get("node", "n-1", "content", "main")
    await ledger.mark_export_result(a, True)
    b = await ledger.get("node", "n-2", "content", "main")
    await ledger.mark_export_result(b, False, ExportFailure.REQUEST_FAILED)

    flags = await ledger.count_by_flag()
    assert flags["total"] == 2
    assert flags["export_failed"] == 1
    assert flags["deleted"] == 0

    pools = await ledger.count_by_pool()
    assert pools == [{"pool": "main", "total": 2, "exported": 1, "imported": 0, "failed": 1}]

    failures = await ledger.recent_failures()
    assert [f.entity_uuid for f in failures] == ["n-2"]


# ---------------------------------------------------------------------------
# unresolved_dependency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_add_unresolved_upserts_by_owner_field(db: Database):
    kw = {
        "referenced_type": "taxonomy_term",
        "referenced_uuid": "t-1",
        "owner_type": "node",
        "owner_uuid": "n-1",
        "field": "tags",
    }
    first = await db.add_unresolved(**kw, flow="content")
    second = await db.add_unresolved(**kw, flow="content", data={"weight": 1})
    assert second.id == first.id
    assert second.data == {"weight": 1}

    pending = await db.list_unresolved("taxonomy_term", "t-1")
    assert len(pending) == 1
    assert await db.list_unresolved("taxonomy_term", "other") == []

    await db.delete_unresolved(first.id)
    assert await db.list_unresolved() == []


# ---------------------------------------------------------------------------
# sync_runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_start_and_finish_sync_run(db: Database):
    run = await db.start_sync_run(kind="push")
    assert run.status == "running"
    assert run.finished_at is None

    done = await db.finish_sync_run(run.id, status="completed", stats_json=json.dumps({"succeeded": 2}))
    assert done.status == "completed"
    assert done.finished_at is not None
    assert json.loads(done.stats_json) == {"succeeded": 2}


@pytest.mark.asyncio()
async def test_list_sync_runs_ordered_desc(db: Database):
    for kind in ("push", "pull", "push"):
        await db.start_sync_run(kind=kind)
    runs = await db.list_sync_runs()
    assert [r.id for r in runs] == sorted((r.id for r in runs), reverse=True)


@pytest.mark.asyncio()
async def test_reconnect(tmp_path):
    path = tmp_path / "reconnect.db"
    async with Database(path) as first:
        status = await first.get_or_create_status("node", "n-1", "content", "main")
        await first.update_status(status.id, set_flags=StatusFlag.DELETED)

    async with Database(path) as second:
        found = await second.find_status("node", "n-1", "content", "main")
        assert found is not None
        assert found.is_deleted
