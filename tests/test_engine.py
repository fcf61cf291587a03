"""Tests for the SyncEngine facade and its bulk runs."""

from __future__ import annotations

import json

import httpx
import pytest

from contentsync.config import AppConfig, EngineConfig, RemoteConfig
from contentsync.errors import RemoteError
from contentsync.policy.models import ExportMode, Flow, PoolUsage
from contentsync.remote import RemoteStore, SyncJob
from contentsync.remote.storage import InstanceStorage, connection_id, connection_synchronization_id
from contentsync.sync import SyncEngine, UnitOutcome, WorkUnit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class PullRemote:
    """Remote that hands out one job for the node bundle and reports progress on it."""

    def __init__(self, progress: list[int] | None = None, fail_status: bool = False) -> None:
        self.progress = progress if progress is not None else [2]
        self.fail_status = fail_status
        self.started: list[tuple[str, bool]] = []
        self.polled = 0
        self.logins: list[str] = []
        self.failing_logins: set[str] = set()

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def start_sync(self, sync_id: str, *, force: bool = False) -> SyncJob | None:
        self.started.append((sync_id, force))
        if "-node-article-" not in sync_id:
            return None
        return SyncJob(id="job-1", total=2, status_url="https://main.example.com/status")

    async def job_status(self, job: SyncJob) -> dict[str, int]:
        self.polled += 1
        if self.fail_status:
            raise RemoteError("status endpoint down", status_code=503)
        return {"processed": self.progress.pop(0), "total": job.total}

    async def login(self, conn: str) -> bool:
        self.logins.append(conn)
        return conn not in self.failing_logins


def _engine(site, remote, **remote_kw) -> SyncEngine:
    settings = AppConfig(remote=RemoteConfig(poll_interval_seconds=0, **remote_kw))
    return SyncEngine(site.repository, site.ledger, site.store, remote_factory=lambda pool: remote, settings=settings)


async def _collect(units) -> list[WorkUnit]:
    return [unit async for unit in units]


def _outcome(value: UnitOutcome):
    async def run() -> UnitOutcome:
        return value

    return run


# ---------------------------------------------------------------------------
# Single entities across pools
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_export_goes_to_every_forced_pool(make_site, make_pool, bundle_config):
    cfg = bundle_config()
    cfg.export_pools = {"main": PoolUsage.FORCE, "backup": PoolUsage.FORCE}
    flow = Flow(id="content", entity_types={"node-article": cfg})
    site = await make_site([flow], [make_pool("main"), make_pool("backup")])
    node = await site.create("node", "article", "n-1", "Hello")

    results = await site.engine.export_entity(node)

    assert sorted(r.pool for r in results) == ["backup", "main"]
    assert site.pushed_uuids("main") == site.pushed_uuids("backup") == ["n-1"]

    await site.engine.close()
    assert not site.remotes["main"].opened


@pytest.mark.asyncio()
async def test_entity_deleted_locally_only_flags_imports(site):
    node = await site.create("node", "article", "n-1", "Hello")
    await site.engine.export_entity(node)
    assert await site.engine.entity_deleted_locally(node) == 0
    assert not (await site.ledger.find("node", "n-1", "content", "main")).is_deleted


@pytest.mark.asyncio()
async def test_update_entity_type_versions_skips_ignored(make_site, make_flow):
    flow = make_flow()
    flow.entity_types["view-view"].handler = "ignore"
    site = await make_site([flow])

    assert site.engine.update_entity_type_versions() == 4
    assert flow.get_config("node", "article").version == site.engine.policy.compute_version("node", "article")
    assert flow.get_config("view", "view").version == ""


# ---------------------------------------------------------------------------
# Bulk runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_push_all_yields_each_entity_once(make_site, make_flow):
    site = await make_site([make_flow("a"), make_flow("b", weight=1)])
    await site.create("taxonomy_term", "tags", "t-1", "News")
    await site.create("node", "article", "n-1", "Hello")

    units = await _collect(site.engine.push_all())

    assert [u.description for u in units] == ["export node:n-1", "export taxonomy_term:t-1"]
    assert await _collect(site.engine.push_all("missing")) == []


@pytest.mark.asyncio()
async def test_push_all_skips_manual_bundles(make_site, make_flow):
    site = await make_site([make_flow(export=ExportMode.MANUALLY)])
    await site.create("node", "article", "n-1", "Hello")
    assert await _collect(site.engine.push_all()) == []


@pytest.mark.asyncio()
async def test_run_units_counts_outcomes(site):
    tag = await site.create("taxonomy_term", "tags", "t-1", "News")
    await site.create("node", "article", "n-1", "Hello", tags=[{"target_id": tag.id}])
    await site.create("node", "article", "n-2", "Broken")
    site.fail_for.add("n-2")

    stats = await site.engine.run_units(site.engine.push_all(), kind="push")

    # the term went out with n-1 and is unchanged by the time its own unit runs
    assert (stats.succeeded, stats.skipped, stats.failed) == (1, 1, 1)
    assert site.pushed_uuids() == ["t-1", "n-1"]

    [run] = await site.db.list_sync_runs(limit=1)
    assert run.kind == "push"
    assert run.status == "completed"
    assert json.loads(run.stats_json) == {"succeeded": 1, "skipped": 1, "failed": 1}


@pytest.mark.asyncio()
async def test_run_units_survives_raising_units(site):
    async def boom() -> UnitOutcome:
        raise RuntimeError("unit exploded")

    async def units():
        yield WorkUnit("first", _outcome(UnitOutcome.SUCCEEDED))
        yield WorkUnit("second", boom)
        yield WorkUnit("tick", _outcome(UnitOutcome.SUCCEEDED), counted=False)
        yield WorkUnit("third", _outcome(UnitOutcome.SKIPPED))

    stats = await site.engine.run_units(units())

    assert (stats.succeeded, stats.skipped, stats.failed) == (1, 1, 1)


@pytest.mark.asyncio()
async def test_broken_unit_source_fails_the_run(site):
    async def units():
        yield WorkUnit("first", _outcome(UnitOutcome.SUCCEEDED))
        raise RuntimeError("listing failed")

    with pytest.raises(RuntimeError, match="listing failed"):
        await site.engine.run_units(units(), kind="pull")

    [run] = await site.db.list_sync_runs(limit=1)
    assert run.status == "failed"
    assert run.error_message == "listing failed"
    assert json.loads(run.stats_json)["succeeded"] == 1


@pytest.mark.asyncio()
async def test_pull_all_starts_jobs_and_polls_until_done(site):
    remote = PullRemote(progress=[1, 2])
    async with _engine(site, remote) as engine:
        stats = await engine.run_units(engine.pull_all(force=True), kind="pull")

    node_sync = connection_synchronization_id(connection_id("main", "site_a", "node", "article"), export=False)
    assert (node_sync, True) in remote.started
    assert len(remote.started) == 5
    # poll ticks are not counted
    assert (stats.succeeded, stats.skipped, stats.failed) == (1, 4, 0)
    assert remote.polled == 2


@pytest.mark.asyncio()
async def test_pull_units_before_any_job_started(site):
    async with _engine(site, PullRemote()) as engine:
        units = await _collect(engine.pull_all())
    # no job is known until the start units have run
    assert len(units) == 5
    assert all(u.description.startswith("pull ") for u in units)


@pytest.mark.asyncio()
async def test_pull_all_drops_jobs_it_cannot_poll(site):
    remote = PullRemote(fail_status=True)
    async with _engine(site, remote) as engine:
        stats = await engine.run_units(engine.pull_all())
    assert stats.failed == 0
    assert remote.polled == 1


@pytest.mark.asyncio()
async def test_pull_all_only_for_automatic_forced_imports(make_site, make_flow):
    site = await make_site([make_flow(usage=PoolUsage.ALLOW)])
    remote = PullRemote()
    async with _engine(site, remote) as engine:
        assert await _collect(engine.pull_all()) == []


# ---------------------------------------------------------------------------
# Pool administration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_login_all(site):
    remote = PullRemote()
    remote.failing_logins.add(connection_id("main", "site_a", "file", "file"))
    async with _engine(site, remote) as engine:
        assert await engine.login_all() == {"main": False}
    assert len(remote.logins) == 5

    remote.failing_logins.clear()
    async with _engine(site, remote) as engine:
        assert await engine.login_all() == {"main": True}


@pytest.mark.asyncio()
async def test_export_configuration_upserts_records(site):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(404)
        return httpx.Response(201, json={})

    transport = httpx.MockTransport(handler)
    settings = AppConfig(
        engine=EngineConfig(site_base_url="https://site-a.example.com"),
        remote=RemoteConfig(username="sync", password="pw"),
    )
    engine = SyncEngine(
        site.repository,
        site.ledger,
        site.store,
        remote_factory=lambda pool: RemoteStore(pool, settings.remote, _transport=transport),
        settings=settings,
    )
    async with engine:
        count = await engine.export_configuration()

    posts = [r for r in requests if r.method == "POST"]
    assert count == len(posts) == len(requests) // 2
    instance = next(r for r in posts if r.url.path.endswith(InstanceStorage.ID))
    assert json.loads(instance.content)["base_url"] == "https://site-a.example.com"

    flow = site.repository.get_flow("content")
    assert flow.get_config("node", "article").version == engine.policy.compute_version("node", "article")


class ConfigRemote(PullRemote):
    """Remote that knows no records yet and keeps everything it is sent."""

    base_url = "https://main.example.com/rest"

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[str, str, dict]] = []

    async def get_json(self, url, *, params=None, allow_missing=False):
        return None

    async def send_json(self, method, url, body):
        self.sent.append((method, url, body))


@pytest.mark.asyncio()
async def test_export_configuration_can_keep_versions(site):
    remote = ConfigRemote()
    async with _engine(site, remote) as engine:
        count = await engine.export_configuration(update_versions=False)

    assert count == len(remote.sent) > 0
    assert {method for method, _, _ in remote.sent} == {"POST"}
    assert site.repository.get_flow("content").get_config("node", "article").version == ""
