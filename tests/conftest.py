"""Shared fixtures for contentsync tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from contentsync.content import BundleSchema, MemoryContentStore
from contentsync.errors import RemoteError
from contentsync.policy.models import EntityTypeConfig, ExportMode, Flow, ImportMode, Pool, PoolUsage
from contentsync.policy.repository import MemoryConfigRepository
from contentsync.storage import Database, StatusLedger
from contentsync.sync import SyncEngine

POOL = "main"

BUNDLES = [
    ("node", "article"),
    ("taxonomy_term", "tags"),
    ("menu_link_content", "menu_link_content"),
    ("file", "file"),
    ("view", "view"),
]


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all contentsync runtime files to a temporary directory."""
    fake_base = tmp_path / ".contentsync"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("contentsync.config.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    """Provide a fresh database for each test."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture()
def ledger(db: Database) -> StatusLedger:
    return StatusLedger(db)


# ---------------------------------------------------------------------------
# Content and configuration builders
# ---------------------------------------------------------------------------


def _schemas() -> list[BundleSchema]:
    return [
        BundleSchema("node", "article")
        .add("body", "text_with_summary")
        .add("tags", "entity_reference", target_type="taxonomy_term", multiple=True)
        .add("image", "file", target_type="file")
        .add("related", "entity_reference", target_type="node", multiple=True),
        BundleSchema("taxonomy_term", "tags")
        .add("description", "text_long")
        .add("parent", "entity_reference", target_type="taxonomy_term", multiple=True),
        BundleSchema("menu_link_content", "menu_link_content")
        .add("link", "link")
        .add("menu_name", "string"),
        BundleSchema("file", "file")
        .add("uri", "string")
        .add("filemime", "string")
        .add("filesize", "integer"),
        BundleSchema("view", "view", is_config=True).add("description", "string").add("display", "map"),
    ]


def _bundle_config(
    export: ExportMode = ExportMode.AUTOMATICALLY,
    import_: ImportMode = ImportMode.AUTOMATICALLY,
    usage: PoolUsage = PoolUsage.FORCE,
    pool: str = POOL,
    **kw: Any,
) -> EntityTypeConfig:
    return EntityTypeConfig(
        export=export,
        import_=import_,
        export_pools={pool: usage},
        import_pools={pool: usage},
        **kw,
    )


def _flow(flow_id: str = "content", weight: int = 0, **kw: Any) -> Flow:
    return Flow(
        id=flow_id,
        weight=weight,
        entity_types={f"{t}-{b}": _bundle_config(**kw) for t, b in BUNDLES},
    )


def _pool(pool_id: str = POOL) -> Pool:
    return Pool(id=pool_id, backend_url=f"https://{pool_id}.example.com/rest", site_id="site_a")


@pytest.fixture()
def make_store():
    """Factory for an in-memory store knowing every test bundle."""
    return lambda: MemoryContentStore(_schemas())


@pytest.fixture()
def bundle_config():
    """Factory for an automatic, force-pooled bundle config; keywords override."""
    return _bundle_config


@pytest.fixture()
def make_flow():
    """Factory for a Flow exporting and importing every test bundle through ``main``."""
    return _flow


@pytest.fixture()
def make_pool():
    return _pool


# ---------------------------------------------------------------------------
# Fake remote and sites
# ---------------------------------------------------------------------------


class FakeRemote:
    """Stands in for RemoteStore and records every transmitted entity."""

    def __init__(self, pool: Pool, fail_for: set[str] | None = None) -> None:
        self.pool = pool
        self.fail_for = fail_for if fail_for is not None else set()
        self.pushes: list[dict[str, Any]] = []
        self.pulls: list[dict[str, Any]] = []
        self.opened = False

    async def open(self) -> None:
        self.opened = True

    async def close(self) -> None:
        self.opened = False

    async def push_entity(self, entity_type, bundle, uuid, action, body=None) -> None:
        if uuid in self.fail_for:
            raise RemoteError(f"rejected {uuid}", status_code=500)
        self.pushes.append(
            {"entity_type": entity_type, "bundle": bundle, "uuid": uuid, "action": action, "body": body}
        )

    async def synchronize_single(self, connection_sync_id, item_id, *, manual=False, dependency=False) -> bool:
        self.pulls.append({"id": connection_sync_id, "item": item_id, "manual": manual, "dependency": dependency})
        return True


class Site:
    """One side of a synchronisation: store, ledger, engine and its fake remotes."""

    def __init__(self, db: Database, flows: list[Flow], pools: list[Pool] | None = None) -> None:
        self.db = db
        self.store = MemoryContentStore(_schemas())
        self.repository = MemoryConfigRepository(flows, pools or [_pool()])
        self.ledger = StatusLedger(db)
        self.remotes: dict[str, FakeRemote] = {}
        self.fail_for: set[str] = set()
        self.engine = SyncEngine(self.repository, self.ledger, self.store, remote_factory=self._remote)

    def _remote(self, pool: Pool) -> FakeRemote:
        remote = FakeRemote(pool, self.fail_for)
        self.remotes[pool.id] = remote
        return remote

    def pushes(self, pool: str = POOL) -> list[dict[str, Any]]:
        remote = self.remotes.get(pool)
        return remote.pushes if remote else []

    def pushed_uuids(self, pool: str = POOL) -> list[str]:
        return [p["uuid"] for p in self.pushes(pool)]

    async def create(
        self,
        entity_type: str,
        bundle: str,
        uuid: str,
        label: str = "",
        *,
        entity_id: str | None = None,
        published: bool = True,
        **fields: Any,
    ):
        entity = self.store.new_entity(entity_type, bundle, uuid, label=label)
        entity.id = entity_id
        entity.published = published
        for name, value in fields.items():
            entity.set(name, value)
        return await self.store.save(entity)


@pytest_asyncio.fixture()
async def make_site(tmp_path: Path):
    """Factory for sites, each with its own database; all are closed afterwards."""
    created: list[Site] = []

    async def factory(flows: list[Flow] | None = None, pools: list[Pool] | None = None, name: str = "site") -> Site:
        database = Database(tmp_path / f"{name}-{len(created)}.db")
        await database.connect()
        site = Site(database, flows if flows is not None else [_flow()], pools)
        created.append(site)
        return site

    yield factory

    for site in created:
        await site.engine.close()
        await site.db.close()


@pytest_asyncio.fixture()
async def site(make_site):
    return await make_site(name="site_a")


@pytest_asyncio.fixture()
async def remote_site(make_site):
    """A second site receiving what ``site`` pushes."""
    return await make_site(name="site_b")
