"""Engine facade: wires the policy, handlers, ledger and remote stores together."""

from __future__ import annotations

import asyncio
import functools
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from contentsync.config import AppConfig
from contentsync.errors import ImportFailure, InvalidPayloadError, RemoteError
from contentsync.handlers import default_registry
from contentsync.policy.models import Action, ExportMode, ImportMode, PoolUsage
from contentsync.policy.pools import PoolRegistry
from contentsync.policy.table import PolicyTable
from contentsync.remote.client import RemoteStore, SyncJob
from contentsync.remote.configuration import ConfigurationExporter
from contentsync.remote.storage import connection_id, connection_synchronization_id
from contentsync.storage.models import StatusFlag
from contentsync.sync.dependencies import MissingDependencyManager
from contentsync.sync.export import ExportContext, ExportIntent
from contentsync.sync.imports import ImportIntent
from contentsync.sync.intent import ExportResult, ImportResult, IntentState, SyncServices

if TYPE_CHECKING:
    from contentsync.content import ContentStore, Entity
    from contentsync.handlers.registry import HandlerRegistry
    from contentsync.policy.models import Flow, Pool
    from contentsync.policy.repository import ConfigRepository
    from contentsync.storage.ledger import StatusLedger

log = structlog.get_logger(__name__)

# Ledger flow id for imports that no Flow could take.
NO_FLOW = "_no_flow"


class UnitOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class WorkUnit:
    """One step of a bulk run; ``counted`` units show up in the stats."""

    description: str
    run: Callable[[], Awaitable[UnitOutcome]]
    counted: bool = True


@dataclass
class SyncStats:
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, outcome: UnitOutcome) -> None:
        if outcome == UnitOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome == UnitOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def to_json(self) -> str:
        return json.dumps(
            {
                "succeeded": self.succeeded,
                "skipped": self.skipped,
                "failed": self.failed,
            }
        )


class SyncEngine:
    """Entry point for hosts: export, import and bulk runs against every pool."""

    def __init__(
        self,
        repository: ConfigRepository,
        ledger: StatusLedger,
        store: ContentStore,
        *,
        registry: HandlerRegistry | None = None,
        remote_factory: Callable[[Pool], RemoteStore] | None = None,
        settings: AppConfig | None = None,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._store = store
        self._settings = settings or AppConfig()
        self._registry = registry or default_registry()
        self._remote_factory = remote_factory
        self._remotes: dict[str, RemoteStore] = {}

        self.pools = PoolRegistry(repository)
        self.policy = PolicyTable(repository, self._registry, store, self.pools)
        self.dependencies = MissingDependencyManager(ledger.db)
        self.services = SyncServices(
            policy=self.policy,
            pools=self.pools,
            registry=self._registry,
            ledger=ledger,
            store=store,
            remote=self._remote,
            dependencies=self.dependencies,
        )

    async def __aenter__(self) -> SyncEngine:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        for remote in self._remotes.values():
            await remote.close()
        self._remotes.clear()

    @property
    def ledger(self) -> StatusLedger:
        return self._ledger

    async def _remote(self, pool: Pool) -> RemoteStore:
        remote = self._remotes.get(pool.id)
        if remote is None:
            if self._remote_factory is not None:
                remote = self._remote_factory(pool)
            else:
                remote = RemoteStore(pool, self._settings.remote)
            await remote.open()
            self._remotes[pool.id] = remote
        return remote

    def _configuring_flow(self, entity_type: str, bundle: str) -> Flow | None:
        for flow in self._repository.enabled_flows():
            if flow.get_config(entity_type, bundle) is not None:
                return flow
        return None

    # -- single entities --------------------------------------------------------

    async def _export_pools(self, entity: Entity, pools: list[str] | None) -> dict[str, Pool]:
        selected = {
            p.id: p for p in self.pools.pools_for(entity.entity_type, entity.bundle, "export", (PoolUsage.FORCE,))
        }
        allowed = self.pools.pools_for(entity.entity_type, entity.bundle, "export", (PoolUsage.ALLOW,))
        if allowed:
            rows = await self._ledger.rows_for_entity(entity.entity_type, entity.uuid)
            enabled = {r.pool for r in rows if r.has(StatusFlag.EXPORT_ENABLED)}
            selected.update({p.id: p for p in allowed if p.id in enabled})
        for pool_id in pools or []:
            pool = self.pools.get(pool_id)
            if pool is None:
                log.warning("export_unknown_pool", pool=pool_id, uuid=entity.uuid)
                continue
            selected[pool.id] = pool
        return selected

    async def export_entity(
        self,
        entity: Entity,
        mode: ExportMode = ExportMode.AUTOMATICALLY,
        action: Action = Action.UPDATE,
        pools: list[str] | None = None,
    ) -> list[ExportResult]:
        """Export *entity* to every pool it should go to.

        Explicitly listed pools are remembered as user-selected so later
        automatic exports include them as well.
        """
        results: list[ExportResult] = []
        for pool in (await self._export_pools(entity, pools)).values():
            flow = self.policy.flow_for_export(entity, mode, action, pool)
            if flow is None:
                # Let the intent record why no Flow wanted it.
                flow = self._configuring_flow(entity.entity_type, entity.bundle)
                if flow is None:
                    continue
            elif pools and pool.id in pools:
                await self._ledger.enable_export(entity.entity_type, entity.uuid, flow.id, pool.id)

            intent = ExportIntent(self.services, flow, pool, action, entity, mode, ExportContext())
            results.append(await intent.execute())
        return results

    async def import_entity(
        self,
        pool_id: str,
        entity_type: str,
        bundle: str,
        data: dict,
        mode: ImportMode = ImportMode.AUTOMATICALLY,
        action: Action = Action.CREATE,
        version: str | None = None,
    ) -> ImportResult:
        uuid = data.get("uuid")
        if not uuid:
            msg = f"Import of {entity_type}.{bundle} from {pool_id} carries no uuid"
            raise InvalidPayloadError(msg)

        pool = self.pools.get(pool_id)
        if pool is None:
            return await self._import_rejected(entity_type, uuid, pool_id, ImportFailure.UNKNOWN_POOL, action, mode)

        flow = self.policy.flow_for_import(entity_type, bundle, pool, mode, action)
        if flow is None:
            flow = self._configuring_flow(entity_type, bundle)
            if flow is None:
                return await self._import_rejected(entity_type, uuid, pool.id, ImportFailure.NO_FLOW, action, mode)

        intent = ImportIntent(self.services, flow, pool, action, entity_type, bundle, uuid, data, mode, version)
        return await intent.execute()

    async def _import_rejected(
        self,
        entity_type: str,
        uuid: str,
        pool_id: str,
        reason: ImportFailure,
        action: Action,
        mode: ImportMode,
    ) -> ImportResult:
        status = await self._ledger.get(entity_type, uuid, NO_FLOW, pool_id)
        await self._ledger.mark_import_result(status, False, reason, action=action.value, mode=mode.value)
        return ImportResult(
            entity_type=entity_type,
            uuid=uuid,
            flow=NO_FLOW,
            pool=pool_id,
            action=Action(action),
            state=IntentState.FAILED_SOFT,
            reason=reason,
        )

    async def resolve_dependencies(self, entity: Entity) -> int:
        return await self.dependencies.resolve(self.services, entity)

    async def entity_deleted_locally(self, entity: Entity) -> int:
        """Flag imported copies of *entity* as deleted so they are not pulled again."""
        count = 0
        for status in await self._ledger.rows_for_entity(entity.entity_type, entity.uuid):
            if status.last_import is not None:
                await self._ledger.set_flag(status, StatusFlag.DELETED)
                count += 1
        return count

    async def set_edit_override(self, entity: Entity, enabled: bool = True) -> int:
        """Mark local edits of imported *entity* as overriding remote updates."""
        count = 0
        for status in await self._ledger.rows_for_entity(entity.entity_type, entity.uuid):
            if status.last_import is None:
                continue
            if enabled:
                await self._ledger.set_flag(status, StatusFlag.EDIT_OVERRIDE)
            else:
                await self._ledger.clear_flag(status, StatusFlag.EDIT_OVERRIDE)
            count += 1
        return count

    # -- bulk work units --------------------------------------------------------

    def _flows(self, flow_id: str | None) -> list[Flow]:
        if flow_id is None:
            return self._repository.enabled_flows()
        flow = self._repository.get_flow(flow_id)
        return [flow] if flow is not None else []

    async def push_all(self, flow_id: str | None = None) -> AsyncIterator[WorkUnit]:
        """Yield one export unit per entity of every automatically exported bundle."""
        seen: set[tuple[str, str]] = set()
        for flow in self._flows(flow_id):
            for entity_type, bundle, cfg in flow.bundle_configs():
                if cfg.ignored or cfg.export != ExportMode.AUTOMATICALLY:
                    continue
                for entity in await self._store.list_entities(entity_type, bundle):
                    if entity.key in seen:
                        continue
                    seen.add(entity.key)
                    yield WorkUnit(
                        description=f"export {entity_type}:{entity.uuid}",
                        run=functools.partial(self._push_unit, entity),
                    )

    async def _push_unit(self, entity: Entity) -> UnitOutcome:
        results = await self.export_entity(entity, ExportMode.AUTOMATICALLY, Action.UPDATE)
        if any(r.hard_failed for r in results):
            return UnitOutcome.FAILED
        if any(r.succeeded for r in results):
            return UnitOutcome.SUCCEEDED
        return UnitOutcome.SKIPPED

    def _pull_targets(self, flow_id: str | None) -> list[tuple[Pool, str]]:
        targets: dict[str, tuple[Pool, str]] = {}
        for flow in self._flows(flow_id):
            for entity_type, bundle, cfg in flow.bundle_configs():
                if cfg.ignored or cfg.import_ != ImportMode.AUTOMATICALLY:
                    continue
                for pool_id, usage in cfg.import_pools.items():
                    pool = self.pools.get(pool_id)
                    if pool is None or usage != PoolUsage.FORCE:
                        continue
                    local = connection_id(pool.id, pool.site_id, entity_type, bundle)
                    sync_id = connection_synchronization_id(local, export=False)
                    targets.setdefault(sync_id, (pool, sync_id))
        return list(targets.values())

    async def pull_all(self, flow_id: str | None = None, *, force: bool = False) -> AsyncIterator[WorkUnit]:
        """Ask every pool to send everything it has, then poll the jobs until done.

        Poll ticks are spaced by ``poll_interval_seconds``, doubling up to
        ``max_poll_interval_seconds``.
        """
        jobs: list[tuple[Pool, SyncJob]] = []
        for pool, sync_id in self._pull_targets(flow_id):
            yield WorkUnit(
                description=f"pull {sync_id}",
                run=functools.partial(self._start_pull, pool, sync_id, force, jobs),
            )

        delay = float(self._settings.remote.poll_interval_seconds)
        ceiling = float(self._settings.remote.max_poll_interval_seconds)
        while jobs:
            yield WorkUnit(
                description=f"poll {len(jobs)} pull job(s)",
                run=functools.partial(self._poll_jobs, jobs, delay),
                counted=False,
            )
            delay = min(delay * 2, ceiling)

    async def _start_pull(
        self,
        pool: Pool,
        sync_id: str,
        force: bool,
        jobs: list[tuple[Pool, SyncJob]],
    ) -> UnitOutcome:
        remote = await self._remote(pool)
        job = await remote.start_sync(sync_id, force=force)
        if job is None:
            log.info("pull_nothing_to_do", pool=pool.id, connection=sync_id)
            return UnitOutcome.SKIPPED
        log.info("pull_started", pool=pool.id, connection=sync_id, job=job.id, total=job.total)
        jobs.append((pool, job))
        return UnitOutcome.SUCCEEDED

    async def _poll_jobs(self, jobs: list[tuple[Pool, SyncJob]], delay: float) -> UnitOutcome:
        await asyncio.sleep(delay)
        for pool, job in list(jobs):
            try:
                status = await (await self._remote(pool)).job_status(job)
            except RemoteError as exc:
                log.warning("pull_poll_failed", pool=pool.id, job=job.id, error=str(exc))
                jobs.remove((pool, job))
                continue
            log.debug("pull_progress", pool=pool.id, job=job.id, **status)
            if status["processed"] >= status["total"]:
                log.info("pull_finished", pool=pool.id, job=job.id, total=status["total"])
                jobs.remove((pool, job))
        return UnitOutcome.SUCCEEDED

    async def run_units(self, units: AsyncIterator[WorkUnit], *, kind: str = "bulk") -> SyncStats:
        """Run *units* in order, one failure never stops the rest."""
        run = await self._ledger.db.start_sync_run(kind=kind)
        assert run.id is not None  # noqa: S101
        stats = SyncStats()
        log.info("bulk_run_start", kind=kind)
        try:
            async for unit in units:
                try:
                    outcome = await unit.run()
                except Exception as exc:
                    log.warning("work_unit_failed", unit=unit.description, error=str(exc))
                    stats.failed += 1
                    continue
                if unit.counted:
                    stats.add(outcome)
        except Exception as exc:
            await self._ledger.db.finish_sync_run(
                run.id, status="failed", stats_json=stats.to_json(), error_message=str(exc)
            )
            log.error("bulk_run_failed", kind=kind, error=str(exc))
            raise

        await self._ledger.db.finish_sync_run(run.id, status="completed", stats_json=stats.to_json())
        log.info("bulk_run_completed", kind=kind, stats=stats.to_json())
        return stats

    # -- configuration ----------------------------------------------------------

    def update_entity_type_versions(self, flow_id: str | None = None) -> int:
        count = 0
        for flow in self._flows(flow_id):
            for entity_type, bundle, cfg in flow.bundle_configs():
                if cfg.ignored:
                    continue
                self.policy.update_entity_type_version(flow, entity_type, bundle)
                count += 1
        return count

    async def export_configuration(self, flow_id: str | None = None, *, update_versions: bool = True) -> int:
        """Push our Flows to the remote side; returns the number of records sent."""
        if update_versions:
            self.update_entity_type_versions(flow_id)
        remote_settings = self._settings.remote
        exporter = ConfigurationExporter(
            self.policy,
            self.pools.all(),
            self._flows(flow_id),
            registry=self._registry,
            store=self._store,
            site_base_url=self._settings.engine.site_base_url,
            username=remote_settings.username,
            password=remote_settings.password.get_secret_value(),
        )
        count = 0
        for op in exporter.operations():
            remote = await self._remote(op.pool)
            await op.storage(remote).upsert(op.record)
            count += 1
        log.info("configuration_exported", records=count)
        return count

    async def login_all(self) -> dict[str, bool]:
        """Ask each pool to log in to this site again, once per configured connection."""
        connections: dict[str, list[str]] = {}
        for flow in self._repository.enabled_flows():
            for entity_type, bundle, cfg in flow.bundle_configs():
                if cfg.ignored:
                    continue
                for pool_id in dict.fromkeys([*cfg.export_pools, *cfg.import_pools]):
                    pool = self.pools.get(pool_id)
                    if pool is None:
                        continue
                    conn = connection_id(pool.id, pool.site_id, entity_type, bundle)
                    connections.setdefault(pool.id, [])
                    if conn not in connections[pool.id]:
                        connections[pool.id].append(conn)

        results: dict[str, bool] = {}
        for pool_id, conns in connections.items():
            pool = self.pools.get(pool_id)
            assert pool is not None  # noqa: S101
            remote = await self._remote(pool)
            ok = True
            for conn in conns:
                ok = await remote.login(conn) and ok
            results[pool_id] = ok
            log.info("pool_login", pool=pool_id, success=ok)
        return results
