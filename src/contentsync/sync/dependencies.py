"""Durable queue of references whose target has not been imported yet."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from contentsync.errors import ContentStoreError, ErrorCode, RemoteError, SyncError
from contentsync.policy.models import Action, ImportMode
from contentsync.remote.storage import connection_id, connection_synchronization_id

if TYPE_CHECKING:
    from contentsync.content import Entity
    from contentsync.policy.models import Flow, Pool
    from contentsync.storage.database import Database
    from contentsync.storage.models import UnresolvedDependency
    from contentsync.sync.intent import SyncServices

log = structlog.get_logger(__name__)


class MissingDependencyManager:
    """Stores open references and finishes them when their target arrives.

    Records are keyed by the referenced ``(type, uuid)``; saving the same
    owner field twice updates the record instead of adding another.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def save(
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
        return await self._db.add_unresolved(
            referenced_type=referenced_type,
            referenced_uuid=referenced_uuid,
            owner_type=owner_type,
            owner_uuid=owner_uuid,
            field=field,
            flow=flow,
            reason=reason,
            data=data,
        )

    async def pending(
        self,
        referenced_type: str | None = None,
        referenced_uuid: str | None = None,
    ) -> list[UnresolvedDependency]:
        return await self._db.list_unresolved(referenced_type, referenced_uuid)

    async def resolve(self, services: SyncServices, entity: Entity) -> int:
        """Point every owner waiting for *entity* at it; returns how many were finished.

        Owners that were deleted locally, or whose Flow no longer imports
        them, are left alone and their record is dropped. A record without
        a field asks for the owner to be pulled again in full.
        """
        resolved = 0
        for record in await self.pending(entity.entity_type, entity.uuid):
            if record.id is None:
                msg = f"Stored dependency for {record.owner_uuid} has no id"
                raise SyncError(ErrorCode.INTERNAL_ERROR, msg)
            owner = await services.store.load_by_uuid(record.owner_type, record.owner_uuid)
            if owner is None:
                log.info("dependency_owner_gone", owner=record.owner_uuid, referenced=entity.uuid)
                await self._db.delete_unresolved(record.id)
                continue

            target = await self._import_target(services, record, owner)
            if target is None:
                await self._db.delete_unresolved(record.id)
                continue
            flow, pool = target

            if not record.field:
                await self._pull_again(services, record, owner, pool)
                await self._db.delete_unresolved(record.id)
                resolved += 1
                continue

            handler = services.entity_handler(flow, owner.entity_type, owner.bundle)
            if handler is None:
                log.warning("dependency_owner_unhandled", owner=owner.uuid, entity_type=owner.entity_type)
                await self._db.delete_unresolved(record.id)
                continue

            try:
                if await handler.resolve_reference(services, flow, owner, record.field, entity, record.data):
                    await services.store.save(owner)
            except (ContentStoreError, SyncError) as exc:
                log.warning(
                    "dependency_resolve_failed",
                    owner=owner.uuid,
                    field=record.field,
                    referenced=entity.uuid,
                    error=str(exc),
                )
                continue

            await self._db.delete_unresolved(record.id)
            resolved += 1
            log.info(
                "dependency_resolved",
                owner_type=owner.entity_type,
                owner=owner.uuid,
                field=record.field,
                referenced=entity.uuid,
            )
        return resolved

    async def _import_target(
        self, services: SyncServices, record: UnresolvedDependency, owner: Entity
    ) -> tuple[Flow, Pool] | None:
        """The Flow and Pool the owner may still be updated through, if any."""
        rows = await services.ledger.rows_for_entity(owner.entity_type, owner.uuid)
        if record.flow:
            rows = [row for row in rows if row.flow == record.flow]
        if any(row.is_deleted for row in rows):
            log.info("dependency_owner_deleted", owner=owner.uuid, entity_type=owner.entity_type)
            return None

        for row in rows:
            flow = services.policy.repository.get_flow(row.flow)
            pool = services.pools.get(row.pool)
            if flow is None or pool is None:
                continue
            if services.policy.can_import(
                flow, owner.entity_type, owner.bundle, pool, ImportMode.FORCED, Action.UPDATE
            ):
                return flow, pool

        log.info("dependency_owner_not_importable", owner=owner.uuid, entity_type=owner.entity_type)
        return None

    async def _pull_again(
        self, services: SyncServices, record: UnresolvedDependency, owner: Entity, pool: Pool
    ) -> None:
        conn_id = connection_id(pool.id, pool.site_id, owner.entity_type, owner.bundle)
        try:
            remote = await services.remote(pool)
            requested = await remote.synchronize_single(
                connection_synchronization_id(conn_id, export=False),
                owner.uuid,
                manual=record.reason == ImportMode.MANUALLY,
                dependency=record.reason == ImportMode.DEPENDENCY,
            )
        except RemoteError as exc:
            log.warning("dependency_pull_failed", owner=owner.uuid, pool=pool.id, error=str(exc))
            return
        log.info("dependency_pull_requested", owner=owner.uuid, pool=pool.id, accepted=requested)
