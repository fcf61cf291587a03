"""ExportIntent: push one entity (and its dependencies) to one pool."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from contentsync.errors import ContentStoreError, ExportFailure, RemoteAuthError, RemoteError, SyncError
from contentsync.policy.models import Action, ExportMode
from contentsync.references import EmbedMode
from contentsync.remote.storage import POOL_SITE_ID, connection_id
from contentsync.storage.models import StatusFlag
from contentsync.sync.intent import ExportResult, IntentState, SyncIntent, SyncServices

if TYPE_CHECKING:
    from contentsync.content import Entity
    from contentsync.policy.models import Flow, Pool

log = structlog.get_logger(__name__)


@dataclass
class ExportContext:
    """State shared by an export and all its nested dependency exports."""

    visited: set[tuple[str, str]] = field(default_factory=set)
    results: list[ExportResult] = field(default_factory=list)


class ExportIntent(SyncIntent):
    """Export of one entity for one Flow and Pool.

    Referenced entities are exported depth-first from :meth:`embed_entity`
    while the handlers serialize the parent, so they reach the remote side
    before the entity that points at them.
    """

    direction = "export"

    def __init__(
        self,
        services: SyncServices,
        flow: Flow,
        pool: Pool,
        action: Action,
        entity: Entity,
        mode: ExportMode,
        context: ExportContext | None = None,
        *,
        parent: ExportIntent | None = None,
    ) -> None:
        super().__init__(
            services,
            flow,
            pool,
            action,
            entity.entity_type,
            entity.bundle,
            entity.uuid,
            entity=entity,
        )
        self.entity: Entity = entity
        self.mode = ExportMode(mode)
        self.context = context or ExportContext()
        self.parent = parent
        self.embedded: list[dict[str, Any]] = []
        self._embedded_keys: set[tuple[str, str]] = set()
        self._dependency_failures: list[ExportResult] = []

    @property
    def is_dependency(self) -> bool:
        return self.parent is not None

    # -- execution ------------------------------------------------------------

    async def execute(self) -> ExportResult:
        try:
            self.context.visited.add(self.entity.key)
            if self.action == Action.DELETE and not await self._was_exported():
                # The remote side never saw it, nothing to delete there.
                log.debug("export_delete_skipped", entity_type=self.entity_type, uuid=self.uuid, pool=self.pool.id)
                self._transition(IntentState.FAILED_SOFT)
                return self._result(ExportFailure.HANDLER_DENIED, "never exported")

            self.status = await self.ledger.get(self.entity_type, self.uuid, self.flow.id, self.pool.id)
            version = self.policy.compute_version(self.entity_type, self.bundle)
            self._normalize_action(version)
            return await self._run(version)
        except RemoteAuthError as exc:
            return await self._fail(ExportFailure.REQUEST_FAILED, str(exc))
        except RemoteError as exc:
            if exc.status_code is not None:
                return await self._fail(ExportFailure.INVALID_STATUS_CODE, str(exc), code=str(exc.status_code))
            return await self._fail(ExportFailure.REQUEST_FAILED, str(exc))
        except SyncError as exc:
            return await self._fail(ExportFailure.INTERNAL_ERROR, exc.message, code=exc.code.value)
        except ContentStoreError as exc:
            return await self._fail(ExportFailure.INTERNAL_ERROR, str(exc), code="ENTITY_API_FAILURE")
        except Exception as exc:
            log.exception("export_unexpected_error", entity_type=self.entity_type, uuid=self.uuid, pool=self.pool.id)
            return await self._fail(ExportFailure.INTERNAL_ERROR, str(exc), code="UNEXPECTED_EXCEPTION")

    async def _was_exported(self) -> bool:
        existing = await self.ledger.find(self.entity_type, self.uuid, self.flow.id, self.pool.id)
        return existing is not None and existing.last_export is not None

    def _normalize_action(self, version: str) -> None:
        if self.action == Action.DELETE:
            return
        exported = self.status.last_export is not None
        if self.action == Action.UPDATE and not exported:
            self.action = Action.CREATE
        elif self.action == Action.CREATE and exported:
            self.action = Action.UPDATE
        # A changed bundle shape is sent as a fresh create.
        if (
            self.action == Action.UPDATE
            and self.status.entity_type_version
            and self.status.entity_type_version != version
        ):
            self.action = Action.CREATE

    async def _run(self, version: str) -> ExportResult:
        self._transition(IntentState.POLICY_CHECK)
        reason = self.policy.explain_export(self.flow, self.entity, self.mode, self.action, self.pool)
        if reason is not None:
            return await self._fail(reason)

        if (
            self.action != Action.DELETE
            and self.mode != ExportMode.FORCED
            and self.status.last_export is not None
            and self.status.last_export >= self.entity.changed
            and self.status.entity_type_version == version
        ):
            return await self._fail(ExportFailure.UNCHANGED)

        self._transition(IntentState.HANDLER_DISPATCH)
        handler = self.entity_handler()
        if handler is None or await handler.ignore_export(self):
            return await self._fail(ExportFailure.HANDLER_DENIED)
        if self.action != Action.DELETE and not await handler.export(self, self.entity):
            return await self._fail(ExportFailure.HANDLER_DENIED)

        if self._dependency_failures:
            failed = ", ".join(f"{r.entity_type}:{r.uuid}" for r in self._dependency_failures)
            return await self._fail(ExportFailure.DEPENDENCY_EXPORT_FAILED, f"dependencies failed: {failed}")

        self._transition(IntentState.PERSIST)
        remote = await self.services.remote(self.pool)
        body = None if self.action == Action.DELETE else self.body()
        await remote.push_entity(self.entity_type, self.bundle, self.uuid, self.action, body)

        flags = StatusFlag(0)
        if self.is_dependency:
            flags |= StatusFlag.DEPENDENCY_EXPORT_ENABLED
        if self.status.last_import is None:
            flags |= StatusFlag.IS_SOURCE_ENTITY
        if self.action == Action.DELETE:
            flags |= StatusFlag.DELETED

        self.status = await self.ledger.mark_export_result(
            self.status,
            True,
            action=self.action.value,
            mode=self.mode.value,
            version=version,
            set_flags=flags,
        )
        self._transition(IntentState.DONE)
        log.info(
            "entity_exported",
            entity_type=self.entity_type,
            uuid=self.uuid,
            flow=self.flow.id,
            pool=self.pool.id,
            action=self.action.value,
            dependency=self.is_dependency,
        )
        return self._result()

    def body(self) -> dict[str, Any]:
        """Wire representation: identity, the handler-built fields, the embeds."""
        return {
            "id": self.entity.id if self.entity.is_config else self.uuid,
            "uuid": self.uuid,
            **self.fields,
            "embed_entities": list(self.embedded),
        }

    # -- dependencies ---------------------------------------------------------

    async def embed_entity(
        self,
        referenced: Entity,
        mode: EmbedMode,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Return the reference definition for *referenced*.

        Unless *mode* is reference-only, the referenced entity is exported
        first when a Flow allows it and it was not visited during this walk.
        """
        auto_export = False
        if mode != EmbedMode.REFERENCE_ONLY:
            requested = ExportMode.DEPENDENCY if mode == EmbedMode.EXPORT_AS_DEPENDENCY else ExportMode.AUTOMATICALLY
            flow = self.policy.flow_for_export(referenced, requested, Action.UPDATE, self.pool)
            auto_export = flow is not None
            if flow is not None and referenced.key not in self.context.visited:
                self._transition(IntentState.DEPENDENCY_WALK)
                nested = ExportIntent(
                    self.services,
                    flow,
                    self.pool,
                    Action.UPDATE,
                    referenced,
                    requested,
                    self.context,
                    parent=self,
                )
                result = await nested.execute()
                self.context.results.append(result)
                if result.hard_failed:
                    self._dependency_failures.append(result)

        definition: dict[str, Any] = {
            "api": self.pool.id,
            "pool": self.pool.id,
            "type": referenced.entity_type,
            "bundle": referenced.bundle,
            "version": self.policy.compute_version(referenced.entity_type, referenced.bundle),
            "uuid": referenced.uuid,
            "auto_export": auto_export,
            "connection_id": connection_id(self.pool.id, self.pool.site_id, referenced.entity_type, referenced.bundle),
            "next_connection_id": connection_id(self.pool.id, POOL_SITE_ID, referenced.entity_type, referenced.bundle),
            "label": referenced.label,
        }
        if referenced.is_config:
            definition["id"] = referenced.id

        if referenced.key not in self._embedded_keys:
            self._embedded_keys.add(referenced.key)
            self.embedded.append(dict(definition))
        return {**definition, **(details or {})}

    # -- results --------------------------------------------------------------

    async def _fail(self, reason: ExportFailure, message: str = "", *, code: str | None = None) -> ExportResult:
        self._transition(IntentState.FAILED_SOFT if reason.is_soft else IntentState.FAILED_HARD)
        try:
            if getattr(self, "status", None) is None:
                self.status = await self.ledger.get(self.entity_type, self.uuid, self.flow.id, self.pool.id)
            self.status = await self.ledger.mark_export_result(
                self.status,
                False,
                reason,
                action=self.action.value,
                mode=self.mode.value,
                message=message,
                code=code,
            )
        except sqlite3.Error:
            log.exception("export_failure_unrecorded", entity_type=self.entity_type, uuid=self.uuid, pool=self.pool.id)
        if not reason.is_soft:
            log.warning(
                "export_failed",
                entity_type=self.entity_type,
                uuid=self.uuid,
                flow=self.flow.id,
                pool=self.pool.id,
                reason=reason.value,
                message=message,
            )
        return self._result(reason, message)

    def _result(self, reason: ExportFailure | None = None, message: str = "") -> ExportResult:
        return ExportResult(
            entity_type=self.entity_type,
            uuid=self.uuid,
            flow=self.flow.id,
            pool=self.pool.id,
            action=self.action,
            state=self.state,
            reason=reason,
            message=message,
        )
