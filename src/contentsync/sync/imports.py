"""ImportIntent: apply one entity received from a pool."""

from __future__ import annotations

import copy
import sqlite3
from typing import TYPE_CHECKING, Any

import structlog

from contentsync.errors import ContentStoreError, ErrorCode, ImportFailure, InvalidPayloadError, SyncError
from contentsync.policy.models import Action, ImportMode, ImportUpdateBehavior
from contentsync.storage.models import StatusFlag
from contentsync.sync.intent import ImportResult, IntentState, SyncIntent, SyncServices

if TYPE_CHECKING:
    from contentsync.content import Entity
    from contentsync.policy.models import Flow, Pool

log = structlog.get_logger(__name__)


class ImportIntent(SyncIntent):
    """Import of one entity for one Flow and Pool.

    References whose target has not arrived yet are collected in
    :attr:`unresolved` by the handlers and persisted once the entity is
    saved; they are finished later by the dependency manager.
    """

    direction = "import"

    def __init__(
        self,
        services: SyncServices,
        flow: Flow,
        pool: Pool,
        action: Action,
        entity_type: str,
        bundle: str,
        uuid: str,
        data: dict[str, Any],
        mode: ImportMode,
        version: str | None = None,
    ) -> None:
        super().__init__(services, flow, pool, action, entity_type, bundle, uuid)
        self.mode = ImportMode(mode)
        self.version = version
        self.data = data
        self._fields = copy.deepcopy(data)
        self.unresolved: list[dict[str, Any]] = []

    @property
    def remote_id(self) -> Any:
        return self.data.get("id")

    # -- execution ------------------------------------------------------------

    async def execute(self) -> ImportResult:
        try:
            self.entity = await self._load_local()
            self.status = await self.ledger.get(self.entity_type, self.uuid, self.flow.id, self.pool.id)
            self._normalize_action()
            return await self._run()
        except InvalidPayloadError as exc:
            await self._fail(ImportFailure.INVALID_REQUEST, exc.message, code=exc.code.value)
            raise
        except SyncError as exc:
            return await self._fail(ImportFailure.CONTENT_SYNC_ERROR, exc.message, code=exc.code.value)
        except ContentStoreError as exc:
            return await self._fail(ImportFailure.CONTENT_SYNC_ERROR, str(exc), code="ENTITY_API_FAILURE")
        except Exception as exc:
            log.exception("import_unexpected_error", entity_type=self.entity_type, uuid=self.uuid, pool=self.pool.id)
            return await self._fail(ImportFailure.INTERNAL_ERROR, str(exc), code="UNEXPECTED_EXCEPTION")

    async def _load_local(self) -> Entity | None:
        entity = await self.store.load_by_uuid(self.entity_type, self.uuid)
        if entity is None:
            schema = self.store.schema(self.entity_type, self.bundle)
            if schema is not None and schema.is_config and self.remote_id is not None:
                entity = await self.store.load(self.entity_type, self.remote_id)
        return entity

    def _normalize_action(self) -> None:
        if self.action == Action.DELETE:
            return
        if self.action == Action.CREATE and self.entity is not None:
            self.action = Action.UPDATE
        elif self.action == Action.UPDATE and self.entity is None:
            self.action = Action.CREATE

    async def _run(self) -> ImportResult:
        self._transition(IntentState.POLICY_CHECK)
        reason = self.policy.explain_import(
            self.flow, self.entity_type, self.bundle, self.pool, self.mode, self.action
        )
        if reason is not None:
            return await self._fail(reason)
        if self.version and self.version != self.policy.compute_version(self.entity_type, self.bundle):
            return await self._fail(
                ImportFailure.DIFFERENT_VERSION,
                f"remote version {self.version} does not match the local bundle",
            )

        skip = self._update_skip_reason()
        if skip:
            return await self._fail(ImportFailure.HANDLER_DENIED, skip)

        self._transition(IntentState.HANDLER_DISPATCH)
        handler = self.entity_handler()
        if handler is None:
            return await self._fail(ImportFailure.HANDLER_DENIED)

        if self.action == Action.DELETE:
            if self.entity is not None:
                await handler.delete_entity(self, self.entity)
            return await self._succeed(StatusFlag.DELETED)

        if await handler.ignore_import(self) or not await handler.import_(self):
            return await self._fail(ImportFailure.HANDLER_DENIED)

        self._transition(IntentState.PERSIST)
        if self.entity is None:
            raise SyncError(ErrorCode.INTERNAL_ERROR, f"{handler.id} built no entity for {self.uuid}")
        for pending in self.unresolved:
            definition = pending["definition"]
            if not definition.get("uuid"):
                continue
            await self.services.dependencies.save(
                referenced_type=definition["type"],
                referenced_uuid=definition["uuid"],
                owner_type=self.entity.entity_type,
                owner_uuid=self.entity.uuid,
                field=pending["field"],
                flow=self.flow.id,
                reason=self.mode.value,
                data=pending["data"],
            )

        if self.status.is_deleted:
            self.status = await self.ledger.clear_flag(self.status, StatusFlag.DELETED)
        result = await self._succeed(StatusFlag(0))
        await self._resolve_waiting_owners()
        return result

    async def _resolve_waiting_owners(self) -> None:
        """Finish references other entities left open for this one; the import itself stands either way."""
        try:
            await self.services.dependencies.resolve(self.services, self.entity)
        except Exception:
            log.exception("dependency_resolve_failed", entity_type=self.entity_type, uuid=self.uuid)

    def _update_skip_reason(self) -> str:
        if self.action != Action.UPDATE:
            # A locally deleted import is not recreated unless forced.
            if self.status.is_deleted and self.action == Action.CREATE and self.mode != ImportMode.FORCED:
                return "deleted locally"
            return ""
        behavior = self.entity_type_config.import_updates
        if behavior == ImportUpdateBehavior.IGNORE and self.status.last_import is not None:
            return "updates are ignored"
        if behavior == ImportUpdateBehavior.ALLOW_OVERRIDE and self.status.has(StatusFlag.EDIT_OVERRIDE):
            return "overridden locally"
        return ""

    # -- references -----------------------------------------------------------

    async def load_embedded_entity(self, definition: dict[str, Any]) -> Entity | None:
        """Find the local entity a reference definition points at."""
        entity_type = definition["type"]
        entity = None
        if definition.get("uuid"):
            entity = await self.store.load_by_uuid(entity_type, definition["uuid"])
        if entity is None and definition.get("id") is not None:
            entity = await self.store.load(entity_type, definition["id"])
        return entity

    def save_unresolved_dependency(
        self,
        definition: dict[str, Any],
        field: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Remember a reference to finish once its target has been imported."""
        log.debug(
            "dependency_unresolved",
            owner=self.uuid,
            field=field,
            referenced_type=definition.get("type"),
            referenced_uuid=definition.get("uuid"),
        )
        self.unresolved.append({"definition": definition, "field": field, "data": data})

    # -- results --------------------------------------------------------------

    async def _succeed(self, flags: StatusFlag) -> ImportResult:
        self.status = await self.ledger.mark_import_result(
            self.status,
            True,
            action=self.action.value,
            mode=self.mode.value,
            version=self.policy.compute_version(self.entity_type, self.bundle),
            set_flags=flags,
            source_url=self.data.get("url"),
        )
        self._transition(IntentState.DONE)
        log.info(
            "entity_imported",
            entity_type=self.entity_type,
            uuid=self.uuid,
            flow=self.flow.id,
            pool=self.pool.id,
            action=self.action.value,
            unresolved=len(self.unresolved),
        )
        return self._result()

    async def _fail(self, reason: ImportFailure, message: str = "", *, code: str | None = None) -> ImportResult:
        self._transition(IntentState.FAILED_SOFT if reason.is_soft else IntentState.FAILED_HARD)
        try:
            if getattr(self, "status", None) is None:
                self.status = await self.ledger.get(self.entity_type, self.uuid, self.flow.id, self.pool.id)
            self.status = await self.ledger.mark_import_result(
                self.status,
                False,
                reason,
                action=self.action.value,
                mode=self.mode.value,
                message=message,
                code=code,
            )
        except sqlite3.Error:
            log.exception("import_failure_unrecorded", entity_type=self.entity_type, uuid=self.uuid, pool=self.pool.id)
        if not reason.is_soft:
            log.warning(
                "import_failed",
                entity_type=self.entity_type,
                uuid=self.uuid,
                flow=self.flow.id,
                pool=self.pool.id,
                reason=reason.value,
                message=message,
            )
        return self._result(reason, message)

    def _result(self, reason: ImportFailure | None = None, message: str = "") -> ImportResult:
        return ImportResult(
            entity_type=self.entity_type,
            uuid=self.uuid,
            flow=self.flow.id,
            pool=self.pool.id,
            action=self.action,
            state=self.state,
            reason=reason,
            message=message,
        )
