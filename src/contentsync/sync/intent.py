"""Shared intent state, results and the services every intent is built with."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

import structlog

from contentsync.errors import ExportFailure, ImportFailure
from contentsync.policy.models import Action, Direction, EntityTypeConfig, ExportMode, ImportMode

if TYPE_CHECKING:
    from contentsync.content import ContentStore, Entity, FieldDefinition
    from contentsync.handlers.base import EntityHandler, FieldHandler
    from contentsync.handlers.registry import HandlerRegistry
    from contentsync.policy.models import Flow, Pool
    from contentsync.policy.pools import PoolRegistry
    from contentsync.policy.table import PolicyTable
    from contentsync.remote.client import RemoteStore
    from contentsync.storage.ledger import StatusLedger
    from contentsync.storage.models import EntityStatus
    from contentsync.sync.dependencies import MissingDependencyManager

log = structlog.get_logger(__name__)

RemoteFactory = Callable[["Pool"], Awaitable["RemoteStore"]]


class IntentState(StrEnum):
    START = "start"
    POLICY_CHECK = "policy_check"
    HANDLER_DISPATCH = "handler_dispatch"
    DEPENDENCY_WALK = "dependency_walk"
    PERSIST = "persist"
    DONE = "done"
    FAILED_SOFT = "failed_soft"
    FAILED_HARD = "failed_hard"


@dataclass
class SyncResult:
    """Outcome of one intent; truthy only when the entity was synchronised."""

    direction: ClassVar[Direction]

    entity_type: str
    uuid: str
    flow: str
    pool: str
    action: Action
    state: IntentState
    reason: ExportFailure | ImportFailure | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state == IntentState.DONE

    @property
    def soft_failed(self) -> bool:
        return self.state == IntentState.FAILED_SOFT

    @property
    def hard_failed(self) -> bool:
        return self.state == IntentState.FAILED_HARD

    def __bool__(self) -> bool:
        return self.succeeded


@dataclass
class ExportResult(SyncResult):
    direction: ClassVar[Direction] = "export"


@dataclass
class ImportResult(SyncResult):
    direction: ClassVar[Direction] = "import"


@dataclass
class SyncServices:
    """Everything an intent collaborates with, passed in explicitly."""

    policy: PolicyTable
    pools: PoolRegistry
    registry: HandlerRegistry
    ledger: StatusLedger
    store: ContentStore
    remote: RemoteFactory
    dependencies: MissingDependencyManager

    def entity_handler(self, flow: Flow | None, entity_type: str, bundle: str) -> EntityHandler | None:
        schema = self.store.schema(entity_type, bundle)
        if schema is None:
            return None
        cfg = flow.get_config(entity_type, bundle) if flow is not None else None
        return self.registry.entity_handler_for(
            entity_type,
            bundle,
            schema,
            handler_id=cfg.handler if cfg else "",
            settings=cfg.handler_settings if cfg else None,
        )

    def field_handler(
        self,
        flow: Flow | None,
        entity_type: str,
        bundle: str,
        field: FieldDefinition,
        direction: Direction,
    ) -> FieldHandler | None:
        """Return the handler for *field*, or None if its field config switches it off."""
        cfg = flow.get_config(entity_type, bundle, field.name) if flow is not None else None
        if cfg is not None:
            if cfg.ignored:
                return None
            # Field configs only disable a direction when they say so explicitly.
            mode_field = "export" if direction == "export" else "import_"
            if mode_field in cfg.model_fields_set and cfg.mode(direction) in (ExportMode.DISABLED, ImportMode.DISABLED):
                return None
        return self.registry.field_handler_for(
            entity_type,
            bundle,
            field,
            handler_id=cfg.handler if cfg else "",
            settings=cfg.handler_settings if cfg else None,
        )


class SyncIntent:
    """One export or import of one entity for one Flow and Pool.

    Holds the flattened field map the handlers build (export) or consume
    (import).  Intents are created per call and thrown away afterwards.
    """

    direction: ClassVar[Direction]

    def __init__(
        self,
        services: SyncServices,
        flow: Flow,
        pool: Pool,
        action: Action,
        entity_type: str,
        bundle: str,
        uuid: str,
        *,
        entity: Entity | None = None,
    ) -> None:
        self.services = services
        self.flow = flow
        self.pool = pool
        self.action = Action(action)
        self.entity_type = entity_type
        self.bundle = bundle
        self.uuid = uuid
        self.entity = entity
        self.state = IntentState.START
        self.status: EntityStatus
        self._fields: dict[str, Any] = {}

    # -- collaborators --

    @property
    def store(self) -> ContentStore:
        return self.services.store

    @property
    def ledger(self) -> StatusLedger:
        return self.services.ledger

    @property
    def policy(self) -> PolicyTable:
        return self.services.policy

    @property
    def entity_type_config(self) -> EntityTypeConfig:
        return self.flow.get_config(self.entity_type, self.bundle) or EntityTypeConfig()

    def entity_handler(self) -> EntityHandler | None:
        return self.services.entity_handler(self.flow, self.entity_type, self.bundle)

    def field_handler(self, field: FieldDefinition) -> FieldHandler | None:
        return self.services.field_handler(self.flow, self.entity_type, self.bundle, field, self.direction)

    # -- field map --

    def get_field(self, name: str) -> Any:
        return self._fields.get(name)

    def set_field(self, name: str, value: Any) -> None:
        if value is None:
            self._fields.pop(name, None)
        else:
            self._fields[name] = value

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self._fields)

    # -- state --

    def _transition(self, state: IntentState) -> None:
        log.debug(
            "intent_state",
            direction=self.direction,
            entity_type=self.entity_type,
            uuid=self.uuid,
            pool=self.pool.id,
            old=self.state.value,
            new=state.value,
        )
        self.state = state
