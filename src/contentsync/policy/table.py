"""PolicyTable: export/import decisions per Flow, bundle and pool."""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING

import structlog

from contentsync.errors import ExportFailure, ImportFailure
from contentsync.policy.models import (
    Action,
    ExportMode,
    Flow,
    ImportMode,
    Pool,
    PoolUsage,
    config_key,
)

if TYPE_CHECKING:
    from contentsync.content import ContentStore, Entity
    from contentsync.handlers.registry import HandlerRegistry
    from contentsync.policy.models import EntityTypeConfig
    from contentsync.policy.pools import PoolRegistry
    from contentsync.policy.repository import ConfigRepository

log = structlog.get_logger(__name__)


def _export_mode_admits(configured: ExportMode, requested: ExportMode) -> bool:
    if requested in (ExportMode.FORCED, ExportMode.ANY):
        return True
    if requested == ExportMode.AUTOMATICALLY:
        return configured == ExportMode.AUTOMATICALLY
    if requested == ExportMode.DEPENDENCY and configured == ExportMode.AUTOMATICALLY:
        return True
    return configured == requested


def _import_mode_admits(configured: ImportMode, requested: ImportMode, action: Action) -> bool:
    if requested == ImportMode.FORCED:
        return True
    if configured == ImportMode.AUTOMATICALLY:
        return True
    # Once pulled manually, updates and deletes follow automatically.
    if requested == ImportMode.AUTOMATICALLY and configured == ImportMode.MANUALLY:
        return action in (Action.UPDATE, Action.DELETE)
    return configured == requested


class PolicyTable:
    """Answers "may this entity travel this way" for one Flow at a time.

    Mode resolution is first-match over the enabled Flows in ``(weight, id)``
    order; only pool usage is merged across Flows.
    """

    def __init__(
        self,
        repository: ConfigRepository,
        registry: HandlerRegistry,
        store: ContentStore,
        pools: PoolRegistry,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._store = store
        self._pools = pools

    @property
    def repository(self) -> ConfigRepository:
        return self._repository

    def resolve_entity_type_config(
        self,
        entity_type: str,
        bundle: str,
        field: str | None = None,
        flow: Flow | None = None,
    ) -> EntityTypeConfig | None:
        """Exact lookup in *flow*, or in the first enabled Flow that configures the key."""
        if flow is not None:
            return flow.get_config(entity_type, bundle, field)
        for candidate in self._repository.enabled_flows():
            cfg = candidate.get_config(entity_type, bundle, field)
            if cfg is not None:
                return cfg
        return None

    def _has_handler(self, entity_type: str, bundle: str, cfg: EntityTypeConfig) -> bool:
        schema = self._store.schema(entity_type, bundle)
        if schema is None:
            return False
        handler = self._registry.entity_handler_for(
            entity_type, bundle, schema, handler_id=cfg.handler, settings=cfg.handler_settings
        )
        return handler is not None

    # -- export ---------------------------------------------------------------

    def explain_export(
        self,
        flow: Flow,
        entity: Entity,
        requested: ExportMode,
        action: Action = Action.CREATE,
        pool: Pool | str | None = None,
    ) -> ExportFailure | None:
        """Return the soft failure reason that blocks the export, or None."""
        cfg = flow.get_config(entity.entity_type, entity.bundle)
        if cfg is None or cfg.ignored or cfg.export == ExportMode.DISABLED:
            return ExportFailure.HANDLER_DENIED
        if not self._has_handler(entity.entity_type, entity.bundle, cfg):
            return ExportFailure.HANDLER_DENIED
        if action == Action.DELETE and not cfg.export_deletion:
            return ExportFailure.HANDLER_DENIED
        if not _export_mode_admits(cfg.export, requested):
            return ExportFailure.HANDLER_DENIED
        if pool is not None:
            if self._pools.merged_usage(entity.entity_type, entity.bundle, pool, "export") == PoolUsage.FORBID:
                return ExportFailure.NO_POOL
        if requested == ExportMode.AUTOMATICALLY and self.is_stale(flow, entity.entity_type, entity.bundle):
            return ExportFailure.VERSION_MISMATCH
        return None

    def can_export(
        self,
        flow: Flow,
        entity: Entity,
        requested: ExportMode,
        action: Action = Action.CREATE,
        pool: Pool | str | None = None,
    ) -> bool:
        return self.explain_export(flow, entity, requested, action, pool) is None

    def flow_for_export(
        self,
        entity: Entity,
        requested: ExportMode,
        action: Action = Action.CREATE,
        pool: Pool | str | None = None,
    ) -> Flow | None:
        for flow in self._repository.enabled_flows():
            if self.can_export(flow, entity, requested, action, pool):
                return flow
        return None

    # -- import ---------------------------------------------------------------

    def explain_import(
        self,
        flow: Flow,
        entity_type: str,
        bundle: str,
        pool: Pool | str,
        requested: ImportMode,
        action: Action = Action.CREATE,
    ) -> ImportFailure | None:
        cfg = flow.get_config(entity_type, bundle)
        if cfg is None or cfg.ignored or cfg.import_ == ImportMode.DISABLED:
            return ImportFailure.HANDLER_DENIED
        if not self._has_handler(entity_type, bundle, cfg):
            return ImportFailure.HANDLER_DENIED
        if action == Action.DELETE and not cfg.import_deletion:
            return ImportFailure.HANDLER_DENIED
        if not _import_mode_admits(cfg.import_, requested, action):
            return ImportFailure.HANDLER_DENIED
        if self._pools.merged_usage(entity_type, bundle, pool, "import") == PoolUsage.FORBID:
            return ImportFailure.HANDLER_DENIED
        if requested == ImportMode.AUTOMATICALLY and self.is_stale(flow, entity_type, bundle):
            return ImportFailure.DIFFERENT_VERSION
        return None

    def can_import(
        self,
        flow: Flow,
        entity_type: str,
        bundle: str,
        pool: Pool | str,
        requested: ImportMode,
        action: Action = Action.CREATE,
    ) -> bool:
        return self.explain_import(flow, entity_type, bundle, pool, requested, action) is None

    def flow_for_import(
        self,
        entity_type: str,
        bundle: str,
        pool: Pool | str,
        requested: ImportMode,
        action: Action = Action.CREATE,
    ) -> Flow | None:
        for flow in self._repository.enabled_flows():
            if self.can_import(flow, entity_type, bundle, pool, requested, action):
                return flow
        return None

    # -- versions -------------------------------------------------------------

    def compute_version(self, entity_type: str, bundle: str) -> str:
        """MD5 over the sorted ``[name, type, default handler]`` triples of the bundle."""
        schema = self._store.schema(entity_type, bundle)
        shape = []
        if schema is not None:
            shape = sorted(
                [name, field.type, self._registry.default_field_handler_id(entity_type, bundle, field)]
                for name, field in schema.fields.items()
            )
        return hashlib.md5(json.dumps(shape).encode(), usedforsecurity=False).hexdigest()

    def is_stale(self, flow: Flow, entity_type: str, bundle: str) -> bool:
        cfg = flow.get_config(entity_type, bundle)
        if cfg is None or not cfg.version:
            return False
        return cfg.version != self.compute_version(entity_type, bundle)

    def update_entity_type_version(self, flow: Flow, entity_type: str, bundle: str) -> str:
        version = self.compute_version(entity_type, bundle)
        self._repository.save_flow_version(flow.id, config_key(entity_type, bundle), version)
        log.info("entity_type_version_updated", flow=flow.id, entity_type=entity_type, bundle=bundle, version=version)
        return version
