"""Translate Flows and Pools into the remote endpoint's configuration records.

The remote side needs, per pool: an API record, an instance record for this
site, one entity type record per (type, bundle, version), a pool connection
per bundle, the connection synchronisations in each enabled direction and
one remote storage describing how to call back into this site.
"""

from __future__ import annotations

from collections.abc import Iterator
from importlib import metadata
from typing import TYPE_CHECKING, Any, NamedTuple

import structlog

from contentsync.policy.models import ExportMode, ImportMode, PoolUsage, PreviewMode
from contentsync.remote.query import Condition, DataCondition, ParentCondition
from contentsync.remote.storage import (
    API_VERSION,
    POOL_SITE_ID,
    PREVIEW_ENTITY_ID,
    PREVIEW_PATH,
    ApiStorage,
    ConnectionStorage,
    ConnectionSynchronizationStorage,
    EntityTypeStorage,
    InstanceStorage,
    PreviewEntityStorage,
    RemoteStorageStorage,
    Storage,
    api_id,
    connection_id,
    connection_path,
    connection_synchronization_id,
    entity_type_id,
    remote_storage_id,
)

if TYPE_CHECKING:
    from contentsync.content import ContentStore
    from contentsync.handlers.registry import HandlerRegistry
    from contentsync.policy.models import EntityTypeConfig, Flow, Pool
    from contentsync.policy.table import PolicyTable

log = structlog.get_logger(__name__)


def _package_version() -> str:
    try:
        return metadata.version("contentsync")
    except metadata.PackageNotFoundError:
        return "0.0.0"


_ROOT_API_ID = f"drupal-{API_VERSION}"

# Properties every entity type carries regardless of its fields.
_BASE_PROPERTIES: dict[str, dict[str, Any]] = {
    "source": {
        "type": "reference",
        "default_value": None,
        "connection_identifiers": [{"properties": {"id": "source_connection_id"}}],
        "model_identifiers": [{"properties": {"id": "source_id"}}],
        "multiple": False,
    },
    "source_id": {"type": "id", "default_value": None},
    "source_connection_id": {"type": "id", "default_value": None},
    "preview": {"type": "string", "default_value": None},
    "url": {"type": "string", "default_value": None},
    "apiu_translation": {"type": "object", "default_value": None},
    "metadata": {"type": "object", "default_value": None},
    "embed_entities": {"type": "object", "default_value": None, "multiple": True},
    "menu_items": {"type": "object", "default_value": None, "multiple": True},
    "title": {"type": "string", "default_value": None},
    "created": {"type": "int", "default_value": None},
    "changed": {"type": "int", "default_value": None},
    "uuid": {"type": "string", "default_value": None},
}

_DETAILS = [
    "apiu_translation",
    "metadata",
    "embed_entities",
    "title",
    "created",
    "changed",
    "uuid",
    "url",
    "menu_items",
]
_MODIFIABLE = ["title", "preview", "url", "apiu_translation", "metadata", "embed_entities", "menu_items"]


class ConfigOperation(NamedTuple):
    """One record to upsert into one storage of one pool."""

    pool: Pool
    storage: type[Storage]
    record: dict[str, Any]


def _property_lists() -> dict[str, dict[str, str]]:
    resource = {"_resource_url": "value", "_resource_connection_id": "value", "id": "value"}
    return {
        "list": dict(resource),
        "reference": dict(resource),
        "details": {**resource, "source": "reference", **{k: "value" for k in _DETAILS}},
        "database": {
            "id": "value",
            "source_id": "value",
            "source_connection_id": "value",
            "preview": "value",
            **{k: "value" for k in _DETAILS},
        },
        "modifiable": {k: "value" for k in _MODIFIABLE},
        "required": {"uuid": "value"},
    }


class ConfigurationExporter:
    """Builds the upserts that make the remote side know our Flows."""

    def __init__(
        self,
        policy: PolicyTable,
        pools: list[Pool],
        flows: list[Flow],
        *,
        registry: HandlerRegistry,
        store: ContentStore,
        site_base_url: str = "",
        username: str = "",
        password: str = "",
    ) -> None:
        self._policy = policy
        self._pools = {p.id: p for p in pools}
        self._flows = [f for f in flows if f.enabled]
        self._registry = registry
        self._store = store
        self._site_base_url = site_base_url
        self._username = username
        self._password = password

    # -- records ---------------------------------------------------------------

    def _authentication(self, pool: Pool) -> dict[str, Any]:
        return {
            "type": "basic_auth" if pool.authentication == "basic_auth" else "drupal8_services",
            "username": self._username,
            "password": self._password,
            "base_url": self._site_base_url,
        }

    def _pool_records(self, pool: Pool, first: bool) -> Iterator[ConfigOperation]:
        if first:
            yield ConfigOperation(pool, ApiStorage, {"id": _ROOT_API_ID, "name": "drupal", "version": API_VERSION})
            yield ConfigOperation(
                pool,
                ConnectionStorage,
                {
                    "id": PreviewEntityStorage.ID,
                    "name": "Drupal preview connection",
                    "hash": PREVIEW_PATH,
                    "usage": "EXTERNAL",
                    "status": "READY",
                    "entity_type_id": PREVIEW_ENTITY_ID,
                    "options": {"crud": {"read_list": {}}, "static_values": {}},
                },
            )
        yield ConfigOperation(
            pool,
            ApiStorage,
            {"id": api_id(pool.id), "name": pool.label or pool.id, "version": API_VERSION, "parent_id": _ROOT_API_ID},
        )
        yield ConfigOperation(
            pool,
            InstanceStorage,
            {
                "id": pool.site_id,
                "base_url": self._site_base_url,
                "version": _package_version(),
                "api_id": api_id(pool.id),
            },
        )

    def _entity_type_record(
        self, pool: Pool, flow: Flow, entity_type: str, bundle: str, version: str
    ) -> tuple[dict[str, Any], Condition | None]:
        record: dict[str, Any] = {
            "id": entity_type_id(pool.id, entity_type, bundle, version),
            "name_space": entity_type,
            "name": bundle,
            "version": version,
            "base_class": "api-unify/services/drupal/v0.1/models/base.model",
            "custom": True,
            "new_properties": {k: dict(v) for k, v in _BASE_PROPERTIES.items()},
            "new_property_lists": _property_lists(),
            "api_id": api_id(pool.id),
        }

        conditions: list[Condition] = []
        schema = self._store.schema(entity_type, bundle)
        cfg = flow.get_config(entity_type, bundle)
        handler = None
        if schema is not None and cfg is not None:
            handler = self._registry.entity_handler_for(
                entity_type, bundle, schema, handler_id=cfg.handler, settings=cfg.handler_settings
            )
        if schema is None or handler is None:
            return record, None

        forbidden = handler.forbidden_fields()
        for name, field in schema.fields.items():
            if name in forbidden or name in record["new_properties"]:
                continue
            field_cfg = flow.get_config(entity_type, bundle, name)
            if field_cfg is not None and field_cfg.ignored:
                continue
            subscribe = (field_cfg.handler_settings.get("subscribe_only_to") if field_cfg else None) or []
            if subscribe:
                conditions.append(DataCondition(f"{name}.*.uuid", "in", [ref["uuid"] for ref in subscribe]))

            record["new_properties"][name] = {"type": "object", "default_value": None, "multiple": True}
            lists = record["new_property_lists"]
            lists["details"][name] = "value"
            lists["database"][name] = "value"
            lists["modifiable"][name] = "value"
            if field.required:
                lists["required"][name] = "value"

        if len(conditions) > 1:
            return record, ParentCondition("and", conditions)
        return record, conditions[0] if conditions else None

    def _bundle_records(
        self,
        pool: Pool,
        flow: Flow,
        entity_type: str,
        bundle: str,
        cfg: EntityTypeConfig,
        export_usage: PoolUsage,
        import_usage: PoolUsage,
        remote_storages: dict[str, dict[str, Any]],
        seen_types: set[str],
    ) -> Iterator[ConfigOperation]:
        version = cfg.version or self._policy.compute_version(entity_type, bundle)
        record, import_condition = self._entity_type_record(pool, flow, entity_type, bundle, version)
        type_id = record["id"]
        if type_id not in seen_types:
            seen_types.add(type_id)
            yield ConfigOperation(pool, EntityTypeStorage, record)

        pool_conn = connection_id(pool.id, POOL_SITE_ID, entity_type, bundle)
        yield ConfigOperation(
            pool,
            ConnectionStorage,
            {
                "id": pool_conn,
                "name": f"Drupal pool connection for {entity_type}-{bundle}-{version}",
                "hash": connection_path(pool.id, POOL_SITE_ID, entity_type, bundle),
                "usage": "EXTERNAL",
                "status": "READY",
                "options": {"update_all": False},
                "entity_type_id": type_id,
            },
        )

        if cfg.preview == PreviewMode.TABLE:
            yield ConfigOperation(
                pool,
                ConnectionSynchronizationStorage,
                {
                    "id": f"{pool_conn}--to--preview",
                    "name": f"Synchronization Pool {entity_type}-{bundle} -> Preview",
                    "options": {
                        "create_entities": True,
                        "update_entities": True,
                        "delete_entities": True,
                        "update_none_when_loading": True,
                        "exclude_reference_properties": ["pSource"],
                    },
                    "status": "READY",
                    "source_connection_id": pool_conn,
                    "destination_connection_id": PreviewEntityStorage.ID,
                },
            )

        storage = remote_storages.get(pool.id)
        if storage is None:
            remote_storages[pool.id] = {
                "id": remote_storage_id(pool.id, pool.site_id),
                "name": f"Drupal connection on {pool.site_id} for {pool.id}",
                "status": "READY",
                "instance_id": pool.site_id,
                "api_id": pool.id,
                "entity_type_ids": [type_id],
                "connection_id_pattern": connection_id(
                    "[api.id]", "[instance.id]", "[entity_type.name_space]", "[entity_type.name]"
                ),
                "connection_name_pattern": (
                    "Drupal connection on [instance.id] for "
                    "[entity_type.name_space].[entity_type.name]:[entity_type.version]"
                ),
                "connection_path_pattern": connection_path(
                    "[api.id]", "[instance.id]", "[entity_type.name_space]", "[entity_type.name]"
                ),
                "connection_options": {
                    "authentication": self._authentication(pool),
                    "update_all": False,
                },
            }
        elif type_id not in storage["entity_type_ids"]:
            storage["entity_type_ids"].append(type_id)

        local_conn = connection_id(pool.id, pool.site_id, entity_type, bundle)
        if import_usage != PoolUsage.FORBID and cfg.import_ != ImportMode.DISABLED:
            yield ConfigOperation(
                pool,
                ConnectionSynchronizationStorage,
                {
                    "id": connection_synchronization_id(local_conn, export=False),
                    "name": f"Synchronization for {entity_type}/{bundle}/{version} from Pool -> {pool.site_id}",
                    "options": {
                        "dependency_connection_id": connection_id(
                            "[api.name]", "[instance.id]", "[entity_type.name_space]", "[entity_type.name]"
                        ),
                        "create_entities": cfg.import_ != ImportMode.MANUALLY,
                        "force_updates": False,
                        "update_entities": True,
                        "delete_entities": cfg.import_deletion,
                        "dependent_entities_only": cfg.import_ == ImportMode.DEPENDENCY,
                        "update_none_when_loading": True,
                        "condition": import_condition.to_dict() if import_condition else None,
                        "exclude_reference_properties": ["pSource"],
                    },
                    "status": "READY",
                    "source_connection_id": pool_conn,
                    "destination_connection_id": local_conn,
                },
            )
        if export_usage != PoolUsage.FORBID and cfg.export != ExportMode.DISABLED:
            yield ConfigOperation(
                pool,
                ConnectionSynchronizationStorage,
                {
                    "id": connection_synchronization_id(local_conn, export=True),
                    "name": f"Synchronization for {entity_type}/{bundle}/{version} from {pool.site_id} -> Pool",
                    "options": {
                        "dependency_connection_id": connection_id(
                            "[api.name]", POOL_SITE_ID, "[entity_type.name_space]", "[entity_type.name]"
                        ),
                        "create_entities": True,
                        "update_entities": True,
                        "delete_entities": cfg.export_deletion,
                        "force_updates": False,
                        "dependent_entities_only": cfg.export == ExportMode.DEPENDENCY,
                        "update_none_when_loading": True,
                        "exclude_reference_properties": ["pSource"],
                    },
                    "status": "READY",
                    "source_connection_id": local_conn,
                    "destination_connection_id": pool_conn,
                },
            )

    # -- public ------------------------------------------------------------------

    def operations(self) -> list[ConfigOperation]:
        """Return every upsert, pool-level records first and remote storages last."""
        pool_ops: list[ConfigOperation] = []
        bundle_ops: list[ConfigOperation] = []
        remote_storages: dict[str, dict[str, Any]] = {}
        seen_types: set[str] = set()
        used_pools: list[Pool] = []

        for flow in self._flows:
            for entity_type, bundle, cfg in flow.bundle_configs():
                if cfg.ignored:
                    continue
                pool_ids = list(dict.fromkeys([*cfg.export_pools, *cfg.import_pools]))
                for pool_id in pool_ids:
                    pool = self._pools.get(pool_id)
                    if pool is None:
                        log.warning("config_export_unknown_pool", flow=flow.id, pool=pool_id)
                        continue
                    export_usage = cfg.export_pools.get(pool_id, PoolUsage.FORBID)
                    import_usage = cfg.import_pools.get(pool_id, PoolUsage.FORBID)
                    if cfg.export == ExportMode.DISABLED:
                        export_usage = PoolUsage.FORBID
                    if cfg.import_ == ImportMode.DISABLED:
                        import_usage = PoolUsage.FORBID
                    if export_usage == PoolUsage.FORBID and import_usage == PoolUsage.FORBID:
                        continue
                    if pool not in used_pools:
                        used_pools.append(pool)
                    bundle_ops.extend(
                        self._bundle_records(
                            pool,
                            flow,
                            entity_type,
                            bundle,
                            cfg,
                            export_usage,
                            import_usage,
                            remote_storages,
                            seen_types,
                        )
                    )

        backends: set[str] = set()
        for pool in used_pools:
            # The root API and preview connection exist once per backend.
            pool_ops.extend(self._pool_records(pool, first=pool.backend_url not in backends))
            backends.add(pool.backend_url)

        storage_ops = [
            ConfigOperation(self._pools[pid], RemoteStorageStorage, record) for pid, record in remote_storages.items()
        ]
        return pool_ops + bundle_ops + storage_ops
