"""Pydantic models for Flow and Pool definitions."""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr

HANDLER_IGNORE = "ignore"

Direction = Literal["export", "import"]


class ExportMode(StrEnum):
    DISABLED = "disabled"
    AUTOMATICALLY = "automatically"
    MANUALLY = "manually"
    DEPENDENCY = "dependency"
    FORCED = "forced"
    # request-only: "whatever is configured, as long as it isn't disabled"
    ANY = "any"


class ImportMode(StrEnum):
    DISABLED = "disabled"
    AUTOMATICALLY = "automatically"
    MANUALLY = "manually"
    DEPENDENCY = "dependency"
    # request-only
    FORCED = "forced"


class PoolUsage(StrEnum):
    FORBID = "forbid"
    ALLOW = "allow"
    FORCE = "force"


class PreviewMode(StrEnum):
    DISABLED = "disabled"
    TABLE = "table"


class ImportUpdateBehavior(StrEnum):
    FORCE = "force"
    FORCE_AND_FORBID_EDITING = "force_and_forbid_editing"
    ALLOW_OVERRIDE = "allow_override"
    IGNORE = "ignore"


class Action(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def config_key(entity_type: str, bundle: str, field: str | None = None) -> str:
    """Return the Flow config key for a bundle, or for a field of that bundle."""
    key = f"{entity_type}-{bundle}"
    return f"{key}-{field}" if field else key


class EntityTypeConfig(BaseModel):
    """Per-bundle (or per-field) synchronisation policy inside a Flow."""

    model_config = ConfigDict(populate_by_name=True)

    handler: str = Field(default="", description="Handler id, empty for auto-detect, 'ignore' to skip")
    handler_settings: dict[str, Any] = Field(default_factory=dict)
    export: ExportMode = ExportMode.DISABLED
    import_: ImportMode = Field(default=ImportMode.DISABLED, alias="import")
    export_pools: dict[str, PoolUsage] = Field(default_factory=dict)
    import_pools: dict[str, PoolUsage] = Field(default_factory=dict)
    version: str = ""
    preview: PreviewMode = PreviewMode.DISABLED
    export_deletion: bool = True
    import_deletion: bool = True
    allow_local_deletion_of_import: bool = False
    import_updates: ImportUpdateBehavior = ImportUpdateBehavior.FORCE

    @property
    def ignored(self) -> bool:
        return self.handler == HANDLER_IGNORE

    def pool_usage(self, pool_id: str, direction: Direction) -> PoolUsage | None:
        pools = self.export_pools if direction == "export" else self.import_pools
        return pools.get(pool_id)

    def mode(self, direction: Direction) -> ExportMode | ImportMode:
        return self.export if direction == "export" else self.import_


class Flow(BaseModel):
    """A named synchronisation configuration."""

    id: str
    label: str = ""
    enabled: bool = True
    weight: int = 0
    entity_types: dict[str, EntityTypeConfig] = Field(default_factory=dict)

    def get_config(self, entity_type: str, bundle: str, field: str | None = None) -> EntityTypeConfig | None:
        return self.entity_types.get(config_key(entity_type, bundle, field))

    def bundle_configs(self) -> list[tuple[str, str, EntityTypeConfig]]:
        """Return ``(entity_type, bundle, config)`` for every bundle-level entry.

        Field-level keys carry three dash-separated parts and are skipped.
        """
        result = []
        for key, cfg in self.entity_types.items():
            parts = key.split("-")
            if len(parts) == 2:
                result.append((parts[0], parts[1], cfg))
        return result


class Pool(BaseModel):
    """A remote synchronisation endpoint."""

    id: str
    label: str = ""
    backend_url: str = ""
    site_id: str = ""
    authentication: Literal["basic_auth", "cookie"] = "basic_auth"
    username: str = ""
    password: SecretStr = Field(default=SecretStr(""))
