"""Flow and Pool definitions plus the policy decisions made from them."""

from contentsync.policy.models import (
    Action,
    EntityTypeConfig,
    ExportMode,
    Flow,
    ImportMode,
    ImportUpdateBehavior,
    Pool,
    PoolUsage,
    PreviewMode,
)

__all__ = [
    "Action",
    "EntityTypeConfig",
    "ExportMode",
    "Flow",
    "ImportMode",
    "ImportUpdateBehavior",
    "Pool",
    "PoolUsage",
    "PreviewMode",
]
