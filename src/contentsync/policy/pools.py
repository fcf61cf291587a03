"""Pool lookup and tri-state pool usage merging across Flows."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from contentsync.policy.models import Direction, ExportMode, ImportMode, Pool, PoolUsage

if TYPE_CHECKING:
    from contentsync.policy.repository import ConfigRepository


def merge_usage(values: Iterable[PoolUsage | None]) -> PoolUsage:
    """Merge pool usage values: force beats allow, allow beats forbid.

    The result only depends on which values occur, never on their order.
    """
    seen = set(values)
    if PoolUsage.FORCE in seen:
        return PoolUsage.FORCE
    if PoolUsage.ALLOW in seen:
        return PoolUsage.ALLOW
    return PoolUsage.FORBID


class PoolRegistry:
    """Named remote endpoints and their effective usage per bundle."""

    def __init__(self, repository: ConfigRepository) -> None:
        self._repository = repository

    def get(self, pool_id: str) -> Pool | None:
        return self._repository.get_pool(pool_id)

    def all(self) -> list[Pool]:
        return self._repository.all_pools()

    def merged_usage(self, entity_type: str, bundle: str, pool: Pool | str, direction: Direction) -> PoolUsage:
        pool_id = pool if isinstance(pool, str) else pool.id
        values: list[PoolUsage | None] = []
        for flow in self._repository.enabled_flows():
            cfg = flow.get_config(entity_type, bundle)
            if cfg is None or cfg.ignored:
                continue
            if cfg.mode(direction) in (ExportMode.DISABLED, ImportMode.DISABLED):
                continue
            values.append(cfg.pool_usage(pool_id, direction))
        return merge_usage(values)

    def pools_for(
        self,
        entity_type: str,
        bundle: str,
        direction: Direction,
        usage_filter: Iterable[PoolUsage] = (PoolUsage.ALLOW, PoolUsage.FORCE),
    ) -> list[Pool]:
        wanted = set(usage_filter)
        return [
            pool
            for pool in self.all()
            if self.merged_usage(entity_type, bundle, pool, direction) in wanted
        ]
