"""Read access to Flow/Pool definitions plus the one write the engine needs."""

from __future__ import annotations

from typing import Protocol

import structlog

from contentsync.config import AppConfig, load_config, save_config
from contentsync.policy.models import Flow, Pool

log = structlog.get_logger(__name__)


class ConfigRepository(Protocol):
    def enabled_flows(self) -> list[Flow]: ...

    def all_flows(self) -> list[Flow]: ...

    def all_pools(self) -> list[Pool]: ...

    def get_flow(self, flow_id: str) -> Flow | None: ...

    def get_pool(self, pool_id: str) -> Pool | None: ...

    def save_flow_version(self, flow_id: str, key: str, version: str) -> None: ...


def _ordered(flows: list[Flow]) -> list[Flow]:
    # Explicit precedence for first-match mode resolution.
    return sorted(flows, key=lambda f: (f.weight, f.id))


class MemoryConfigRepository:
    """Holds Flows and Pools in memory."""

    def __init__(self, flows: list[Flow] | None = None, pools: list[Pool] | None = None) -> None:
        self._flows: dict[str, Flow] = {f.id: f for f in flows or []}
        self._pools: dict[str, Pool] = {p.id: p for p in pools or []}

    def enabled_flows(self) -> list[Flow]:
        return [f for f in self.all_flows() if f.enabled]

    def all_flows(self) -> list[Flow]:
        return _ordered(list(self._flows.values()))

    def all_pools(self) -> list[Pool]:
        return list(self._pools.values())

    def get_flow(self, flow_id: str) -> Flow | None:
        return self._flows.get(flow_id)

    def get_pool(self, pool_id: str) -> Pool | None:
        return self._pools.get(pool_id)

    def save_flow_version(self, flow_id: str, key: str, version: str) -> None:
        flow = self._flows.get(flow_id)
        if flow is None or key not in flow.entity_types:
            msg = f"Unknown flow config {flow_id}/{key}"
            raise KeyError(msg)
        flow.entity_types[key].version = version
        log.info("flow_version_saved", flow=flow_id, key=key, version=version)


class TomlConfigRepository(MemoryConfigRepository):
    """Flows and Pools from ``config.toml``; version stamps are written back to it."""

    def __init__(self, config: AppConfig | None = None) -> None:
        self._config = config if config is not None else load_config()
        super().__init__(list(self._config.flows.values()), list(self._config.pools.values()))

    @property
    def config(self) -> AppConfig:
        return self._config

    def save_flow_version(self, flow_id: str, key: str, version: str) -> None:
        super().save_flow_version(flow_id, key, version)
        save_config(self._config)
