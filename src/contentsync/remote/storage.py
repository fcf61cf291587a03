"""Remote storages (typed collections) and the identifier scheme.

Identifiers must match what an existing remote deployment already knows,
so every helper here reproduces the established format exactly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

import structlog

from contentsync.remote.query import ItemQuery, ListQuery

if TYPE_CHECKING:
    from contentsync.remote.client import RemoteStore

log = structlog.get_logger(__name__)

API_VERSION = "1.0"
POOL_SITE_ID = "_pool"
PREVIEW_ENTITY_ID = "drupal-synchronization-entity_preview-0_1"
PREVIEW_PATH = "drupal/cms-content-sync-preview"


# -- identifiers -------------------------------------------------------------


def connection_id(api: str, site_id: str, entity_type: str, bundle: str) -> str:
    return f"drupal-{api}-{site_id}-{entity_type}-{bundle}"


def connection_path(api: str, site_id: str, entity_type: str, bundle: str) -> str:
    return f"drupal/{api}/{site_id}/{entity_type}/{bundle}"


def entity_type_id(api: str, entity_type: str, bundle: str, version: str) -> str:
    return f"drupal-{api}-{entity_type}-{bundle}-{version}"


def connection_synchronization_id(conn_id: str, export: bool) -> str:
    return f"{conn_id}--to--{'pool' if export else 'drupal'}"


def remote_storage_id(api: str, site_id: str) -> str:
    return f"drupal-{api}-{site_id}"


def api_id(api: str) -> str:
    return f"{api}-{API_VERSION}"


# -- storages ----------------------------------------------------------------


class Storage:
    """One remote collection, addressed as ``{backend}/{ID}``."""

    ID: ClassVar[str] = ""

    def __init__(self, client: RemoteStore) -> None:
        self.client = client

    @property
    def url(self) -> str:
        return f"{self.client.base_url}/{self.ID}"

    def list_query(self) -> ListQuery:
        return ListQuery(self)

    def item_query(self, item_id: str) -> ItemQuery:
        return ItemQuery(self, item_id)

    async def create_item(self, record: dict[str, Any]) -> dict[str, Any] | None:
        return await self.client.send_json("POST", self.url, record)

    async def update_item(self, item_id: str, record: dict[str, Any]) -> dict[str, Any] | None:
        return await self.client.send_json("PATCH", f"{self.url}/{item_id}", record)

    async def upsert(self, record: dict[str, Any]) -> dict[str, Any] | None:
        """PATCH the record if the remote side has its id already, POST it otherwise."""
        item_id = record["id"]
        if await self.item_query(item_id).execute() is not None:
            log.debug("remote_record_update", storage=self.ID, id=item_id)
            return await self.update_item(item_id, record)
        log.debug("remote_record_create", storage=self.ID, id=item_id)
        return await self.create_item(record)


class ApiStorage(Storage):
    ID = "api_unify-api_unify-api-0_1"


class ConnectionStorage(Storage):
    ID = "api_unify-api_unify-connection-0_1"


class ConnectionSynchronizationStorage(Storage):
    ID = "api_unify-api_unify-connection_synchronisation-0_1"


class EntityTypeStorage(Storage):
    ID = "api_unify-api_unify-entity_type-0_1"


class InstanceStorage(Storage):
    ID = "api_unify-api_unify-instance-0_1"


class RemoteStorageStorage(Storage):
    ID = "api_unify-api_unify-remote_storage-0_1"


class PreviewEntityStorage(Storage):
    ID = "drupal_cms-content-sync_preview"
