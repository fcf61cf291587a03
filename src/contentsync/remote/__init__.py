"""Client side of the remote synchronisation endpoint."""

from contentsync.remote.client import RemoteStore, SyncJob
from contentsync.remote.configuration import ConfigOperation, ConfigurationExporter
from contentsync.remote.query import DataCondition, ItemQuery, ListQuery, ListResult, ParentCondition
from contentsync.remote.storage import POOL_SITE_ID

__all__ = [
    "POOL_SITE_ID",
    "ConfigOperation",
    "ConfigurationExporter",
    "DataCondition",
    "ItemQuery",
    "ListQuery",
    "ListResult",
    "ParentCondition",
    "RemoteStore",
    "SyncJob",
]
