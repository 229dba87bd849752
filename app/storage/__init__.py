"""Storage backends for the sync pipeline"""

from app.storage.base import ENTITY_KEY_COLUMNS, SyncStore
from app.storage.memory import InMemorySyncStore
from app.storage.sql import SqlSyncStore

__all__ = [
    "ENTITY_KEY_COLUMNS",
    "SyncStore",
    "InMemorySyncStore",
    "SqlSyncStore",
]
