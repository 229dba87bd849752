"""
Storage port for the sync pipeline

The controller, orchestrator and writer only talk to a SyncStore, so the
pipeline runs unchanged against Postgres/SQLite (SqlSyncStore) or in memory
(InMemorySyncStore).
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from app.sync.types import BulkJob, BulkJobStatus, ConnectionState, EntityType, Granularity, SyncStatus

# Natural-key columns per entity table (always scoped by connection_id)
ENTITY_KEY_COLUMNS: Dict[EntityType, Tuple[str, ...]] = {
    EntityType.ORDERS: ("shopify_order_id",),
    EntityType.LINE_ITEMS: ("shopify_order_id", "line_item_id"),
    EntityType.CUSTOMERS: ("shopify_customer_id",),
    EntityType.PRODUCTS: ("shopify_product_id",),
    EntityType.AD_INSIGHTS: ("ad_id", "date"),
}

# Entities whose rows carry a granularity; value is the date (slot) column
SLOTTED_ENTITIES: Dict[EntityType, str] = {
    EntityType.AD_INSIGHTS: "date",
}


def row_key(entity_type: EntityType, row: Dict[str, Any]) -> Tuple[Any, ...]:
    return tuple(row[c] for c in ENTITY_KEY_COLUMNS[entity_type])


class SyncStore(ABC):
    """Persistence operations the sync pipeline needs"""

    # Connections

    @abstractmethod
    def get_connection(self, connection_id: int) -> Optional[ConnectionState]:
        pass

    @abstractmethod
    def create_connection(
        self,
        platform: str,
        account_ref: str,
        credential_handle: str,
        brand_id: Optional[str] = None
    ) -> ConnectionState:
        pass

    @abstractmethod
    def list_connections(self, status: Optional[SyncStatus] = None) -> List[ConnectionState]:
        pass

    @abstractmethod
    def begin_sync(self, connection_id: int) -> ConnectionState:
        """
        Atomically move a connection into QUICK_SYNC_RUNNING.

        Raises ConnectionNotFoundError for an unknown id and
        SyncAlreadyRunningError unless the current status is startable.
        """
        pass

    @abstractmethod
    def save_connection(self, connection: ConnectionState) -> ConnectionState:
        """Persist sync_status, last_synced_at and stage_metadata; ConnectionGoneError if deleted"""
        pass

    @abstractmethod
    def delete_connection(self, connection_id: int) -> bool:
        pass

    # Bulk jobs

    @abstractmethod
    def create_bulk_job(self, job: BulkJob) -> BulkJob:
        pass

    @abstractmethod
    def update_bulk_job(self, job: BulkJob) -> BulkJob:
        pass

    @abstractmethod
    def list_bulk_jobs(
        self,
        connection_id: int,
        statuses: Optional[Iterable[BulkJobStatus]] = None
    ) -> List[BulkJob]:
        pass

    # Entity rows

    @abstractmethod
    def existing_keys(self, connection_id: int, entity_type: EntityType, keys: Iterable[Tuple]) -> Set[Tuple]:
        """Subset of `keys` already stored for this connection"""
        pass

    @abstractmethod
    def upsert_rows(self, connection_id: int, entity_type: EntityType, rows: List[Dict[str, Any]]) -> None:
        """Insert or update by natural key; ConnectionGoneError if the connection is gone"""
        pass

    @abstractmethod
    def granular_dates(self, connection_id: int, entity_type: EntityType, dates: Iterable[date]) -> Set[date]:
        """Dates among `dates` that already have at least one GRANULAR row"""
        pass

    @abstractmethod
    def delete_aggregates(self, connection_id: int, entity_type: EntityType, dates: Iterable[date]) -> int:
        """Remove AGGREGATE rows for `dates`; returns the number removed"""
        pass

    @abstractmethod
    def fetch_rows(self, connection_id: int, entity_type: EntityType) -> List[Dict[str, Any]]:
        pass

    def count_rows(
        self,
        connection_id: int,
        entity_type: EntityType,
        granularity: Optional[Granularity] = None
    ) -> int:
        rows = self.fetch_rows(connection_id, entity_type)
        if granularity is not None:
            rows = [r for r in rows if r.get("granularity") == granularity.value]
        return len(rows)
