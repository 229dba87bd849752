"""
In-memory SyncStore (tests and dry runs)
"""
import copy
import threading
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from app.storage.base import SLOTTED_ENTITIES, SyncStore, row_key
from app.sync.errors import ConnectionGoneError, ConnectionNotFoundError, SyncAlreadyRunningError
from app.sync.types import (
    STARTABLE_STATUSES,
    BulkJob,
    BulkJobStatus,
    ConnectionState,
    EntityType,
    Granularity,
    SyncStatus,
)


class InMemorySyncStore(SyncStore):
    """Dict-backed store; returns copies so callers never share state with it"""

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Dict[int, ConnectionState] = {}
        self._jobs: Dict[int, BulkJob] = {}
        # (connection_id, entity_type) -> natural key -> row
        self._rows: Dict[Tuple[int, EntityType], Dict[Tuple, Dict[str, Any]]] = {}
        self._next_connection_id = 1
        self._next_job_id = 1
        # Test hook: raise from upsert_rows for the given entity types
        self.fail_upserts_for: Set[EntityType] = set()

    # Connections

    def get_connection(self, connection_id: int) -> Optional[ConnectionState]:
        connection = self._connections.get(connection_id)
        return copy.deepcopy(connection) if connection else None

    def create_connection(self, platform, account_ref, credential_handle, brand_id=None) -> ConnectionState:
        with self._lock:
            connection = ConnectionState(
                id=self._next_connection_id,
                platform=platform,
                account_ref=account_ref,
                credential_handle=credential_handle,
                brand_id=brand_id,
            )
            self._connections[connection.id] = connection
            self._next_connection_id += 1
            return copy.deepcopy(connection)

    def list_connections(self, status: Optional[SyncStatus] = None) -> List[ConnectionState]:
        return [
            copy.deepcopy(c) for c in self._connections.values()
            if status is None or c.sync_status == status
        ]

    def begin_sync(self, connection_id: int) -> ConnectionState:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            if connection.sync_status not in STARTABLE_STATUSES:
                raise SyncAlreadyRunningError(
                    f"Connection {connection_id} already has an active sync ({connection.sync_status.value})"
                )
            connection.sync_status = SyncStatus.QUICK_SYNC_RUNNING
            return copy.deepcopy(connection)

    def save_connection(self, connection: ConnectionState) -> ConnectionState:
        with self._lock:
            stored = self._connections.get(connection.id)
            if stored is None:
                raise ConnectionGoneError(f"Connection {connection.id} no longer exists")
            stored.sync_status = connection.sync_status
            stored.last_synced_at = connection.last_synced_at
            stored.stage_metadata = copy.deepcopy(connection.stage_metadata)
            return connection

    def delete_connection(self, connection_id: int) -> bool:
        with self._lock:
            return self._connections.pop(connection_id, None) is not None

    # Bulk jobs

    def create_bulk_job(self, job: BulkJob) -> BulkJob:
        with self._lock:
            job.id = self._next_job_id
            job.created_at = job.created_at or datetime.utcnow()
            self._next_job_id += 1
            self._jobs[job.id] = copy.deepcopy(job)
            return job

    def update_bulk_job(self, job: BulkJob) -> BulkJob:
        with self._lock:
            if job.id in self._jobs:
                self._jobs[job.id] = copy.deepcopy(job)
            return job

    def list_bulk_jobs(self, connection_id, statuses=None) -> List[BulkJob]:
        statuses = set(statuses) if statuses is not None else None
        return [
            copy.deepcopy(j) for j in sorted(self._jobs.values(), key=lambda j: j.id)
            if j.connection_id == connection_id and (statuses is None or j.status in statuses)
        ]

    # Entity rows

    def _table(self, connection_id: int, entity_type: EntityType) -> Dict[Tuple, Dict[str, Any]]:
        return self._rows.setdefault((connection_id, entity_type), {})

    def existing_keys(self, connection_id, entity_type, keys) -> Set[Tuple]:
        table = self._table(connection_id, entity_type)
        return {k for k in keys if k in table}

    def upsert_rows(self, connection_id, entity_type, rows) -> None:
        if entity_type in self.fail_upserts_for:
            raise RuntimeError(f"Simulated write failure for {entity_type.value}")
        with self._lock:
            if connection_id not in self._connections:
                raise ConnectionGoneError(f"Connection {connection_id} no longer exists")
            table = self._table(connection_id, entity_type)
            for row in rows:
                table[row_key(entity_type, row)] = {**row, "connection_id": connection_id}

    def granular_dates(self, connection_id, entity_type, dates: Iterable[date]) -> Set[date]:
        slot_column = SLOTTED_ENTITIES.get(entity_type)
        if slot_column is None:
            return set()
        dates = set(dates)
        return {
            row[slot_column] for row in self._table(connection_id, entity_type).values()
            if row.get("granularity") == Granularity.GRANULAR.value and row[slot_column] in dates
        }

    def delete_aggregates(self, connection_id, entity_type, dates: Iterable[date]) -> int:
        slot_column = SLOTTED_ENTITIES.get(entity_type)
        if slot_column is None:
            return 0
        dates = set(dates)
        with self._lock:
            table = self._table(connection_id, entity_type)
            doomed = [
                key for key, row in table.items()
                if row.get("granularity") == Granularity.AGGREGATE.value and row[slot_column] in dates
            ]
            for key in doomed:
                del table[key]
            return len(doomed)

    def fetch_rows(self, connection_id, entity_type) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._table(connection_id, entity_type).values()]
