"""
Domain types shared by the sync pipeline.

These are plain dataclasses so the pipeline can run against either the
SQLAlchemy store or the in-memory store without touching ORM objects.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from app.sync.errors import InvalidTransitionError


class SyncStatus(str, Enum):
    """Connection-level sync state"""
    NOT_STARTED = "NOT_STARTED"
    QUICK_SYNC_RUNNING = "QUICK_SYNC_RUNNING"
    BULK_IMPORTING = "BULK_IMPORTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_active(self) -> bool:
        return self in (SyncStatus.QUICK_SYNC_RUNNING, SyncStatus.BULK_IMPORTING)


# A new sync may only begin from these states
STARTABLE_STATUSES = (SyncStatus.NOT_STARTED, SyncStatus.COMPLETED, SyncStatus.FAILED)


class BulkJobStatus(str, Enum):
    """Remote bulk-export job state"""
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (BulkJobStatus.COMPLETED, BulkJobStatus.FAILED, BulkJobStatus.CANCELED)


_JOB_TRANSITIONS = {
    BulkJobStatus.CREATED: {BulkJobStatus.RUNNING, BulkJobStatus.COMPLETED, BulkJobStatus.FAILED, BulkJobStatus.CANCELED},
    BulkJobStatus.RUNNING: {BulkJobStatus.RUNNING, BulkJobStatus.COMPLETED, BulkJobStatus.FAILED, BulkJobStatus.CANCELED},
}


class Granularity(str, Enum):
    """AGGREGATE rows describe a whole account for a date; GRANULAR rows one sub-entity"""
    AGGREGATE = "AGGREGATE"
    GRANULAR = "GRANULAR"


class EntityType(str, Enum):
    ORDERS = "orders"
    LINE_ITEMS = "line_items"
    CUSTOMERS = "customers"
    PRODUCTS = "products"
    AD_INSIGHTS = "ad_insights"


@dataclass
class FetchedRecord:
    """One decoded unit from a list page or a bulk export line"""
    entity_type: EntityType
    natural_key: Tuple[Any, ...]
    data: Dict[str, Any]
    granularity: Optional[Granularity] = None
    slot_date: Optional[date] = None


@dataclass
class DecodeFailure:
    """A record or line that could not be decoded (skipped, never fatal)"""
    source: str
    message: str


@dataclass
class ConnectionState:
    """One authorized integration (brand x platform)"""
    id: int
    platform: str
    account_ref: str
    credential_handle: str
    brand_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.NOT_STARTED
    last_synced_at: Optional[datetime] = None
    stage_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BulkJob:
    """Local audit record of one remote bulk-export job"""
    connection_id: int
    entity_type: EntityType
    remote_job_id: str
    status: BulkJobStatus = BulkJobStatus.RUNNING
    id: Optional[int] = None
    error_code: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_failed: int = 0


def transition_job_status(job: BulkJob, new_status: BulkJobStatus, error_code: Optional[str] = None) -> BulkJob:
    """Move a job to a new status, refusing to leave a terminal state"""
    allowed = _JOB_TRANSITIONS.get(job.status, set())
    if new_status not in allowed:
        raise InvalidTransitionError(
            f"Bulk job {job.remote_job_id} cannot move from {job.status.value} to {new_status.value}"
        )
    job.status = new_status
    if error_code:
        job.error_code = error_code
    if new_status.is_terminal:
        job.completed_at = datetime.utcnow()
    return job


@dataclass
class RemoteJobStatus:
    """Status as reported by the vendor's bulk-export API"""
    job_id: str
    status: BulkJobStatus
    result_url: Optional[str] = None
    error_code: Optional[str] = None
    object_count: Optional[int] = None
    # Set by the client when the result walk stopped at its page ceiling
    truncated: bool = False


@dataclass
class WriteOutcome:
    """Counts returned by IdempotentWriter.upsert_batch"""
    inserted: int = 0
    updated: int = 0
    duplicates: int = 0   # same natural key repeated within one call
    dominated: int = 0    # aggregates skipped because granular rows own the date
    superseded: int = 0   # stored aggregates removed when granular rows arrived
    failed: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    @property
    def skipped(self) -> int:
        return self.duplicates + self.dominated

    def merge(self, other: "WriteOutcome") -> "WriteOutcome":
        self.inserted += other.inserted
        self.updated += other.updated
        self.duplicates += other.duplicates
        self.dominated += other.dominated
        self.superseded += other.superseded
        self.failed += other.failed
        return self

    def to_dict(self) -> dict:
        return {
            "written": self.written,
            "inserted": self.inserted,
            "updated": self.updated,
            "duplicates": self.duplicates,
            "dominated": self.dominated,
            "superseded": self.superseded,
            "failed": self.failed,
        }


@dataclass
class ProcessingOutcome:
    """Result of one entity type's historical import"""
    entity_type: EntityType
    status: BulkJobStatus
    job: Optional[BulkJob] = None
    lines_read: int = 0
    decode_errors: int = 0
    write: WriteOutcome = field(default_factory=WriteOutcome)
    error: Optional[str] = None
    truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == BulkJobStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type.value,
            "status": self.status.value,
            "remote_job_id": self.job.remote_job_id if self.job else None,
            "lines_read": self.lines_read,
            "decode_errors": self.decode_errors,
            "write": self.write.to_dict(),
            "error": self.error,
            "truncated": self.truncated,
        }


@dataclass
class SyncHandle:
    """Returned to the caller once quick sync finishes"""
    connection_id: int
    status: SyncStatus
    quick_sync: WriteOutcome
    quick_sync_partial: bool = False
    historical_task: Optional[Any] = None  # asyncio.Task when launched without BackgroundTasks
    bulk_entity_types: List[EntityType] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "status": self.status.value,
            "quick_sync": self.quick_sync.to_dict(),
            "quick_sync_partial": self.quick_sync_partial,
            "historical_import": [e.value for e in self.bulk_entity_types],
        }
