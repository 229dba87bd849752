"""
SQLAlchemy-backed SyncStore

Upserts use the dialect's INSERT ... ON CONFLICT DO UPDATE against the
natural-key unique constraints (SQLite and Postgres). Other dialects fall
back to a query-then-update per row.
"""
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from app.models.ad_insights import AdDailyInsight
from app.models.base import SessionLocal
from app.models.connection import BulkJobRecord, PlatformConnection
from app.models.shopify import ShopifyCustomer, ShopifyLineItem, ShopifyOrder, ShopifyProduct
from app.storage.base import ENTITY_KEY_COLUMNS, SLOTTED_ENTITIES, SyncStore
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
from app.utils.logger import log

ENTITY_MODELS = {
    EntityType.ORDERS: ShopifyOrder,
    EntityType.LINE_ITEMS: ShopifyLineItem,
    EntityType.CUSTOMERS: ShopifyCustomer,
    EntityType.PRODUCTS: ShopifyProduct,
    EntityType.AD_INSIGHTS: AdDailyInsight,
}

_UPSERT_DIALECTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


def _to_state(row: PlatformConnection) -> ConnectionState:
    return ConnectionState(
        id=row.id,
        platform=row.platform,
        account_ref=row.account_ref,
        credential_handle=row.credential_handle,
        brand_id=row.brand_id,
        sync_status=SyncStatus(row.sync_status),
        last_synced_at=row.last_synced_at,
        stage_metadata=dict(row.stage_metadata or {}),
    )


def _to_job(row: BulkJobRecord) -> BulkJob:
    return BulkJob(
        id=row.id,
        connection_id=row.connection_id,
        entity_type=EntityType(row.entity_type),
        remote_job_id=row.remote_job_id,
        status=BulkJobStatus(row.status),
        error_code=row.error_code,
        created_at=row.created_at,
        completed_at=row.completed_at,
        records_processed=row.records_processed or 0,
        records_failed=row.records_failed or 0,
    )


class SqlSyncStore(SyncStore):
    """SyncStore over a SQLAlchemy sessionmaker"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self):
        session = self.session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Connections

    def get_connection(self, connection_id: int) -> Optional[ConnectionState]:
        with self._session() as session:
            row = session.get(PlatformConnection, connection_id)
            return _to_state(row) if row else None

    def create_connection(self, platform, account_ref, credential_handle, brand_id=None) -> ConnectionState:
        with self._session() as session:
            row = PlatformConnection(
                platform=platform,
                account_ref=account_ref,
                credential_handle=credential_handle,
                brand_id=brand_id,
                sync_status=SyncStatus.NOT_STARTED.value,
                stage_metadata={},
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_state(row)

    def list_connections(self, status: Optional[SyncStatus] = None) -> List[ConnectionState]:
        with self._session() as session:
            query = select(PlatformConnection).order_by(PlatformConnection.id)
            if status is not None:
                query = query.where(PlatformConnection.sync_status == status.value)
            return [_to_state(row) for row in session.scalars(query)]

    def begin_sync(self, connection_id: int) -> ConnectionState:
        with self._session() as session:
            # Conditional UPDATE is the check-and-set; only one caller can win
            result = session.execute(
                update(PlatformConnection)
                .where(
                    PlatformConnection.id == connection_id,
                    PlatformConnection.sync_status.in_([s.value for s in STARTABLE_STATUSES]),
                )
                .values(sync_status=SyncStatus.QUICK_SYNC_RUNNING.value, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()

            row = session.get(PlatformConnection, connection_id)
            if row is None:
                raise ConnectionNotFoundError(f"Connection {connection_id} not found")
            if result.rowcount != 1:
                raise SyncAlreadyRunningError(
                    f"Connection {connection_id} already has an active sync ({row.sync_status})"
                )
            return _to_state(row)

    def save_connection(self, connection: ConnectionState) -> ConnectionState:
        with self._session() as session:
            row = session.get(PlatformConnection, connection.id)
            if row is None:
                raise ConnectionGoneError(f"Connection {connection.id} no longer exists")
            row.sync_status = connection.sync_status.value
            row.last_synced_at = connection.last_synced_at
            row.stage_metadata = dict(connection.stage_metadata)
            session.commit()
            return connection

    def delete_connection(self, connection_id: int) -> bool:
        with self._session() as session:
            result = session.execute(delete(PlatformConnection).where(PlatformConnection.id == connection_id))
            session.commit()
            return result.rowcount > 0

    # Bulk jobs

    def create_bulk_job(self, job: BulkJob) -> BulkJob:
        with self._session() as session:
            row = BulkJobRecord(
                connection_id=job.connection_id,
                entity_type=job.entity_type.value,
                remote_job_id=job.remote_job_id,
                status=job.status.value,
                error_code=job.error_code,
                records_processed=job.records_processed,
                records_failed=job.records_failed,
                created_at=job.created_at or datetime.utcnow(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            job.id = row.id
            job.created_at = row.created_at
            return job

    def update_bulk_job(self, job: BulkJob) -> BulkJob:
        with self._session() as session:
            row = session.get(BulkJobRecord, job.id)
            if row is None:
                log.warning(f"Bulk job {job.remote_job_id} has no local row (connection removed?)")
                return job
            row.status = job.status.value
            row.error_code = job.error_code
            row.completed_at = job.completed_at
            row.records_processed = job.records_processed
            row.records_failed = job.records_failed
            session.commit()
            return job

    def list_bulk_jobs(self, connection_id, statuses=None) -> List[BulkJob]:
        with self._session() as session:
            query = (
                select(BulkJobRecord)
                .where(BulkJobRecord.connection_id == connection_id)
                .order_by(BulkJobRecord.id)
            )
            if statuses is not None:
                query = query.where(BulkJobRecord.status.in_([s.value for s in statuses]))
            return [_to_job(row) for row in session.scalars(query)]

    # Entity rows

    def existing_keys(self, connection_id: int, entity_type: EntityType, keys: Iterable[Tuple]) -> Set[Tuple]:
        keys = set(keys)
        if not keys:
            return set()
        model = ENTITY_MODELS[entity_type]
        key_columns = [getattr(model, c) for c in ENTITY_KEY_COLUMNS[entity_type]]

        with self._session() as session:
            # Narrow on the leading key column, then match full tuples here
            rows = session.execute(
                select(*key_columns).where(
                    model.connection_id == connection_id,
                    key_columns[0].in_({k[0] for k in keys}),
                )
            )
            return {tuple(r) for r in rows} & keys

    def upsert_rows(self, connection_id: int, entity_type: EntityType, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        model = ENTITY_MODELS[entity_type]
        key_columns = ENTITY_KEY_COLUMNS[entity_type]
        now = datetime.utcnow()
        values = [{**row, "connection_id": connection_id, "synced_at": now} for row in rows]

        with self._session() as session:
            if session.get(PlatformConnection, connection_id) is None:
                raise ConnectionGoneError(f"Connection {connection_id} no longer exists")

            insert_fn = _UPSERT_DIALECTS.get(session.bind.dialect.name)
            if insert_fn is None:
                self._upsert_row_by_row(session, model, entity_type, values)
            else:
                stmt = insert_fn(model).values(values)
                update_columns = {
                    column: stmt.excluded[column]
                    for column in values[0]
                    if column not in key_columns and column != "connection_id"
                }
                stmt = stmt.on_conflict_do_update(
                    index_elements=["connection_id", *key_columns],
                    set_=update_columns,
                )
                session.execute(stmt)
            session.commit()

    def _upsert_row_by_row(self, session, model, entity_type, values):
        key_columns = ENTITY_KEY_COLUMNS[entity_type]
        for row in values:
            query = session.query(model).filter(model.connection_id == row["connection_id"])
            for column in key_columns:
                query = query.filter(getattr(model, column) == row[column])
            existing = query.first()
            if existing is None:
                session.add(model(**row))
            else:
                for column, value in row.items():
                    setattr(existing, column, value)

    def granular_dates(self, connection_id: int, entity_type: EntityType, dates: Iterable[date]) -> Set[date]:
        dates = set(dates)
        slot_column = SLOTTED_ENTITIES.get(entity_type)
        if not dates or slot_column is None:
            return set()
        model = ENTITY_MODELS[entity_type]
        column = getattr(model, slot_column)

        with self._session() as session:
            rows = session.execute(
                select(column).distinct().where(
                    model.connection_id == connection_id,
                    model.granularity == Granularity.GRANULAR.value,
                    column.in_(dates),
                )
            )
            return {r[0] for r in rows}

    def delete_aggregates(self, connection_id: int, entity_type: EntityType, dates: Iterable[date]) -> int:
        dates = set(dates)
        slot_column = SLOTTED_ENTITIES.get(entity_type)
        if not dates or slot_column is None:
            return 0
        model = ENTITY_MODELS[entity_type]

        with self._session() as session:
            result = session.execute(
                delete(model).where(
                    model.connection_id == connection_id,
                    model.granularity == Granularity.AGGREGATE.value,
                    getattr(model, slot_column).in_(dates),
                )
            )
            session.commit()
            return result.rowcount

    def fetch_rows(self, connection_id: int, entity_type: EntityType) -> List[Dict[str, Any]]:
        model = ENTITY_MODELS[entity_type]
        columns = [c.name for c in model.__table__.columns]
        with self._session() as session:
            rows = session.scalars(select(model).where(model.connection_id == connection_id).order_by(model.id))
            return [{c: getattr(row, c) for c in columns} for row in rows]

    def count_rows(self, connection_id, entity_type, granularity=None) -> int:
        model = ENTITY_MODELS[entity_type]
        with self._session() as session:
            query = session.query(model).filter(model.connection_id == connection_id)
            if granularity is not None:
                query = query.filter(model.granularity == granularity.value)
            return query.count()
