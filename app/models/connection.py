"""
Platform Connection & Bulk Job Models

One PlatformConnection per authorized integration (brand x platform).
BulkJobRecord rows are the audit trail of remote bulk exports and are never
deleted.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, ForeignKey, Index
from datetime import datetime

from app.models.base import Base


class PlatformConnection(Base):
    """
    An authorized Shopify store or Meta ad account

    sync_status is written only by the sync controller:
    NOT_STARTED -> QUICK_SYNC_RUNNING -> BULK_IMPORTING -> COMPLETED | FAILED
    """
    __tablename__ = "platform_connections"

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(String, index=True, nullable=True)

    platform = Column(String, index=True, nullable=False)  # shopify, meta
    account_ref = Column(String, nullable=False)  # shop domain or ad account id
    credential_handle = Column(Text, nullable=False)  # access token (opaque here)

    sync_status = Column(String, index=True, nullable=False, default="NOT_STARTED")
    last_synced_at = Column(DateTime, nullable=True)
    stage_metadata = Column(JSON, nullable=True)  # sync_stage, mini_sync_*, entity_results, ...

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class BulkJobRecord(Base):
    """Local record of one remote bulk-export job"""
    __tablename__ = "bulk_jobs"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False)

    entity_type = Column(String, nullable=False)  # orders, customers, products, ad_insights
    remote_job_id = Column(String, nullable=False, index=True)  # gid://shopify/BulkOperation/... or report_run_id
    status = Column(String, index=True, nullable=False)  # CREATED, RUNNING, COMPLETED, FAILED, CANCELED
    error_code = Column(String, nullable=True)

    records_processed = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_bulk_jobs_connection_status', 'connection_id', 'status'),
    )
