"""
Ad Daily Insights Model

Daily Meta performance per ad. Account-level totals share the table under
the reserved ad_id `account_level_data` (granularity AGGREGATE) and are only
kept for dates that have no ad-level rows.
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey, Numeric, UniqueConstraint, Index
from datetime import datetime

from app.models.base import Base


class AdDailyInsight(Base):
    """One ad (or the whole account) on one day"""
    __tablename__ = "ad_daily_insights"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False, index=True)

    ad_id = Column(String, nullable=False)  # Meta ad id or "account_level_data"
    date = Column(Date, nullable=False, index=True)
    granularity = Column(String, nullable=False, default="GRANULAR")  # GRANULAR, AGGREGATE

    # Hierarchy
    account_id = Column(String, nullable=True)
    campaign_id = Column(String, index=True, nullable=True)
    campaign_name = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    adset_name = Column(String, nullable=True)
    ad_name = Column(String, nullable=True)

    # Metrics
    spend = Column(Numeric(12, 2), default=0)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    reach = Column(Integer, nullable=True)
    ctr = Column(Float, nullable=True)  # Meta reports a percentage
    cpc = Column(Float, nullable=True)
    purchases = Column(Integer, default=0)
    purchase_value = Column(Numeric(12, 2), default=0)

    synced_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('connection_id', 'ad_id', 'date', name='uq_ad_daily_insights_connection_ad_date'),
        Index('ix_ad_daily_insights_connection_date_granularity', 'connection_id', 'date', 'granularity'),
    )
