"""SQLAlchemy models for raw events, daily aggregates and the job queue."""
from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RawEvent(Base):
    __tablename__ = "raw_events"

    event_id = Column(String(36), primary_key=True)
    site_id = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)
    path = Column(Text, nullable=False)
    visitor_id = Column(Text, nullable=True)
    event_ts = Column(DateTime, nullable=False)
    event_date = Column(Date, nullable=False)
    ingestion_ts = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_raw_events_site_date", "site_id", "event_date"),
        Index("idx_raw_events_site_date_path", "site_id", "event_date", "path"),
    )


class SiteDailyAggregate(Base):
    __tablename__ = "site_daily_aggregates"

    site_id = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    total_views = Column(BigInteger, nullable=False, default=0, server_default="0")
    unique_visitors = Column(BigInteger, nullable=False, default=0, server_default="0")

    __table_args__ = (PrimaryKeyConstraint("site_id", "date", name="pk_site_daily_aggregates"),)


class SiteDailyPathCount(Base):
    __tablename__ = "site_daily_path_counts"

    site_id = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    path = Column(Text, nullable=False)
    views = Column(BigInteger, nullable=False, default=0, server_default="0")

    __table_args__ = (PrimaryKeyConstraint("site_id", "date", "path", name="pk_site_daily_path_counts"),)


Index(
    "idx_path_counts_site_date_views_desc",
    SiteDailyPathCount.site_id,
    SiteDailyPathCount.date,
    SiteDailyPathCount.views.desc(),
)


class SiteDailyUniqueVisitor(Base):
    """Dedup ledger: one row per visitor counted for a site and day."""

    __tablename__ = "site_daily_unique_visitors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(Text, nullable=False)
    date = Column(Date, nullable=False)
    visitor_id = Column(Text, nullable=True)


# NULL visitor ids must collide with each other, so the key is coalesced.
Index(
    "unq_site_date_visitor",
    SiteDailyUniqueVisitor.site_id,
    SiteDailyUniqueVisitor.date,
    func.coalesce(SiteDailyUniqueVisitor.visitor_id, ""),
    unique=True,
)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String(64), nullable=False)
    name = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=1)
    state = Column(String(16), nullable=False, default="waiting")
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    available_at = Column(DateTime, nullable=False)
    lease_token = Column(String(36), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    processed_on = Column(DateTime, nullable=True)
    finished_on = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_jobs_queue_state_priority", "queue", "state", "priority", "id"),
    )


class QueueState(Base):
    __tablename__ = "queue_state"

    queue = Column(String(64), primary_key=True)
    paused = Column(Boolean, nullable=False, default=False)
