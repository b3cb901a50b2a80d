"""Aggregate store access: the upserts and conditional inserts behind each event.

Every counter change is an ``UPDATE ... SET col = col + 1`` evaluated by the
database, so concurrent transactions on the same key serialise on the row
lock instead of losing increments.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import Table, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .models import RawEvent, SiteDailyAggregate, SiteDailyPathCount, SiteDailyUniqueVisitor
from .schemas import ProcessEventPayload

logger = logging.getLogger(__name__)

raw_events: Table = RawEvent.__table__
daily_aggregates: Table = SiteDailyAggregate.__table__
daily_path_counts: Table = SiteDailyPathCount.__table__
daily_unique_visitors: Table = SiteDailyUniqueVisitor.__table__


class UnsupportedDialectError(Exception):
    """Raised when the configured database has no ON CONFLICT support here."""


@dataclass(frozen=True)
class ApplyResult:
    event_id: str
    recorded: bool
    new_visitor: bool = False


def _insert(session: Session, table: Table):  # type: ignore[no-untyped-def]
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise UnsupportedDialectError(f"Dialect {dialect!r} is not supported by the aggregate store")


def insert_raw_event(session: Session, event: ProcessEventPayload) -> bool:
    """Append the event to the raw log; ``False`` when the event id is already there."""
    stmt = (
        _insert(session, raw_events)
        .values(
            event_id=event.event_id,
            site_id=event.site_id,
            event_type=event.event_type,
            path=event.path,
            visitor_id=event.visitor_id,
            event_ts=event.timestamp_utc,
            event_date=event.event_date,
        )
        .on_conflict_do_nothing(index_elements=["event_id"])
    )
    return session.execute(stmt).rowcount == 1


def upsert_daily_aggregate(session: Session, site_id: str, day: date) -> None:
    stmt = _insert(session, daily_aggregates).values(
        site_id=site_id, date=day, total_views=1, unique_visitors=0
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["site_id", "date"],
        set_={"total_views": daily_aggregates.c.total_views + 1},
    )
    session.execute(stmt)


def upsert_path_count(session: Session, site_id: str, day: date, path: str) -> None:
    stmt = _insert(session, daily_path_counts).values(site_id=site_id, date=day, path=path, views=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=["site_id", "date", "path"],
        set_={"views": daily_path_counts.c.views + 1},
    )
    session.execute(stmt)


def record_unique_visitor(session: Session, site_id: str, day: date, visitor_id: Optional[str]) -> bool:
    """Insert into the dedup ledger; ``True`` only when the visitor is new for the day."""
    stmt = (
        _insert(session, daily_unique_visitors)
        .values(site_id=site_id, date=day, visitor_id=visitor_id)
        .on_conflict_do_nothing()
    )
    return session.execute(stmt).rowcount == 1


def increment_unique_visitors(session: Session, site_id: str, day: date) -> None:
    session.execute(
        update(daily_aggregates)
        .where(daily_aggregates.c.site_id == site_id, daily_aggregates.c.date == day)
        .values(unique_visitors=daily_aggregates.c.unique_visitors + 1)
    )


def apply_event(session: Session, event: ProcessEventPayload) -> ApplyResult:
    """Fold one event into the daily aggregates inside the caller's transaction.

    Counters move only when the raw log accepted the event id, so a
    redelivered job that already committed leaves every aggregate untouched.
    """
    if not insert_raw_event(session, event):
        logger.info("Duplicate delivery of event %s skipped", event.event_id)
        return ApplyResult(event_id=event.event_id, recorded=False)

    day = event.event_date
    upsert_daily_aggregate(session, event.site_id, day)
    upsert_path_count(session, event.site_id, day, event.path)

    new_visitor = record_unique_visitor(session, event.site_id, day, event.visitor_id)
    if new_visitor:
        increment_unique_visitors(session, event.site_id, day)

    return ApplyResult(event_id=event.event_id, recorded=True, new_visitor=new_visitor)


def count_raw_events(session: Session, site_id: str, day: date) -> int:
    return session.execute(
        select(func.count())
        .select_from(raw_events)
        .where(raw_events.c.site_id == site_id, raw_events.c.event_date == day)
    ).scalar_one()


def count_unique_visitors(session: Session, site_id: str, day: date) -> int:
    return session.execute(
        select(func.count())
        .select_from(daily_unique_visitors)
        .where(daily_unique_visitors.c.site_id == site_id, daily_unique_visitors.c.date == day)
    ).scalar_one()


def sum_path_views(session: Session, site_id: str, day: date) -> int:
    return session.execute(
        select(func.coalesce(func.sum(daily_path_counts.c.views), 0)).where(
            daily_path_counts.c.site_id == site_id, daily_path_counts.c.date == day
        )
    ).scalar_one()
