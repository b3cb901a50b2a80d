"""Read side: daily stats for one site, served straight from the aggregates."""
from __future__ import annotations

from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import schemas
from .models import SiteDailyAggregate, SiteDailyPathCount

TOP_PATHS_LIMIT = 10


class StatsNotFoundError(Exception):
    """Raised when no event has been aggregated for the site and day."""


def get_stats(db: Session, site_id: str, day: date, limit: int = TOP_PATHS_LIMIT) -> schemas.StatsOut:
    aggregate = db.execute(
        select(SiteDailyAggregate).where(
            SiteDailyAggregate.site_id == site_id,
            SiteDailyAggregate.date == day,
        )
    ).scalar_one_or_none()
    if aggregate is None:
        raise StatsNotFoundError(f"No stats found for site {site_id} on {day.isoformat()}")

    top_paths = db.execute(
        select(SiteDailyPathCount.path, SiteDailyPathCount.views)
        .where(SiteDailyPathCount.site_id == site_id, SiteDailyPathCount.date == day)
        .order_by(SiteDailyPathCount.views.desc(), SiteDailyPathCount.path.asc())
        .limit(limit)
    ).all()

    return schemas.StatsOut(
        site_id=site_id,
        stats_date=day,
        total_views=int(aggregate.total_views),
        unique_users=int(aggregate.unique_visitors),
        top_paths=[schemas.PathViews(path=path, views=int(views)) for path, views in top_paths],
    )
