from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from backend.analytics import store
from backend.analytics.database import session_scope
from backend.analytics.models import SiteDailyAggregate, SiteDailyPathCount

DAY = date(2024, 11, 14)


def _apply(session_factory, event):
    with session_scope(session_factory) as session:
        return store.apply_event(session, event)


def _aggregate(session_factory, site_id="s1", day=DAY):
    with session_scope(session_factory) as session:
        return session.get(SiteDailyAggregate, (site_id, day))


def _assert_invariants(session_factory, site_id="s1", day=DAY):
    with session_scope(session_factory) as session:
        aggregate = session.get(SiteDailyAggregate, (site_id, day))
        assert aggregate.unique_visitors == store.count_unique_visitors(session, site_id, day)
        assert aggregate.total_views == store.count_raw_events(session, site_id, day)
        assert store.sum_path_views(session, site_id, day) == aggregate.total_views


def test_same_event_id_is_recorded_once(session_factory, make_event):
    event = make_event(event_id="0b7a52d8-9c53-4d7e-9a0e-1f0c2f4e2a11")

    first = _apply(session_factory, event)
    second = _apply(session_factory, event)

    assert first.recorded is True
    assert second.recorded is False
    with session_scope(session_factory) as session:
        assert store.count_raw_events(session, "s1", DAY) == 1
    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == 1
    assert aggregate.unique_visitors == 1
    _assert_invariants(session_factory)


def test_two_visitors_count_twice(session_factory, make_event):
    _apply(session_factory, make_event(visitor_id="v1"))
    _apply(session_factory, make_event(visitor_id="v2"))

    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == 2
    assert aggregate.unique_visitors == 2


def test_returning_visitor_counts_once(session_factory, make_event):
    first = _apply(session_factory, make_event(visitor_id="v1"))
    second = _apply(session_factory, make_event(visitor_id="v1", path="/b"))

    assert first.new_visitor is True
    assert second.new_visitor is False
    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == 2
    assert aggregate.unique_visitors == 1
    _assert_invariants(session_factory)


def test_missing_visitor_ids_are_one_visitor(session_factory, make_event):
    _apply(session_factory, make_event(visitor_id=None))
    _apply(session_factory, make_event(visitor_id=None))
    _apply(session_factory, make_event(visitor_id="v1"))

    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == 3
    assert aggregate.unique_visitors == 2
    _assert_invariants(session_factory)


def test_visitor_is_new_again_on_another_day_and_site(session_factory, make_event):
    _apply(session_factory, make_event(visitor_id="v1"))
    _apply(session_factory, make_event(visitor_id="v1", timestamp="2024-11-15T09:00:00Z"))
    _apply(session_factory, make_event(visitor_id="v1", site_id="s2"))

    assert _aggregate(session_factory).unique_visitors == 1
    assert _aggregate(session_factory, day=date(2024, 11, 15)).unique_visitors == 1
    assert _aggregate(session_factory, site_id="s2").unique_visitors == 1


def test_date_bucket_is_utc_date_of_event_timestamp(session_factory, make_event):
    _apply(session_factory, make_event(timestamp="2024-11-14T21:30:00-05:00"))

    assert _aggregate(session_factory) is None
    assert _aggregate(session_factory, day=date(2024, 11, 15)).total_views == 1


def test_path_counts_sum_to_total_views(session_factory, make_event):
    events = [
        make_event(path="/a", visitor_id="v1"),
        make_event(path="/a", visitor_id="v2"),
        make_event(path="/b", visitor_id="v1"),
        make_event(path="/c", visitor_id="v3"),
    ]
    for event in events:
        _apply(session_factory, event)
    # Redeliveries of events that already committed.
    _apply(session_factory, events[0])
    _apply(session_factory, events[2])

    with session_scope(session_factory) as session:
        views = {
            row.path: row.views
            for row in session.query(SiteDailyPathCount).filter_by(site_id="s1", date=DAY)
        }
    assert views == {"/a": 2, "/b": 1, "/c": 1}
    assert _aggregate(session_factory).total_views == 4
    assert _aggregate(session_factory).unique_visitors == 3
    _assert_invariants(session_factory)


def test_failed_apply_rolls_back_everything(session_factory, make_event, monkeypatch):
    def _broken_upsert(session, site_id, day, path):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "upsert_path_count", _broken_upsert)

    with pytest.raises(RuntimeError):
        _apply(session_factory, make_event())

    with session_scope(session_factory) as session:
        assert store.count_raw_events(session, "s1", DAY) == 0
        assert store.count_unique_visitors(session, "s1", DAY) == 0
    assert _aggregate(session_factory) is None


def test_concurrent_applies_do_not_lose_updates(session_factory, make_event):
    total = 20
    events = [make_event(visitor_id=f"v{idx}", path=f"/p{idx % 3}") for idx in range(total)]

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda event: _apply(session_factory, event), events))

    assert all(result.recorded for result in results)
    aggregate = _aggregate(session_factory)
    assert aggregate.total_views == total
    assert aggregate.unique_visitors == total
    _assert_invariants(session_factory)
