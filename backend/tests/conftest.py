import sys
import uuid
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.analytics.config import Settings  # noqa: E402
from backend.analytics.main import create_app  # noqa: E402
from backend.analytics.schemas import ProcessEventPayload  # noqa: E402


class FakeClock:
    """Naive-UTC clock the tests move by hand."""

    def __init__(self, start: datetime = datetime(2024, 11, 14, 9, 0, 0)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'analytics.db'}",
        environment="test",
        worker_enabled=False,
        queue_backoff_seconds=0.0,
        queue_poll_interval=0.01,
        queue_remove_on_complete=False,
    )


@pytest.fixture
def app(settings):
    application = create_app(settings)
    yield application
    application.state.engine.dispose()


@pytest.fixture
def session_factory(app):
    return app.state.session_factory


@pytest.fixture
def queue(app):
    return app.state.queue


@pytest.fixture
def worker(app):
    return app.state.worker


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def make_event():
    def _make_event(
        site_id: str = "s1",
        path: str = "/a",
        visitor_id="v1",
        timestamp: str = "2024-11-14T09:00:00Z",
        event_id=None,
        event_type: str = "page_view",
    ) -> ProcessEventPayload:
        return ProcessEventPayload(
            event_id=event_id or str(uuid.uuid4()),
            site_id=site_id,
            event_type=event_type,
            path=path,
            visitor_id=visitor_id,
            timestamp=timestamp,
        )

    return _make_event
