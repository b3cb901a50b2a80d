"""FastAPI application entrypoint for the analytics ingestion and reporting API."""
from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import AsyncIterator, Iterator, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import schemas
from .auth import verify_operator
from .config import ConfigurationError, Settings, configure_logging
from .database import build_engine, build_session_factory, init_schema
from .identity import VISITOR_COOKIE_NAME, resolve_visitor
from .ingestion import IngestionService
from .queue import EventQueue, QueueUnavailableError
from .reporting import StatsNotFoundError, get_stats
from .worker import AggregationWorker

logger = logging.getLogger(__name__)

router = APIRouter()
queues_router = APIRouter(prefix="/queues", dependencies=[Depends(verify_operator)])


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_queue(request: Request) -> EventQueue:
    return request.app.state.queue


def get_ingestion(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def _queue_unavailable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Event queue unavailable")


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.post("/event", response_model=schemas.EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def ingest_event(
    event_in: schemas.EventIn,
    request: Request,
    response: Response,
    settings: Settings = Depends(get_settings),
    ingestion: IngestionService = Depends(get_ingestion),
) -> schemas.EventAccepted:
    identity = resolve_visitor(
        request.cookies.get(VISITOR_COOKIE_NAME),
        secure=settings.cookie_secure,
        domain=settings.cookie_domain,
    )
    if identity.cookie is not None:
        response.set_cookie(**identity.cookie.as_cookie_kwargs())
        logger.info("Generated new visitor_id: %s", identity.visitor_id)

    try:
        event_id = await ingestion.ingest_event(event_in, identity.visitor_id)
    except QueueUnavailableError as exc:
        logger.exception("Failed to enqueue event for siteId=%s", event_in.site_id)
        raise _queue_unavailable() from exc

    return schemas.EventAccepted(event_id=event_id, visitor_id=identity.visitor_id)


@router.post("/event/batch", response_model=schemas.BatchAccepted, status_code=status.HTTP_202_ACCEPTED)
async def ingest_batch(
    batch_in: schemas.BatchIn,
    request: Request,
    response: Response,
    settings: Settings = Depends(get_settings),
    ingestion: IngestionService = Depends(get_ingestion),
) -> schemas.BatchAccepted:
    if len(batch_in.events) > settings.max_batch_size:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Batch exceeds the maximum of {settings.max_batch_size} events",
        )

    identity = resolve_visitor(
        request.cookies.get(VISITOR_COOKIE_NAME),
        secure=settings.cookie_secure,
        domain=settings.cookie_domain,
    )
    if identity.cookie is not None:
        response.set_cookie(**identity.cookie.as_cookie_kwargs())

    try:
        batch_id, job_id, event_ids = await ingestion.ingest_batch(batch_in, identity.visitor_id)
    except QueueUnavailableError as exc:
        logger.exception("Failed to enqueue batch of %d events", len(batch_in.events))
        raise _queue_unavailable() from exc

    return schemas.BatchAccepted(
        batch_id=batch_id, job_id=job_id, event_ids=event_ids, visitor_id=identity.visitor_id
    )


@router.get("/stats", response_model=schemas.StatsOut)
def read_stats(
    site_id: str = Query(..., alias="siteId", min_length=1),
    day: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
) -> schemas.StatsOut:
    try:
        return get_stats(db, site_id, day)
    except StatsNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@queues_router.get("/health", response_model=schemas.QueueHealthOut)
async def queue_health(queue: EventQueue = Depends(get_queue)) -> schemas.QueueHealthOut:
    try:
        metrics = await queue.metrics()
        paused = await queue.is_paused()
    except QueueUnavailableError as exc:
        raise _queue_unavailable() from exc

    return schemas.QueueHealthOut(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        paused=paused,
        metrics=schemas.QueueMetricsOut(
            waiting=metrics.waiting,
            active=metrics.active,
            completed=metrics.completed,
            failed=metrics.failed,
            delayed=metrics.delayed,
            total=metrics.total,
        ),
    )


@queues_router.get("/job/{job_id}", response_model=schemas.JobStatusOut)
async def job_status(job_id: str, queue: EventQueue = Depends(get_queue)) -> schemas.JobStatusOut:
    try:
        job = await queue.status(job_id)
    except QueueUnavailableError as exc:
        raise _queue_unavailable() from exc
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    return schemas.JobStatusOut(
        id=job.id,
        name=job.name,
        state=job.state,
        attempts_made=job.attempts_made,
        failed_reason=job.last_error,
        processed_on=job.processed_on,
        finished_on=job.finished_on,
        data=job.data,
    )


@queues_router.post("/pause", response_model=schemas.MessageOut)
async def pause_queue(queue: EventQueue = Depends(get_queue)) -> schemas.MessageOut:
    try:
        await queue.pause()
    except QueueUnavailableError as exc:
        raise _queue_unavailable() from exc
    return schemas.MessageOut(message="Queue paused successfully")


@queues_router.post("/resume", response_model=schemas.MessageOut)
async def resume_queue(queue: EventQueue = Depends(get_queue)) -> schemas.MessageOut:
    try:
        await queue.resume()
    except QueueUnavailableError as exc:
        raise _queue_unavailable() from exc
    return schemas.MessageOut(message="Queue resumed successfully")


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Wire the application: one engine, one queue, one worker pool per app."""
    if settings is None:
        settings = Settings.from_env()

    engine = build_engine(settings.database_url)
    init_schema(engine)
    session_factory = build_session_factory(engine)
    queue = EventQueue.from_settings(settings, session_factory)
    worker = AggregationWorker(queue, session_factory, concurrency=settings.worker_concurrency)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.worker_enabled:
            worker.start()
        try:
            yield
        finally:
            await worker.stop()
            engine.dispose()

    app = FastAPI(
        title="Site Analytics API",
        description="Collects page-view events and serves daily per-site aggregates.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.queue = queue
    app.state.worker = worker
    app.state.ingestion = IngestionService(queue)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.include_router(router)
    app.include_router(queues_router)
    return app


def serve() -> None:
    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        sys.exit(f"Invalid configuration: {exc}")
    configure_logging(settings.log_level)
    logger.info("Starting analytics API in %s mode", settings.environment)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    serve()
