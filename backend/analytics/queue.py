"""Durable, at-least-once job queue stored alongside the aggregate tables.

Jobs are rows in the ``jobs`` table. A worker claims a due job by flipping it
to ``active`` under a lease token; the lease expires after the visibility
timeout, after which the job may be claimed again. This is what makes
delivery at-least-once: a worker that dies between claim and ack never
loses the job, but the job may be handed out twice.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .database import session_scope
from .models import Job, QueueState

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROCESS_EVENT = "process-event"
BATCH_PROCESS = "batch-process"

PROCESS_EVENT_PRIORITY = 1
BATCH_PROCESS_PRIORITY = 5


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class QueueUnavailableError(Exception):
    """Raised when the queue's backing store cannot be reached."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class QueuedJob:
    """A job handed to a worker, valid for as long as its lease holds."""

    id: str
    name: str
    payload: Dict[str, Any]
    priority: int
    attempts_made: int
    max_attempts: int
    lease_token: str

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts


@dataclass(frozen=True)
class JobStatus:
    id: str
    name: str
    state: str
    attempts_made: int
    last_error: Optional[str]
    processed_on: Optional[datetime]
    finished_on: Optional[datetime]
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QueueMetrics:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed


def _parse_job_id(job_id: str) -> Optional[int]:
    try:
        return int(job_id)
    except (TypeError, ValueError):
        return None


class EventQueue:
    """Named job queue with priorities, exponential backoff and leases."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        name: str = "analytics-events",
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        visibility_timeout: float = 30.0,
        poll_interval: float = 0.5,
        remove_on_complete: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.remove_on_complete = remove_on_complete
        self._session_factory = session_factory
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: sessionmaker[Session]) -> "EventQueue":
        return cls(
            session_factory,
            name=settings.queue_name,
            max_attempts=settings.queue_max_attempts,
            backoff_seconds=settings.queue_backoff_seconds,
            visibility_timeout=settings.queue_visibility_timeout,
            poll_interval=settings.queue_poll_interval,
            remove_on_complete=settings.queue_remove_on_complete,
        )

    def backoff_delay(self, attempts_made: int) -> float:
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise QueueUnavailableError(f"Queue {self.name!r} is unavailable: {exc}") from exc

    # -- producers -------------------------------------------------------

    async def enqueue(self, payload: Mapping[str, Any], *, priority: int = PROCESS_EVENT_PRIORITY) -> str:
        logger.info(
            "Adding process event job eventId=%s eventType=%s",
            payload.get("event_id"),
            payload.get("event_type"),
        )
        job_id = await self._call(self._add_sync, PROCESS_EVENT, dict(payload), priority)
        logger.info("Job added successfully with ID: %s (eventId=%s)", job_id, payload.get("event_id"))
        return job_id

    async def enqueue_batch(self, payload: Mapping[str, Any], *, priority: int = BATCH_PROCESS_PRIORITY) -> str:
        logger.info(
            "Adding batch process job batchId=%s eventCount=%d",
            payload.get("batch_id"),
            len(payload.get("events", ())),
        )
        job_id = await self._call(self._add_sync, BATCH_PROCESS, dict(payload), priority)
        logger.info("Batch job added successfully with ID: %s", job_id)
        return job_id

    def _add_sync(self, name: str, payload: Dict[str, Any], priority: int) -> str:
        now = self._clock()
        with session_scope(self._session_factory) as session:
            job = Job(
                queue=self.name,
                name=name,
                payload=payload,
                priority=priority,
                state=JobState.WAITING.value,
                attempts_made=0,
                max_attempts=self.max_attempts,
                available_at=now,
                created_at=now,
            )
            session.add(job)
            session.flush()
            return str(job.id)

    # -- consumers -------------------------------------------------------

    async def claim(self) -> Optional[QueuedJob]:
        """Claim the next due job without waiting; ``None`` when idle or paused."""
        return await self._call(self._claim_sync)

    async def dequeue(self) -> QueuedJob:
        while True:
            job = await self.claim()
            if job is not None:
                return job
            await asyncio.sleep(self.poll_interval)

    def _claimable(self, now: datetime):  # type: ignore[no-untyped-def]
        return or_(
            and_(
                Job.state.in_((JobState.WAITING.value, JobState.DELAYED.value)),
                Job.available_at <= now,
            ),
            and_(Job.state == JobState.ACTIVE.value, Job.lease_expires_at < now),
        )

    def _claim_sync(self) -> Optional[QueuedJob]:
        with session_scope(self._session_factory) as session:
            if self._is_paused(session):
                return None

            while True:
                now = self._clock()
                candidate = session.execute(
                    select(Job)
                    .where(Job.queue == self.name, self._claimable(now))
                    .order_by(Job.priority.asc(), Job.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()
                if candidate is None:
                    return None

                if candidate.state == JobState.ACTIVE.value and candidate.attempts_made >= candidate.max_attempts:
                    candidate.state = JobState.FAILED.value
                    candidate.last_error = "job lease expired on its final attempt"
                    candidate.finished_on = now
                    candidate.lease_token = None
                    candidate.lease_expires_at = None
                    session.flush()
                    logger.error("Job %s stalled on its final attempt and was marked failed", candidate.id)
                    continue

                if candidate.state == JobState.ACTIVE.value:
                    logger.warning("Job %s lease expired, redelivering", candidate.id)

                job_id = candidate.id
                attempts_made = candidate.attempts_made + 1
                token = str(uuid.uuid4())
                result = session.execute(
                    update(Job)
                    .where(Job.id == job_id, self._claimable(now))
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts_made=attempts_made,
                        lease_token=token,
                        lease_expires_at=now + timedelta(seconds=self.visibility_timeout),
                        processed_on=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue

                return QueuedJob(
                    id=str(job_id),
                    name=candidate.name,
                    payload=dict(candidate.payload),
                    priority=candidate.priority,
                    attempts_made=attempts_made,
                    max_attempts=candidate.max_attempts,
                    lease_token=token,
                )

    async def extend_lease(self, job_id: str, token: str) -> bool:
        """Push the lease of an active job forward; ``False`` once the lease is lost."""
        return await self._call(self._extend_sync, job_id, token)

    def _extend_sync(self, job_id: str, token: str) -> bool:
        numeric_id = _parse_job_id(job_id)
        if numeric_id is None:
            return False
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == numeric_id,
                    Job.queue == self.name,
                    Job.state == JobState.ACTIVE.value,
                    Job.lease_token == token,
                )
                .values(lease_expires_at=self._clock() + timedelta(seconds=self.visibility_timeout))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def ack(self, job_id: str, token: Optional[str] = None) -> bool:
        if self.remove_on_complete:
            acked = await self._call(self._settle_sync, job_id, token, None)
        else:
            values = {"state": JobState.COMPLETED.value, "finished_on": self._clock()}
            acked = await self._call(self._settle_sync, job_id, token, values)
        if not acked:
            logger.warning("Job %s could not be acknowledged; its lease is no longer held", job_id)
        return acked

    async def retry(self, job_id: str, delay: float, reason: str, token: Optional[str] = None) -> bool:
        values = {
            "state": JobState.DELAYED.value,
            "available_at": self._clock() + timedelta(seconds=delay),
            "last_error": reason,
        }
        retried = await self._call(self._settle_sync, job_id, token, values)
        if retried:
            logger.warning("Job %s scheduled for retry in %.1fs: %s", job_id, delay, reason)
        return retried

    async def fail(self, job_id: str, reason: str, token: Optional[str] = None) -> bool:
        values = {"state": JobState.FAILED.value, "finished_on": self._clock(), "last_error": reason}
        failed = await self._call(self._settle_sync, job_id, token, values)
        if failed:
            logger.error("Job %s failed: %s", job_id, reason)
        return failed

    def _settle_sync(self, job_id: str, token: Optional[str], values: Optional[Dict[str, Any]]) -> bool:
        """Move an active job out of ``active``; ``values=None`` deletes it."""
        numeric_id = _parse_job_id(job_id)
        if numeric_id is None:
            return False

        criteria = [Job.id == numeric_id, Job.queue == self.name, Job.state == JobState.ACTIVE.value]
        if token is not None:
            criteria.append(Job.lease_token == token)

        with session_scope(self._session_factory) as session:
            if values is None:
                stmt = delete(Job).where(*criteria)
            else:
                stmt = (
                    update(Job)
                    .where(*criteria)
                    .values(lease_token=None, lease_expires_at=None, **values)
                )
            result = session.execute(stmt.execution_options(synchronize_session=False))
            return result.rowcount == 1

    # -- introspection ---------------------------------------------------

    async def status(self, job_id: str) -> Optional[JobStatus]:
        return await self._call(self._status_sync, job_id)

    def _status_sync(self, job_id: str) -> Optional[JobStatus]:
        numeric_id = _parse_job_id(job_id)
        if numeric_id is None:
            return None
        with session_scope(self._session_factory) as session:
            job = session.execute(
                select(Job).where(Job.id == numeric_id, Job.queue == self.name)
            ).scalar_one_or_none()
            if job is None:
                return None
            return JobStatus(
                id=str(job.id),
                name=job.name,
                state=job.state,
                attempts_made=job.attempts_made,
                last_error=job.last_error,
                processed_on=job.processed_on,
                finished_on=job.finished_on,
                data=dict(job.payload),
            )

    async def metrics(self) -> QueueMetrics:
        return await self._call(self._metrics_sync)

    def _metrics_sync(self) -> QueueMetrics:
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(Job.state, func.count(Job.id)).where(Job.queue == self.name).group_by(Job.state)
            ).all()
        counts = {state: count for state, count in rows}
        return QueueMetrics(**{state.value: counts.get(state.value, 0) for state in JobState})

    # -- pause / resume --------------------------------------------------

    async def pause(self) -> None:
        await self._call(self._set_paused_sync, True)
        logger.info("Queue %s paused", self.name)

    async def resume(self) -> None:
        await self._call(self._set_paused_sync, False)
        logger.info("Queue %s resumed", self.name)

    async def is_paused(self) -> bool:
        return await self._call(self._is_paused_sync)

    def _set_paused_sync(self, paused: bool) -> None:
        with session_scope(self._session_factory) as session:
            state = session.get(QueueState, self.name)
            if state is None:
                session.add(QueueState(queue=self.name, paused=paused))
            else:
                state.paused = paused

    def _is_paused_sync(self) -> bool:
        with session_scope(self._session_factory) as session:
            return self._is_paused(session)

    def _is_paused(self, session: Session) -> bool:
        state = session.get(QueueState, self.name)
        return bool(state is not None and state.paused)
