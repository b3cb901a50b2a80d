"""Aggregation worker: consumes queued events and folds them into the aggregates."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from contextlib import suppress
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from .config import ConfigurationError, Settings, configure_logging
from .database import build_engine, build_session_factory, init_schema, session_scope
from .queue import BATCH_PROCESS, PROCESS_EVENT, EventQueue, QueuedJob, QueueUnavailableError
from .schemas import BatchProcessPayload, ProcessEventPayload
from .store import apply_event

logger = logging.getLogger(__name__)


class MalformedJobError(Exception):
    """Raised for jobs that can never succeed; they fail without further retries."""


class AggregationWorker:
    """Bounded pool of asyncio tasks, each owning one job at a time."""

    def __init__(
        self,
        queue: EventQueue,
        session_factory: sessionmaker[Session],
        *,
        concurrency: int = 10,
        heartbeat_interval: Optional[float] = None,
    ) -> None:
        self.queue = queue
        self.concurrency = concurrency
        if heartbeat_interval is None:
            heartbeat_interval = queue.visibility_timeout / 3
        self.heartbeat_interval = heartbeat_interval
        self._session_factory = session_factory
        self._tasks: List[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    # -- job handlers (run in a worker thread) ---------------------------

    def handle(self, job: QueuedJob) -> Dict[str, Any]:
        if job.name == PROCESS_EVENT:
            return self._process_event(job.payload)
        if job.name == BATCH_PROCESS:
            return self._batch_process(job.payload)
        raise MalformedJobError(f"Unknown job name: {job.name}")

    def _process_event(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            event = ProcessEventPayload.model_validate(data)
        except ValidationError as exc:
            raise MalformedJobError(f"invalid event payload: {exc.error_count()} validation error(s)") from exc

        with session_scope(self._session_factory) as session:
            result = apply_event(session, event)
        return {"success": True, "eventId": result.event_id, "duplicate": not result.recorded}

    def _batch_process(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            batch = BatchProcessPayload.model_validate(data)
        except ValidationError as exc:
            raise MalformedJobError(f"invalid batch payload: {exc.error_count()} validation error(s)") from exc

        recorded = 0
        for event in batch.events:
            # One transaction per event: a retried batch skips what already committed.
            with session_scope(self._session_factory) as session:
                if apply_event(session, event).recorded:
                    recorded += 1
        logger.info("Batch %s processed: %d recorded of %d", batch.batch_id, recorded, len(batch.events))
        return {
            "success": True,
            "batchId": batch.batch_id,
            "processedCount": recorded,
            "duplicateCount": len(batch.events) - recorded,
        }

    # -- lifecycle of a single job ---------------------------------------

    async def process_job(self, job: QueuedJob) -> bool:
        """Run one job end-to-end and report the outcome to the queue."""
        logger.info(
            "Processing job %s (%s) attempt %d/%d", job.id, job.name, job.attempts_made, job.max_attempts
        )
        try:
            result = await self._handle_with_heartbeat(job)
        except MalformedJobError as exc:
            await self.queue.fail(job.id, f"MalformedJobError: {exc}", job.lease_token)
            return False
        except Exception as exc:
            logger.exception("Job %s processing failed", job.id)
            reason = f"{type(exc).__name__}: {exc}"
            if job.attempts_exhausted:
                await self.queue.fail(job.id, reason, job.lease_token)
            else:
                delay = self.queue.backoff_delay(job.attempts_made)
                await self.queue.retry(job.id, delay, reason, job.lease_token)
            return False

        if not await self.queue.ack(job.id, job.lease_token):
            logger.error("Job %s finished after its lease was lost; result not recorded: %s", job.id, result)
            return False
        logger.info("Job %s completed successfully: %s", job.id, result)
        return True

    async def _handle_with_heartbeat(self, job: QueuedJob) -> Dict[str, Any]:
        heartbeat = asyncio.get_running_loop().create_task(self._keep_lease(job))
        try:
            return await asyncio.to_thread(self.handle, job)
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat

    async def _keep_lease(self, job: QueuedJob) -> None:
        """Extend the job's lease while its handler is still running."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                extended = await self.queue.extend_lease(job.id, job.lease_token)
            except QueueUnavailableError:
                logger.exception("Could not extend the lease of job %s", job.id)
                continue
            if not extended:
                logger.warning("Lease of job %s was lost while it was running", job.id)
                return

    async def run_until_idle(self) -> int:
        """Process due jobs one by one until none is left; returns how many ran."""
        processed = 0
        while True:
            job = await self.queue.claim()
            if job is None:
                return processed
            await self.process_job(job)
            processed += 1

    # -- pool ------------------------------------------------------------

    async def _run_slot(self, slot: int) -> None:
        logger.debug("Worker slot %d started", slot)
        while True:
            try:
                job = await self.queue.dequeue()
            except QueueUnavailableError:
                logger.exception("Worker slot %d could not reach the queue", slot)
                await asyncio.sleep(self.queue.poll_interval)
                continue
            except Exception:
                logger.exception("Worker slot %d failed while waiting for a job", slot)
                await asyncio.sleep(self.queue.poll_interval)
                continue
            try:
                await self.process_job(job)
            except QueueUnavailableError:
                # The lease runs out and the job is delivered again.
                logger.exception("Could not report the outcome of job %s", job.id)
            except Exception:
                logger.exception("Worker slot %d failed while processing job %s", slot, job.id)

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [loop.create_task(self._run_slot(slot)) for slot in range(self.concurrency)]
        logger.info("Aggregation worker started with %d slots on queue %s", self.concurrency, self.queue.name)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        if tasks:
            logger.info("Aggregation worker stopped")


def build_worker(settings: Settings) -> AggregationWorker:
    engine = build_engine(settings.database_url)
    init_schema(engine)
    session_factory = build_session_factory(engine)
    queue = EventQueue.from_settings(settings, session_factory)
    return AggregationWorker(queue, session_factory, concurrency=settings.worker_concurrency)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the analytics aggregation worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process every job that is currently due, then exit",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of concurrent job slots (default: ANALYTICS_WORKER_CONCURRENCY)",
    )
    return parser.parse_args(argv)


async def _run_forever(worker: AggregationWorker) -> None:
    worker.start()
    try:
        await asyncio.Event().wait()
    finally:
        await worker.stop()


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        sys.exit(f"Invalid configuration: {exc}")
    configure_logging(settings.log_level)

    worker = build_worker(settings)
    if args.concurrency is not None:
        worker.concurrency = max(args.concurrency, 1)

    if args.once:
        processed = asyncio.run(worker.run_until_idle())
        logger.info("Processed %d job(s)", processed)
        return

    try:
        asyncio.run(_run_forever(worker))
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")


if __name__ == "__main__":
    main()
