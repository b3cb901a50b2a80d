"""Turns accepted requests into queued aggregation jobs."""
from __future__ import annotations

import logging
import uuid
from typing import List, Optional, Tuple

from . import schemas
from .queue import EventQueue

logger = logging.getLogger(__name__)


def build_payload(event_in: schemas.EventIn, visitor_id: Optional[str]) -> schemas.ProcessEventPayload:
    event_id = event_in.event_id or str(uuid.uuid4())
    return schemas.ProcessEventPayload(
        event_id=event_id,
        site_id=event_in.site_id,
        event_type=event_in.event_type,
        path=event_in.path,
        visitor_id=visitor_id,
        timestamp=event_in.timestamp,
    )


class IngestionService:
    def __init__(self, queue: EventQueue) -> None:
        self._queue = queue

    async def ingest_event(self, event_in: schemas.EventIn, visitor_id: str) -> str:
        payload = build_payload(event_in, visitor_id)
        logger.info(
            "Ingesting event %s for siteId=%s visitorId=%s", payload.event_id, payload.site_id, visitor_id
        )
        await self._queue.enqueue(payload.model_dump(mode="json"))
        return payload.event_id

    async def ingest_batch(self, batch_in: schemas.BatchIn, visitor_id: str) -> Tuple[str, str, List[str]]:
        batch_id = batch_in.batch_id or str(uuid.uuid4())
        events = [build_payload(event_in, visitor_id) for event_in in batch_in.events]
        payload = schemas.BatchProcessPayload(batch_id=batch_id, events=events)
        job_id = await self._queue.enqueue_batch(payload.model_dump(mode="json"))
        return batch_id, job_id, [event.event_id for event in events]
