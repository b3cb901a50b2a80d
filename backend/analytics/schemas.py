"""Pydantic models for request bodies, job payloads and responses."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EventIn(CamelModel):
    site_id: str = Field(..., alias="siteId", min_length=1, description="Site identifier", examples=["site_abc123"])
    event_type: str = Field(
        ..., alias="eventType", min_length=1, description="Type of analytics event", examples=["page_view"]
    )
    path: str = Field(..., min_length=1, description="URL path being tracked", examples=["/products/shoes"])
    timestamp: datetime = Field(
        ..., description="Event timestamp in ISO 8601 format", examples=["2024-11-14T09:00:00Z"]
    )
    event_id: Optional[str] = Field(None, alias="eventId", description="Unique event identifier (UUID)")

    @field_validator("timestamp", mode="before")
    @classmethod
    def require_iso_timestamp(cls, value: Any) -> datetime:
        if not isinstance(value, str) or not ISO_DATE_PREFIX.match(value):
            raise ValueError("timestamp must be an ISO 8601 date string")
        # fromisoformat only understands a trailing "Z" from Python 3.11.
        if value.endswith(("Z", "z")):
            value = value[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("timestamp must be an ISO 8601 date string") from exc

    @field_validator("event_id", mode="before")
    @classmethod
    def require_uuid(cls, value: Any) -> Optional[str]:
        """Check the UUID shape but keep the client's spelling, which is the dedup key."""
        if value is None:
            return None
        if not isinstance(value, str) or len(value) != 36:
            raise ValueError("eventId must be a UUID string")
        UUID(value)
        return value


class EventAccepted(CamelModel):
    success: bool = True
    event_id: str = Field(..., alias="eventId")
    visitor_id: str = Field(..., alias="visitorId")


class BatchIn(CamelModel):
    batch_id: Optional[str] = Field(None, alias="batchId", min_length=1)
    events: List[EventIn] = Field(..., min_length=1)


class BatchAccepted(CamelModel):
    success: bool = True
    batch_id: str = Field(..., alias="batchId")
    job_id: str = Field(..., alias="jobId")
    event_ids: List[str] = Field(..., alias="eventIds")
    visitor_id: str = Field(..., alias="visitorId")


class ProcessEventPayload(BaseModel):
    """Body of a ``process-event`` job as stored in the queue."""

    event_id: str = Field(..., min_length=1)
    site_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    path: str = Field(..., min_length=1)
    visitor_id: Optional[str] = None
    timestamp: datetime

    @property
    def event_date(self) -> date:
        """UTC calendar date of the event; naive timestamps are taken as UTC."""
        return self.timestamp_utc.date()

    @property
    def timestamp_utc(self) -> datetime:
        if self.timestamp.tzinfo is None:
            return self.timestamp
        return self.timestamp.astimezone(timezone.utc).replace(tzinfo=None)


class BatchProcessPayload(BaseModel):
    batch_id: str = Field(..., min_length=1)
    events: List[ProcessEventPayload] = Field(..., min_length=1)


class PathViews(BaseModel):
    path: str
    views: int


class StatsOut(CamelModel):
    site_id: str = Field(..., alias="siteId")
    stats_date: date = Field(..., alias="date")
    total_views: int = Field(..., alias="totalViews")
    unique_users: int = Field(..., alias="uniqueUsers")
    top_paths: List[PathViews] = Field(default_factory=list, alias="topPaths")


class QueueMetricsOut(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int


class QueueHealthOut(BaseModel):
    status: str
    timestamp: datetime
    paused: bool
    metrics: QueueMetricsOut


class JobStatusOut(CamelModel):
    id: str
    name: str
    state: str
    attempts_made: int = Field(..., alias="attemptsMade")
    failed_reason: Optional[str] = Field(None, alias="failedReason")
    processed_on: Optional[datetime] = Field(None, alias="processedOn")
    finished_on: Optional[datetime] = Field(None, alias="finishedOn")
    data: Dict[str, Any]


class MessageOut(BaseModel):
    message: str
