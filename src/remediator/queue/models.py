"""Queue record models.

Payloads are stored as the raw bytes received on the wire together with a
type tag; they are decoded into typed events only when the worker needs
them.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class EventStatus(str, Enum):
    """Processing state of a queued webhook event.

    Allowed transitions:
    - PENDING -> PROCESSING (worker picks the event up)
    - PROCESSING -> COMPLETED (terminal)
    - PROCESSING -> PENDING (transient failure with retries left)
    - PROCESSING -> FAILED (retries exhausted or non-retryable failure)

    Events left in PROCESSING by a crash are picked up again at startup.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class EventType(str, Enum):
    """Type tag stored alongside each payload."""

    REVIEW_SUBMITTED = "review_submitted"
    PING = "ping"


class WebhookEvent(BaseModel):
    """A durable record of one accepted webhook delivery."""

    id: str = Field(..., description="Opaque event identifier")
    type: EventType
    payload: bytes = Field(..., description="Raw request body")
    status: EventStatus = EventStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (EventStatus.COMPLETED, EventStatus.FAILED)


class QueueStats(BaseModel):
    pending: int = 0
    processing: int = 0
    failed: int = 0
