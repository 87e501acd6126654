"""SQLite-backed durable event queue.

Every accepted webhook delivery becomes one row in the ``webhook_events``
table before the HTTP response is sent. The worker moves rows through
pending -> processing -> completed/failed; rows still pending or
processing at startup are recovered in their original order.

All database work runs on a dedicated single-thread executor so the
connection is only ever touched from one thread and the event loop never
blocks on disk I/O.
"""

import asyncio
import logging
import sqlite3
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, TypeVar, Union

from src.remediator.queue.models import (
    EventStatus,
    EventType,
    QueueStats,
    WebhookEvent,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DB_PATH = "/tmp/remediator/queue.db"
DEFAULT_MAX_RETRIES = 3
MAX_ERROR_LENGTH = 4000

_SCHEMA = """
CREATE TABLE IF NOT EXISTS webhook_events (
    id          TEXT PRIMARY KEY,
    event_type  TEXT NOT NULL,
    payload     BLOB NOT NULL,
    status      TEXT NOT NULL DEFAULT 'pending',
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL,
    last_error  TEXT
);
CREATE INDEX IF NOT EXISTS idx_webhook_events_status ON webhook_events(status);
"""

_ACTIVE_STATUSES = (EventStatus.PENDING.value, EventStatus.PROCESSING.value)
_TERMINAL_STATUSES = (EventStatus.COMPLETED.value, EventStatus.FAILED.value)


class EventStoreError(Exception):
    """Raised when a queue operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class EventNotFoundError(EventStoreError):
    """Raised when an operation names an event that does not exist."""


class InvalidTransitionError(EventStoreError):
    """Raised when a status change would leave a terminal state."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def _from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _row_to_event(row: sqlite3.Row) -> WebhookEvent:
    return WebhookEvent(
        id=row["id"],
        type=EventType(row["event_type"]),
        payload=bytes(row["payload"]),
        status=EventStatus(row["status"]),
        retry_count=row["retry_count"],
        created_at=_from_ms(row["created_at"]),
        updated_at=_from_ms(row["updated_at"]),
        last_error=row["last_error"],
    )


class SQLiteEventStore:
    """Durable FIFO queue of webhook events in a single SQLite file.

    Attributes:
        db_path: Location of the database file.
        max_retries: Transient failures tolerated before an event is
            marked failed for good.

    Example:
        >>> async with SQLiteEventStore("/tmp/queue.db") as store:
        ...     event_id = await store.enqueue(EventType.PING, b"{}")
        ...     await store.mark_processing(event_id)
        ...     await store.mark_completed(event_id)
    """

    def __init__(
        self,
        db_path: Union[str, Path] = DEFAULT_DB_PATH,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.db_path = Path(db_path)
        self.max_retries = max_retries
        self._conn: Optional[sqlite3.Connection] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        """Create the database file and schema if needed.

        Raises:
            EventStoreError: If the file cannot be opened or initialized.
        """
        if self._executor is not None:
            logger.warning("Event store already open")
            return

        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="event-store"
        )
        try:
            await self._run(self._open_sync)
        except EventStoreError:
            self._executor.shutdown(wait=False)
            self._executor = None
            raise

        logger.info(
            "Event store opened",
            extra={"db_path": str(self.db_path), "max_retries": self.max_retries},
        )

    def _open_sync(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=FULL")
        conn.executescript(_SCHEMA)
        self._conn = conn

    async def close(self) -> None:
        """Close the connection and stop the executor."""
        if self._executor is None:
            return
        try:
            await self._run(self._close_sync)
        finally:
            self._executor.shutdown(wait=True)
            self._executor = None
            logger.info("Event store closed", extra={"db_path": str(self.db_path)})

    def _close_sync(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "SQLiteEventStore":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise EventStoreError("Event store not open. Call open() first.")
        return self._conn

    async def _run(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` on the store thread, wrapping sqlite errors."""
        if self._executor is None:
            raise EventStoreError("Event store not open. Call open() first.")

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, fn)
        except sqlite3.Error as e:
            logger.error(
                "Event store operation failed",
                extra={"db_path": str(self.db_path), "error": str(e)},
            )
            raise EventStoreError(f"Event store operation failed: {e}", original_error=e) from e
        except OSError as e:
            raise EventStoreError(f"Event store I/O failed: {e}", original_error=e) from e

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def enqueue(self, event_type: EventType, payload: bytes) -> str:
        """Durably record a new pending event.

        The row is committed before this returns.

        Returns:
            The new event id.
        """
        event_id = uuid.uuid4().hex
        now = _now_ms()

        def insert() -> None:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO webhook_events "
                    "(id, event_type, payload, status, retry_count, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, 0, ?, ?)",
                    (
                        event_id,
                        event_type.value,
                        sqlite3.Binary(payload),
                        EventStatus.PENDING.value,
                        now,
                        now,
                    ),
                )

        await self._run(insert)
        logger.info(
            "Event enqueued",
            extra={"event_id": event_id, "event_type": event_type.value},
        )
        return event_id

    async def mark_processing(self, event_id: str) -> None:
        """Move a pending (or orphaned processing) event to processing."""
        await self._transition(
            event_id, EventStatus.PROCESSING, allowed_from=_ACTIVE_STATUSES
        )

    async def mark_completed(self, event_id: str) -> None:
        await self._transition(
            event_id, EventStatus.COMPLETED, allowed_from=_ACTIVE_STATUSES
        )

    async def _transition(
        self,
        event_id: str,
        new_status: EventStatus,
        allowed_from: tuple,
    ) -> None:
        def update() -> None:
            with self.conn:
                placeholders = ", ".join("?" for _ in allowed_from)
                cursor = self.conn.execute(
                    f"UPDATE webhook_events SET status = ?, updated_at = ? "
                    f"WHERE id = ? AND status IN ({placeholders})",
                    (new_status.value, _now_ms(), event_id, *allowed_from),
                )
                if cursor.rowcount == 0:
                    self._raise_for_missing_transition(event_id, new_status)

        await self._run(update)
        logger.debug(
            "Event status changed",
            extra={"event_id": event_id, "status": new_status.value},
        )

    def _raise_for_missing_transition(
        self, event_id: str, new_status: EventStatus
    ) -> None:
        row = self.conn.execute(
            "SELECT status FROM webhook_events WHERE id = ?", (event_id,)
        ).fetchone()
        if row is None:
            raise EventNotFoundError(f"Event {event_id} not found")
        raise InvalidTransitionError(
            f"Event {event_id} cannot move from {row['status']} to {new_status.value}"
        )

    async def mark_failed(
        self,
        event_id: str,
        reason: str,
        retryable: bool = True,
    ) -> EventStatus:
        """Record a failed processing attempt.

        A retryable failure puts the event back to pending while its retry
        count is below ``max_retries``; otherwise the event becomes terminally
        failed. A non-retryable failure fails the event immediately and leaves
        its retry count untouched.

        Returns:
            The status the event ended up in.
        """
        error_text = (reason or "Unknown error")[:MAX_ERROR_LENGTH]

        def update() -> EventStatus:
            with self.conn:
                row = self.conn.execute(
                    "SELECT status, retry_count FROM webhook_events WHERE id = ?",
                    (event_id,),
                ).fetchone()
                if row is None:
                    raise EventNotFoundError(f"Event {event_id} not found")
                if row["status"] in _TERMINAL_STATUSES:
                    raise InvalidTransitionError(
                        f"Event {event_id} is already {row['status']}"
                    )

                if retryable and row["retry_count"] < self.max_retries:
                    new_status = EventStatus.PENDING
                else:
                    new_status = EventStatus.FAILED

                self.conn.execute(
                    "UPDATE webhook_events SET status = ?, retry_count = retry_count + ?, "
                    "last_error = ?, updated_at = ? WHERE id = ?",
                    (new_status.value, int(retryable), error_text, _now_ms(), event_id),
                )
                return new_status

        status = await self._run(update)
        log = logger.warning if status == EventStatus.PENDING else logger.error
        log(
            "Event processing failed",
            extra={
                "event_id": event_id,
                "status": status.value,
                "retryable": retryable,
                "error": error_text,
            },
        )
        return status

    async def cleanup(self, max_age_seconds: float) -> int:
        """Delete completed and failed events older than ``max_age_seconds``.

        Returns:
            Number of rows deleted.
        """
        cutoff = _now_ms() - int(max_age_seconds * 1000)

        def delete() -> int:
            with self.conn:
                cursor = self.conn.execute(
                    "DELETE FROM webhook_events WHERE status IN (?, ?) AND updated_at <= ?",
                    (*_TERMINAL_STATUSES, cutoff),
                )
                return cursor.rowcount

        deleted = await self._run(delete)
        if deleted:
            logger.info("Purged old events", extra={"deleted": deleted})
        return deleted

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        def select() -> Optional[WebhookEvent]:
            row = self.conn.execute(
                "SELECT * FROM webhook_events WHERE id = ?", (event_id,)
            ).fetchone()
            return _row_to_event(row) if row is not None else None

        return await self._run(select)

    async def get_pending_events(self) -> List[WebhookEvent]:
        """Return pending and processing events in enqueue order.

        Used at startup: anything still processing was orphaned by a crash
        and must be attempted again from the beginning.
        """

        def select() -> List[WebhookEvent]:
            rows = self.conn.execute(
                "SELECT * FROM webhook_events WHERE status IN (?, ?) "
                "ORDER BY created_at ASC, rowid ASC",
                _ACTIVE_STATUSES,
            ).fetchall()
            return [_row_to_event(row) for row in rows]

        return await self._run(select)

    async def get_failed_events(self) -> List[WebhookEvent]:
        def select() -> List[WebhookEvent]:
            rows = self.conn.execute(
                "SELECT * FROM webhook_events WHERE status = ? "
                "ORDER BY updated_at DESC, rowid DESC",
                (EventStatus.FAILED.value,),
            ).fetchall()
            return [_row_to_event(row) for row in rows]

        return await self._run(select)

    async def get_stats(self) -> QueueStats:
        """Count pending, processing and failed events."""

        def select() -> QueueStats:
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS count FROM webhook_events GROUP BY status"
            ).fetchall()
            counts = {row["status"]: row["count"] for row in rows}
            return QueueStats(
                pending=counts.get(EventStatus.PENDING.value, 0),
                processing=counts.get(EventStatus.PROCESSING.value, 0),
                failed=counts.get(EventStatus.FAILED.value, 0),
            )

        return await self._run(select)
