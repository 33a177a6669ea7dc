"""Serialized, best-effort heartbeat delivery.

Responsibility:
    Take accepted :class:`~editor_heartbeat.models.HeartbeatRecord` objects off
    the caller's thread and hand them to a sender, one at a time, in the order
    they were dispatched.

Design:
    - **Dedicated Worker**: A single daemon thread consumes a FIFO queue. No
      thread is spawned per heartbeat.
    - **Single Lock**: Every sender call is made while holding ``_send_lock``
      (scoped ``with`` acquisition), so at most one delivery is ever in flight,
      including deliveries forced through :meth:`HeartbeatDispatcher.send_now`.
    - **At-most-once**: No retry. A failed send is logged and the record is
      dropped; the worker moves on to the next record.
    - **Non-blocking**: ``dispatch`` never waits. When the bounded queue is full,
      the record is dropped with a warning.

Record lifecycle:
    ``Created -> Queued -> Sending -> {Delivered | Dropped}``
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from editor_heartbeat.models import HeartbeatRecord
from editor_heartbeat.senders import HeartbeatSender, SendError

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["HeartbeatDispatcher", "DEFAULT_QUEUE_SIZE"]

DEFAULT_QUEUE_SIZE = 1000
SLOW_SEND_WARNING_SECONDS = 5.0


def _format_ts(timestamp: float) -> str:
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return str(timestamp)


class HeartbeatDispatcher:
    """Deliver heartbeat records to a sender from a single worker thread.

    Attributes:
        sender (HeartbeatSender): Destination of every record.
        queue_size (int): Maximum number of records waiting for delivery.

    Example:
        >>> from editor_heartbeat.senders import MockSender
        >>> sender = MockSender()
        >>> with HeartbeatDispatcher(sender) as dispatcher:
        ...     dispatcher.dispatch(record)
        ...     dispatcher.flush()
    """

    __slots__ = (
        "sender", "queue_size", "_queue", "_send_lock", "_stats_lock", "_closed",
        "_worker_thread", "queued", "delivered", "dropped_error", "dropped_overflow",
        "last_send_latency", "max_send_latency",
    )

    def __init__(self, sender: HeartbeatSender, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        if queue_size < 1:
            raise ValueError(f"queue_size must be at least 1, got {queue_size}")
        self.sender = sender
        self.queue_size = queue_size
        self._queue: queue.Queue[Optional[HeartbeatRecord]] = queue.Queue(maxsize=queue_size)
        self._send_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._closed = False

        self.queued = 0
        self.delivered = 0
        self.dropped_error = 0
        self.dropped_overflow = 0
        self.last_send_latency = 0.0
        self.max_send_latency = 0.0

        self._worker_thread = threading.Thread(
            target=self._worker_loop,
            name="HeartbeatDispatcher",
            daemon=True,
        )
        self._worker_thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def dispatch(self, record: HeartbeatRecord) -> None:
        """Queue a record for asynchronous delivery (non-blocking).

        Records dispatched after :meth:`close` are ignored.
        """
        if self._closed:
            logger.debug("Dispatcher closed, ignoring heartbeat for %s", record.file)
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            with self._stats_lock:
                self.dropped_overflow += 1
            logger.warning(
                "Heartbeat queue full (%d pending). Dropping heartbeat for %s",
                self.queue_size, record.file,
            )
            return
        with self._stats_lock:
            self.queued += 1

    def send_now(self, record: HeartbeatRecord) -> bool:
        """Deliver a record synchronously on the calling thread.

        Still serialized with the worker through the same lock.

        Returns:
            bool: True if the record was delivered.
        """
        return self._deliver(record)

    def _worker_loop(self) -> None:
        """Worker thread loop delivering records from the queue."""
        while True:
            item = self._queue.get()
            try:
                if item is None:  # Sentinel for shutdown
                    break
                self._deliver(item)
            except Exception as e:
                logger.error("Error in heartbeat worker: %s", e, exc_info=True)
            finally:
                self._queue.task_done()

    def _deliver(self, record: HeartbeatRecord) -> bool:
        start = time.monotonic()
        try:
            with self._send_lock:
                self.sender.send(record)
        except SendError as e:
            self._record_drop()
            detail = f" ({e.stderr})" if getattr(e, "stderr", None) else ""
            logger.error(
                "Failed to send heartbeat for %s at %s: %s%s",
                record.file, _format_ts(record.timestamp), e, detail,
            )
            return False
        except Exception as e:
            self._record_drop()
            logger.error(
                "Unexpected error sending heartbeat for %s at %s: %s",
                record.file, _format_ts(record.timestamp), e, exc_info=True,
            )
            return False
        finally:
            elapsed = time.monotonic() - start
            with self._stats_lock:
                self.last_send_latency = elapsed
                if elapsed > self.max_send_latency:
                    self.max_send_latency = elapsed
            if elapsed > SLOW_SEND_WARNING_SECONDS:
                logger.warning("Slow heartbeat delivery detected: %.2fs", elapsed)

        with self._stats_lock:
            self.delivered += 1
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Heartbeat delivered: %s (write=%s)", record.file, record.is_write)
        return True

    def _record_drop(self) -> None:
        with self._stats_lock:
            self.dropped_error += 1

    def pending(self) -> int:
        """Return the approximate number of records waiting for delivery."""
        return self._queue.qsize()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued record has been delivered or dropped.

        Args:
            timeout (Optional[float]): Maximum wait in seconds; None waits forever.

        Returns:
            bool: True if the queue was fully processed, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                if deadline is None:
                    self._queue.all_tasks_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _discard_pending(self) -> int:
        discarded = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                discarded += 1
            self._queue.task_done()
        return discarded

    def close(self, drain: bool = True, timeout: float = 5.0) -> None:
        """Stop accepting records and stop the worker.

        Args:
            drain (bool): Deliver pending records first (True) or discard them (False).
            timeout (float): Maximum seconds to wait for the worker to finish.
        """
        if self._closed:
            return
        self._closed = True

        if not drain:
            discarded = self._discard_pending()
            if discarded:
                logger.info("Discarded %d pending heartbeat(s) on shutdown.", discarded)

        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Heartbeat worker busy, could not signal shutdown within %ss.", timeout)
            return

        if self._worker_thread.is_alive():
            self._worker_thread.join(timeout=timeout)
            if self._worker_thread.is_alive():
                logger.warning("Heartbeat worker did not terminate within %ss.", timeout)

    def get_statistics(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "queued": self.queued,
                "delivered": self.delivered,
                "dropped_error": self.dropped_error,
                "dropped_overflow": self.dropped_overflow,
                "pending": self._queue.qsize(),
                "last_send_latency": self.last_send_latency,
                "max_send_latency": self.max_send_latency,
            }

    def __enter__(self) -> HeartbeatDispatcher:
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<HeartbeatDispatcher sender={self.sender!r} pending={self._queue.qsize()}>"
