"""Delivery worker that drains one broadcast's pending queue."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis

from .channels import NotificationTransport, adaptive_delay, send_with_retry
from .config import WorkerSettings
from .models import BroadcastMessage, BroadcastNotFound, BroadcastStats, DeliveryResult, JobState
from .service import BroadcastRegistry

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRun:
    """Summary of one worker invocation."""

    broadcast_id: str
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    requeued: int = 0
    completed: bool = False
    cancelled: bool = False
    stats: Optional[BroadcastStats] = None

    def to_dict(self) -> dict:
        return {
            "broadcastId": self.broadcast_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "requeued": self.requeued,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "stats": self.stats.to_dict() if self.stats else None,
        }


class DeliveryWorker:
    """Sequentially delivers a broadcast to every pending recipient.

    One invocation handles one broadcast until its pending queue is empty, the
    cancellation token is set, the deadline passes, or the iteration budget
    runs out. Re-invoking on the same broadcast simply resumes draining. The
    job is only completed once both pending and processing are empty.
    """

    def __init__(
        self,
        registry: BroadcastRegistry,
        transport: NotificationTransport,
        settings: Optional[WorkerSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.store = registry.store
        self.transport = transport
        self.settings = settings or WorkerSettings()
        self.sleep = sleep
        self.monotonic = monotonic

    @property
    def clock(self) -> Callable[[], int]:
        return self.registry.clock

    def run(
        self,
        broadcast_id: str,
        *,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        max_iterations: Optional[int] = None,
    ) -> WorkerRun:
        stats = self.registry.require_status(broadcast_id)
        message = self.registry.get_message(broadcast_id)
        if message is None:
            raise BroadcastNotFound(f"Broadcast {broadcast_id} message not found")

        outcome = WorkerRun(broadcast_id=broadcast_id)
        if not self.registry.is_active(broadcast_id):
            LOGGER.info("Broadcast %s is not active; nothing to do", broadcast_id)
            outcome.completed = stats.is_complete
            outcome.stats = stats
            return outcome

        stale_ms = int(self.settings.stale_after_seconds * 1000)
        outcome.requeued = self.registry.requeue_stale(broadcast_id, stale_ms)

        budget = max_iterations if max_iterations is not None else stats.total
        LOGGER.info("Worker started for broadcast %s (budget %d)", broadcast_id, budget)

        consecutive_errors = 0
        drained = False
        for _ in range(budget):
            if cancel is not None and cancel.is_set():
                outcome.cancelled = True
                break
            if deadline is not None and self.monotonic() >= deadline:
                LOGGER.warning("Worker for broadcast %s hit its deadline; stopping", broadcast_id)
                outcome.cancelled = True
                break

            fid = self.store.claim_next(broadcast_id, self.clock())
            if fid is None:
                drained = True
                break
            if outcome.processed == 0:
                self.store.set_state(broadcast_id, JobState.DRAINING)
            outcome.processed += 1

            result = self._deliver(broadcast_id, fid, message)

            if not self.store.release(broadcast_id, fid):
                # Swept back to pending while we were sending; its next claim records the outcome.
                continue

            if result.ok:
                self.store.mark_success(broadcast_id, fid)
                outcome.succeeded += 1
                consecutive_errors = 0
            else:
                self.store.mark_failed(broadcast_id, fid, result.error or "Unknown error")
                outcome.failed += 1
                consecutive_errors += 1

            if outcome.processed % self.settings.progress_log_every == 0:
                self._log_progress(broadcast_id)

            self.sleep(adaptive_delay(consecutive_errors, self.settings.base_delay_seconds, self.settings.max_backoff_exponent))
        else:
            drained = self.store.pending_count(broadcast_id) == 0

        if drained:
            in_flight = self.store.processing_count(broadcast_id)
            if in_flight:
                # Another (possibly crashed) worker still holds claims; the sweep only visits active jobs.
                LOGGER.info("Broadcast %s drained with %d FIDs still processing", broadcast_id, in_flight)
            else:
                self._complete(broadcast_id)
                outcome.completed = True

        outcome.stats = self.registry.get_status(broadcast_id)
        LOGGER.info(
            "Worker finished for broadcast %s: %d processed, %d sent, %d failed%s",
            broadcast_id,
            outcome.processed,
            outcome.succeeded,
            outcome.failed,
            " (stopped early)" if outcome.cancelled else "",
        )
        return outcome

    def _deliver(self, broadcast_id: str, fid: int, message: BroadcastMessage) -> DeliveryResult:
        try:
            return send_with_retry(
                self.transport,
                fid,
                message.title,
                message.body,
                message.tracking_url(broadcast_id, fid),
                max_attempts=self.settings.max_attempts,
                backoff_base=self.settings.backoff_seconds,
                sleep=self.sleep,
            )
        except redis.RedisError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Error processing FID %s of broadcast %s", fid, broadcast_id)
            return DeliveryResult.failure(str(exc) or exc.__class__.__name__)

    def _complete(self, broadcast_id: str) -> None:
        stats = self.registry.get_status(broadcast_id)
        if stats is None:
            return
        end_time = self.clock()
        self.store.complete(broadcast_id, end_time, stats.start_time)
        LOGGER.info("Broadcast %s completed in %dms", broadcast_id, end_time - stats.start_time)

    def _log_progress(self, broadcast_id: str) -> None:
        stats = self.registry.get_status(broadcast_id)
        if stats:
            LOGGER.info("Progress for %s: %d/%d sent, %d failed", broadcast_id, stats.sent, stats.total, stats.failed)
