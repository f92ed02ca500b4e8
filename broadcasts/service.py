from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional

from .config import BODY_MAX_CHARS, HISTORY_DEFAULT_LIMIT, MESSAGE_TTL_SECONDS, TITLE_MAX_CHARS
from .models import (
    BroadcastMessage,
    BroadcastNotFound,
    BroadcastStats,
    InvalidBroadcast,
    JobState,
    now_ms,
)
from .store import BroadcastStore

LOGGER = logging.getLogger(__name__)

MAX_ID_PROBES = 1000


def normalize_recipients(recipients: Any) -> List[int]:
    """Validate recipient FIDs, dropping duplicates but keeping first-seen order."""
    if isinstance(recipients, (str, bytes)) or not isinstance(recipients, Iterable):
        raise InvalidBroadcast("Recipients must be a list of FIDs")
    unique: List[int] = []
    seen = set()
    for value in recipients:
        if isinstance(value, bool):
            raise InvalidBroadcast(f"Invalid FID: {value!r}")
        try:
            fid = int(value)
        except (TypeError, ValueError):
            raise InvalidBroadcast(f"Invalid FID: {value!r}") from None
        if fid <= 0 or str(fid) != str(value).strip():
            raise InvalidBroadcast(f"Invalid FID: {value!r}")
        if fid in seen:
            continue
        seen.add(fid)
        unique.append(fid)
    if not unique:
        raise InvalidBroadcast("No recipients given")
    return unique


class BroadcastRegistry:
    """Creates broadcast jobs and owns their lifecycle records."""

    def __init__(
        self,
        store: BroadcastStore,
        *,
        clock: Callable[[], int] = now_ms,
        message_ttl_seconds: int = MESSAGE_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.message_ttl_seconds = message_ttl_seconds

    def create(self, recipients: Any, message: Any) -> str:
        if not isinstance(message, BroadcastMessage):
            message = BroadcastMessage.from_payload(message)
        fids = normalize_recipients(recipients)

        if len(message.title) > TITLE_MAX_CHARS:
            LOGGER.warning("Broadcast title is %d chars; clients may truncate past %d", len(message.title), TITLE_MAX_CHARS)
        if len(message.body) > BODY_MAX_CHARS:
            LOGGER.warning("Broadcast body is %d chars; clients may truncate past %d", len(message.body), BODY_MAX_CHARS)

        started = self.clock()
        broadcast_id = self._claim_id(started, message)
        self.store.enqueue(broadcast_id, fids)
        self.store.init_stats(
            broadcast_id,
            BroadcastStats(
                total=len(fids),
                pending=len(fids),
                start_time=started,
                state=JobState.CREATED,
            ),
        )
        self.store.register(broadcast_id)
        LOGGER.info("Broadcast %s enqueued with %d FIDs", broadcast_id, len(fids))
        return broadcast_id

    def _claim_id(self, started: int, message: BroadcastMessage) -> str:
        candidate = started
        for _ in range(MAX_ID_PROBES):
            broadcast_id = str(candidate)
            if self.store.claim_message(broadcast_id, message, self.message_ttl_seconds):
                return broadcast_id
            candidate += 1
        raise RuntimeError(f"Could not allocate a broadcast id near {started}")

    def get_status(self, broadcast_id: str) -> Optional[BroadcastStats]:
        return self.store.load_stats(broadcast_id)

    def require_status(self, broadcast_id: str) -> BroadcastStats:
        stats = self.store.load_stats(broadcast_id)
        if stats is None:
            raise BroadcastNotFound(f"Broadcast {broadcast_id} not found")
        return stats

    def get_message(self, broadcast_id: str) -> Optional[BroadcastMessage]:
        return self.store.load_message(broadcast_id)

    def is_active(self, broadcast_id: str) -> bool:
        return self.store.is_active(broadcast_id)

    def get_history(self, limit: int = HISTORY_DEFAULT_LIMIT) -> List[str]:
        return self.store.history(limit)

    def retry_failed(self, broadcast_id: str) -> int:
        """Put every failed FID back on the pending queue. Does not start a worker."""
        self.require_status(broadcast_id)
        fids = self.store.requeue_failed(broadcast_id)
        if fids:
            LOGGER.info("Re-enqueued %d failed FIDs for broadcast %s", len(fids), broadcast_id)
        return len(fids)

    def requeue_stale(self, broadcast_id: str, older_than_ms: int) -> int:
        cutoff = self.clock() - older_than_ms
        fids = self.store.requeue_stale(broadcast_id, cutoff)
        if fids:
            LOGGER.warning("Requeued %d stale processing FIDs for broadcast %s: %s", len(fids), broadcast_id, fids)
        return len(fids)
