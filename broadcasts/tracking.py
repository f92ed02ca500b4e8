from __future__ import annotations

import logging
from typing import Callable, Tuple

from .models import InvalidBroadcast, now_ms
from .store import BroadcastStore

LOGGER = logging.getLogger(__name__)


def parse_notification_id(notif_id: str) -> Tuple[str, int]:
    """Split a ``<broadcastId>_<fid>`` tracking token."""
    parts = str(notif_id or "").split("_")
    if len(parts) < 2 or not parts[0]:
        raise InvalidBroadcast("Invalid notification ID format")
    try:
        fid = int(parts[1])
    except ValueError:
        raise InvalidBroadcast("Invalid notification ID format") from None
    return parts[0], fid


class ClickTracker:
    """Attributes notification opens back to a broadcast.

    Every call bumps the ``clicks`` counter, so it counts click events; the
    click map only keeps the latest timestamp per FID.
    """

    def __init__(self, store: BroadcastStore, *, clock: Callable[[], int] = now_ms) -> None:
        self.store = store
        self.clock = clock

    def record_click(self, broadcast_id: str, fid: int) -> int:
        clicked_at = self.clock()
        self.store.record_click(broadcast_id, fid, clicked_at)
        LOGGER.info("Tracked click for FID %s on broadcast %s", fid, broadcast_id)
        return clicked_at
