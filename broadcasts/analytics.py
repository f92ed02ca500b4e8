from __future__ import annotations

import csv
import io
import logging
import math
from typing import Any, Callable, Dict, Iterable, List

from .config import HISTORY_DEFAULT_LIMIT
from .models import BroadcastNotFound, BroadcastStats, iso_from_ms, now_ms
from .store import BroadcastStore

LOGGER = logging.getLogger(__name__)

EXPORT_KINDS = ("success", "failed", "clicks")

# Checked in order; the first matching category wins.
ERROR_CATEGORIES = [
    ("Rate Limit", ("429", "rate limit")),
    ("Timeout", ("timeout", "TIMEOUT")),
    ("Invalid Recipient", ("400", "invalid")),
    ("User Blocked", ("403", "blocked")),
    ("Server Error", ("500", "502", "503")),
]

MINUTE_MS = 60 * 1000


def categorize_error(error: str) -> str:
    for category, keywords in ERROR_CATEGORIES:
        if any(keyword in error for keyword in keywords):
            return category
    return "Other"


def error_breakdown(errors: Iterable[str]) -> Dict[str, int]:
    breakdown: Dict[str, int] = {}
    for error in errors:
        category = categorize_error(error or "")
        breakdown[category] = breakdown.get(category, 0) + 1
    return breakdown


def _rate(numerator: int, denominator: int) -> float:
    return (numerator / denominator) * 100 if denominator > 0 else 0


def progress_percent(stats: BroadcastStats) -> float:
    if stats.total <= 0:
        return 0
    return round(stats.attempted / stats.total * 100, 1)


def eta_seconds(stats: BroadcastStats, now: int) -> int:
    if stats.pending <= 0 or stats.sent <= 0:
        return 0
    elapsed = max(0, now - stats.start_time)
    avg_time_per_fid = elapsed / stats.attempted
    return math.ceil(avg_time_per_fid * stats.pending / 1000)


def engagement_funnel(stats: BroadcastStats) -> Dict[str, Any]:
    delivered = stats.sent
    return {
        "sent": stats.total,
        "delivered": delivered,
        "clicked": stats.clicks,
        "deliveryRate": _rate(delivered, stats.total),
        "clickRate": _rate(stats.clicks, delivered),
        "ctr": _rate(stats.clicks, stats.total),
    }


def click_timing(start_time: int, click_times: Iterable[int]) -> Dict[str, Any]:
    buckets = {"under1Min": 0, "between1And5Min": 0, "between5And30Min": 0, "over30Min": 0}
    total_time = 0
    count = 0
    for clicked_at in click_times:
        diff = clicked_at - start_time
        total_time += diff
        count += 1
        if diff < MINUTE_MS:
            buckets["under1Min"] += 1
        elif diff < 5 * MINUTE_MS:
            buckets["between1And5Min"] += 1
        elif diff < 30 * MINUTE_MS:
            buckets["between5And30Min"] += 1
        else:
            buckets["over30Min"] += 1
    return {"avgTimeToClick": total_time / count if count else 0, **buckets}


class BroadcastAnalytics:
    """Read-side views over a broadcast's recorded state."""

    def __init__(self, store: BroadcastStore, *, clock: Callable[[], int] = now_ms) -> None:
        self.store = store
        self.clock = clock

    def _stats(self, broadcast_id: str) -> BroadcastStats:
        stats = self.store.load_stats(broadcast_id)
        if stats is None:
            raise BroadcastNotFound(f"Broadcast {broadcast_id} not found")
        return stats

    def get_status(self, broadcast_id: str) -> Dict[str, Any]:
        stats = self._stats(broadcast_id)
        return {
            "broadcastId": broadcast_id,
            "stats": stats.to_dict(),
            "progress": progress_percent(stats),
            "eta": eta_seconds(stats, self.clock()),
            "isComplete": stats.is_complete,
            "state": stats.resolved_state().value,
        }

    def get_analytics(self, broadcast_id: str) -> Dict[str, Any]:
        stats = self._stats(broadcast_id)
        failed = self.store.failed_recipients(broadcast_id)
        clicks = self.store.clicks(broadcast_id)
        return {
            "broadcastId": broadcast_id,
            "stats": {
                "total": stats.total,
                "sent": stats.sent,
                "failed": stats.failed,
                "clicks": stats.clicks,
                "startTime": stats.start_time,
                "endTime": stats.end_time,
                "duration": stats.duration,
            },
            "funnel": engagement_funnel(stats),
            "errorBreakdown": error_breakdown(item.error for item in failed),
            "clickTiming": click_timing(stats.start_time, (click.timestamp for click in clicks)),
        }

    def get_details(self, broadcast_id: str) -> Dict[str, Any]:
        status = self.get_status(broadcast_id)
        return {
            "broadcastId": broadcast_id,
            "status": status,
            "analytics": self.get_analytics(broadcast_id),
            "succeeded": self.store.succeeded_fids(broadcast_id),
            "failed": [item.to_dict() for item in self.store.failed_recipients(broadcast_id)],
            "clicks": [click.to_dict() for click in self.store.clicks(broadcast_id)],
        }

    def get_history(self, limit: int = HISTORY_DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        entries = []
        for broadcast_id in self.store.history(limit):
            stats = self.store.load_stats(broadcast_id)
            try:
                date = iso_from_ms(int(broadcast_id))
            except (TypeError, ValueError, OverflowError):
                date = None
            entries.append({"id": broadcast_id, "stats": stats.to_dict() if stats else None, "date": date})
        return entries

    def export_csv(self, broadcast_id: str, kind: str) -> str:
        if kind not in EXPORT_KINDS:
            raise ValueError(f"Unknown export type: {kind!r}")

        buffer = io.StringIO()
        if kind == "success":
            buffer.write("FID,Status\n")
            writer = csv.writer(buffer, lineterminator="\n")
            for fid in self.store.succeeded_fids(broadcast_id):
                writer.writerow([fid, "Success"])
        elif kind == "failed":
            buffer.write("FID,Error\n")
            # Non-numeric fields are quoted, so every error string is wrapped in quotes.
            writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_NONNUMERIC)
            for item in self.store.failed_recipients(broadcast_id):
                writer.writerow([item.fid, item.error])
        else:
            stats = self.store.load_stats(broadcast_id)
            start_time = stats.start_time if stats else 0
            buffer.write("FID,Clicked At,Time to Click (seconds)\n")
            writer = csv.writer(buffer, lineterminator="\n")
            for click in self.store.clicks(broadcast_id):
                writer.writerow([click.fid, iso_from_ms(click.timestamp), (click.timestamp - start_time) // 1000])
        return buffer.getvalue()
