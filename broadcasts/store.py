"""Redis key layout and atomic primitives for broadcast state.

Every broadcast owns a handful of keys under ``broadcast:<id>:``. Counters in
the stats hash are only ever changed with HINCRBY so that several worker
processes can drain the same queue without read-modify-write races.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

import redis

from .config import REDIS_URL
from .models import BroadcastMessage, BroadcastStats, ClickRecord, FailedRecipient, JobState

LOGGER = logging.getLogger(__name__)

ACTIVE_KEY = "broadcast:active"
HISTORY_KEY = "broadcast:history"


def create_redis_client(url: str = REDIS_URL) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


def _key(broadcast_id: str, suffix: str) -> str:
    return f"broadcast:{broadcast_id}:{suffix}"


def _fid(value) -> int:
    return int(value)


class BroadcastStore:
    """Typed access to the broadcast keys of one Redis database."""

    def __init__(self, client: redis.Redis):
        self.client = client

    # ---------------------------------------------------------------- create
    def claim_message(self, broadcast_id: str, message: BroadcastMessage, ttl_seconds: int) -> bool:
        """Persist the message unless the id is already taken."""
        return bool(self.client.set(_key(broadcast_id, "message"), message.to_json(), ex=ttl_seconds, nx=True))

    def enqueue(self, broadcast_id: str, fids: Iterable[int]) -> int:
        values = [str(fid) for fid in fids]
        if not values:
            return 0
        return int(self.client.lpush(_key(broadcast_id, "pending"), *values))

    def init_stats(self, broadcast_id: str, stats: BroadcastStats) -> None:
        self.client.hset(_key(broadcast_id, "stats"), mapping=stats.to_hash())

    def register(self, broadcast_id: str) -> None:
        self.client.sadd(ACTIVE_KEY, broadcast_id)
        self.client.lpush(HISTORY_KEY, broadcast_id)

    # ----------------------------------------------------------------- reads
    def load_stats(self, broadcast_id: str) -> Optional[BroadcastStats]:
        raw = self.client.hgetall(_key(broadcast_id, "stats"))
        if not raw:
            return None
        return BroadcastStats.from_hash(raw)

    def load_message(self, broadcast_id: str) -> Optional[BroadcastMessage]:
        raw = self.client.get(_key(broadcast_id, "message"))
        if not raw:
            return None
        return BroadcastMessage.from_json(raw)

    def is_active(self, broadcast_id: str) -> bool:
        return bool(self.client.sismember(ACTIVE_KEY, broadcast_id))

    def active_ids(self) -> List[str]:
        return sorted(self.client.smembers(ACTIVE_KEY))

    def history(self, limit: int) -> List[str]:
        if limit <= 0:
            return []
        return list(self.client.lrange(HISTORY_KEY, 0, limit - 1))

    def pending_count(self, broadcast_id: str) -> int:
        return int(self.client.llen(_key(broadcast_id, "pending")))

    def pending_fids(self, broadcast_id: str) -> List[int]:
        return sorted(_fid(v) for v in self.client.lrange(_key(broadcast_id, "pending"), 0, -1))

    def processing_fids(self, broadcast_id: str) -> List[int]:
        return sorted(_fid(v) for v in self.client.zrangebyscore(_key(broadcast_id, "processing"), "-inf", "+inf"))

    def processing_count(self, broadcast_id: str) -> int:
        return int(self.client.zcard(_key(broadcast_id, "processing")))

    def succeeded_fids(self, broadcast_id: str) -> List[int]:
        return sorted(_fid(v) for v in self.client.smembers(_key(broadcast_id, "succeeded")))

    def failed_recipients(self, broadcast_id: str) -> List[FailedRecipient]:
        raw = self.client.hgetall(_key(broadcast_id, "failed"))
        return sorted(
            (FailedRecipient(fid=_fid(fid), error=error) for fid, error in raw.items()),
            key=lambda item: item.fid,
        )

    def clicks(self, broadcast_id: str) -> List[ClickRecord]:
        raw = self.client.hgetall(_key(broadcast_id, "clicks"))
        return sorted(
            (ClickRecord(fid=_fid(fid), timestamp=int(ts)) for fid, ts in raw.items()),
            key=lambda item: item.fid,
        )

    # ------------------------------------------------------------- draining
    def claim_next(self, broadcast_id: str, claimed_at: int) -> Optional[int]:
        raw = self.client.rpop(_key(broadcast_id, "pending"))
        if raw is None:
            return None
        fid = _fid(raw)
        self.client.zadd(_key(broadcast_id, "processing"), {str(fid): claimed_at})
        self._incr(broadcast_id, pending=-1, processing=1)
        return fid

    def release(self, broadcast_id: str, fid: int) -> bool:
        removed = self.client.zrem(_key(broadcast_id, "processing"), str(fid))
        if removed:
            self._incr(broadcast_id, processing=-1)
        else:
            # A sweep already moved it back to pending; the counter went with it.
            LOGGER.warning("FID %s of broadcast %s was no longer in processing", fid, broadcast_id)
        return bool(removed)

    def mark_success(self, broadcast_id: str, fid: int) -> None:
        self.client.sadd(_key(broadcast_id, "succeeded"), str(fid))
        self._incr(broadcast_id, sent=1)

    def mark_failed(self, broadcast_id: str, fid: int, error: str) -> None:
        self.client.hset(_key(broadcast_id, "failed"), str(fid), error)
        self._incr(broadcast_id, failed=1)

    def set_state(self, broadcast_id: str, state: JobState) -> None:
        self.client.hset(_key(broadcast_id, "stats"), "state", state.value)

    def complete(self, broadcast_id: str, end_time: int, start_time: int) -> None:
        self.client.hset(
            _key(broadcast_id, "stats"),
            mapping={
                "endTime": end_time,
                "duration": end_time - start_time,
                "state": JobState.COMPLETED.value,
            },
        )
        self.client.srem(ACTIVE_KEY, broadcast_id)

    def requeue_stale(self, broadcast_id: str, claimed_before: int) -> List[int]:
        """Move processing entries claimed before the cutoff back to pending."""
        processing_key = _key(broadcast_id, "processing")
        requeued: List[int] = []
        for raw in self.client.zrangebyscore(processing_key, "-inf", f"({claimed_before}"):
            # ZREM is the arbiter when a slow worker releases the same FID concurrently.
            if not self.client.zrem(processing_key, raw):
                continue
            self.client.lpush(_key(broadcast_id, "pending"), raw)
            self._incr(broadcast_id, pending=1, processing=-1)
            requeued.append(_fid(raw))
        return requeued

    # ----------------------------------------------------------------- retry
    def requeue_failed(self, broadcast_id: str) -> List[int]:
        failed_key = _key(broadcast_id, "failed")
        fids = [item.fid for item in self.failed_recipients(broadcast_id)]
        if not fids:
            return []
        self.client.delete(failed_key)
        self.client.hdel(_key(broadcast_id, "stats"), "endTime", "duration")
        self.enqueue(broadcast_id, fids)
        self._incr(broadcast_id, pending=len(fids), failed=-len(fids))
        self.client.sadd(ACTIVE_KEY, broadcast_id)
        self.set_state(broadcast_id, JobState.DRAINING)
        return fids

    # ---------------------------------------------------------------- clicks
    def record_click(self, broadcast_id: str, fid: int, clicked_at: int) -> None:
        self.client.hset(_key(broadcast_id, "clicks"), str(fid), clicked_at)
        self._incr(broadcast_id, clicks=1)

    # --------------------------------------------------------------- helpers
    def _incr(self, broadcast_id: str, **deltas: int) -> None:
        stats_key = _key(broadcast_id, "stats")
        for field, delta in deltas.items():
            if delta:
                self.client.hincrby(stats_key, field, delta)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            LOGGER.exception("Redis ping failed")
            return False


def scan_hashes(client: redis.Redis, pattern: str) -> Dict[str, Dict[str, str]]:
    """Return every hash whose key matches ``pattern``."""
    results: Dict[str, Dict[str, str]] = {}
    for key in client.scan_iter(match=pattern, count=500):
        record = client.hgetall(key)
        if record:
            results[key] = record
    return results
