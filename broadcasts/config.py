"""Shared configuration defaults for the broadcast system."""
from __future__ import annotations

import os
from dataclasses import dataclass

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

NEYNAR_API_KEY = os.getenv("NEYNAR_API_KEY", "")
NEYNAR_API_BASE = os.getenv("NEYNAR_API_BASE", "https://api.neynar.com/v2")

ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN", "")
APP_URL = os.getenv("APP_URL", "https://farcaster-constellations-w425.vercel.app")

MESSAGE_TTL_DAYS = int(os.getenv("MESSAGE_TTL_DAYS", "180"))
MESSAGE_TTL_SECONDS = MESSAGE_TTL_DAYS * 24 * 60 * 60

# Length limits enforced by the Farcaster clients, not by us.
TITLE_MAX_CHARS = 32
BODY_MAX_CHARS = 128

HISTORY_DEFAULT_LIMIT = 50

BROADCAST_RATE_PER_SECOND = float(os.getenv("BROADCAST_RATE_PER_SECOND", "4"))
DELIVERY_MAX_ATTEMPTS = int(os.getenv("DELIVERY_MAX_ATTEMPTS", "3"))
DELIVERY_TIMEOUT_SECONDS = float(os.getenv("DELIVERY_TIMEOUT_SECONDS", "10"))
DELIVERY_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_EXPONENT = 4

WORKER_MAX_SECONDS = float(os.getenv("WORKER_MAX_SECONDS", "280"))
STALE_PROCESSING_SECONDS = float(os.getenv("STALE_PROCESSING_SECONDS", "120"))
PROGRESS_LOG_EVERY = 10

PERMANENT_STATUS_CODES = frozenset({400, 401, 403})

MONTHLY_REMINDER_HOUR = int(os.getenv("MONTHLY_REMINDER_HOUR", "15"))
MONTHLY_REMINDER_MESSAGE = {
    "title": "Your New Constellation is Ready!",
    "body": "Create your updated social galaxy map and mint a new NFT!",
    "targetUrl": APP_URL,
}


@dataclass(slots=True)
class WorkerSettings:
    """Pacing and retry knobs for one delivery worker."""

    rate_per_second: float = BROADCAST_RATE_PER_SECOND
    max_attempts: int = DELIVERY_MAX_ATTEMPTS
    backoff_seconds: float = DELIVERY_BACKOFF_SECONDS
    max_backoff_exponent: int = MAX_BACKOFF_EXPONENT
    stale_after_seconds: float = STALE_PROCESSING_SECONDS
    progress_log_every: int = PROGRESS_LOG_EVERY

    @property
    def base_delay_seconds(self) -> float:
        if self.rate_per_second <= 0:
            return 0.0
        return 1.0 / self.rate_per_second
