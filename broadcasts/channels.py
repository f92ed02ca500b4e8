from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, Optional, Protocol

import redis
import requests

from .config import (
    DELIVERY_BACKOFF_SECONDS,
    DELIVERY_MAX_ATTEMPTS,
    DELIVERY_TIMEOUT_SECONDS,
    MAX_BACKOFF_EXPONENT,
    NEYNAR_API_BASE,
    NEYNAR_API_KEY,
)
from .models import DeliveryResult

LOGGER = logging.getLogger(__name__)


class NotificationTransport(Protocol):
    def send(self, fid: int, title: str, body: str, target_url: str) -> DeliveryResult:
        ...


class NeynarTransport:
    """Send Farcaster mini-app notifications through Neynar's managed API."""

    def __init__(
        self,
        api_key: str = NEYNAR_API_KEY,
        *,
        base_url: str = NEYNAR_API_BASE,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, fid: int, title: str, body: str, target_url: str) -> DeliveryResult:
        if not self.api_key:
            LOGGER.warning("NEYNAR_API_KEY not configured; notification to FID %s suppressed", fid)
            return DeliveryResult.failure("401 Unauthorized: NEYNAR_API_KEY not configured", status_code=401)

        payload = {
            "uuid": str(uuid.uuid4()),
            "sender_gid": 0,
            "recipient_fids": [fid],
            "notification": {"title": title, "body": body, "target_url": target_url},
        }
        headers = {"api_key": self.api_key, "Content-Type": "application/json"}

        try:
            resp = self.session.post(
                f"{self.base_url}/farcaster/frame/notifications",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            return DeliveryResult.failure(f"TIMEOUT: no response within {self.timeout:g}s ({exc})")
        except requests.RequestException as exc:
            return DeliveryResult.failure(f"Network error: {exc}")

        if resp.status_code >= 400:
            detail = (resp.text or "")[:200]
            LOGGER.debug("Neynar responded with %s for FID %s: %s", resp.status_code, fid, detail)
            return DeliveryResult.failure(f"{resp.status_code} {resp.reason}: {detail}", status_code=resp.status_code)

        return DeliveryResult.success(status_code=resp.status_code)


def backoff_seconds(attempt: int, base: float = DELIVERY_BACKOFF_SECONDS) -> float:
    """Delay after the given (1-based) failed attempt: 1s, 2s, 4s, ..."""
    return base * (1 << max(0, attempt - 1))


def send_with_retry(
    transport: NotificationTransport,
    fid: int,
    title: str,
    body: str,
    target_url: str,
    *,
    max_attempts: int = DELIVERY_MAX_ATTEMPTS,
    backoff_base: float = DELIVERY_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> DeliveryResult:
    """Deliver one notification, retrying transient failures.

    Client errors (400/401/403) are returned after the first attempt since a
    resend cannot succeed. Anything else, including an exception raised by the
    transport, is retried up to ``max_attempts`` times with exponential backoff
    between attempts.
    """
    result = DeliveryResult.failure("No delivery attempted")
    for attempt in range(1, max(1, max_attempts) + 1):
        try:
            result = transport.send(fid, title, body, target_url)
        except redis.RedisError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            # Unexpected transport errors are treated like network failures.
            result = DeliveryResult.failure(str(exc) or exc.__class__.__name__)
        result.attempts = attempt
        if result.ok:
            return result
        if result.permanent:
            LOGGER.info("Permanent failure for FID %s: %s", fid, result.error)
            return result
        if attempt < max_attempts:
            delay = backoff_seconds(attempt, backoff_base)
            LOGGER.warning(
                "Attempt %d/%d for FID %s failed (%s); retrying in %.1fs",
                attempt,
                max_attempts,
                fid,
                result.error,
                delay,
            )
            sleep(delay)
    return result


def adaptive_delay(consecutive_errors: int, base_delay: float, max_exponent: int = MAX_BACKOFF_EXPONENT) -> float:
    """Pause between recipients, doubling with each consecutive failure."""
    return base_delay * (1 << min(max(0, consecutive_errors), max_exponent))
