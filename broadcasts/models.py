from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .config import PERMANENT_STATUS_CODES


class InvalidBroadcast(ValueError):
    """Raised when a broadcast request fails validation."""


class BroadcastNotFound(LookupError):
    """Raised when no stats record exists for a broadcast id."""


class CorruptRecord(ValueError):
    """Raised when a stored record cannot be read back into its type."""


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(value: int) -> str:
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JobState(str, Enum):
    CREATED = "created"
    DRAINING = "draining"
    COMPLETED = "completed"


@dataclass(slots=True)
class BroadcastMessage:
    """Notification payload shared by every recipient of a broadcast."""

    title: str
    body: str
    target_url: str

    @classmethod
    def from_payload(cls, payload: Any) -> "BroadcastMessage":
        if not isinstance(payload, Mapping):
            raise InvalidBroadcast("Missing required message fields")
        fields = {}
        for key in ("title", "body", "targetUrl"):
            value = payload.get(key)
            if not isinstance(value, str) or not value.strip():
                raise InvalidBroadcast("Missing required message fields")
            fields[key] = value
        return cls(title=fields["title"], body=fields["body"], target_url=fields["targetUrl"])

    @classmethod
    def from_json(cls, raw: str) -> "BroadcastMessage":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptRecord(f"Broadcast message is not valid JSON: {exc}") from exc
        try:
            return cls.from_payload(data)
        except InvalidBroadcast as exc:
            raise CorruptRecord(str(exc)) from exc

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "body": self.body, "targetUrl": self.target_url}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def tracking_url(self, broadcast_id: str, fid: int) -> str:
        separator = "&" if "?" in self.target_url else "?"
        return f"{self.target_url}{separator}notif={broadcast_id}_{fid}"


def _read_int(raw: Mapping[str, Any], key: str, default: Optional[int] = 0) -> Optional[int]:
    value = raw.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise CorruptRecord(f"Stats field {key!r} is not an integer: {value!r}") from exc


@dataclass(slots=True)
class BroadcastStats:
    """Counters and timing for one broadcast, as stored in its stats hash."""

    total: int = 0
    sent: int = 0
    failed: int = 0
    pending: int = 0
    processing: int = 0
    clicks: int = 0
    start_time: int = 0
    end_time: Optional[int] = None
    duration: Optional[int] = None
    state: Optional[JobState] = None

    @classmethod
    def from_hash(cls, raw: Mapping[str, Any]) -> "BroadcastStats":
        state_raw = raw.get("state")
        try:
            state = JobState(state_raw) if state_raw else None
        except ValueError as exc:
            raise CorruptRecord(f"Unknown broadcast state: {state_raw!r}") from exc
        stats = cls(
            total=_read_int(raw, "total"),
            sent=_read_int(raw, "sent"),
            failed=_read_int(raw, "failed"),
            pending=_read_int(raw, "pending"),
            processing=_read_int(raw, "processing"),
            clicks=_read_int(raw, "clicks"),
            start_time=_read_int(raw, "startTime"),
            end_time=_read_int(raw, "endTime", None),
            duration=_read_int(raw, "duration", None),
            state=state,
        )
        for name in ("total", "sent", "failed", "pending", "processing", "clicks"):
            if getattr(stats, name) < 0:
                raise CorruptRecord(f"Stats field {name!r} is negative")
        return stats

    def to_hash(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "pending": self.pending,
            "processing": self.processing,
            "clicks": self.clicks,
            "startTime": self.start_time,
        }
        if self.end_time is not None:
            data["endTime"] = self.end_time
        if self.duration is not None:
            data["duration"] = self.duration
        if self.state is not None:
            data["state"] = self.state.value
        return data

    @property
    def is_complete(self) -> bool:
        return self.pending == 0 and self.processing == 0

    @property
    def attempted(self) -> int:
        return self.sent + self.failed

    def resolved_state(self) -> JobState:
        """Lifecycle state, reconciled against the counters.

        The counters win whenever they disagree with the stored field, so
        records written before the field existed still read correctly.
        """
        if self.is_complete:
            return JobState.COMPLETED
        if self.state is JobState.DRAINING or self.attempted or self.processing:
            return JobState.DRAINING
        return JobState.CREATED

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_hash()
        data.setdefault("endTime", None)
        data.setdefault("duration", None)
        data["state"] = self.resolved_state().value
        return data


@dataclass(slots=True)
class DeliveryResult:
    """Outcome of sending one notification, possibly after several attempts."""

    ok: bool
    error: Optional[str] = None
    status_code: Optional[int] = None
    attempts: int = 1

    @classmethod
    def success(cls, status_code: Optional[int] = None) -> "DeliveryResult":
        return cls(ok=True, status_code=status_code)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None) -> "DeliveryResult":
        return cls(ok=False, error=error or "Unknown error", status_code=status_code)

    @property
    def permanent(self) -> bool:
        return not self.ok and self.status_code in PERMANENT_STATUS_CODES


@dataclass(slots=True)
class FailedRecipient:
    fid: int
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"fid": self.fid, "error": self.error}


@dataclass(slots=True)
class ClickRecord:
    fid: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"fid": self.fid, "timestamp": self.timestamp, "date": iso_from_ms(self.timestamp)}
