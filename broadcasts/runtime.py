"""Wires the broadcast components around one Redis client and transport."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import redis

from .analytics import BroadcastAnalytics
from .channels import NeynarTransport, NotificationTransport
from .collectors import RecipientDirectory
from .config import WorkerSettings
from .models import now_ms
from .service import BroadcastRegistry
from .store import BroadcastStore, create_redis_client
from .tracking import ClickTracker
from .worker import DeliveryWorker


@dataclass(slots=True)
class BroadcastServices:
    store: BroadcastStore
    registry: BroadcastRegistry
    worker: DeliveryWorker
    analytics: BroadcastAnalytics
    tracker: ClickTracker
    directory: RecipientDirectory
    transport: NotificationTransport


def build_services(
    client: Optional[redis.Redis] = None,
    transport: Optional[NotificationTransport] = None,
    *,
    settings: Optional[WorkerSettings] = None,
    clock: Callable[[], int] = now_ms,
    sleep: Optional[Callable[[float], None]] = None,
) -> BroadcastServices:
    client = client if client is not None else create_redis_client()
    transport = transport or NeynarTransport()
    store = BroadcastStore(client)
    registry = BroadcastRegistry(store, clock=clock)
    worker_kwargs = {"sleep": sleep} if sleep is not None else {}
    return BroadcastServices(
        store=store,
        registry=registry,
        worker=DeliveryWorker(registry, transport, settings, **worker_kwargs),
        analytics=BroadcastAnalytics(store, clock=clock),
        tracker=ClickTracker(store, clock=clock),
        directory=RecipientDirectory(client),
        transport=transport,
    )
