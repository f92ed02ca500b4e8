from __future__ import annotations

import logging
import time
from typing import Dict, Optional

from celery import shared_task

from .config import MONTHLY_REMINDER_MESSAGE, WORKER_MAX_SECONDS
from .runtime import BroadcastServices, build_services

LOGGER = logging.getLogger(__name__)

_services: Optional[BroadcastServices] = None


def get_services() -> BroadcastServices:
    global _services
    if _services is None:
        _services = build_services()
    return _services


@shared_task(name="broadcasts.tasks.run_broadcast_worker")
def run_broadcast_worker(broadcast_id: str) -> Dict:
    services = get_services()
    deadline = time.monotonic() + WORKER_MAX_SECONDS
    run = services.worker.run(broadcast_id, deadline=deadline)
    if not run.completed and services.registry.is_active(broadcast_id):
        # With nothing pending, wait for in-flight claims to go stale first.
        countdown = 0 if services.store.pending_count(broadcast_id) else services.worker.settings.stale_after_seconds
        LOGGER.info("Re-queueing worker for broadcast %s in %ss", broadcast_id, countdown)
        run_broadcast_worker.apply_async((broadcast_id,), countdown=countdown)
    return run.to_dict()


@shared_task(name="broadcasts.tasks.sweep_stale_processing")
def sweep_stale_processing() -> int:
    services = get_services()
    stale_ms = int(services.worker.settings.stale_after_seconds * 1000)
    requeued = 0
    for broadcast_id in services.store.active_ids():
        requeued += services.registry.requeue_stale(broadcast_id, stale_ms)
    if requeued:
        LOGGER.info("Swept %d stale processing FIDs back to pending", requeued)
    return requeued


@shared_task(name="broadcasts.tasks.schedule_monthly_reminder")
def schedule_monthly_reminder() -> Optional[str]:
    services = get_services()
    fids = services.directory.all_fids()
    if not fids:
        LOGGER.info("No users to send monthly reminders to")
        return None
    broadcast_id = services.registry.create(fids, MONTHLY_REMINDER_MESSAGE)
    run_broadcast_worker.delay(broadcast_id)
    LOGGER.info("Monthly reminder broadcast %s queued for %d users", broadcast_id, len(fids))
    return broadcast_id
