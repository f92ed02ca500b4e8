"""Celery wiring for broadcast delivery.

Workers pick up ``run_broadcast_worker`` one job at a time; beat drives the
stale-claim sweep and the monthly reminder.
"""
from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from broadcasts.config import MONTHLY_REMINDER_HOUR, REDIS_URL, WORKER_MAX_SECONDS

BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", BROKER_URL)

BEAT_SCHEDULE = {
    "sweep-stale-processing": {
        "task": "broadcasts.tasks.sweep_stale_processing",
        "schedule": crontab(minute="*/5"),
    },
    "monthly-reminder": {
        "task": "broadcasts.tasks.schedule_monthly_reminder",
        "schedule": crontab(day_of_month="1", hour=MONTHLY_REMINDER_HOUR, minute=0),
    },
}

celery_app = Celery("constellation_broadcasts", broker=BROKER_URL, backend=RESULT_BACKEND)
celery_app.conf.update(
    imports=("broadcasts.tasks",),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=os.getenv("CELERY_TIMEZONE", "UTC"),
    enable_utc=True,
    # A worker run holds the prefetch slot for minutes; don't hoard queued jobs.
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_soft_time_limit=int(WORKER_MAX_SECONDS) + 30,
    task_time_limit=int(WORKER_MAX_SECONDS) + 60,
    beat_schedule=BEAT_SCHEDULE,
)
