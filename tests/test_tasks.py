from types import SimpleNamespace

from broadcasts import tasks
from broadcasts.config import MONTHLY_REMINDER_MESSAGE


def _patch(monkeypatch, services):
    queued = []

    def apply_async(args, countdown=0):
        queued.append((args[0], countdown))

    monkeypatch.setattr(tasks, "get_services", lambda: services)
    monkeypatch.setattr(tasks, "run_broadcast_worker", SimpleNamespace(delay=queued.append, apply_async=apply_async))
    return queued


def test_monthly_reminder_broadcasts_to_known_users(monkeypatch, services, fake_redis):
    fake_redis.hset("constellation:5", mapping={"fid": "5", "username": "alice"})
    fake_redis.hset("constellation:6", mapping={"fid": "6"})
    fake_redis.hset("constellation:7", mapping={"username": "nofid"})
    queued = _patch(monkeypatch, services)

    broadcast_id = tasks.schedule_monthly_reminder()

    assert queued == [broadcast_id]
    assert services.registry.get_status(broadcast_id).total == 2
    assert services.registry.get_message(broadcast_id).to_dict() == MONTHLY_REMINDER_MESSAGE


def test_monthly_reminder_skips_without_users(monkeypatch, services):
    queued = _patch(monkeypatch, services)

    assert tasks.schedule_monthly_reminder() is None
    assert queued == []
    assert services.registry.get_history(5) == []


def test_sweep_requeues_stale_entries_of_active_broadcasts(monkeypatch, services, clock):
    _patch(monkeypatch, services)
    broadcast_id = services.registry.create([1, 2], {"title": "T", "body": "B", "targetUrl": "https://x"})
    services.store.claim_next(broadcast_id, clock.now)
    clock.advance(10 * 60 * 1000)

    assert tasks.sweep_stale_processing() == 1

    stats = services.registry.get_status(broadcast_id)
    assert (stats.pending, stats.processing) == (2, 0)


def test_run_broadcast_worker_task(monkeypatch, services):
    task = tasks.run_broadcast_worker
    queued = _patch(monkeypatch, services)
    broadcast_id = services.registry.create([1, 2], {"title": "T", "body": "B", "targetUrl": "https://x"})

    result = task.run(broadcast_id)

    assert result["completed"] is True
    assert result["stats"]["sent"] == 2
    assert queued == []


def test_run_broadcast_worker_requeues_when_out_of_time(monkeypatch, services):
    task = tasks.run_broadcast_worker
    queued = _patch(monkeypatch, services)
    broadcast_id = services.registry.create([1, 2, 3], {"title": "T", "body": "B", "targetUrl": "https://x"})
    monkeypatch.setattr(tasks, "WORKER_MAX_SECONDS", 0)

    result = task.run(broadcast_id)

    assert result["completed"] is False
    assert result["cancelled"] is True
    assert queued == [(broadcast_id, 0)]


def test_run_broadcast_worker_requeues_partial_run(monkeypatch, services):
    task = tasks.run_broadcast_worker
    queued = _patch(monkeypatch, services)
    broadcast_id = services.registry.create([1, 2, 3], {"title": "T", "body": "B", "targetUrl": "https://x"})
    worker_run = services.worker.run
    monkeypatch.setattr(services.worker, "run", lambda bid, **kwargs: worker_run(bid, max_iterations=1, **kwargs))

    result = task.run(broadcast_id)

    assert result["completed"] is False
    assert result["cancelled"] is False
    assert result["stats"]["pending"] == 2
    assert queued == [(broadcast_id, 0)]


def test_run_broadcast_worker_waits_for_in_flight_claims(monkeypatch, services, clock):
    task = tasks.run_broadcast_worker
    queued = _patch(monkeypatch, services)
    broadcast_id = services.registry.create([1, 2], {"title": "T", "body": "B", "targetUrl": "https://x"})
    services.store.claim_next(broadcast_id, clock.now)

    result = task.run(broadcast_id)

    assert result["completed"] is False
    assert services.registry.is_active(broadcast_id)
    assert queued == [(broadcast_id, services.worker.settings.stale_after_seconds)]


def test_beat_schedule_targets_registered_tasks():
    from celery_app import BEAT_SCHEDULE, celery_app

    assert {entry["task"] for entry in BEAT_SCHEDULE.values()} == {
        tasks.sweep_stale_processing.name,
        tasks.schedule_monthly_reminder.name,
    }
    assert celery_app.conf.beat_schedule == BEAT_SCHEDULE
    assert celery_app.conf.worker_prefetch_multiplier == 1
