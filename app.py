# app.py
from flask import Flask, request, jsonify
import hmac
import logging
import os
from functools import wraps
from typing import Any, Dict, Optional

from broadcasts.config import ADMIN_API_TOKEN, APP_URL, HISTORY_DEFAULT_LIMIT
from broadcasts.analytics import EXPORT_KINDS
from broadcasts.channels import send_with_retry
from broadcasts.models import BroadcastNotFound, InvalidBroadcast
from broadcasts.runtime import BroadcastServices, build_services
from broadcasts.service import normalize_recipients
from broadcasts.tracking import parse_notification_id

LOGGER = logging.getLogger(__name__)

app = Flask(__name__)
app.config.update(ADMIN_API_TOKEN=ADMIN_API_TOKEN)

DEBUG = os.getenv("FLASK_ENV") != "production"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

_services: Optional[BroadcastServices] = None


def get_broadcast_services() -> BroadcastServices:
    global _services
    if _services is None:
        _services = build_services()
    return _services


# ------------------------------- Helpers -------------------------------
def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def error_response(message: str, status: int):
    return jsonify({"error": message}), status


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        expected = app.config.get("ADMIN_API_TOKEN")
        if expected:
            supplied = request.headers.get("X-Admin-Token", "")
            auth = request.headers.get("Authorization", "")
            if not supplied and auth.startswith("Bearer "):
                supplied = auth[len("Bearer "):]
            if not hmac.compare_digest(supplied, expected):
                return error_response("Unauthorized", 401)
        return f(*args, **kwargs)
    return wrapper


def api_errors(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except InvalidBroadcast as exc:
            return error_response(str(exc), 400)
        except BroadcastNotFound as exc:
            return error_response(str(exc), 404)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unhandled error in %s", request.path)
            return error_response(str(exc), 500)
    return wrapper


def queue_worker_run(broadcast_id: str) -> None:
    from broadcasts.tasks import run_broadcast_worker

    run_broadcast_worker.delay(broadcast_id)


def parse_limit(raw: Optional[str], default: int = HISTORY_DEFAULT_LIMIT) -> int:
    try:
        limit = int(raw) if raw else default
    except ValueError:
        raise InvalidBroadcast(f"Invalid limit: {raw!r}") from None
    return max(0, limit)


@app.get("/healthz")
def healthz():
    ok = get_broadcast_services().store.ping()
    return {"ok": ok, "redis": ok}, 200 if ok else 503


# ------------------------------- Broadcast admin -------------------------------
@app.post("/api/admin/broadcast/start")
@admin_required
@api_errors
def broadcast_start():
    body = json_body()
    services = get_broadcast_services()
    recipients = body.get("recipients")
    if recipients is None:
        recipients = services.directory.all_fids()
        if not recipients:
            return error_response("No users found", 400)
    broadcast_id = services.registry.create(recipients, body.get("message"))
    stats = services.registry.get_status(broadcast_id)
    return jsonify({
        "success": True,
        "broadcastId": broadcast_id,
        "totalUsers": stats.total if stats else 0,
    })


@app.post("/api/admin/broadcast/worker")
@admin_required
@api_errors
def broadcast_worker():
    body = json_body()
    broadcast_id = str(body.get("broadcastId") or "")
    if not broadcast_id:
        return error_response("Missing broadcastId", 400)

    services = get_broadcast_services()
    services.registry.require_status(broadcast_id)
    if not services.registry.is_active(broadcast_id):
        return error_response("Broadcast not active", 400)

    if body.get("background"):
        queue_worker_run(broadcast_id)
        return jsonify({"success": True, "broadcastId": broadcast_id, "queued": True}), 202

    run = services.worker.run(broadcast_id)
    return jsonify({
        "success": True,
        "stats": run.stats.to_dict() if run.stats else None,
        "processed": run.processed,
        "completed": run.completed,
    })


@app.get("/api/admin/broadcast/status")
@admin_required
@api_errors
def broadcast_status():
    broadcast_id = request.args.get("id")
    if not broadcast_id:
        return error_response("Missing broadcast ID", 400)
    return jsonify(get_broadcast_services().analytics.get_status(broadcast_id))


@app.get("/api/admin/broadcast/history")
@admin_required
@api_errors
def broadcast_history():
    limit = parse_limit(request.args.get("limit"))
    return jsonify({"broadcasts": get_broadcast_services().analytics.get_history(limit)})


@app.get("/api/admin/broadcast/details")
@admin_required
@api_errors
def broadcast_details():
    broadcast_id = request.args.get("id")
    if not broadcast_id:
        return error_response("Missing broadcast ID", 400)

    analytics = get_broadcast_services().analytics
    export_kind = request.args.get("export")
    if request.args.get("action") == "export" and export_kind:
        if export_kind not in EXPORT_KINDS:
            return error_response(f"Unknown export type: {export_kind}", 400)
        csv_text = analytics.export_csv(broadcast_id, export_kind)
        return csv_text, 200, {
            "Content-Type": "text/csv",
            "Content-Disposition": f'attachment; filename="broadcast_{broadcast_id}_{export_kind}.csv"',
        }

    return jsonify(analytics.get_details(broadcast_id))


@app.post("/api/admin/broadcast/retry")
@admin_required
@api_errors
def broadcast_retry():
    broadcast_id = str(json_body().get("broadcastId") or "")
    if not broadcast_id:
        return error_response("Missing broadcastId", 400)
    retried = get_broadcast_services().registry.retry_failed(broadcast_id)
    return jsonify({"success": True, "retriedCount": retried})


@app.post("/api/admin/test-notification")
@admin_required
@api_errors
def test_notification():
    body = json_body()
    fid = normalize_recipients([body.get("fid")])[0]
    services = get_broadcast_services()
    result = send_with_retry(
        services.transport,
        fid,
        body.get("title") or "Test Notification",
        body.get("body") or "This is a test notification from Farcaster Constellations.",
        body.get("targetUrl") or APP_URL,
    )
    if not result.ok:
        return jsonify({"success": False, "error": result.error, "attempts": result.attempts}), 502
    return jsonify({"success": True, "fid": fid, "attempts": result.attempts})


# ------------------------------- Click tracking -------------------------------
@app.post("/api/track-notification-click")
@api_errors
def track_notification_click():
    body = json_body()
    notif_id = body.get("notifId")
    fid_raw = body.get("fid")
    if not notif_id or not fid_raw:
        return error_response("Missing parameters", 400)

    broadcast_id, _ = parse_notification_id(notif_id)
    fid = normalize_recipients([fid_raw])[0]
    get_broadcast_services().tracker.record_click(broadcast_id, fid)
    return jsonify({"success": True, "broadcastId": broadcast_id, "fid": fid})


# ------------- Run -------------
if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(debug=DEBUG)
