#!/usr/bin/env python3
"""
Crewboard Task Server
---------------------
JSON API over the task store, plus a server-sent event stream that pushes
each client's reconciled view of every change.

Usage:
    python task_server.py --config config/crewboard.yaml
    python task_server.py --port 3000 --with-scheduler

Every /api request carries:
    X-API-Key  shared secret (CREWBOARD_API_SECRET or api_secret in the config)
    X-User     the acting user's identity, resolved by the upstream auth layer

API:
    GET    /api/tasks                      → tasks visible to X-User, per-viewer projection
    POST   /api/tasks                      → create  { title, ..., assigned_to: [] }
    GET    /api/tasks/<id>                 → one task as X-User sees it
    PUT    /api/tasks/<id>                 → edit content (creator only)
    POST   /api/tasks/<id>/assignments     → { add: [], remove: [] } (creator only)
    POST   /api/tasks/<id>/status          → { status, position? } canonical (creator only)
    POST   /api/tasks/<id>/my-status       → { status } personal (assignees)
    POST   /api/tasks/<id>/snooze          → { days? } (assignees)
    DELETE /api/tasks/<id>                 → soft delete (creator only)
    GET    /api/board                      → columns for X-User
    GET    /api/stream                     → text/event-stream of reconciliations
    GET    /api/notifications              → ?unread=1
    POST   /api/notifications/read         → { notification_id } or { all: true }
    POST   /api/jobs/deadlines|stale|recurring → run a job now
    GET    /health

Errors come back as { "error": { code, message, retryable } }.
"""

import hmac
import json
import logging
import sys
import threading
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps

from flask import Blueprint, Flask, Response, current_app, jsonify, request, stream_with_context

from crewboard.config import Config, build_deliveries, build_directory
from crewboard.errors import ConfigError, CrewboardError, TransientResolutionFailure, ValidationError
from crewboard.events import ChangeNotifier, ReconcileAction
from crewboard.notifications import NotificationSink
from crewboard.scheduler import DeadlineScheduler, RecurringJob, StaleTaskJob
from crewboard.schema import COLUMN_ORDER, normalize_identity
from crewboard.store import TaskStore

logger = logging.getLogger("task_server")

api = Blueprint("api", __name__)


@dataclass
class Services:
    config: Config
    store: TaskStore
    notifier: ChangeNotifier
    sink: NotificationSink
    deadlines: DeadlineScheduler
    stale: StaleTaskJob
    recurring: RecurringJob


def services() -> Services:
    return current_app.extensions["crewboard"]


# ── Auth ─────────────────────────────────────────────────────────────────────


def _error(code: str, message: str, status: int):
    return jsonify({"error": {"code": code, "message": message, "retryable": False}}), status


def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = services().config.api_secret
        if not secret:
            return _error("NOT_CONFIGURED", "API secret not set", 503)
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return _error("UNAUTHORIZED", "Unauthorized", code)
        return f(*args, **kwargs)
    return decorated


def current_actor() -> str:
    actor = normalize_identity(request.headers.get("X-User", ""))
    if not actor:
        raise ValidationError("X-User header is required")
    return actor


def json_body() -> dict:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def render(task, actor: str) -> dict:
    """The actor's projection, or the raw task once it is no longer visible to them."""
    try:
        view = services().store.project(task, actor)
    except TransientResolutionFailure as e:
        # Already committed
        logger.warning(f"Returning unprojected task {task.task_id} to {actor}: {e}")
        return task.to_dict()
    return view.to_dict() if view else task.to_dict()


@api.app_errorhandler(CrewboardError)
def handle_crewboard_error(e: CrewboardError):
    if e.retryable:
        logger.warning(f"{request.method} {request.path}: {e.code} {e.message}")
    return jsonify({"error": e.to_dict()}), e.http_status


# ── Tasks ────────────────────────────────────────────────────────────────────


@api.route("/api/tasks", methods=["GET"])
@require_api_key
def api_list_tasks():
    actor = current_actor()
    views = services().store.list_visible(actor)
    return jsonify({"tasks": [v.to_dict() for v in views], "count": len(views)})


@api.route("/api/tasks", methods=["POST"])
@require_api_key
def api_create_task():
    actor = current_actor()
    data = json_body()
    targets = data.pop("assigned_to", []) or []
    if not isinstance(targets, list):
        raise ValidationError("assigned_to must be a list")
    task = services().store.create_task(actor, data, targets)
    return jsonify({"task": render(task, actor)}), 201


@api.route("/api/tasks/<task_id>", methods=["GET"])
@require_api_key
def api_get_task(task_id):
    actor = current_actor()
    view = services().store.view_for(task_id, actor)
    if view is None:
        return _error("NOT_FOUND", f"Task not found: {task_id}", 404)
    return jsonify({"task": view.to_dict()})


@api.route("/api/tasks/<task_id>", methods=["PUT"])
@require_api_key
def api_update_task(task_id):
    actor = current_actor()
    task = services().store.update_task_content(actor, task_id, json_body())
    return jsonify({"task": render(task, actor)})


@api.route("/api/tasks/<task_id>/assignments", methods=["POST"])
@require_api_key
def api_update_assignments(task_id):
    actor = current_actor()
    data = json_body()
    task = services().store.update_assignments(
        actor, task_id, add=data.get("add", []) or [], remove=data.get("remove", []) or []
    )
    return jsonify({"task": render(task, actor)})


@api.route("/api/tasks/<task_id>/status", methods=["POST"])
@require_api_key
def api_transition_status(task_id):
    actor = current_actor()
    data = json_body()
    if not data.get("status"):
        raise ValidationError("status is required")
    task = services().store.transition_canonical_status(
        actor, task_id, data["status"], data.get("position")
    )
    return jsonify({"task": render(task, actor)})


@api.route("/api/tasks/<task_id>/my-status", methods=["POST"])
@require_api_key
def api_transition_my_status(task_id):
    actor = current_actor()
    data = json_body()
    if not data.get("status"):
        raise ValidationError("status is required")
    task = services().store.transition_personal_status(actor, task_id, data["status"])
    return jsonify({"task": render(task, actor)})


@api.route("/api/tasks/<task_id>/snooze", methods=["POST"])
@require_api_key
def api_snooze(task_id):
    actor = current_actor()
    task = services().store.snooze(actor, task_id, json_body().get("days"))
    return jsonify({"task": render(task, actor)})


@api.route("/api/tasks/<task_id>", methods=["DELETE"])
@require_api_key
def api_delete_task(task_id):
    actor = current_actor()
    task = services().store.soft_delete(actor, task_id)
    return jsonify({"task": task.to_dict()})


@api.route("/api/board")
@require_api_key
def api_board():
    actor = current_actor()
    columns = {status.value: [] for status in COLUMN_ORDER}
    for view in services().store.list_visible(actor):
        columns[view.display_status.value].append(view.to_dict())
    return jsonify({"viewer": actor, "columns": columns})


# ── Stream ───────────────────────────────────────────────────────────────────


def _sse(reconciliation) -> str:
    payload = json.dumps(reconciliation.to_dict())
    return f"id: {reconciliation.event_id}\nevent: {reconciliation.action.value}\ndata: {payload}\n\n"


@api.route("/api/stream")
@require_api_key
def api_stream():
    """
    Server-sent events. The first batch is a full load (inserts); every later
    event is one insert/remove/replace for this viewer. Comment lines are
    keep-alives. ?max_batches=N ends the stream after N non-empty batches.
    """
    actor = current_actor()
    svc = services()
    try:
        max_batches = int(request.args.get("max_batches", 0))
    except ValueError:
        raise ValidationError("max_batches must be an integer")
    sub = svc.notifier.subscribe(actor, svc.store)

    def generate():
        sent = 0
        try:
            for batch in sub.stream(timeout=15.0):
                batch = [r for r in batch if r.action != ReconcileAction.IGNORE]
                if not batch:
                    yield ": keep-alive\n\n"
                    continue
                for reconciliation in batch:
                    yield _sse(reconciliation)
                sent += 1
                if max_batches and sent >= max_batches:
                    return
        finally:
            sub.close()

    return Response(stream_with_context(generate()), mimetype="text/event-stream",
                    headers={"Cache-Control": "no-cache"})


# ── Notifications ────────────────────────────────────────────────────────────


@api.route("/api/notifications")
@require_api_key
def api_notifications():
    actor = current_actor()
    sink = services().sink
    unread_only = request.args.get("unread", "").lower() in ("1", "true", "yes")
    notifications = sink.list_for(actor, unread_only=unread_only)
    return jsonify({
        "notifications": [n.to_dict() for n in notifications],
        "unread": sink.unread_count(actor),
    })


@api.route("/api/notifications/read", methods=["POST"])
@require_api_key
def api_notifications_read():
    actor = current_actor()
    data = json_body()
    sink = services().sink
    if data.get("all"):
        return jsonify({"marked": sink.mark_all_read(actor)})
    if not data.get("notification_id"):
        raise ValidationError("notification_id or all is required")
    sink.mark_read(data["notification_id"], actor)
    return jsonify({"marked": 1})


# ── Jobs ─────────────────────────────────────────────────────────────────────


@api.route("/api/jobs/deadlines", methods=["POST"])
@require_api_key
def api_job_deadlines():
    return jsonify(services().deadlines.run_once().to_dict())


@api.route("/api/jobs/stale", methods=["POST"])
@require_api_key
def api_job_stale():
    return jsonify(services().stale.run_once().to_dict())


@api.route("/api/jobs/recurring", methods=["POST"])
@require_api_key
def api_job_recurring():
    return jsonify(services().recurring.run_once().to_dict())


@api.route("/health")
def health():
    svc = services()
    return jsonify({
        "status": "ok",
        "db": svc.config.db_path,
        "subscribers": svc.notifier.subscriber_count,
    })


# ── App factory ──────────────────────────────────────────────────────────────


def build_services(cfg: Config, directory=None, deliveries=None) -> Services:
    """Wire store, notifier, sink and jobs from the config."""
    if directory is None:
        directory = build_directory(cfg)
    if deliveries is None:
        deliveries = build_deliveries(cfg)
    notifier = ChangeNotifier(queue_size=cfg.stream_queue_size)
    sink = NotificationSink(cfg.db_path, deliveries=deliveries)
    store = TaskStore(
        cfg.db_path,
        directory=directory,
        notifier=notifier,
        sink=sink,
        snooze_days=cfg.snooze_days,
    )
    dedup = timedelta(hours=cfg.dedup_window_hours)
    return Services(
        config=cfg,
        store=store,
        notifier=notifier,
        sink=sink,
        deadlines=DeadlineScheduler(store, sink, timedelta(hours=cfg.lookahead_hours), dedup),
        stale=StaleTaskJob(store, sink, timedelta(days=cfg.stale_after_days), dedup),
        recurring=RecurringJob(store),
    )


def create_app(cfg: Config = None, directory=None, deliveries=None) -> Flask:
    cfg = cfg or Config.load()
    app = Flask(__name__)
    app.extensions["crewboard"] = build_services(cfg, directory=directory, deliveries=deliveries)
    app.register_blueprint(api)
    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [server] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    parser = argparse.ArgumentParser(description="Crewboard Task Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--config", help="Path to crewboard.yaml (overrides CREWBOARD_CONFIG)")
    parser.add_argument("--db", help="Path to tasks.db (overrides the config)")
    parser.add_argument("--with-scheduler", action="store_true",
                        help="Run the deadline, stale and recurring jobs in this process")
    args = parser.parse_args()

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    if args.db:
        config.db_path = args.db

    app = create_app(config)
    if args.with_scheduler:
        svc = app.extensions["crewboard"]
        threading.Thread(
            target=svc.deadlines.run_forever,
            args=(config.scan_interval_secs,),
            kwargs={"jobs": (svc.stale, svc.recurring)},
            daemon=True,
            name="deadline-scheduler",
        ).start()

    logger.info(f"Serving on http://{args.host}:{args.port} (db: {config.db_path})")
    app.run(host=args.host, port=args.port, debug=False, threaded=True)
