from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry


TASKS_MODULE = "sameday.tasks.settlement_tasks"

# beat entry -> (task function, interval env var, default seconds)
PERIODIC_JOBS = {
    "escrow-settlement-runner": ("run_escrow_settlement", "ESCROW_SETTLEMENT_INTERVAL_SECONDS", 300),
    "notification-dispatcher": ("dispatch_notifications", "NOTIFICATION_DISPATCH_INTERVAL_SECONDS", 60),
}
MIN_INTERVAL_SECONDS = 30

_SIGNALS_BOUND = False


def _first_env(*names: str, default: str = "") -> str:
    for name in names:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    return default


def _interval_seconds(env_name: str, default: int) -> int:
    try:
        value = int(_first_env(env_name, default=str(default)))
    except ValueError:
        value = default
    return max(MIN_INTERVAL_SECONDS, value)


def beat_schedule() -> dict:
    return {
        entry: {
            "task": f"{TASKS_MODULE}.{task}",
            "schedule": float(_interval_seconds(env_name, default)),
        }
        for entry, (task, env_name, default) in PERIODIC_JOBS.items()
    }


def _trace_id_of(args, kwargs) -> str:
    if isinstance(kwargs, dict) and str(kwargs.get("trace_id") or "").strip():
        return str(kwargs["trace_id"]).strip()
    for item in args or ():
        if isinstance(item, str) and item.strip().startswith("trace_"):
            return item.strip()
    return ""


def _log_task_event(flask_app, level: str, event: str, **fields) -> None:
    einfo = fields.pop("einfo", None)
    payload = {"event": event, **fields, "timestamp": datetime.utcnow().isoformat()}
    if einfo is not None:
        payload["einfo"] = str(einfo)
    getattr(flask_app.logger, level)(json.dumps(payload, default=str))


def _bind_task_observers(flask_app) -> None:
    global _SIGNALS_BOUND
    if _SIGNALS_BOUND:
        return

    @task_failure.connect(weak=False)
    def _on_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, einfo=None, **extra):
        _log_task_event(
            flask_app,
            "error",
            "celery_task_failure",
            task_name=getattr(sender, "name", "") if sender is not None else "",
            task_id=str(task_id or ""),
            trace_id=_trace_id_of(args, kwargs),
            exception=str(exception or ""),
            einfo=einfo,
        )

    @task_retry.connect(weak=False)
    def _on_task_retry(request=None, reason=None, einfo=None, **extra):
        _log_task_event(
            flask_app,
            "warning",
            "celery_task_retry",
            task_name=str(getattr(request, "task", "") or ""),
            task_id=str(getattr(request, "id", "") or ""),
            trace_id=_trace_id_of(getattr(request, "args", None), getattr(request, "kwargs", None)),
            reason=str(reason or ""),
            retry_count=int(getattr(request, "retries", 0) or 0),
            einfo=einfo,
        )

    _SIGNALS_BOUND = True


def create_celery_app(flask_app) -> Celery:
    """Celery bound to the Flask app: every task body runs inside an app context."""
    broker = _first_env("CELERY_BROKER_URL", "REDIS_URL", default="redis://localhost:6379/0")
    backend = _first_env("CELERY_RESULT_BACKEND", "REDIS_URL", default=broker)
    celery = Celery(flask_app.import_name, broker=broker, backend=backend, include=[TASKS_MODULE])
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        beat_schedule=beat_schedule(),
    )
    celery.conf.update(flask_app.config)

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    _bind_task_observers(flask_app)
    return celery
