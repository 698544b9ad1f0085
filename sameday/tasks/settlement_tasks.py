from __future__ import annotations

import json
import os
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from sameday.jobs.escrow_runner import run_escrow_automation
from sameday.jobs.notification_dispatcher import dispatch_queued_notifications


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _env_limit(name: str, default: int, maximum: int) -> int:
    try:
        value = int((os.getenv(name) or str(default)).strip() or default)
    except Exception:
        value = default
    return max(1, min(value, maximum))


def _run_with_retry(task, task_name: str, job, *, trace_id: str, **job_kwargs):
    started = time.perf_counter()
    try:
        result = job(**job_kwargs)
        _task_log(
            task_name,
            status="ok" if bool(result.get("ok")) else "failed",
            started_at=started,
            trace_id=trace_id,
            processed=result.get("processed", 0),
        )
        return result
    except Exception as exc:
        if int(task.request.retries or 0) < int(task.max_retries or 0):
            countdown = _retry_countdown(int(task.request.retries or 0))
            _task_log(task_name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise task.retry(exc=exc, countdown=countdown)
        _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise


@shared_task(
    bind=True,
    name="sameday.tasks.settlement_tasks.run_escrow_settlement",
    max_retries=3,
)
def run_escrow_settlement(self, *, trace_id: str = ""):
    return _run_with_retry(
        self,
        "run_escrow_settlement",
        run_escrow_automation,
        trace_id=trace_id,
        limit=_env_limit("ESCROW_SETTLEMENT_LIMIT", 50, 500),
    )


@shared_task(
    bind=True,
    name="sameday.tasks.settlement_tasks.dispatch_notifications",
    max_retries=5,
)
def dispatch_notifications(self, *, trace_id: str = ""):
    return _run_with_retry(
        self,
        "dispatch_notifications",
        dispatch_queued_notifications,
        trace_id=trace_id,
        limit=_env_limit("NOTIFICATION_DISPATCH_LIMIT", 200, 1000),
    )
