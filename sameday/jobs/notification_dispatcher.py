from __future__ import annotations

import logging
import os
from datetime import datetime

from sameday.extensions import db
from sameday.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from sameday.integrations.messaging.factory import build_messaging_provider
from sameday.models import Notification
from sameday.utils.job_runs import record_job_run

logger = logging.getLogger(__name__)


def _max_attempts() -> int:
    raw = (os.getenv("NOTIFICATION_MAX_ATTEMPTS") or "").strip()
    try:
        value = int(raw) if raw else 5
    except Exception:
        value = 5
    return max(1, min(value, 20))


def dispatch_queued_notifications(*, limit: int = 200, provider=None) -> dict:
    """Hand queued sms rows to the messaging provider.

    Retryable failures stay queued until the attempt budget runs out; other
    failures are marked failed immediately.
    """
    started_at = datetime.utcnow()
    if provider is None:
        try:
            provider = build_messaging_provider()
        except IntegrationDisabledError as e:
            result = {"ok": True, "skipped": True, "reason": e.reason, "processed": 0}
            record_job_run(job_name="notification_dispatcher", ok=True, started_at=started_at, summary=result)
            return result
        except IntegrationMisconfiguredError as e:
            logger.warning("notification_dispatch_misconfigured err=%s", e)
            result = {"ok": False, "skipped": True, "reason": e.reason, "detail": e.detail, "processed": 0}
            record_job_run(job_name="notification_dispatcher", ok=False, started_at=started_at, summary=result, error=str(e))
            return result

    max_attempts = _max_attempts()
    rows = (
        Notification.query.filter_by(channel="sms", status="queued")
        .order_by(Notification.created_at.asc(), Notification.id.asc())
        .limit(max(1, int(limit)))
        .all()
    )
    sent = 0
    failed = 0
    retried = 0
    for row in rows:
        row.attempts = int(row.attempts or 0) + 1
        row.provider = getattr(provider, "name", "unknown")
        err = "no_response"
        try:
            res = provider.send_sms(to=row.to_address or "", message=row.message or "", reference=f"notif-{int(row.id)}")
        except Exception as e:
            logger.exception("notification_send_error id=%s", row.id)
            res = None
            err = str(e)[:240]
        if res is not None and res.ok:
            row.status = "sent"
            row.sent_at = datetime.utcnow()
            row.provider_ref = (res.provider_ref or "")[:120] or None
            row.last_error = None
            sent += 1
        else:
            retryable = True if res is None else bool(res.retryable)
            row.last_error = err if res is None else res.failure_text()
            if retryable and row.attempts < max_attempts:
                retried += 1
            else:
                row.status = "failed"
                failed += 1
        db.session.commit()

    result = {
        "ok": True,
        "processed": len(rows),
        "sent": sent,
        "failed": failed,
        "retried": retried,
        "provider": getattr(provider, "name", "unknown"),
        "ts": datetime.utcnow().isoformat(),
    }
    logger.info("notification_dispatch processed=%s sent=%s failed=%s retried=%s", len(rows), sent, failed, retried)
    record_job_run(
        job_name="notification_dispatcher",
        ok=True,
        started_at=started_at,
        processed=len(rows),
        summary=result,
    )
    return result
