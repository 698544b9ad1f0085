from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError

from sameday.extensions import db
from sameday.models import AuditEvent
from sameday.utils.observability import get_request_id

logger = logging.getLogger(__name__)


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    try:
        return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)
    except Exception:
        return json.dumps({"raw": str(normalized)})


def log_event(
    event_type: str,
    *,
    actor_user_id: int | None = None,
    order_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    request_id: str | None = None,
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> AuditEvent | None:
    """Append a lifecycle audit row inside a savepoint.

    A failed write rolls back only the savepoint; the caller's transaction
    carries on and nothing is raised.
    """
    key = (idempotency_key or "").strip()[:180] or None
    try:
        if key:
            existing = AuditEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing

        event = AuditEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor_user_id=int(actor_user_id) if actor_user_id is not None else None,
            order_id=int(order_id) if order_id is not None else None,
            subject_type=(subject_type or "").strip()[:40] or None,
            subject_id=str(subject_id)[:64] if subject_id is not None else None,
            request_id=(request_id or get_request_id() or "").strip()[:80] or None,
            idempotency_key=key,
            metadata_json=_safe_json(metadata or {}),
        )
        with db.session.begin_nested():
            db.session.add(event)
        return event
    except IntegrityError:
        logger.info("audit_event_duplicate key=%s", key)
        return None
    except Exception:
        logger.exception("audit_event_write_failed event_type=%s order_id=%s", event_type, order_id)
        return None
