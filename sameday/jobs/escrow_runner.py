"""Settlement sweeper.

Releases escrow for delivered orders whose auto-release never fired, e.g.
because the process died between the delivery commit and the release or a
concurrent request lost the race. Release is idempotent, so sweeping an
already settled payment is harmless.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sameday.errors import EngineError
from sameday.extensions import db
from sameday.models import Delivery, DeliveryStatus, Payment, PaymentStatus
from sameday.services.escrow_service import EscrowStatus
from sameday.services.settlement_service import release_escrow
from sameday.utils.job_runs import record_job_run
from sameday.utils.principal import Principal

logger = logging.getLogger(__name__)


def _now():
    return datetime.utcnow()


def _due_order_ids(limit: int) -> list[int]:
    rows = (
        db.session.query(Payment.order_id)
        .join(Delivery, Delivery.order_id == Payment.order_id)
        .filter(Payment.status == PaymentStatus.COMPLETED)
        .filter(Payment.escrow_status == EscrowStatus.HELD)
        .filter(Delivery.status == DeliveryStatus.DELIVERED)
        .order_by(Payment.id.asc())
        .limit(max(1, int(limit)))
        .all()
    )
    return [int(r[0]) for r in rows]


def run_escrow_automation(*, limit: int = 500) -> dict:
    started_at = _now()
    processed = 0
    released = 0
    skipped = 0
    errors = 0
    system = Principal.system()

    for order_id in _due_order_ids(limit):
        processed += 1
        try:
            result = release_escrow(system, order_id)
            if result.get("released"):
                released += 1
            else:
                skipped += 1
        except EngineError as e:
            skipped += 1
            logger.info("escrow_sweep_skipped order_id=%s reason=%s", order_id, e.code)
        except Exception:
            errors += 1
            logger.exception("escrow_sweep_failed order_id=%s", order_id)
            db.session.rollback()

    result = {
        "ok": True,
        "processed": processed,
        "released": released,
        "skipped": skipped,
        "errors": errors,
        "ts": _now().isoformat(),
    }
    record_job_run(
        job_name="escrow_runner",
        ok=errors == 0,
        started_at=started_at,
        processed=processed,
        summary=result,
        error=None if errors == 0 else f"errors={errors}",
    )
    return result
