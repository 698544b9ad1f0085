from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import update

from sameday.errors import ConflictError, StateError, ValidationError
from sameday.extensions import db
from sameday.models import EscrowTransition, Order, Payment, PaymentStatus
from sameday.services import notification_service
from sameday.utils.events import log_event
from sameday.utils.realtime import live_event, publish_after_commit

logger = logging.getLogger(__name__)


class EscrowStatus:
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"

    TERMINAL = {RELEASED, REFUNDED}

    ALLOWED = {
        HELD: {HELD, RELEASED, REFUNDED, DISPUTED},
        RELEASED: {RELEASED},
        REFUNDED: {REFUNDED},
        DISPUTED: {DISPUTED, RELEASED, REFUNDED},
    }

    # Terminal escrow states pin the payment status.
    PAYMENT_STATUS = {
        RELEASED: PaymentStatus.RELEASED,
        REFUNDED: PaymentStatus.REFUNDED,
    }


def _parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except Exception:
            actor_id = None
        return actor_type, actor_id
    return "system", None


def transition_escrow(
    payment: Payment,
    to_state: str,
    *,
    idempotency_key: str,
    actor=None,
    reason: str = "",
    payment_status: str | None = None,
    metadata: dict | None = None,
    values: dict | None = None,
) -> EscrowTransition:
    """Move a payment's escrow (and optionally its payment status) in one step.

    The write is conditional on the statuses read here, so two callers racing
    on the same payment cannot both apply. The loser gets ConflictError. A
    repeated idempotency key returns the transition already recorded.
    """
    if payment is None:
        raise ValidationError("payment required")
    key = (idempotency_key or "").strip()[:160]
    if not key:
        raise ValidationError("idempotency_key required")

    existing = EscrowTransition.query.filter_by(payment_id=int(payment.id), idempotency_key=key).first()
    if existing:
        return existing

    current = (payment.escrow_status or EscrowStatus.HELD).strip().upper()
    current_status = (payment.status or PaymentStatus.PENDING).strip().upper()
    target = (to_state or "").strip().upper()
    allowed = EscrowStatus.ALLOWED.get(current, {current})
    if target not in allowed:
        raise StateError(
            f"invalid_escrow_transition {current}->{target}",
            code="invalid_escrow_transition",
            detail={"order_id": int(payment.order_id), "from": current, "to": target},
        )
    target_status = EscrowStatus.PAYMENT_STATUS.get(target) or (payment_status or current_status).strip().upper()

    now = datetime.utcnow()
    changes = dict(values or {})
    changes.update(escrow_status=target, status=target_status, updated_at=now)
    result = db.session.execute(
        update(Payment)
        .where(Payment.id == int(payment.id))
        .where(Payment.escrow_status == current)
        .where(Payment.status == current_status)
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        raise ConflictError(
            "Payment changed concurrently, reload and retry",
            code="escrow_conflict",
            detail={"order_id": int(payment.order_id)},
        )
    db.session.refresh(payment)

    actor_type, actor_id = _parse_actor(actor)
    row = EscrowTransition(
        payment_id=int(payment.id),
        order_id=int(payment.order_id),
        from_escrow_status=current,
        to_escrow_status=target,
        from_payment_status=current_status,
        to_payment_status=target_status,
        actor_type=actor_type[:32],
        actor_id=actor_id,
        idempotency_key=key,
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {}, default=str)[:4000],
        created_at=now,
    )
    db.session.add(row)
    db.session.flush()

    log_event(
        "escrow_transition",
        actor_user_id=actor_id,
        order_id=int(payment.order_id),
        subject_type="payment",
        subject_id=int(payment.id),
        idempotency_key=f"escrow:{int(payment.id)}:{key}",
        metadata={
            "from": current,
            "to": target,
            "from_payment_status": current_status,
            "to_payment_status": target_status,
            "reason": reason or "",
        },
    )
    if target != current:
        publish_after_commit(int(payment.order_id), live_event("escrow_status", order_id=int(payment.order_id), status=target))
    logger.info(
        "escrow_transition order_id=%s payment_id=%s %s->%s status=%s->%s actor=%s:%s",
        payment.order_id,
        payment.id,
        current,
        target,
        current_status,
        target_status,
        actor_type,
        actor_id,
    )
    return row


def payment_for_order(order_id: int) -> Payment | None:
    return Payment.query.filter_by(order_id=int(order_id)).first()


def seller_amount_minor(order: Order) -> int:
    return max(0, int(order.total_minor or 0) - int(order.platform_fee_minor or 0))


def release_payment(
    order: Order,
    payment: Payment,
    *,
    actor=None,
    reason: str = "",
    idempotency_key: str | None = None,
    allow_disputed: bool = False,
) -> bool:
    """Release held funds to the seller.

    Returns True when this call released the escrow and False when it was
    already released. A frozen (DISPUTED) escrow only releases when the
    caller is settling the dispute.
    """
    escrow = payment.escrow_status or EscrowStatus.HELD
    if escrow == EscrowStatus.RELEASED:
        logger.info("escrow_release_noop order_id=%s reason=already_released", order.id)
        return False
    if escrow == EscrowStatus.REFUNDED:
        raise StateError("Payment has already been refunded", code="escrow_refunded", detail={"order_id": int(order.id)})
    if escrow == EscrowStatus.DISPUTED and not allow_disputed:
        raise StateError("Escrow is frozen by a dispute", code="escrow_disputed", detail={"order_id": int(order.id)})
    if (payment.status or "") != PaymentStatus.COMPLETED:
        raise StateError("Payment has not been completed", code="payment_not_completed", detail={"order_id": int(order.id)})

    amount = seller_amount_minor(order)
    try:
        transition_escrow(
            payment,
            EscrowStatus.RELEASED,
            idempotency_key=idempotency_key or f"release:order:{int(order.id)}",
            actor=actor,
            reason=reason or "release",
            metadata={"seller_amount_minor": amount},
            values={"released_at": datetime.utcnow(), "seller_amount_minor": amount},
        )
    except ConflictError:
        db.session.refresh(payment)
        if payment.escrow_status == EscrowStatus.RELEASED:
            logger.info("escrow_release_noop order_id=%s reason=lost_race", order.id)
            return False
        raise
    notification_service.notify("payment_released", {"order_id": int(order.id), "seller_amount_minor": amount})
    return True


def refund_payment(
    order: Order,
    payment: Payment,
    *,
    actor=None,
    reason: str = "",
    idempotency_key: str | None = None,
    allow_disputed: bool = False,
) -> bool:
    """Return held funds to the buyer. Same idempotence rules as release."""
    escrow = payment.escrow_status or EscrowStatus.HELD
    if escrow == EscrowStatus.REFUNDED:
        logger.info("escrow_refund_noop order_id=%s reason=already_refunded", order.id)
        return False
    if escrow == EscrowStatus.RELEASED:
        raise StateError("Payment has already been released", code="escrow_released", detail={"order_id": int(order.id)})
    if escrow == EscrowStatus.DISPUTED and not allow_disputed:
        raise StateError("Escrow is frozen by a dispute", code="escrow_disputed", detail={"order_id": int(order.id)})
    if (payment.status or "") != PaymentStatus.COMPLETED:
        raise StateError("Payment has not been completed", code="payment_not_completed", detail={"order_id": int(order.id)})

    try:
        transition_escrow(
            payment,
            EscrowStatus.REFUNDED,
            idempotency_key=idempotency_key or f"refund:order:{int(order.id)}",
            actor=actor,
            reason=reason or "refund",
            metadata={"amount_minor": int(payment.amount_minor or 0)},
            values={"refunded_at": datetime.utcnow()},
        )
    except ConflictError:
        db.session.refresh(payment)
        if payment.escrow_status == EscrowStatus.REFUNDED:
            logger.info("escrow_refund_noop order_id=%s reason=lost_race", order.id)
            return False
        raise
    notification_service.notify("payment_refunded", {"order_id": int(order.id)})
    return True


def freeze_for_dispute(payment: Payment, *, dispute_id: int, actor=None, reason: str = "") -> EscrowTransition:
    if (payment.escrow_status or EscrowStatus.HELD) != EscrowStatus.HELD:
        raise StateError(
            f"Escrow is {payment.escrow_status}, only held funds can be disputed",
            code="escrow_not_held",
            detail={"order_id": int(payment.order_id)},
        )
    return transition_escrow(
        payment,
        EscrowStatus.DISPUTED,
        idempotency_key=f"dispute:{int(dispute_id)}:freeze",
        actor=actor,
        reason=reason or "dispute_opened",
        metadata={"dispute_id": int(dispute_id)},
    )


def confirm_payment_received(payment: Payment, *, reference: str | None = None, actor=None) -> EscrowTransition:
    """PENDING -> COMPLETED with the escrow staying HELD."""
    return transition_escrow(
        payment,
        EscrowStatus.HELD,
        idempotency_key=f"payment:confirm:{int(payment.order_id)}",
        actor=actor,
        reason="payment_confirmed",
        payment_status=PaymentStatus.COMPLETED,
        metadata={"reference": reference or ""},
        values={"paid_at": datetime.utcnow(), "reference": (reference or "")[:120] or None},
    )
