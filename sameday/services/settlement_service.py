"""Admin escrow settlement: manual release and refund."""
from __future__ import annotations

import logging
from datetime import datetime

from sameday.errors import NotFoundError, StateError, Unauthorized
from sameday.models import Delivery, DeliveryStatus, Dispute, DisputeStatus, Order, OrderStatus, Payment, PaymentStatus
from sameday.services import notification_service
from sameday.services.delivery_service import fail_open_delivery
from sameday.services.escrow_service import EscrowStatus, release_payment, refund_payment
from sameday.services.order_service import get_order
from sameday.services.stock_ledger import restore_order_stock
from sameday.utils.events import log_event
from sameday.utils.realtime import live_event, publish_after_commit
from sameday.utils.transactions import unit_of_work

logger = logging.getLogger(__name__)


def _require_admin(principal) -> None:
    if principal is None or not (principal.is_admin or principal.is_system):
        raise Unauthorized("Admin access required")


def _load(order_id: int) -> tuple[Order, Payment]:
    order = get_order(order_id)
    payment = Payment.query.filter_by(order_id=int(order.id)).first()
    if payment is None:
        raise NotFoundError("Payment record missing", code="payment_not_found")
    return order, payment


def _dispute_lifted(order: Order) -> bool:
    """A DISPUTED escrow may be settled by an admin only after the dispute was closed."""
    dispute = Dispute.query.filter_by(order_id=int(order.id)).first()
    return dispute is not None and dispute.status == DisputeStatus.CLOSED


def release_escrow(principal, order_id: int) -> dict:
    """Manual release for a delivered order whose auto-release did not fire.

    Returns {"order", "payment", "released"}; released is False when the
    payment was already released.
    """
    _require_admin(principal)
    with unit_of_work():
        order, payment = _load(order_id)
        if payment.escrow_status == EscrowStatus.RELEASED:
            return {"order": order, "payment": payment, "released": False}
        delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
        if delivery is None or delivery.status != DeliveryStatus.DELIVERED:
            raise StateError("Order has not been delivered", code="not_delivered", detail={"order_id": int(order.id)})
        disputed = payment.escrow_status == EscrowStatus.DISPUTED
        if disputed and not _dispute_lifted(order):
            raise StateError("Escrow is frozen by an open dispute", code="escrow_disputed", detail={"order_id": int(order.id)})

        released = release_payment(
            order,
            payment,
            actor=principal.actor(),
            reason="manual_release",
            allow_disputed=disputed,
        )
        if released and order.status != OrderStatus.DELIVERED:
            order.status = OrderStatus.DELIVERED
            order.delivered_at = order.delivered_at or delivery.delivered_at or datetime.utcnow()
            order.updated_at = datetime.utcnow()
            notification_service.notify("order_status_update", {"order_id": int(order.id), "status": OrderStatus.DELIVERED})
            publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=OrderStatus.DELIVERED))
        log_event(
            "escrow_manual_release",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="payment",
            subject_id=int(payment.id),
            metadata={"released": released, "after_dispute": disputed},
        )
    logger.info("escrow_manual_release order_id=%s released=%s by=%s", order.id, released, principal.user_id)
    return {"order": order, "payment": payment, "released": released}


def refund_escrow(principal, order_id: int, *, reason: str | None = None) -> dict:
    _require_admin(principal)
    with unit_of_work():
        order, payment = _load(order_id)
        if payment.escrow_status == EscrowStatus.REFUNDED:
            return {"order": order, "payment": payment, "refunded": False}
        if payment.status != PaymentStatus.COMPLETED:
            raise StateError("Payment has not been completed", code="payment_not_completed", detail={"order_id": int(order.id)})
        disputed = payment.escrow_status == EscrowStatus.DISPUTED
        if disputed and not _dispute_lifted(order):
            raise StateError("Escrow is frozen by an open dispute", code="escrow_disputed", detail={"order_id": int(order.id)})

        previous = order.status
        refunded = refund_payment(
            order,
            payment,
            actor=principal.actor(),
            reason=(reason or "admin_refund")[:240],
            allow_disputed=disputed,
        )
        if previous in (OrderStatus.PAID, OrderStatus.PREPARING):
            restore_order_stock(order, note=f"Stock restored due to refund: {order.order_number}")
        fail_open_delivery(int(order.id), "refunded")
        if order.status != OrderStatus.CANCELLED:
            now = datetime.utcnow()
            order.status = OrderStatus.CANCELLED
            order.cancelled_at = now
            order.cancelled_by = principal.user_id
            order.cancellation_reason = (reason or "Refunded by admin")[:240]
            order.updated_at = now
            notification_service.notify("order_status_update", {"order_id": int(order.id), "status": OrderStatus.CANCELLED})
            publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=OrderStatus.CANCELLED))
        log_event(
            "escrow_manual_refund",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="payment",
            subject_id=int(payment.id),
            metadata={"refunded": refunded, "from": previous, "reason": reason or ""},
        )
    logger.info("escrow_manual_refund order_id=%s refunded=%s by=%s", order.id, refunded, principal.user_id)
    return {"order": order, "payment": payment, "refunded": refunded}


def pending_releases(*, limit: int = 100) -> list[dict]:
    rows = (
        Payment.query.join(Delivery, Delivery.order_id == Payment.order_id)
        .filter(Payment.status == PaymentStatus.COMPLETED)
        .filter(Payment.escrow_status == EscrowStatus.HELD)
        .filter(Delivery.status == DeliveryStatus.DELIVERED)
        .order_by(Payment.id.asc())
        .limit(max(1, min(int(limit or 100), 500)))
        .all()
    )
    return [p.to_dict() for p in rows]
