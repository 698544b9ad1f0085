from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta

from sameday.errors import AuthorizationError, NotFoundError, StateError, Unauthorized, ValidationError
from sameday.extensions import db
from sameday.models import Delivery, Dispute, Order, OrderStatus, Payment, PaymentStatus, Shop
from sameday.services import notification_service
from sameday.services.delivery_service import fail_open_delivery
from sameday.services.escrow_service import EscrowStatus, confirm_payment_received, refund_payment
from sameday.services.rider_assignment import auto_assign_rider
from sameday.services.stock_ledger import restore_order_stock
from sameday.utils.events import log_event
from sameday.utils.geo import haversine_km, valid_coordinates
from sameday.utils.realtime import live_event, publish_after_commit
from sameday.utils.transactions import on_commit, unit_of_work

logger = logging.getLogger(__name__)

ETA_BASE_MINUTES = 30
ETA_MINUTES_PER_KM = 10


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", code="order_not_found")
    return order


def order_parties(order: Order) -> dict:
    shop = db.session.get(Shop, int(order.shop_id))
    delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
    return {
        "buyer_id": int(order.buyer_id),
        "seller_id": int(shop.owner_id) if shop else None,
        "rider_id": int(delivery.rider_id) if delivery and delivery.rider_id is not None else None,
    }


def can_view_order(principal, order: Order) -> bool:
    if principal is None:
        return False
    if principal.is_admin or principal.is_system:
        return True
    return principal.user_id in set(order_parties(order).values())


def view_order(principal, order_id: int) -> dict:
    order = get_order(order_id)
    if not can_view_order(principal, order):
        raise Unauthorized("You cannot view this order")
    data = order.to_dict(include_items=True)
    payment = Payment.query.filter_by(order_id=int(order.id)).first()
    delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
    dispute = Dispute.query.filter_by(order_id=int(order.id)).first()
    data["payment"] = payment.to_dict() if payment else None
    data["delivery_record"] = delivery.to_dict() if delivery else None
    data["dispute"] = dispute.to_dict() if dispute else None
    return data


def list_orders(principal, *, role: str = "buyer", status: str | None = None, limit: int = 50) -> list[Order]:
    if principal is None or principal.user_id is None:
        raise Unauthorized("Sign in to list orders")
    q = Order.query
    role = (role or "buyer").strip().lower()
    if role == "seller":
        if not principal.has_role("seller"):
            raise Unauthorized("Only sellers can list shop orders")
        q = q.join(Shop, Order.shop_id == Shop.id).filter(Shop.owner_id == int(principal.user_id))
    elif role == "admin":
        if not principal.is_admin:
            raise Unauthorized("Admin access required")
    else:
        q = q.filter(Order.buyer_id == int(principal.user_id))
    if status:
        q = q.filter(Order.status == status.strip().upper())
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(max(1, min(int(limit or 50), 200))).all()


def _estimate_delivery_time(order: Order, now: datetime) -> datetime | None:
    shop = db.session.get(Shop, int(order.shop_id))
    if shop is None:
        return None
    if not (valid_coordinates(shop.latitude, shop.longitude) and valid_coordinates(order.delivery_latitude, order.delivery_longitude)):
        return None
    km = haversine_km(shop.latitude, shop.longitude, order.delivery_latitude, order.delivery_longitude)
    return now + timedelta(minutes=ETA_BASE_MINUTES + ETA_MINUTES_PER_KM * km)


def confirm_payment(principal, order_id: int, *, reference: str | None = None) -> Order:
    """Record that the buyer's money reached escrow.

    Card capture happens elsewhere; this is called by an admin or by the
    gateway callback running as the system principal.
    """
    if principal is None or not (principal.is_admin or principal.is_system):
        raise Unauthorized("Only the platform can confirm payments")

    confirmed = False
    with unit_of_work():
        order = get_order(order_id)
        payment = Payment.query.filter_by(order_id=int(order.id)).first()
        if payment is None:
            raise NotFoundError("Payment record missing", code="payment_not_found")
        if order.status == OrderStatus.CANCELLED:
            raise StateError("Order has been cancelled", code="order_cancelled", detail={"order_id": int(order.id)})
        if payment.status != PaymentStatus.PENDING:
            logger.info("payment_confirm_noop order_id=%s status=%s", order.id, payment.status)
        elif order.status != OrderStatus.PENDING:
            raise StateError(f"Order is {order.status}", code="invalid_order_state")
        else:
            now = datetime.utcnow()
            confirm_payment_received(payment, reference=reference, actor=principal.actor())
            order.status = OrderStatus.PAID
            order.paid_at = now
            order.updated_at = now
            delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
            if delivery is not None:
                delivery.estimated_time = _estimate_delivery_time(order, now)
            log_event(
                "payment_confirmed",
                actor_user_id=principal.user_id,
                order_id=int(order.id),
                subject_type="payment",
                subject_id=int(payment.id),
                metadata={"reference": reference or "", "amount_minor": int(payment.amount_minor or 0)},
            )
            notification_service.notify("payment_received", {"order_id": int(order.id)})
            notification_service.notify("order_status_update", {"order_id": int(order.id), "status": OrderStatus.PAID})
            publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=OrderStatus.PAID))
            if delivery is not None and _env_bool("AUTO_ASSIGN_RIDERS", True):
                on_commit(auto_assign_rider, int(delivery.id))
            confirmed = True
    if confirmed:
        logger.info("payment_confirmed order_id=%s reference=%s", order.id, reference or "")
    return order


def _seller_owns(principal, order: Order) -> bool:
    shop = db.session.get(Shop, int(order.shop_id))
    return bool(shop and principal.user_id is not None and int(shop.owner_id) == int(principal.user_id) and principal.has_role("seller"))


def update_order_status(principal, order_id: int, status: str) -> Order:
    """Seller-driven progress. Later states belong to the delivery flow."""
    target = (status or "").strip().upper()
    if target != OrderStatus.PREPARING:
        raise ValidationError("Sellers can only mark orders as PREPARING", code="invalid_status")
    with unit_of_work():
        order = get_order(order_id)
        if principal is None or not (_seller_owns(principal, order) or principal.is_admin):
            raise Unauthorized("Only the shop owner can update this order")
        if order.status == OrderStatus.PREPARING:
            return order
        if order.status != OrderStatus.PAID:
            raise StateError(f"Cannot move order from {order.status} to {target}", code="invalid_order_transition")
        order.status = target
        order.updated_at = datetime.utcnow()
        log_event(
            "order_status_changed",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="order",
            subject_id=int(order.id),
            metadata={"from": OrderStatus.PAID, "to": target},
        )
        notification_service.notify("order_status_update", {"order_id": int(order.id), "status": target})
        publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=target))
    return order


def cancel_order(principal, order_id: int, *, reason: str | None = None) -> Order:
    if principal is None or principal.user_id is None:
        raise Unauthorized("Sign in to cancel orders")
    reason = (reason or "").strip()
    with unit_of_work():
        order = get_order(order_id)
        is_buyer = int(order.buyer_id) == int(principal.user_id)
        is_seller = _seller_owns(principal, order)
        if not (is_buyer or is_seller):
            raise AuthorizationError("You cannot cancel this order", code="unauthorized")
        if order.status in (OrderStatus.CANCELLED, OrderStatus.DELIVERED, OrderStatus.DISPUTED):
            raise StateError(f"Cannot cancel a {order.status} order", code="order_not_cancellable")
        if is_seller and not is_buyer:
            if not reason:
                raise ValidationError("Cancellation reason is required", code="reason_required")
            if order.status == OrderStatus.OUT_FOR_DELIVERY:
                raise StateError("Order is already out for delivery", code="order_not_cancellable")

        previous = order.status
        payment = Payment.query.filter_by(order_id=int(order.id)).first()
        refunded = False
        if payment is not None and payment.status == PaymentStatus.COMPLETED and payment.escrow_status == EscrowStatus.HELD:
            refunded = refund_payment(order, payment, actor=principal.actor(), reason="order_cancelled")

        restore_order_stock(order, note=f"Stock restored due to order cancellation: {order.order_number}")
        fail_open_delivery(int(order.id), "order_cancelled")

        now = datetime.utcnow()
        order.status = OrderStatus.CANCELLED
        order.cancelled_at = now
        order.cancelled_by = int(principal.user_id)
        order.cancellation_reason = (reason or "Cancelled by buyer")[:240]
        order.updated_at = now
        log_event(
            "order_cancelled",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="order",
            subject_id=int(order.id),
            metadata={"from": previous, "by": "buyer" if is_buyer else "seller", "refunded": refunded, "reason": reason},
        )
        notification_service.notify("order_status_update", {"order_id": int(order.id), "status": OrderStatus.CANCELLED})
        publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=OrderStatus.CANCELLED))
    logger.info("order_cancelled order_id=%s by=%s refunded=%s", order.id, principal.user_id, refunded)
    return order
