"""Delivery state machine.

PENDING -> ASSIGNED -> PICKED_UP -> IN_TRANSIT -> DELIVERED, or any
non-terminal state -> FAILED. Every status write is a conditional update on
the status (and rider) read by the caller, so concurrent requests cannot both
apply the same step.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update

from sameday.errors import AlreadyAssigned, AuthorizationError, NotFoundError, StateError, Unauthorized, ValidationError
from sameday.extensions import db
from sameday.models import Delivery, DeliveryStatus, Order, OrderStatus, Payment, PaymentStatus, Shop, UserRole
from sameday.services import notification_service
from sameday.services.escrow_service import EscrowStatus, release_payment
from sameday.utils.events import log_event
from sameday.utils.geo import valid_coordinates
from sameday.utils.realtime import live_event, publish, publish_after_commit
from sameday.utils.transactions import unit_of_work

logger = logging.getLogger(__name__)

ASSIGNABLE_ORDER_STATES = {OrderStatus.PAID, OrderStatus.PREPARING}


def _get_delivery(delivery_id: int) -> Delivery:
    delivery = db.session.get(Delivery, int(delivery_id))
    if delivery is None:
        raise NotFoundError(f"Delivery {delivery_id} not found", code="delivery_not_found")
    return delivery


def _approved_rider(user_id: int) -> UserRole | None:
    return (
        UserRole.query.filter_by(user_id=int(user_id), role="rider", status="APPROVED", is_active=True)
        .first()
    )


def assign_delivery(principal, delivery_id: int, rider_id: int | None = None) -> Delivery:
    """Claim a PENDING, unassigned delivery for a rider.

    A rider claims for themselves. Admins (and the system auto-assigner) name
    the rider explicitly.
    """
    if principal is None:
        raise Unauthorized("Sign in to claim deliveries")
    if principal.is_admin or principal.is_system:
        if rider_id is None:
            raise ValidationError("rider_id is required", code="rider_required")
        target_rider = int(rider_id)
    elif principal.has_role("rider"):
        if rider_id is not None and int(rider_id) != int(principal.user_id):
            raise Unauthorized("Riders can only claim deliveries for themselves")
        target_rider = int(principal.user_id)
    else:
        raise Unauthorized("Only riders can claim deliveries")

    with unit_of_work():
        if _approved_rider(target_rider) is None:
            raise ValidationError("Rider is not approved", code="rider_not_approved", detail={"rider_id": target_rider})
        delivery = _get_delivery(delivery_id)
        if delivery.rider_id is not None and int(delivery.rider_id) == target_rider and (principal.is_admin or principal.is_system):
            return delivery
        order = db.session.get(Order, int(delivery.order_id))
        if order is None or order.status not in ASSIGNABLE_ORDER_STATES:
            raise StateError(
                "Order is not ready for delivery",
                code="order_not_assignable",
                detail={"order_id": int(delivery.order_id), "status": order.status if order else None},
            )

        now = datetime.utcnow()
        result = db.session.execute(
            update(Delivery)
            .where(Delivery.id == int(delivery.id))
            .where(Delivery.rider_id.is_(None))
            .where(Delivery.status == DeliveryStatus.PENDING)
            .values(rider_id=target_rider, status=DeliveryStatus.ASSIGNED, assigned_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            db.session.refresh(delivery)
            if delivery.rider_id is not None:
                raise AlreadyAssigned("Delivery has already been assigned", detail={"delivery_id": int(delivery.id)})
            raise StateError(
                f"Delivery is {delivery.status}",
                code="delivery_not_pending",
                detail={"delivery_id": int(delivery.id), "status": delivery.status},
            )
        db.session.refresh(delivery)

        log_event(
            "delivery_assigned",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="delivery",
            subject_id=int(delivery.id),
            metadata={"rider_id": target_rider, "by": principal.actor().get("type")},
        )
        notification_service.notify(
            "delivery_assigned",
            {"order_id": int(order.id), "delivery_id": int(delivery.id), "rider_id": target_rider},
        )
        publish_after_commit(
            int(order.id),
            live_event(
                "delivery_assigned",
                order_id=int(order.id),
                delivery_id=int(delivery.id),
                status=DeliveryStatus.ASSIGNED,
                rider=target_rider,
            ),
        )
    logger.info("delivery_assigned delivery_id=%s order_id=%s rider_id=%s", delivery.id, delivery.order_id, target_rider)
    return delivery


def _set_order_status(order: Order, status: str, **values) -> None:
    order.status = status
    for key, value in values.items():
        setattr(order, key, value)
    order.updated_at = datetime.utcnow()
    notification_service.notify("order_status_update", {"order_id": int(order.id), "status": status})
    publish_after_commit(int(order.id), live_event("order_status", order_id=int(order.id), status=status))


def advance_delivery_status(principal, delivery_id: int, to_status: str, *, reason: str | None = None) -> Delivery:
    """Move the caller's delivery one step forward, or to FAILED."""
    target = (to_status or "").strip().upper()
    if target not in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED):
        raise ValidationError(f"Invalid delivery status {to_status}", code="invalid_status")
    if principal is None or principal.user_id is None:
        raise Unauthorized("Only the assigned rider can update this delivery")

    with unit_of_work():
        delivery = _get_delivery(delivery_id)
        if delivery.rider_id is None or int(delivery.rider_id) != int(principal.user_id) or not principal.has_role("rider"):
            raise Unauthorized("Only the assigned rider can update this delivery", detail={"delivery_id": int(delivery.id)})
        current = delivery.status
        if target == DeliveryStatus.FAILED:
            if current not in DeliveryStatus.ACTIVE:
                raise StateError(f"Cannot fail a {current} delivery", code="invalid_delivery_transition")
        elif DeliveryStatus.NEXT.get(current) != target:
            raise StateError(
                f"Cannot move delivery from {current} to {target}",
                code="invalid_delivery_transition",
                detail={"from": current, "to": target},
            )

        now = datetime.utcnow()
        values = {"status": target, "updated_at": now}
        if target == DeliveryStatus.PICKED_UP:
            values["picked_up_at"] = now
        elif target == DeliveryStatus.DELIVERED:
            values["delivered_at"] = now
        elif target == DeliveryStatus.FAILED:
            values["failed_at"] = now
            values["failure_reason"] = (reason or "rider_reported_failure")[:240]
        result = db.session.execute(
            update(Delivery)
            .where(Delivery.id == int(delivery.id))
            .where(Delivery.rider_id == int(principal.user_id))
            .where(Delivery.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise StateError("Delivery changed concurrently, reload and retry", code="delivery_conflict")
        db.session.refresh(delivery)

        order = db.session.get(Order, int(delivery.order_id))
        if target == DeliveryStatus.PICKED_UP and order.status in ASSIGNABLE_ORDER_STATES:
            _set_order_status(order, OrderStatus.OUT_FOR_DELIVERY)
        elif target == DeliveryStatus.DELIVERED:
            _complete_order(principal, order, now)

        log_event(
            f"delivery_{target.lower()}",
            actor_user_id=principal.user_id,
            order_id=int(order.id),
            subject_type="delivery",
            subject_id=int(delivery.id),
            metadata={"from": current, "to": target, "reason": reason or ""},
        )
        publish_after_commit(
            int(order.id),
            live_event(
                "delivery_status",
                order_id=int(order.id),
                delivery_id=int(delivery.id),
                status=target,
                rider=int(principal.user_id),
            ),
        )
    logger.info("delivery_status delivery_id=%s %s->%s rider_id=%s", delivery.id, current, target, principal.user_id)
    return delivery


def _complete_order(principal, order: Order, now: datetime) -> None:
    order.delivered_at = now
    if order.status in (OrderStatus.DISPUTED, OrderStatus.CANCELLED):
        # Escrow stays frozen until the dispute is settled.
        order.updated_at = now
        logger.info("delivery_completed_on_%s order_id=%s auto_release=skipped", order.status.lower(), order.id)
        return
    _set_order_status(order, OrderStatus.DELIVERED)
    payment = Payment.query.filter_by(order_id=int(order.id)).first()
    if payment is None:
        return
    if payment.status == PaymentStatus.COMPLETED and payment.escrow_status == EscrowStatus.HELD:
        release_payment(order, payment, actor=principal.actor(), reason="delivery_completed")


def fail_open_delivery(order_id: int, reason: str) -> Delivery | None:
    """Fail a non-terminal delivery as part of an order-level action.

    Runs inside the caller's unit of work; no rider check.
    """
    delivery = Delivery.query.filter_by(order_id=int(order_id)).first()
    if delivery is None or delivery.status in DeliveryStatus.TERMINAL:
        return delivery
    now = datetime.utcnow()
    previous = delivery.status
    delivery.status = DeliveryStatus.FAILED
    delivery.failed_at = now
    delivery.failure_reason = (reason or "")[:240] or None
    delivery.updated_at = now
    db.session.flush()
    publish_after_commit(
        int(order_id),
        live_event("delivery_status", order_id=int(order_id), delivery_id=int(delivery.id), status=DeliveryStatus.FAILED),
    )
    logger.info("delivery_failed delivery_id=%s from=%s reason=%s", delivery.id, previous, reason)
    return delivery


def update_rider_location(principal, latitude, longitude, *, delivery_id: int | None = None) -> list[Delivery]:
    """Last-write-wins telemetry on the rider's active deliveries."""
    if principal is None or principal.user_id is None or not principal.has_role("rider"):
        raise Unauthorized("Only riders can report a location")
    if not valid_coordinates(latitude, longitude):
        raise ValidationError("Invalid coordinates", code="invalid_coordinates")
    lat, lon = float(latitude), float(longitude)

    q = Delivery.query.filter(
        Delivery.rider_id == int(principal.user_id),
        Delivery.status.in_(sorted(DeliveryStatus.ACTIVE)),
    )
    if delivery_id is not None:
        q = q.filter(Delivery.id == int(delivery_id))
    rows = q.all()
    if delivery_id is not None and not rows:
        raise NotFoundError("No active delivery with that id", code="delivery_not_found")

    now = datetime.utcnow()
    for d in rows:
        d.rider_latitude = lat
        d.rider_longitude = lon
        d.location_updated_at = now
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    for d in rows:
        publish(
            int(d.order_id),
            live_event(
                "rider_location",
                order_id=int(d.order_id),
                delivery_id=int(d.id),
                rider=int(principal.user_id),
                lat=lat,
                lon=lon,
            ),
        )
    return rows


def set_rider_online(principal, online: bool) -> UserRole:
    if principal is None or principal.user_id is None:
        raise Unauthorized("Only riders can change availability")
    role = _approved_rider(int(principal.user_id))
    if role is None:
        raise AuthorizationError("Rider profile is not approved", code="rider_not_approved")
    role.is_online = bool(online)
    db.session.commit()
    return role


def list_rider_deliveries(rider_id: int, *, status: str | None = None, limit: int = 50) -> list[Delivery]:
    q = Delivery.query.filter_by(rider_id=int(rider_id))
    if status:
        q = q.filter(Delivery.status == status.strip().upper())
    return q.order_by(Delivery.updated_at.desc(), Delivery.id.desc()).limit(max(1, min(int(limit or 50), 200))).all()


def list_available_deliveries(*, limit: int = 50) -> list[dict]:
    rows = (
        db.session.query(Delivery, Order, Shop)
        .join(Order, Delivery.order_id == Order.id)
        .join(Shop, Order.shop_id == Shop.id)
        .filter(Delivery.status == DeliveryStatus.PENDING)
        .filter(Delivery.rider_id.is_(None))
        .filter(Order.status.in_(sorted(ASSIGNABLE_ORDER_STATES)))
        .order_by(Order.paid_at.asc(), Delivery.id.asc())
        .limit(max(1, min(int(limit or 50), 200)))
        .all()
    )
    out = []
    for delivery, order, shop in rows:
        data = delivery.to_dict()
        data["order"] = {
            "id": int(order.id),
            "order_number": order.order_number,
            "delivery_fee": order.to_dict()["delivery_fee"],
            "delivery_address": order.delivery_address,
            "delivery_city": order.delivery_city,
        }
        data["shop"] = {"id": int(shop.id), "name": shop.name, "address": shop.address or "", "latitude": shop.latitude, "longitude": shop.longitude}
        out.append(data)
    return out
