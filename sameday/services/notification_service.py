"""Outbound notification queue.

`notify(event_type, payload)` is the only entry point the engine uses. Rows
are written after the owning transaction commits, so a rolled back operation
never notifies anyone and a notification failure never undoes an operation.
In-app rows are immediately visible; sms rows wait for the dispatcher job.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta

from sameday.extensions import db
from sameday.models import Notification, Order, Shop, User, UserRole
from sameday.utils.fees import money_minor_to_major
from sameday.utils.transactions import on_commit

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "order_placed",
    "order_status_update",
    "payment_received",
    "payment_released",
    "payment_refunded",
    "delivery_assigned",
    "dispute_created",
    "dispute_resolved",
    "low_stock_alert",
)


def _low_stock_window_seconds() -> int:
    raw = (os.getenv("LOW_STOCK_ALERT_WINDOW_SECONDS") or "").strip()
    try:
        value = int(raw) if raw else 3600
    except Exception:
        value = 3600
    return max(60, value)


def notify(event_type: str, payload: dict) -> None:
    """Fire-and-forget; never raises."""
    if event_type not in EVENT_TYPES:
        logger.warning("notify_unknown_event event_type=%s", event_type)
        return
    on_commit(_deliver, event_type, dict(payload or {}))


def _deliver(event_type: str, payload: dict) -> int:
    try:
        messages = _compose(event_type, payload)
        if not messages:
            return 0
        now = datetime.utcnow()
        for msg in messages:
            channel = msg.get("channel") or "in_app"
            db.session.add(
                Notification(
                    user_id=int(msg["user_id"]),
                    event_type=event_type,
                    channel=channel,
                    title=(msg.get("title") or "")[:160],
                    message=msg.get("message") or "",
                    link=(msg.get("link") or "")[:255] or None,
                    to_address=(msg.get("to") or "")[:64] or None,
                    status="sent" if channel == "in_app" else "queued",
                    sent_at=now if channel == "in_app" else None,
                    created_at=now,
                    meta=json.dumps(payload, separators=(",", ":"), default=str),
                )
            )
        db.session.commit()
        logger.info("notifications_queued event_type=%s count=%s", event_type, len(messages))
        return len(messages)
    except Exception:
        logger.exception("notification_enqueue_failed event_type=%s", event_type)
        db.session.rollback()
        return 0


def _phone(user_id: int | None) -> str:
    if not user_id:
        return ""
    user = db.session.get(User, int(user_id))
    return (getattr(user, "phone", None) or "").strip() if user else ""


def _with_sms(rows: list[dict], user_id: int, text: str, *, to: str | None = None) -> None:
    phone = (to or _phone(user_id)).strip()
    if phone:
        rows.append({"user_id": user_id, "channel": "sms", "message": text, "to": phone})


def _order_context(order_id) -> tuple[Order | None, Shop | None]:
    if order_id is None:
        return None, None
    order = db.session.get(Order, int(order_id))
    if order is None:
        return None, None
    return order, db.session.get(Shop, int(order.shop_id))


def _admin_ids() -> list[int]:
    rows = UserRole.query.filter_by(role="admin", is_active=True).all()
    return sorted({int(r.user_id) for r in rows})


def recently_alerted(seller_id: int, *, window_seconds: int | None = None) -> bool:
    window = window_seconds if window_seconds is not None else _low_stock_window_seconds()
    since = datetime.utcnow() - timedelta(seconds=max(1, int(window)))
    return (
        Notification.query.filter_by(user_id=int(seller_id), event_type="low_stock_alert")
        .filter(Notification.created_at >= since)
        .first()
        is not None
    )


def _compose(event_type: str, payload: dict) -> list[dict]:
    if event_type == "low_stock_alert":
        seller_id = int(payload.get("seller_id") or 0)
        if not seller_id or recently_alerted(seller_id):
            return []
        return [
            {
                "user_id": seller_id,
                "title": "Low Stock Alert",
                "message": (
                    f"{payload.get('product_name')} ({payload.get('unit')}) is running low. "
                    f"Current stock: {payload.get('current_stock')}, Threshold: {payload.get('threshold')}"
                ),
                "link": f"/seller/products/{payload.get('product_id')}",
            }
        ]

    order, shop = _order_context(payload.get("order_id"))
    if order is None:
        logger.warning("notify_missing_order event_type=%s order_id=%s", event_type, payload.get("order_id"))
        return []
    number = order.order_number
    link = f"/orders/{int(order.id)}"
    seller_id = int(shop.owner_id) if shop else None
    rows: list[dict] = []

    if event_type == "order_placed":
        rows.append({"user_id": order.buyer_id, "title": "Order placed", "message": f"Your order {number} has been placed.", "link": link})
        if seller_id:
            text = f"New order {number} for {money_minor_to_major(order.total_minor):.2f}."
            rows.append({"user_id": seller_id, "title": "New order", "message": text, "link": f"/seller/orders/{int(order.id)}"})
            _with_sms(rows, seller_id, text, to=(shop.phone or "") if shop else None)
    elif event_type == "order_status_update":
        status = payload.get("status") or order.status
        rows.append({"user_id": order.buyer_id, "title": "Order update", "message": f"Order {number} is now {status}.", "link": link})
    elif event_type == "payment_received":
        if seller_id:
            rows.append({"user_id": seller_id, "title": "Payment received", "message": f"Payment for order {number} is held in escrow.", "link": link})
    elif event_type == "payment_released":
        if seller_id:
            amount = payload.get("seller_amount_minor")
            text = f"Payment for order {number} has been released"
            if amount is not None:
                text += f": {money_minor_to_major(amount):.2f}"
            rows.append({"user_id": seller_id, "title": "Payment released", "message": text + ".", "link": link})
            _with_sms(rows, seller_id, text + ".")
    elif event_type == "payment_refunded":
        text = f"Your payment for order {number} has been refunded."
        rows.append({"user_id": order.buyer_id, "title": "Payment refunded", "message": text, "link": link})
        _with_sms(rows, order.buyer_id, text)
    elif event_type == "delivery_assigned":
        rider_id = payload.get("rider_id")
        if rider_id:
            text = f"You have been assigned delivery for order {number}."
            rows.append({"user_id": int(rider_id), "title": "New delivery", "message": text, "link": f"/rider/deliveries/{payload.get('delivery_id')}"})
            _with_sms(rows, int(rider_id), text)
        rows.append({"user_id": order.buyer_id, "title": "Rider assigned", "message": f"A rider has been assigned to order {number}.", "link": link})
    elif event_type == "dispute_created":
        if seller_id:
            rows.append({"user_id": seller_id, "title": "Dispute opened", "message": f"The buyer opened a dispute on order {number}.", "link": link})
        for admin_id in _admin_ids():
            rows.append({"user_id": admin_id, "title": "Dispute opened", "message": f"Dispute #{payload.get('dispute_id')} opened on order {number}.", "link": f"/admin/disputes/{payload.get('dispute_id')}"})
    elif event_type == "dispute_resolved":
        resolution = payload.get("resolution") or ""
        for uid in (order.buyer_id, seller_id):
            if uid:
                rows.append({"user_id": uid, "title": "Dispute resolved", "message": f"The dispute on order {number} was resolved: {resolution}.", "link": link})
    return rows
