"""Server-Sent Events view over the live-update broker."""
from __future__ import annotations

import json
import os
import time

from flask import Blueprint, Response, stream_with_context

from sameday.errors import Unauthorized
from sameday.models import Delivery, OrderStatus, Payment
from sameday.services.order_service import can_view_order, get_order
from sameday.utils.principal import require_principal
from sameday.utils.realtime import get_broker, live_event, order_channel

stream_bp = Blueprint("stream_bp", __name__, url_prefix="/api")


def _env_seconds(name: str, default: float) -> float:
    try:
        return max(0.05, float((os.getenv(name) or str(default)).strip()))
    except Exception:
        return float(default)


def sse_frame(event: dict) -> str:
    return f"data: {json.dumps(event, separators=(',', ':'), default=str)}\n\n"


def order_event_stream(snapshot: dict, subscription, *, keepalive_seconds: float = 15.0, max_seconds: float = 300.0, clock=time.monotonic):
    """Yield the snapshot, then broker events until the order settles or time runs out."""
    deadline = clock() + max_seconds
    try:
        yield sse_frame(snapshot)
        if snapshot.get("status") in OrderStatus.TERMINAL:
            return
        while clock() < deadline:
            event = subscription.get(timeout=min(keepalive_seconds, max(0.0, deadline - clock())))
            if event is None:
                yield ": keepalive\n\n"
                continue
            yield sse_frame(event)
            if event.get("type") == "order_status" and event.get("status") in OrderStatus.TERMINAL:
                return
    finally:
        subscription.close()


def order_snapshot(order) -> dict:
    delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
    payment = Payment.query.filter_by(order_id=int(order.id)).first()
    snap = live_event(
        "snapshot",
        order_id=int(order.id),
        delivery_id=int(delivery.id) if delivery else None,
        status=order.status,
        rider=int(delivery.rider_id) if delivery and delivery.rider_id is not None else None,
        lat=delivery.rider_latitude if delivery else None,
        lon=delivery.rider_longitude if delivery else None,
    )
    snap["deliveryStatus"] = delivery.status if delivery else None
    snap["escrowStatus"] = payment.escrow_status if payment else None
    return snap


@stream_bp.get("/orders/<int:order_id>/stream")
def order_stream(order_id: int):
    principal = require_principal()
    order = get_order(order_id)
    if not can_view_order(principal, order):
        raise Unauthorized("You cannot follow this order")
    subscription = get_broker().subscribe(order_channel(int(order.id)))
    snapshot = order_snapshot(order)
    stream = order_event_stream(
        snapshot,
        subscription,
        keepalive_seconds=_env_seconds("STREAM_KEEPALIVE_SECONDS", 15.0),
        max_seconds=_env_seconds("STREAM_MAX_SECONDS", 300.0),
    )
    resp = Response(stream_with_context(stream), mimetype="text/event-stream")
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    return resp
