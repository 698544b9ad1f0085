from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from sameday.services.order_assembler import create_orders, parse_cart_items, parse_delivery_info
from sameday.services.order_service import cancel_order, confirm_payment, list_orders, update_order_status, view_order
from sameday.utils.idempotency import lookup_response, release_key, store_response
from sameday.utils.principal import require_principal
from sameday.utils.rate_limit import rate_limit

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _to_int(value, default: int) -> int:
    try:
        return int(value)
    except Exception:
        return int(default)


@orders_bp.post("/orders")
@rate_limit("orders:create", 60, 10, message="Too many checkout attempts. Please wait a minute.")
def create_order():
    principal = require_principal()
    payload = request.get_json(silent=True) or {}

    idem = lookup_response(principal.user_id, "orders:create", payload)
    if idem is not None and idem[0] != "miss":
        return jsonify(idem[1]), idem[2]
    reservation = idem[1] if idem is not None else None

    try:
        items = parse_cart_items(payload.get("items"))
        delivery = parse_delivery_info(payload.get("delivery") or payload)
        orders = create_orders(principal, items, delivery)
    except Exception:
        if reservation is not None:
            release_key(reservation)
        raise

    body = {
        "ok": True,
        "orders": [o.to_dict(include_items=True) for o in orders],
        "count": len(orders),
        "checkout_ref": orders[0].checkout_ref if orders else "",
    }
    if len(orders) > 1:
        body["message"] = f"{len(orders)} orders created, one per shop. Each order is paid separately."
    if reservation is not None:
        store_response(reservation, body, 201)
    current_app.logger.info("orders_created user_id=%s count=%s", principal.user_id, len(orders))
    return jsonify(body), 201


@orders_bp.get("/orders")
def my_orders():
    principal = require_principal()
    rows = list_orders(
        principal,
        role=request.args.get("role") or "buyer",
        status=request.args.get("status"),
        limit=_to_int(request.args.get("limit"), 50),
    )
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]}), 200


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    principal = require_principal()
    return jsonify({"ok": True, "order": view_order(principal, order_id)}), 200


@orders_bp.post("/orders/<int:order_id>/cancel")
def cancel(order_id: int):
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    order = cancel_order(principal, order_id, reason=payload.get("reason"))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.patch("/orders/<int:order_id>/status")
def set_status(order_id: int):
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    order = update_order_status(principal, order_id, payload.get("status") or "")
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<int:order_id>/payment/confirm")
def confirm(order_id: int):
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    order = confirm_payment(principal, order_id, reference=(payload.get("reference") or "").strip() or None)
    return jsonify({"ok": True, "order": view_order(principal, int(order.id))}), 200
