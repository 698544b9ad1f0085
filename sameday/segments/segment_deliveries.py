from __future__ import annotations

from flask import Blueprint, jsonify, request

from sameday.errors import Unauthorized, ValidationError
from sameday.services.delivery_service import (
    advance_delivery_status,
    assign_delivery,
    list_available_deliveries,
    list_rider_deliveries,
    set_rider_online,
    update_rider_location,
)
from sameday.utils.principal import require_principal

deliveries_bp = Blueprint("deliveries_bp", __name__, url_prefix="/api")


def _require_rider():
    principal = require_principal()
    if not principal.has_role("rider"):
        raise Unauthorized("Rider access required")
    return principal


@deliveries_bp.get("/rider/deliveries/available")
def available():
    _require_rider()
    return jsonify({"ok": True, "items": list_available_deliveries()}), 200


@deliveries_bp.get("/rider/deliveries")
def mine():
    principal = _require_rider()
    rows = list_rider_deliveries(int(principal.user_id), status=request.args.get("status"))
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@deliveries_bp.post("/rider/deliveries/<int:delivery_id>/claim")
def claim(delivery_id: int):
    principal = _require_rider()
    delivery = assign_delivery(principal, delivery_id)
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200


@deliveries_bp.patch("/rider/deliveries/<int:delivery_id>")
def advance(delivery_id: int):
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    status = (payload.get("status") or "").strip()
    if not status:
        raise ValidationError("status is required", code="status_required")
    delivery = advance_delivery_status(principal, delivery_id, status, reason=payload.get("reason"))
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200


@deliveries_bp.post("/rider/location")
def location():
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    delivery_id = payload.get("delivery_id")
    rows = update_rider_location(
        principal,
        payload.get("latitude"),
        payload.get("longitude"),
        delivery_id=int(delivery_id) if delivery_id is not None else None,
    )
    return jsonify({"ok": True, "updated": len(rows)}), 200


@deliveries_bp.post("/rider/availability")
def availability():
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    role = set_rider_online(principal, bool(payload.get("online")))
    return jsonify({"ok": True, "online": bool(role.is_online)}), 200


@deliveries_bp.post("/admin/deliveries/<int:delivery_id>/assign")
def admin_assign(delivery_id: int):
    principal = require_principal()
    if not principal.is_admin:
        raise Unauthorized("Admin access required")
    payload = request.get_json(silent=True) or {}
    rider_id = payload.get("rider_id")
    if rider_id is None:
        raise ValidationError("rider_id is required", code="rider_required")
    try:
        rider_id = int(rider_id)
    except Exception:
        raise ValidationError("rider_id must be an integer", code="rider_required")
    delivery = assign_delivery(principal, delivery_id, rider_id)
    return jsonify({"ok": True, "delivery": delivery.to_dict()}), 200
