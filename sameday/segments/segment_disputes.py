from __future__ import annotations

from flask import Blueprint, jsonify, request

from sameday.errors import ValidationError
from sameday.services.dispute_service import annotate_dispute, create_dispute, list_disputes, resolve_dispute, view_dispute
from sameday.utils.principal import require_principal

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api")


@disputes_bp.post("/disputes")
def open_dispute():
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    order_id = payload.get("order_id")
    try:
        order_id = int(order_id)
    except Exception:
        raise ValidationError("order_id is required", code="order_required")
    dispute = create_dispute(principal, order_id, payload.get("reason") or "", description=payload.get("description"))
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 201


@disputes_bp.get("/disputes")
def my_disputes():
    principal = require_principal()
    rows = list_disputes(principal, status=request.args.get("status"))
    return jsonify({"ok": True, "items": [d.to_dict() for d in rows]}), 200


@disputes_bp.get("/disputes/<int:dispute_id>")
def get_dispute(dispute_id: int):
    principal = require_principal()
    return jsonify({"ok": True, "dispute": view_dispute(principal, dispute_id).to_dict()}), 200


@disputes_bp.patch("/disputes/<int:dispute_id>")
def update_dispute(dispute_id: int):
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    dispute = annotate_dispute(principal, dispute_id, notes=payload.get("notes"), status=payload.get("status"))
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/admin/disputes/<int:dispute_id>/resolve")
def resolve(dispute_id: int):
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    dispute = resolve_dispute(
        principal,
        dispute_id,
        payload.get("resolution") or "",
        admin_notes=payload.get("admin_notes"),
        refund_amount=payload.get("refund_amount"),
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200
