from __future__ import annotations

from flask import Blueprint, jsonify, request

from sameday.errors import Unauthorized
from sameday.services.stock_ledger import UNSET, low_stock_items, stock_history, update_stock
from sameday.utils.principal import require_principal

inventory_bp = Blueprint("inventory_bp", __name__, url_prefix="/api/seller")


@inventory_bp.patch("/pricing-units/<int:unit_id>/stock")
def set_stock(unit_id: int):
    principal = require_principal()
    payload = request.get_json(silent=True) or {}
    unit = update_stock(
        principal,
        unit_id,
        stock=payload["stock"] if "stock" in payload else UNSET,
        delta=payload.get("delta"),
        low_stock_threshold=payload["low_stock_threshold"] if "low_stock_threshold" in payload else UNSET,
    )
    return jsonify({"ok": True, "pricing_unit": unit.to_dict()}), 200


@inventory_bp.get("/pricing-units/<int:unit_id>/stock-history")
def history(unit_id: int):
    principal = require_principal()
    try:
        limit = int(request.args.get("limit") or 50)
    except Exception:
        limit = 50
    rows = stock_history(principal, unit_id, limit=limit)
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@inventory_bp.get("/low-stock")
def low_stock():
    principal = require_principal()
    if not principal.has_role("seller"):
        raise Unauthorized("Seller access required")
    return jsonify({"ok": True, "items": low_stock_items(int(principal.user_id))}), 200
