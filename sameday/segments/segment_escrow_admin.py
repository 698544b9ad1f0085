from __future__ import annotations

from flask import Blueprint, jsonify, request

from sameday.errors import Unauthorized
from sameday.models import ReconciliationReport
from sameday.services.reconciliation_service import audit_lifecycle_invariants, persist_report
from sameday.services.settlement_service import pending_releases, refund_escrow, release_escrow
from sameday.utils.principal import require_principal

escrow_admin_bp = Blueprint("escrow_admin_bp", __name__, url_prefix="/api/admin")


def _require_admin():
    principal = require_principal()
    if not principal.is_admin:
        raise Unauthorized("Admin access required")
    return principal


@escrow_admin_bp.get("/payments/pending")
def pending():
    _require_admin()
    return jsonify({"ok": True, "items": pending_releases()}), 200


@escrow_admin_bp.post("/payments/<int:order_id>/release")
def release(order_id: int):
    principal = _require_admin()
    result = release_escrow(principal, order_id)
    return jsonify(
        {
            "ok": True,
            "released": bool(result["released"]),
            "order": result["order"].to_dict(),
            "payment": result["payment"].to_dict(),
        }
    ), 200


@escrow_admin_bp.post("/payments/<int:order_id>/refund")
def refund(order_id: int):
    principal = _require_admin()
    payload = request.get_json(silent=True) or {}
    result = refund_escrow(principal, order_id, reason=(payload.get("reason") or "").strip() or None)
    return jsonify(
        {
            "ok": True,
            "refunded": bool(result["refunded"]),
            "order": result["order"].to_dict(),
            "payment": result["payment"].to_dict(),
        }
    ), 200


@escrow_admin_bp.post("/reconciliation/run")
def run_reconciliation():
    principal = _require_admin()
    summary = audit_lifecycle_invariants()
    report = persist_report(summary, created_by=principal.user_id)
    return jsonify({"ok": True, "report": report.to_dict(), "summary": summary}), 200


@escrow_admin_bp.get("/reconciliation/latest")
def latest_reconciliation():
    _require_admin()
    row = ReconciliationReport.query.order_by(ReconciliationReport.created_at.desc(), ReconciliationReport.id.desc()).first()
    return jsonify({"ok": True, "report": row.to_dict() if row else None}), 200
