from __future__ import annotations

from flask import Blueprint, jsonify, request

from sameday.errors import NotFoundError
from sameday.extensions import db
from sameday.models import Notification
from sameday.utils.principal import require_principal

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


@notifications_bp.get("/notifications")
def list_notifications():
    principal = require_principal()
    q = Notification.query.filter_by(user_id=int(principal.user_id), channel="in_app")
    if (request.args.get("unread") or "").strip() in ("1", "true"):
        q = q.filter(Notification.read_at.is_(None))
    rows = q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(80).all()
    return jsonify({"ok": True, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/<int:notification_id>/read")
def mark_notification_read(notification_id: int):
    principal = require_principal()
    row = Notification.query.filter_by(id=notification_id, user_id=int(principal.user_id)).first()
    if not row:
        raise NotFoundError("Not found", code="notification_not_found")
    try:
        stamped = row.mark_read()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({"ok": True, "id": int(row.id), "is_read": True, "read_at": stamped.isoformat()}), 200
