from __future__ import annotations

import os

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from sameday.errors import ConflictError, NotFoundError, Unauthorized, ValidationError
from sameday.extensions import db
from sameday.models import User, UserRole
from sameday.utils.jwt_utils import create_token
from sameday.utils.principal import require_principal
from sameday.utils.rate_limit import rate_limit

auth_bp = Blueprint("auth_bp", __name__, url_prefix="/api")

SELF_SERVICE_ROLES = ("seller", "rider")


def _access_token_ttl_seconds() -> int:
    raw = (os.getenv("ACCESS_TOKEN_TTL_SECONDS") or "").strip()
    if raw:
        try:
            parsed = int(raw)
            if parsed > 0:
                return parsed
        except Exception:
            pass
    return 60 * 60 * 24 * 7


def _session_payload(user: User) -> dict:
    return {
        "ok": True,
        "token": create_token(int(user.id), _access_token_ttl_seconds()),
        "user": user.to_dict(),
    }


@auth_bp.post("/auth/register")
@rate_limit("auth:register", 300, 25, scope="ip")
def register():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    phone = (data.get("phone") or "").strip() or None
    password = data.get("password") or ""
    role = (data.get("role") or "buyer").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required", code="email_required")
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters", code="weak_password")
    if role not in ("buyer",) + SELF_SERVICE_ROLES:
        raise Unauthorized(f"Cannot sign up as {role}")

    user = User(name=name or email.split("@")[0], email=email, phone=phone)
    user.set_password(password)
    try:
        db.session.add(user)
        db.session.flush()
        db.session.add(UserRole(user_id=int(user.id), role="buyer", status="APPROVED"))
        if role in SELF_SERVICE_ROLES:
            # Sellers and riders wait for admin approval.
            db.session.add(UserRole(user_id=int(user.id), role=role, status="PENDING"))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Email already in use", code="email_taken")
    current_app.logger.info("user_registered user_id=%s requested_role=%s", user.id, role)
    return jsonify(_session_payload(user)), 201


@auth_bp.post("/auth/login")
@rate_limit("auth:login", 300, 30, scope="ip")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        raise ValidationError("Email and password are required", code="credentials_required")
    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return jsonify({"ok": False, "error": "invalid_credentials", "message": "Invalid credentials", "status": 401}), 401
    return jsonify(_session_payload(user)), 200


@auth_bp.get("/auth/me")
def me():
    principal = require_principal()
    user = db.session.get(User, int(principal.user_id))
    return jsonify({"ok": True, "user": user.to_dict()}), 200


@auth_bp.post("/admin/users/<int:user_id>/roles/<role>/<decision>")
def decide_role(user_id: int, role: str, decision: str):
    principal = require_principal()
    if not principal.is_admin:
        raise Unauthorized("Admin access required")
    role = (role or "").strip().lower()
    decision = (decision or "").strip().lower()
    if role not in SELF_SERVICE_ROLES or decision not in ("approve", "reject"):
        raise ValidationError("Unsupported role decision", code="invalid_role_decision")
    row = UserRole.query.filter_by(user_id=int(user_id), role=role).first()
    if row is None:
        raise NotFoundError(f"User {user_id} has not applied as {role}", code="role_not_found")
    row.status = "APPROVED" if decision == "approve" else "REJECTED"
    db.session.commit()
    current_app.logger.info("role_decision user_id=%s role=%s status=%s by=%s", user_id, role, row.status, principal.user_id)
    return jsonify({"ok": True, "role": row.to_dict()}), 200
