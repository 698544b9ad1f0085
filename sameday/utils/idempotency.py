from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from sameday.extensions import db
from sameday.models import IdempotencyKey

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def idempotency_enforced() -> bool:
    return _env_bool("ENABLE_IDEMPOTENCY_ENFORCEMENT", False)


def _canonical_json(payload: Any) -> str:
    try:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except Exception:
        return str(payload)


def _hash_request(*, scope: str, payload: Any) -> str:
    raw = f"{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _required_key_response(scope: str) -> tuple[str, dict, int]:
    return (
        "required",
        {
            "ok": False,
            "error": "idempotency_key_required",
            "message": f"Idempotency-Key header is required for {scope or 'this operation'}.",
            "status": 400,
        },
        400,
    )


def _reuse_conflict_response() -> tuple[str, dict, int]:
    return (
        "conflict",
        {
            "ok": False,
            "error": "idempotency_key_reuse",
            "message": "This Idempotency-Key was already used with a different request payload.",
            "status": 409,
        },
        409,
    )


def _in_progress_response() -> tuple[str, dict, int]:
    return (
        "conflict",
        {
            "ok": False,
            "error": "idempotency_key_in_progress",
            "message": "A request with this Idempotency-Key is still being processed.",
            "status": 409,
        },
        409,
    )


def lookup_response(
    user_id: int | None,
    scope: str,
    payload: Any,
    *,
    idempotency_key: str | None = None,
):
    """Reserve or replay an idempotent request.

    Returns None when no key was supplied (and none is required),
    ("hit", body, status) for a replay, ("conflict"|"required", body, status)
    for a rejected reuse, or ("miss", row, 0) after reserving the key.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        if idempotency_enforced():
            return _required_key_response(scope)
        return None

    scope_key = f"{scope}:u:{int(user_id)}" if user_id is not None else scope
    req_hash = _hash_request(scope=scope_key, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope_key[:128], key=k).first()
    if row:
        if (row.request_hash or "") != req_hash:
            return _reuse_conflict_response()
        if not row.is_complete():
            return _in_progress_response()
        try:
            return ("hit", json.loads(row.response_json or "{}"), int(row.response_code))
        except Exception:
            return ("hit", {"ok": True}, int(row.response_code))

    row = IdempotencyKey(
        key=k,
        scope=scope_key[:128],
        user_id=int(user_id) if user_id is not None else None,
        request_hash=req_hash,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return _in_progress_response()
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    try:
        row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    except Exception:
        row.response_json = json.dumps({"ok": True})
    row.response_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Drop a reservation whose request failed so the caller can retry."""
    try:
        db.session.delete(row)
        db.session.commit()
    except Exception:
        logger.exception("idempotency_release_failed key=%s", getattr(row, "key", ""))
        db.session.rollback()
