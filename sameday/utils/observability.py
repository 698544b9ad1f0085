"""Request ids, the per-request access log and optional Sentry reporting.

Every request carries an `X-Request-Id` (inbound or generated). The access log
line names the caller's roles and the marketplace entity the route acted on, so
an order can be followed through checkout, payment, delivery and dispute calls.
"""
from __future__ import annotations

import hashlib
import json
import os
import time
import uuid
from datetime import datetime

from flask import g, has_request_context, request

REQUEST_ID_HEADER = "X-Request-Id"
MAX_REQUEST_ID_LENGTH = 80

# URL parameters that identify the entity a route acts on.
_ENTITY_ARGS = ("order_id", "delivery_id", "dispute_id", "unit_id", "notification_id", "user_id")

_SCRUBBED_HEADERS = {"authorization", "idempotency-key", "cookie", "set-cookie"}
_SCRUBBED_FIELDS = {"password", "token", "reference"}


def _hash_ip(ip: str, salt: str) -> str:
    raw = f"{salt}:{ip or ''}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def get_request_id() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "request_id", "") or ""


def request_entities() -> dict:
    """Entity ids from the matched route, e.g. {"order_id": 12} for /api/orders/12/cancel."""
    if not has_request_context():
        return {}
    args = request.view_args or {}
    return {name: args[name] for name in _ENTITY_ARGS if args.get(name) is not None}


def _caller_roles() -> list[str]:
    principal = getattr(g, "principal", None)
    if principal is None:
        return []
    return sorted(principal.roles)


def _slow_request_ms() -> float:
    try:
        return float((os.getenv("SLOW_REQUEST_MS") or "1500").strip())
    except ValueError:
        return 1500.0


def init_sentry(app) -> None:
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        try:
            traces_rate = float((os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0.0").strip())
        except ValueError:
            traces_rate = 0.0

        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("SAMEDAY_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or "unknown"),
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=max(0.0, min(traces_rate, 1.0)),
            before_send=_before_send_scrub,
        )
        app.logger.info("sentry_enabled")
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def _before_send_scrub(event, hint):
    """Redact credentials and payment references, then tag the event with the request's entities."""
    req = event.get("request") or {}
    headers = req.get("headers") or {}
    for key in list(headers.keys()):
        if key.lower() in _SCRUBBED_HEADERS:
            headers[key] = "[REDACTED]"
    data = req.get("data")
    if isinstance(data, dict):
        for key in list(data.keys()):
            if key.lower() in _SCRUBBED_FIELDS:
                data[key] = "[REDACTED]"
    req["headers"] = headers
    event["request"] = req

    if has_request_context():
        tags = event.setdefault("tags", {})
        rid = get_request_id()
        if rid:
            tags["request_id"] = rid
        for name, value in request_entities().items():
            tags[name] = str(value)
        roles = _caller_roles()
        if roles:
            tags["roles"] = ",".join(roles)
    return event


def _error_code(response) -> str | None:
    if response.status_code < 400 or not response.is_json:
        return None
    body = response.get_json(silent=True) or {}
    return body.get("error") if isinstance(body, dict) else None


def install_request_observers(app) -> None:
    @app.before_request
    def _request_observer_begin():
        rid = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or uuid.uuid4().hex
        g.request_id = rid[:MAX_REQUEST_ID_LENGTH]
        g.request_started_at = time.perf_counter()

    @app.after_request
    def _request_observer_end(response):
        rid = getattr(g, "request_id", "") or uuid.uuid4().hex
        response.headers[REQUEST_ID_HEADER] = rid
        started = getattr(g, "request_started_at", None)
        latency_ms = round((time.perf_counter() - float(started)) * 1000.0, 2) if started is not None else None
        payload = {
            "ts": datetime.utcnow().isoformat(),
            "request_id": rid,
            "path": request.path,
            "method": request.method,
            "status": int(response.status_code),
            "latency_ms": latency_ms,
            "user_id": getattr(g, "auth_user_id", None),
            "roles": _caller_roles(),
            "ip_hash": _hash_ip(request.headers.get("X-Forwarded-For", request.remote_addr or ""), app.config.get("SECRET_KEY", "sameday")),
        }
        payload.update(request_entities())
        error = _error_code(response)
        if error:
            payload["error"] = error
        if latency_ms is not None and latency_ms >= _slow_request_ms():
            app.logger.warning(json.dumps({**payload, "event": "slow_request"}))
        else:
            app.logger.info(json.dumps(payload))
        return response
