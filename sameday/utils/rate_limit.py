from __future__ import annotations

import logging
import os
import threading
import time
from functools import wraps

import redis
from flask import current_app, g, jsonify, request

logger = logging.getLogger(__name__)

_LOCK = threading.Lock()
_WINDOWS: dict[str, list[float]] = {}
_CLIENT = None
_CLIENT_INIT = False
_STATS = {
    "redis_hits": 0,
    "redis_errors": 0,
    "memory_hits": 0,
}


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def rate_limit_enabled(default: bool = True) -> bool:
    return _env_bool("RATE_LIMIT_ENABLED", default)


def _rate_limit_redis_url() -> str:
    return (os.getenv("RATE_LIMIT_REDIS_URL") or os.getenv("REDIS_URL") or "").strip()


def _get_client():
    global _CLIENT, _CLIENT_INIT
    with _LOCK:
        if _CLIENT_INIT:
            return _CLIENT
        _CLIENT_INIT = True
    url = _rate_limit_redis_url()
    if not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.75,
            socket_timeout=0.75,
            health_check_interval=30,
        )
        client.ping()
        with _LOCK:
            _CLIENT = client
        return client
    except Exception as e:
        logger.warning("rate_limit_redis_unavailable err=%s fallback=memory", e)
        with _LOCK:
            _CLIENT = None
        return None


def check_limit(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    safe_window = max(1, int(window_seconds))
    safe_limit = max(1, int(limit))
    redis_client = _get_client()
    if redis_client is not None:
        now_sec = int(time.time())
        window_epoch = now_sec // safe_window
        counter_key = f"rl:v1:{key}:{window_epoch}"
        try:
            current = int(redis_client.incr(counter_key))
            if current == 1:
                redis_client.expire(counter_key, safe_window + 1)
            with _LOCK:
                _STATS["redis_hits"] += 1
            if current <= safe_limit:
                return True, 0
            return False, int(max(1, safe_window - (now_sec % safe_window)))
        except Exception:
            with _LOCK:
                _STATS["redis_errors"] += 1
    return _check_limit_memory(key, limit=safe_limit, window_seconds=safe_window)


def _check_limit_memory(key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
    now = time.time()
    start = now - max(1, int(window_seconds))
    with _LOCK:
        bucket = [ts for ts in _WINDOWS.get(key, []) if ts >= start]
        if len(bucket) >= limit:
            _WINDOWS[key] = bucket
            _STATS["memory_hits"] += 1
            return False, int(max(1, window_seconds - (now - min(bucket))))
        bucket.append(now)
        _WINDOWS[key] = bucket
    return True, 0


def reset_memory_windows() -> None:
    with _LOCK:
        _WINDOWS.clear()


def resolve_client_ip(req) -> str:
    xff = (req.headers.get("X-Forwarded-For") or "").strip()
    if xff and _env_bool("TRUST_PROXY_HEADERS", False):
        first_hop = (xff.split(",")[0] or "").strip()
        if first_hop:
            return first_hop
    return (req.remote_addr or "").strip() or "unknown"


def _limits_active() -> bool:
    if not rate_limit_enabled(True):
        return False
    if bool(current_app.config.get("TESTING")):
        return _env_bool("RATE_LIMIT_IN_TESTS", False)
    return True


def rate_limit(
    key: str,
    per_seconds: int,
    limit: int,
    *,
    scope: str = "user",
    message: str = "Too many requests. Please retry later.",
):
    """Flask decorator over check_limit, keyed per user (or per IP when anonymous)."""
    safe_key = str(key or "rate_limit")
    safe_window = max(1, int(per_seconds or 1))
    safe_limit = max(1, int(limit or 1))

    def decorator(fn):
        @wraps(fn)
        def wrapped(*args, **kwargs):
            if not _limits_active():
                return fn(*args, **kwargs)
            user_id = getattr(g, "auth_user_id", None)
            if scope == "user" and user_id is not None:
                scope_key = f"{safe_key}:u:{int(user_id)}"
            else:
                scope_key = f"{safe_key}:ip:{resolve_client_ip(request)}"

            ok, retry_after = check_limit(scope_key, limit=safe_limit, window_seconds=safe_window)
            if ok:
                return fn(*args, **kwargs)
            resp = jsonify(
                {
                    "ok": False,
                    "error": "rate_limited",
                    "message": message,
                    "status": 429,
                    "retry_after": int(retry_after or 0),
                }
            )
            resp.status_code = 429
            resp.headers["Retry-After"] = str(int(retry_after or 1))
            return resp

        return wrapped

    return decorator


def limiter_stats() -> dict:
    with _LOCK:
        return {
            "enabled": bool(rate_limit_enabled(True)),
            "redis_configured": bool(_rate_limit_redis_url()),
            "redis_connected": bool(_CLIENT is not None),
            "redis_hits": int(_STATS["redis_hits"]),
            "redis_errors": int(_STATS["redis_errors"]),
            "memory_hits": int(_STATS["memory_hits"]),
        }
