import os
import time
import logging
from typing import Optional, Dict, Any

import jwt

logger = logging.getLogger(__name__)

_ISSUER = "sameday"
_ALGORITHM = "HS256"


def _secret() -> str:
    return os.getenv("SECRET_KEY") or "dev-secret-change-me"


def create_token(user_id: int, ttl_seconds: int = 60 * 60 * 24) -> str:
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + int(ttl_seconds),
        "iss": _ISSUER,
        "type": "access",
    }
    return jwt.encode(payload, _secret(), algorithm=_ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """Verified claims of an access token, or None when it is expired, forged or not an access token."""
    try:
        claims = jwt.decode(
            token,
            _secret(),
            algorithms=[_ALGORITHM],
            issuer=_ISSUER,
            options={"require": ["sub", "exp", "iss"]},
        )
    except jwt.PyJWTError as e:
        logger.info("jwt_rejected err=%s", e.__class__.__name__)
        return None
    if claims.get("type") != "access":
        logger.info("jwt_rejected err=wrong_type")
        return None
    return claims


def get_bearer_token(auth_header: str) -> Optional[str]:
    parts = (auth_header or "").split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None
