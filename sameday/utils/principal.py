from __future__ import annotations

from dataclasses import dataclass, field

from flask import g, has_request_context, request

from sameday.errors import AuthenticationRequired
from sameday.extensions import db
from sameday.models import User
from sameday.utils.jwt_utils import decode_token, get_bearer_token


ROLES = ("buyer", "seller", "rider", "admin")


@dataclass(frozen=True)
class Principal:
    """Authenticated caller passed explicitly into every engine operation."""

    user_id: int | None
    roles: frozenset = field(default_factory=frozenset)

    @classmethod
    def system(cls) -> "Principal":
        return cls(user_id=None, roles=frozenset({"system"}))

    @classmethod
    def for_user(cls, user: User) -> "Principal":
        return cls(user_id=int(user.id), roles=frozenset(user.active_roles()))

    def has_role(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    @property
    def is_system(self) -> bool:
        return "system" in self.roles

    def actor(self) -> dict:
        if self.is_system:
            return {"type": "system", "id": None}
        return {"type": "admin" if self.is_admin else "user", "id": self.user_id}


def principal_for_user_id(user_id: int) -> Principal | None:
    user = db.session.get(User, int(user_id))
    if user is None:
        return None
    return Principal.for_user(user)


def principal_from_request() -> Principal | None:
    if not has_request_context():
        return None
    cached = getattr(g, "principal", None)
    if cached is not None:
        return cached
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except Exception:
        return None
    principal = principal_for_user_id(uid)
    if principal is not None:
        g.principal = principal
        g.auth_user_id = principal.user_id
    return principal


def require_principal() -> Principal:
    principal = principal_from_request()
    if principal is None:
        raise AuthenticationRequired("Unauthorized")
    return principal
