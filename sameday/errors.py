from __future__ import annotations


class EngineError(Exception):
    """Base for every typed failure the lifecycle engine surfaces to callers.

    `code` is the stable machine-readable identifier used in API payloads,
    `detail` carries structured context (e.g. which product lacked stock).
    """

    status_code = 400
    code = "engine_error"

    def __init__(self, message: str = "", *, code: str | None = None, detail: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code
        self.detail = dict(detail or {})

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status_code),
        }
        if self.detail:
            payload["detail"] = self.detail
        return payload


class AuthenticationRequired(EngineError):
    status_code = 401
    code = "unauthenticated"


class ValidationError(EngineError):
    status_code = 400
    code = "validation_error"


class NotFoundError(EngineError):
    status_code = 404
    code = "not_found"


class AuthorizationError(EngineError):
    status_code = 403
    code = "forbidden"


class ConflictError(EngineError):
    status_code = 409
    code = "conflict"


class StateError(EngineError):
    status_code = 422
    code = "invalid_state"


class InvalidProduct(ValidationError):
    code = "invalid_product"


class UnitNotFound(NotFoundError):
    code = "unit_not_found"


class InsufficientStock(ConflictError):
    code = "insufficient_stock"


class ShopClosed(StateError):
    code = "shop_closed"


class AlreadyAssigned(ConflictError):
    code = "already_assigned"


class Unauthorized(AuthorizationError):
    code = "unauthorized"


class DisputeExists(ConflictError):
    code = "dispute_exists"


class AlreadyResolved(ConflictError):
    code = "already_resolved"


__all__ = [
    "EngineError",
    "AuthenticationRequired",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "ConflictError",
    "StateError",
    "InvalidProduct",
    "UnitNotFound",
    "InsufficientStock",
    "ShopClosed",
    "AlreadyAssigned",
    "Unauthorized",
    "DisputeExists",
    "AlreadyResolved",
]
