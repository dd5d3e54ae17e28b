from __future__ import annotations

from typing import Any, Dict, List, Optional


class MarketplaceError(RuntimeError):
    """Base class for every typed failure raised by the order/escrow core.

    ``code`` is the stable machine-readable identifier returned to API
    clients; ``status_code`` is the HTTP status the router layer maps it to.
    """

    code = "MARKETPLACE_ERROR"
    status_code = 400

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code}


class ValidationFailed(MarketplaceError):
    code = "VALIDATION_FAILED"
    status_code = 400

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[List[Dict[str, str]]] = None,
        *,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, code=code)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationFailed":
        return cls(message, errors=[{"field": field, "message": message}])

    @classmethod
    def from_pydantic(cls, exc: Any, prefix: Optional[str] = None) -> "ValidationFailed":
        errors = []
        for err in exc.errors():
            loc = [str(part) for part in err.get("loc", ())]
            if prefix:
                loc.insert(0, prefix)
            errors.append({"field": ".".join(loc) or (prefix or ""), "message": err.get("msg", "invalid")})
        return cls("Validation failed", errors=errors)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["errors"] = self.errors
        return body


class ProductUnavailable(MarketplaceError):
    code = "PRODUCT_UNAVAILABLE"
    status_code = 400


class InsufficientStock(MarketplaceError):
    code = "INSUFFICIENT_STOCK"
    status_code = 400

    def __init__(self, message: str, *, product_id: Optional[str] = None, available: Optional[int] = None) -> None:
        super().__init__(message)
        self.product_id = product_id
        self.available = available


class InvalidStatus(MarketplaceError):
    code = "INVALID_STATUS"
    status_code = 400


class InvalidEscrowTransition(InvalidStatus):
    code = "INVALID_ESCROW_TRANSITION"
    status_code = 409


class AccessDenied(MarketplaceError):
    code = "ACCESS_DENIED"
    status_code = 403


class RefundNotAllowed(MarketplaceError):
    code = "REFUND_NOT_ALLOWED"
    status_code = 400


class NotFound(MarketplaceError):
    code = "NOT_FOUND"
    status_code = 404


class Conflict(MarketplaceError):
    code = "CONFLICT"
    status_code = 409
