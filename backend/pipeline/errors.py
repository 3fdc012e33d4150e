"""
Storefront Error Taxonomy
=========================
Typed failures raised by the order lifecycle engine. Every error carries the
HTTP status it maps to at the request boundary, so the API layer renders them
with a single exception handler.

    StorefrontError
    ├── ValidationError          400  malformed or missing input
    ├── AuthenticationError      401  no session / bad credentials
    ├── AuthorizationError       403  caller may not perform the action
    ├── NotFoundError            404  unknown order or product
    ├── ConflictError            409  uniqueness violation (identity resolution only)
    ├── InvalidTransitionError   409  illegal fulfillment edge, nothing mutated
    ├── OrderCreationError       422  no cart line resolved to a product
    ├── PersistenceError         500  underlying store failure
    └── GatewayError             502  payment initiation failed
"""

from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """
    Base class for all storefront errors.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code used at the request boundary
        error_code: Stable machine-readable code
        details: Additional structured context
    """

    status_code: int = 500
    error_code: str = "storefront_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Public JSON body for this error."""
        return {"error": self.message, "code": self.error_code, **self.details}


class ValidationError(StorefrontError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(StorefrontError):
    status_code = 401
    error_code = "unauthenticated"


class AuthorizationError(StorefrontError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(StorefrontError):
    status_code = 404
    error_code = "not_found"


class ConflictError(StorefrontError):
    """
    Uniqueness violation reported by a repository.

    Only the identity resolver expects this; it recovers locally by
    re-querying and never lets it reach the caller.
    """

    status_code = 409
    error_code = "conflict"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs) -> None:
        self.field = field
        super().__init__(message, **kwargs)


class InvalidTransitionError(StorefrontError):
    status_code = 409
    error_code = "invalid_transition"


class OrderCreationError(StorefrontError):
    status_code = 422
    error_code = "order_creation_failed"


class PersistenceError(StorefrontError):
    """Store failure. The public message is generic; the cause is logged."""

    status_code = 500
    error_code = "persistence_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "Internal storage failure", "code": self.error_code}


class GatewayError(StorefrontError):
    status_code = 502
    error_code = "gateway_error"
