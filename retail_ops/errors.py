"""Domain and infrastructure error taxonomy.

Services raise these; the Flask error handlers in ``retail_ops.main`` turn
them into JSON responses. ``code`` is the stable machine-readable identifier
sent to clients and ``http_status`` the status used for the response.
Messages are written for the caller and must not carry internal identifiers.
"""
from __future__ import annotations

from typing import Optional


class RetailOpsError(Exception):
    code = "error"
    http_status = 500

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


# ----------------------------------------------------------------------
# Authentication
# ----------------------------------------------------------------------
class AuthError(RetailOpsError):
    """Authentication failed."""

    code = "auth_error"
    http_status = 401


class InvalidToken(AuthError):
    """Session token is invalid."""

    code = "invalid_token"


class ExpiredToken(AuthError):
    """Session token has expired."""

    code = "expired_token"


class PersonNotFound(AuthError):
    """User not found."""

    code = "person_not_found"


class PersonDisabled(AuthError):
    """User is disabled."""

    code = "user_disabled"
    http_status = 403


class InvalidCredentials(AuthError):
    """Invalid username or password."""

    code = "invalid_credentials"


# ----------------------------------------------------------------------
# Authorization
# ----------------------------------------------------------------------
class AuthzError(RetailOpsError):
    """Not allowed."""

    code = "authz_error"
    http_status = 403


class Forbidden(AuthzError):
    """Missing capability for this action."""

    code = "forbidden"

    def __init__(self, capability: Optional[str] = None, message: Optional[str] = None) -> None:
        self.capability = capability
        if message is None and capability:
            message = f"Missing capability '{capability}'"
        super().__init__(message)


# ----------------------------------------------------------------------
# Orders & logistics
# ----------------------------------------------------------------------
class OrderError(RetailOpsError):
    """Order operation failed."""

    code = "order_error"
    http_status = 409


class OrderNotFound(OrderError):
    """Order not found."""

    code = "order_not_found"
    http_status = 404


class InvalidTransition(OrderError):
    """Order status transition is not allowed."""

    code = "invalid_transition"
    http_status = 409

    def __init__(
        self,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        if message is None and from_status is not None:
            message = f"Cannot move order from {from_status} to {to_status}"
        super().__init__(message)


class WorkerNotFound(OrderError):
    """Delivery worker not found."""

    code = "worker_not_found"
    http_status = 404


class WorkerInactive(OrderError):
    """Delivery worker is inactive or not a logistics operator."""

    code = "worker_inactive"
    http_status = 422


class ScheduleConflict(OrderError):
    """Delivery window overlaps another route of this worker."""

    code = "overlap"
    http_status = 409


class ValidationError(RetailOpsError):
    """Request payload is invalid."""

    code = "validation_error"
    http_status = 400


# ----------------------------------------------------------------------
# Infrastructure
# ----------------------------------------------------------------------
class InfrastructureError(RetailOpsError):
    """Backing service failure."""

    code = "infrastructure_error"
    http_status = 503
    retryable = True


class StoreUnavailable(InfrastructureError):
    """Database temporarily unavailable."""

    code = "store_unavailable"
