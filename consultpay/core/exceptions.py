"""Custom application exceptions."""

from typing import Any

from fastapi import HTTPException, status


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail: str = "An unexpected error occurred",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ValidationError(AppException):
    """Bad input. Never retried."""

    def __init__(self, detail: str = "Validation failed", errors: list[dict[str, Any]] | None = None) -> None:
        self.errors = errors
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)


class PreconditionFailed(AppException):
    """Entity is not in a state that allows the requested operation."""

    def __init__(self, detail: str = "This operation is not allowed in the current state") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ConcurrencyConflict(AppException):
    """A transactional guard was tripped by a concurrent caller."""

    def __init__(self, detail: str = "The resource was modified concurrently") -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class InsufficientBalance(PreconditionFailed):
    """Approved earnings do not cover the requested payout."""

    def __init__(self, detail: str = "Insufficient balance for this operation") -> None:
        super().__init__(detail=detail)


class NotFoundError(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str = "Resource", identifier: str | None = None) -> None:
        detail = f"{resource} not found"
        if identifier:
            detail = f"{resource} with ID '{identifier}' not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class AuthenticationError(AppException):
    """Authentication failed exception."""

    def __init__(self, detail: str = "Authentication failed") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(AppException):
    """Authorization denied exception."""

    def __init__(self, detail: str = "You don't have permission to access this resource") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class RateLimitExceeded(AppException):
    """Rate limit exceeded exception."""

    def __init__(self, detail: str = "Too many requests. Please try again later.") -> None:
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)


class GatewayError(AppException):
    """Base class for payment gateway failures."""

    retryable = False

    def __init__(self, gateway: str, detail: str, status_code: int) -> None:
        self.gateway = gateway
        self.reason = detail
        super().__init__(status_code=status_code, detail=f"{gateway}: {detail}")


class GatewayUnavailable(GatewayError):
    """Timeout, connection failure or 5xx from a gateway. Safe to retry."""

    retryable = True

    def __init__(self, gateway: str, detail: str = "gateway unavailable") -> None:
        super().__init__(gateway, detail, status.HTTP_503_SERVICE_UNAVAILABLE)


class GatewayRejected(GatewayError):
    """The gateway declined the request. Terminal."""

    def __init__(self, gateway: str, detail: str = "request rejected by gateway") -> None:
        super().__init__(gateway, detail, status.HTTP_502_BAD_GATEWAY)
