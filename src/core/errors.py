from enum import StrEnum

from fastapi import status


class ErrorCategory(StrEnum):
    """Normalized failure categories for identity-provider and database calls."""

    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    CONNECTION_FAILED = "connection_failed"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


TRANSIENT_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.RATE_LIMITED, ErrorCategory.CONNECTION_FAILED, ErrorCategory.TIMEOUT}
)


class RoleSystemError(Exception):
    """Base class for every error raised by the authorization core."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, object]:
        return {"success": False, "error": type(self).__name__, "message": self.message}


class ValidationError(RoleSystemError):
    """Bad role value or malformed request; the caller can fix the input."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransitionError(ValidationError):
    """The transition matrix does not permit the requested role change."""

    def __init__(self, message: str, reason: str, required_role: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.required_role = required_role

    def to_payload(self) -> dict[str, object]:
        return {**super().to_payload(), "reason": self.reason, "requiredRole": self.required_role}


class AuthorizationError(RoleSystemError):
    """The acting user lacks the role or permission required for the operation."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str, reason: str | None = None, required_role: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or message
        self.required_role = required_role

    def to_payload(self) -> dict[str, object]:
        return {**super().to_payload(), "reason": self.reason, "requiredRole": self.required_role}


class NotFoundError(RoleSystemError):
    """The user (or bundle) does not exist in one or both systems."""

    status_code = status.HTTP_404_NOT_FOUND


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str, system: str = "database") -> None:
        super().__init__(f"User {user_id} not found in {system}")
        self.user_id = user_id
        self.system = system


class ConflictError(RoleSystemError):
    """A conditional write lost against a concurrent update."""

    status_code = status.HTTP_409_CONFLICT


class ConsistencyError(RoleSystemError):
    """Both systems disagree and no automatic resolution rule applies."""

    status_code = status.HTTP_409_CONFLICT


class ProviderError(RoleSystemError):
    """A categorized failure from the identity provider or the database."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN, system: str = "identity") -> None:
        super().__init__(message)
        self.category = category
        self.system = system

    @property
    def is_transient(self) -> bool:
        return self.category in TRANSIENT_CATEGORIES

    def to_payload(self) -> dict[str, object]:
        return {**super().to_payload(), "category": self.category.value, "system": self.system}


class TransientProviderError(ProviderError):
    """Timeout, rate limit or connection failure; retried before it surfaces."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.CONNECTION_FAILED, system: str = "identity") -> None:
        super().__init__(message, category=category, system=system)
        if category == ErrorCategory.TIMEOUT:
            self.status_code = status.HTTP_504_GATEWAY_TIMEOUT
