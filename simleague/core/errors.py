"""Error taxonomy shared by every service.

Each error carries a stable ``kind`` (rendered to clients as ``error``), a
human readable message and the HTTP status the API layer answers with.
"""
import logging
from contextlib import contextmanager
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError


class ServiceError(Exception):
    kind = "service_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class Unauthenticated(ServiceError):
    kind = "unauthenticated"
    status_code = 401


class InvalidCredential(Unauthenticated):
    kind = "invalid_credential"


class IdentityMismatch(Unauthenticated):
    kind = "identity_mismatch"


class Forbidden(ServiceError):
    kind = "forbidden"
    status_code = 403


class NotFound(ServiceError):
    kind = "not_found"
    status_code = 404


class Conflict(ServiceError):
    kind = "conflict"
    status_code = 409


class InvalidTransition(Conflict):
    kind = "invalid_transition"


class ValidationFailed(ServiceError):
    kind = "validation_failed"
    status_code = 400


class TokenInvalid(ServiceError):
    kind = "token_invalid"
    status_code = 401


class TokenExpired(TokenInvalid):
    kind = "token_expired"


class TokenEventMismatch(TokenInvalid):
    kind = "token_event_mismatch"


class StoreFailure(ServiceError):
    kind = "store_failure"
    status_code = 500


class SchemaMismatch(ServiceError):
    """Raised at startup when the database does not match the ORM models."""

    kind = "schema_mismatch"
    status_code = 500


@contextmanager
def store_errors(logger: logging.Logger, operation: str, **context: Any):
    """Log unexpected Store errors with context and surface them as StoreFailure."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.exception(
            f"store_failure during {operation}: {str(e)}",
            extra={"stage": operation, **context},
        )
        raise StoreFailure(f"Store error during {operation}") from e
