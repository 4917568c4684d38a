"""
Error taxonomy shared by the services and the HTTP layer.

Every error carries the HTTP status code it maps to and a message that is
safe to show to API clients.
"""

from fastapi import status


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "An error occurred"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ServiceError):
    """Malformed or missing input."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthError(ServiceError):
    """Missing, invalid or expired credential."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Unauthorized request"


class ForbiddenError(ServiceError):
    """Authenticated, but not entitled to the resource."""

    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Access denied"


class NotFoundError(ServiceError):
    """Resource absent or not owned by the caller."""

    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class InvalidStateError(ServiceError):
    """Operation not valid for the entity's current state."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Operation not allowed in the current state"


class ConflictError(InvalidStateError):
    """The entity was changed by another request after it was read."""

    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource was modified by another request, please retry"


class InternalError(ServiceError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"


class ServiceUnavailableError(ServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service not ready"
