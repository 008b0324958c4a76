"""
Error taxonomy shared by the services. Each error carries the HTTP status and stable code the
API layer responds with; services raise them, the app's exception handler translates them.
"""
import functools
import logging

logger = logging.getLogger(__name__)


class CardshopError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    default_message = "Internal error"


class AuthenticationError(CardshopError):
    """Missing, malformed, expired or revoked admin session; wrong PIN."""
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required"


class AuthorizationError(CardshopError):
    """Authenticated, but the role lacks the capability. Never names the capability."""
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class ValidationError(CardshopError):
    status_code = 400
    code = "invalid_request"
    default_message = "Invalid request"


class NotFoundError(CardshopError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class ExternalServiceError(CardshopError):
    """Store or notification provider failure. Safe to retry."""
    status_code = 502
    code = "external_service_error"
    default_message = "Upstream service unavailable, please retry"


def service_boundary(func):
    """
    Let taxonomy errors through unchanged and wrap anything else (store driver, provider SDK) in
    ExternalServiceError, so no raw exception escapes a service operation.
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except CardshopError:
            raise
        except Exception as e:
            logger.exception("%s failed: %s", func.__qualname__, e)
            raise ExternalServiceError() from e

    return wrapper
