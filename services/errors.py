"""
Error taxonomy for the license engine.

Every error carries a ``user_message`` that the command layer can show as-is
and a ``retryable`` flag. Validation, quota, lookup and permission errors are
recovered at the command boundary; platform and persistence errors abort the
current transition and may be retried by the caller.
"""

import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class LicenseEngineError(Exception):
    """Base class for every error raised by the engine"""

    retryable = False
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, *, user_message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.user_message = user_message or message or self.default_message


class ValidationError(LicenseEngineError):
    default_message = "The request contains invalid values."


class TemplateInUse(ValidationError):
    """Raised when deleting a template that a published post still references"""

    def __init__(self, template_id: int, thread_ids: Iterable[int]):
        self.template_id = template_id
        self.thread_ids = sorted(thread_ids)
        threads = ", ".join(str(t) for t in self.thread_ids)
        super().__init__(
            f"Template {template_id} is referenced by published posts in threads: {threads}",
            user_message=(
                "This license is still published on one or more threads. "
                "Republish those threads with another license before deleting it."
            ),
        )


class QuotaExceeded(LicenseEngineError):
    default_message = "You have reached the maximum number of license templates."

    def __init__(self, owner_id: int, quota: int):
        self.owner_id = owner_id
        self.quota = quota
        super().__init__(
            f"Owner {owner_id} already holds {quota} templates",
            user_message=f"You can create at most {quota} licenses. Delete one first.",
        )


class NotFound(LicenseEngineError):
    default_message = "The requested item could not be found."


class PermissionDenied(LicenseEngineError):
    default_message = "You do not have permission to do that."


class PlatformError(LicenseEngineError):
    retryable = True
    default_message = "The chat platform did not respond. Please try again."


class MessageNotFound(PlatformError):
    retryable = False
    default_message = "The message no longer exists."


class PersistenceError(LicenseEngineError):
    retryable = True
    default_message = "The database is unavailable. Please try again."


class NotifierError(LicenseEngineError):
    default_message = "The backup service rejected the notification."


class ReloadParseError(LicenseEngineError):
    default_message = "The system license document is invalid; the previous licenses are still active."


def describe_error(exc: BaseException) -> str:
    """Turn any exception into a message that is safe to show to a user"""
    if isinstance(exc, LicenseEngineError):
        if exc.retryable:
            return f"{exc.user_message} (temporary problem, retrying may help)"
        return exc.user_message
    logger.error(f"Unexpected error reached the command boundary: {exc!r}")
    return LicenseEngineError.default_message


@asynccontextmanager
async def storage_errors(operation: str):
    """Translate SQLAlchemy failures raised inside the block into PersistenceError"""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Storage failure during {operation}: {e}")
        raise PersistenceError(f"{operation} failed: {e}") from e
