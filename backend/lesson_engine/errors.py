"""Error taxonomy for lesson delivery.

Every user-visible outcome other than a served lesson is one of these
exceptions. Routes translate them into HTTP responses; library code raises
them and never builds responses itself.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

RETRY_AFTER_LOCK_BUSY = 3
RETRY_AFTER_FORMAT_ERROR = 2
RETRY_AFTER_TIMEOUT = 5


class DeliveryError(Exception):
    status_code = 500
    message = "Server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.message)
        self.detail = message or self.message


class NotAuthenticated(DeliveryError):
    status_code = 401
    message = "Not authenticated"


class NoSubject(DeliveryError):
    status_code = 400
    message = "No subject"


class NotReady(DeliveryError):
    """The subject has no curriculum mapping or the path has no topics yet."""

    status_code = 409
    message = "Not ready"


class UsageLimitExceeded(DeliveryError):
    status_code = 403
    message = "Usage limit exceeded"


class LessonNotFound(DeliveryError):
    status_code = 404
    message = "Not found"


class StaleLesson(DeliveryError):
    status_code = 410
    message = "Stale"


class InvalidCachePayload(DeliveryError):
    status_code = 422
    message = "Invalid cache payload"


class ServerError(DeliveryError):
    status_code = 500
    message = "Server error"


class Generating(DeliveryError):
    """Retryable signal: work is in flight, the caller should come back later."""

    status_code = 202
    message = "generating"

    def __init__(
        self,
        retry_after: int = RETRY_AFTER_TIMEOUT,
        progress: Optional[Dict[str, Any]] = None,
        reason: str = "generating",
    ) -> None:
        super().__init__(reason)
        self.retry_after = max(1, int(retry_after))
        self.progress = progress
        self.reason = reason

    def with_progress(self, progress: Optional[Dict[str, Any]]) -> "Generating":
        return Generating(self.retry_after, progress, self.reason)


class InvalidLessonFormat(Exception):
    """The generator answered, but nothing it produced validated as a lesson."""


class GeneratorError(Exception):
    """Any other failure talking to the generation backend."""


__all__ = [
    "DeliveryError",
    "Generating",
    "GeneratorError",
    "InvalidCachePayload",
    "InvalidLessonFormat",
    "LessonNotFound",
    "NoSubject",
    "NotAuthenticated",
    "NotReady",
    "RETRY_AFTER_FORMAT_ERROR",
    "RETRY_AFTER_LOCK_BUSY",
    "RETRY_AFTER_TIMEOUT",
    "ServerError",
    "StaleLesson",
    "UsageLimitExceeded",
]
