"""Streak engine error kinds.

Each error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with. Storage-level exceptions are translated into these at
the storage boundary and never reach the domain code.
"""

import logging
from typing import Optional

from fastapi.responses import JSONResponse
from starlette.requests import Request

log = logging.getLogger(__name__)


class StreakError(Exception):
    code = "streak_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class RemoteUnavailableError(StreakError):
    """The remote store could not be reached (timeout, connection refused, 5xx)."""

    code = "unreachable"
    status_code = 503
    retryable = True


class CacheUnavailableError(StreakError):
    """The local cache could not be read or written."""

    code = "cache_unavailable"
    status_code = 503


class ConcurrentUpdateError(StreakError):
    """A conditional update lost against a newer version of the same row."""

    code = "concurrent_update"
    status_code = 409
    retryable = True

    def __init__(self, entity: str, expected_version: int):
        super().__init__(f"{entity} changed since version {expected_version}")
        self.entity = entity
        self.expected_version = expected_version


class AlreadyClaimedError(StreakError):
    """Raised inside the claim transaction to roll it back. The ledger turns it
    into ``ClaimResult(already_claimed=True)``."""

    code = "already_claimed"
    status_code = 409

    def __init__(self, milestone_id: int):
        super().__init__(f"Milestone {milestone_id} was already claimed")
        self.milestone_id = milestone_id


class NoItemAvailableError(StreakError):
    code = "no_item_available"
    status_code = 409

    def __init__(self, item_id: int, reason: str = "quantity is 0"):
        super().__init__(f"Recovery item {item_id} unavailable: {reason}")
        self.item_id = item_id
        self.reason = reason


class InvalidStateError(StreakError):
    code = "invalid_state"
    status_code = 422

    def __init__(self, field: str, message: str):
        super().__init__(f"Invalid {field}: {message}")
        self.field = field


class NotFoundError(StreakError):
    code = "not_found"
    status_code = 404


class ReplayExhaustedError(StreakError):
    """An offline event could not be synced after the bounded number of attempts."""

    code = "replay_exhausted"
    status_code = 502

    def __init__(self, event_id: str, attempts: int, cause: Optional[BaseException] = None):
        detail = f": {cause}" if cause else ""
        super().__init__(f"Event {event_id} dropped after {attempts} attempt(s){detail}")
        self.event_id = event_id
        self.attempts = attempts
        self.cause = cause


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


async def streak_error_handler(request: Request, exc: StreakError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    log.log(
        level,
        "Request failed",
        extra={"path": request.url.path, "error_code": exc.code, "status": exc.status_code},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}, "detail": exc.message},
    )
