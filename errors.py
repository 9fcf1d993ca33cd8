import asyncio
from typing import Optional


class WorkflowError(Exception):
    """Base class for every failure the engine reports to a caller."""

    status_code = 500
    kind = "internal"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidLocation(WorkflowError):
    status_code = 400
    kind = "invalid_location"


class ValidationError(WorkflowError):
    status_code = 400
    kind = "validation_error"


class Forbidden(WorkflowError):
    status_code = 403
    kind = "forbidden"


class NotFound(WorkflowError):
    status_code = 404
    kind = "not_found"


class IllegalTransition(WorkflowError):
    status_code = 409
    kind = "illegal_transition"


class Timeout(WorkflowError):
    status_code = 504
    kind = "timeout"


class Internal(WorkflowError):
    status_code = 500
    kind = "internal"


# Side-effect failures; logged where they happen, never returned to clients.
class AuditWriteError(WorkflowError):
    kind = "audit_write_error"


class NotificationError(WorkflowError):
    kind = "notification_error"


CLIENT_ERRORS = (InvalidLocation, ValidationError, Forbidden, NotFound, IllegalTransition)


async def within(awaitable, seconds: Optional[float], what: str = "Request"):
    """Await with a deadline; a miss becomes Timeout. ``None`` waits as long as it takes."""
    if seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, seconds)
    except asyncio.TimeoutError:
        raise Timeout(f"{what} timed out")
