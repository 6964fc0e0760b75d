"""Error types shared across the studio client."""

from __future__ import annotations


class StudioError(Exception):
    """Base class for all studio errors."""


class TransportError(StudioError):
    """The push channel could not be (re)established.

    Raised only after the reconnect attempt limit is reached; individual
    connection failures are retried silently.
    """

    def __init__(self, url: str, attempts: int, reason: str = "") -> None:
        message = f"Lost connection to {url} after {attempts} attempt(s)"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.url = url
        self.attempts = attempts
        self.reason = reason


class MalformedFrameError(StudioError):
    """A single pushed frame could not be decoded into a record."""

    def __init__(self, event: str, reason: str) -> None:
        super().__init__(f"Malformed '{event}' frame: {reason}")
        self.event = event
        self.reason = reason


class InvariantViolation(StudioError):
    """An action would break a task/session invariant and was rejected."""


class InvalidTransition(InvariantViolation):
    def __init__(self, task_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Task {task_id}: cannot transition from '{from_status}' to '{to_status}'"
        )
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status


class UnknownEntityError(StudioError, LookupError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"Unknown {kind} '{entity_id}'")
        self.kind = kind
        self.entity_id = entity_id


class ApiError(StudioError):
    """The task/session service rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
