from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class BrainConsoleError(Exception):
    """Base class for every failure raised by the client core."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BackendRequestError(BrainConsoleError):
    """Non-2xx answer from a backend endpoint."""

    def __init__(
        self,
        status: int,
        code: str,
        message: str,
        details: Any = None,
        request_id: str = "unknown",
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details
        self.request_id = request_id

    def __str__(self) -> str:
        return f"[{self.status}] {self.code}: {self.message} (request_id={self.request_id})"


class BackendUnavailableError(BrainConsoleError):
    """Transport-level failure: connection refused, dropped, or timed out."""


class StreamJobError(BrainConsoleError):
    """The job stream ended with a terminal error frame."""

    def __init__(self, message: str, user_message: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.user_message = user_message or message
        self.details = details


class IncompleteStreamError(BrainConsoleError):
    def __init__(self, message: str = "Analysis stream ended without a result"):
        super().__init__(message)


class UploadRejectedError(BrainConsoleError):
    def __init__(self, field_id: str, file_name: str, reason: str):
        super().__init__(f"Upload of '{file_name}' for field '{field_id}' failed: {reason}")
        self.field_id = field_id
        self.file_name = file_name
        self.reason = reason


@dataclass(frozen=True)
class UploadFailure:
    field_id: str
    file_name: str
    reason: str


class PartialUploadError(BrainConsoleError):
    """At least one file of a batch failed; nothing from the batch may be persisted."""

    def __init__(self, failures: list[UploadFailure], total: int):
        names = ", ".join(f"{f.field_id}/{f.file_name}" for f in failures)
        super().__init__(f"{len(failures)} of {total} file uploads failed: {names}")
        self.failures = failures
        self.total = total


class FieldKindConflictError(BrainConsoleError):
    def __init__(self, field_id: str, reason: str):
        super().__init__(f"Field '{field_id}': {reason}")
        self.field_id = field_id


class InvalidTransitionError(BrainConsoleError):
    def __init__(self, current: Any, target: Any):
        super().__init__(f"Cannot move from {getattr(current, 'value', current)} to {getattr(target, 'value', target)}")
        self.current = current
        self.target = target


class SessionBusyError(BrainConsoleError):
    pass


class EnhancementWorkflowError(BrainConsoleError):
    """Fatal failure of one orchestrator stage, surfaced to the caller."""

    def __init__(self, stage: Any, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.stage = stage
        self.cause = cause
