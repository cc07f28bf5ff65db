"""
Error types raised by the netz runner, and helpers for classifying AWS errors.
"""

from typing import Optional

from botocore.exceptions import ClientError


THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
})

ALREADY_EXISTS_CODES = frozenset({
    "EntityAlreadyExists",
    "ResourceAlreadyExistsException",
})


class NetzError(Exception):
    """Base class for all netz errors."""


class WaitTimeout(NetzError):
    """A polling wait ran past its deadline."""


class StreamWaitTimeout(WaitTimeout):
    """The log stream did not appear in time."""


class ClusterReadyTimeout(WaitTimeout):
    """No container instance registered with the cluster in time."""


class TaskTimeout(WaitTimeout):
    """The launched task did not stop within the task timeout."""


class RetriesExhausted(NetzError):
    """Too many consecutive provider errors while polling."""

    def __init__(self, message: str, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.last_error = last_error


class StreamNotFound(NetzError):
    """No log stream with the requested name exists in the group."""


class NotStarted(NetzError):
    """Stop was requested on a watcher that is not watching."""


class WatcherBusy(NetzError):
    """A watch is already running on this watcher."""


class Cancelled(NetzError):
    """The shared cancellation event was set."""


class TaskDefinitionError(NetzError):
    """The task definition file is missing or malformed."""


class TaskLaunchError(NetzError):
    """ECS refused to start the task."""


def error_code(exc: BaseException) -> Optional[str]:
    """Return the AWS error code of a ClientError, or None."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_throttled(exc: BaseException) -> bool:
    return error_code(exc) in THROTTLING_CODES


def is_already_exists(exc: BaseException) -> bool:
    return error_code(exc) in ALREADY_EXISTS_CODES
