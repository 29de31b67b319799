"""Typed failures raised by the stream supervisor.

Every caller-facing supervisor operation either succeeds or raises one of
these. The HTTP layer maps ErrorKind to a status code and the standardized
error body (see api/errors.py).
"""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable failure kinds."""

    INPUT_REJECTED = "INPUT_REJECTED"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    LAUNCH_FAILURE = "LAUNCH_FAILURE"
    READINESS_TIMEOUT = "READINESS_TIMEOUT"
    NOT_FOUND = "NOT_FOUND"


class StreamError(Exception):
    """Base class for supervisor failures."""

    kind: ErrorKind

    def __init__(self, message: str, stream_id: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.stream_id = stream_id
        self.details = details

    def to_details(self) -> dict[str, Any]:
        details = dict(self.details)
        if self.stream_id is not None:
            details["stream_id"] = self.stream_id
        return details


class InputRejectedError(StreamError):
    kind = ErrorKind.INPUT_REJECTED


class AlreadyActiveError(StreamError):
    kind = ErrorKind.ALREADY_ACTIVE


class CapacityExceededError(StreamError):
    kind = ErrorKind.CAPACITY_EXCEEDED


class LaunchFailureError(StreamError):
    kind = ErrorKind.LAUNCH_FAILURE


class ReadinessTimeoutError(LaunchFailureError):
    """Worker started but never produced a manifest in time."""

    kind = ErrorKind.READINESS_TIMEOUT


class StreamNotFoundError(StreamError):
    kind = ErrorKind.NOT_FOUND
