"""Error taxonomy shared by the dispatch engine and the service layer.

Each error carries a stable ``code`` that the transport layer maps onto its
own status model (HTTP status codes in :mod:`dispatch_service.core.errors`).
"""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for predictable, caller-facing dispatch errors."""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(DispatchError):
    """Malformed input: bad recurrence rule, past start time, empty selector, ..."""

    code = "INVALID_ARGUMENT"


class NotFound(DispatchError):
    code = "NOT_FOUND"


class FailedPrecondition(DispatchError):
    """The request is well-formed but incompatible with the stored state."""

    code = "FAILED_PRECONDITION"


class ResourceExhausted(DispatchError):
    """A subscriber fell behind and its buffer overflowed."""

    code = "RESOURCE_EXHAUSTED"


class Internal(DispatchError):
    """Store-layer failure that persisted after bounded retries."""

    code = "INTERNAL"
