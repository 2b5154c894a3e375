"""
Error Taxonomy
==============

Exceptions raised across the acquisition-and-estimation pipeline.

Classification:
    - ResourceUnavailable: camera/file/stream cannot be opened (fatal)
    - DecodeError: a single frame could not be decoded (recovered locally)
    - TransportError: the estimation backend could not be reached
    - BackendError: the estimation backend answered with a non-success status

StreamProcessor decides fatal-vs-recoverable. Source and client code only
raise; they never decide whether the session survives.
"""

import time
from typing import Optional


class VitalsStreamError(Exception):
    """Base class for all pipeline exceptions."""

    def __init__(self, message: str, critical: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.critical = critical
        self.timestamp = time.time()


class ResourceUnavailable(VitalsStreamError):
    """Raised when the underlying media resource cannot be acquired."""

    def __init__(self, message: str) -> None:
        super().__init__(message, critical=True)


class DecodeError(VitalsStreamError):
    """Raised when a single frame cannot be decoded."""
    pass


class TransportError(VitalsStreamError):
    """Raised when a request never produced a response (network failure)."""

    retryable = True


class BackendError(VitalsStreamError):
    """
    Raised when the backend responds with a non-success status.

    Attributes:
        status: HTTP status code returned by the backend
        body: Message body (may be empty)
    """

    _RETRYABLE_STATUSES = (408, 429)
    _AUTH_STATUSES = (401, 403)

    def __init__(self, status: int, body: Optional[str] = None) -> None:
        self.status = status
        self.body = body or ""
        detail = f": {self.body}" if self.body else ""
        super().__init__(
            f"Backend returned HTTP {status}{detail}",
            critical=status in self._AUTH_STATUSES,
        )

    @property
    def retryable(self) -> bool:
        """Whether resubmitting the same window may succeed."""
        return self.status >= 500 or self.status in self._RETRYABLE_STATUSES
