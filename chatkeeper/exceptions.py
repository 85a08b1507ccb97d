"""chatkeeper/exceptions.py

Error taxonomy for the conversation manager.
"""

from __future__ import annotations

# Standard Library
from enum import Enum


class ChatKeeperError(Exception):
    """Base class for every error raised by chatkeeper."""


class InvalidArgumentError(ChatKeeperError, ValueError):
    """Raised before any network call when caller input is unusable."""


class UpstreamErrorKind(str, Enum):
    """Coarse classification of completion service failures."""

    NETWORK = "network"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"

    @classmethod
    def from_status(cls, status_code: int | None) -> UpstreamErrorKind:
        """Map an HTTP status code to an error kind.

        Args:
            status_code: Status returned by the completion service, if any.

        Returns:
            The matching kind, ``UNKNOWN`` when the status is missing.
        """
        if status_code is None or status_code < 400:
            return cls.UNKNOWN
        if status_code in (401, 403):
            return cls.AUTH
        if status_code == 429:
            return cls.RATE_LIMIT
        if status_code >= 500:
            return cls.SERVER
        return cls.INVALID_REQUEST


class UpstreamError(ChatKeeperError):
    """The completion service returned an error or the transport failed.

    The transport exception, when there is one, is chained as ``__cause__``.
    """

    def __init__(
        self,
        kind: UpstreamErrorKind,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"[{self.kind.value}] {self.message} (status {self.status_code})"
        return f"[{self.kind.value}] {self.message}"


class CacheStateError(ChatKeeperError):
    """An internal history invariant was violated."""
