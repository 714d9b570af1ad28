"""
Error taxonomy for the load harness.

Every failure the harness reports derives from :class:`PerfError`, so
callers that fan work out to many clients can catch one base class and
still tell a rejected login from a broken autoupdate stream.

:class:`CancellationError` marks operations that were unblocked by a
:class:`~perf_app.cancel.CancelToken`.  It is a clean termination, not a
failure, and report paths drop it.
"""

from __future__ import annotations

from http import HTTPStatus


class PerfError(Exception):
    """Base class for all harness errors."""


class ConfigError(PerfError):
    """Connection settings are invalid or unsupported."""


class TransportError(PerfError):
    """Network-level failure: DNS, connect, TLS or I/O."""


class HTTPStatusError(PerfError):
    """
    The server answered with a status outside the 2xx range.

    Attributes:
        status_code: The HTTP status code of the response.
        body: The raw response body, kept for diagnostics.
    """

    def __init__(self, status_code: int, body: bytes = b""):
        self.status_code = status_code
        self.body = body
        super().__init__(status_code, body)

    def __str__(self) -> str:
        try:
            reason = HTTPStatus(self.status_code).phrase
        except ValueError:
            reason = "Unknown"
        text = self.body.decode("utf-8", errors="replace")
        return f"got status {self.status_code} {reason}: {text}"


class AuthError(PerfError):
    """Login failed after all attempts, or the credentials were rejected."""


class DecodeError(PerfError):
    """A response body or stream line is not the expected JSON."""


class TokenDecodeError(DecodeError):
    """The auth token does not carry a readable user id."""


class TaskAbortedError(PerfError):
    """The backend action worker reached the ``aborted`` state."""


class StreamBrokenError(PerfError):
    """The autoupdate stream ended before a terminal state was seen."""


class CancellationError(PerfError):
    """The operation was unblocked by cancellation."""
