"""Exception taxonomy shared by the workers.

Workers catch around one VOD at a time and branch on these classes:
``TransientError`` consumes a retry and backs off, ``TerminalError`` (and its
``AuthError``/``QuotaError`` subclasses) fails the VOD at once.
"""

from __future__ import annotations

from typing import Optional


class StreamVaultError(Exception):
    """Base class for pipeline errors."""


class TransientError(StreamVaultError):
    """Network resets, timeouts, 5xx, rate limiting, truncated transfers."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TerminalError(StreamVaultError):
    """Failure that retrying will not fix."""

    kind = "terminal"


class AuthError(TerminalError):
    """Missing, revoked or rejected credentials. Needs re-authorization."""

    kind = "auth"


class QuotaError(TerminalError):
    """Platform quota exhausted."""

    kind = "quota"


class StopRequested(StreamVaultError):
    """A transfer observed a stop signal (shutdown or operator cancel) and stopped between chunks."""


class LeaseLost(StreamVaultError):
    """Another worker took over the VOD while this one was working on it."""


RETRYABLE = "retryable"
FATAL = "fatal"

_SERVER_ERROR_PATTERNS = (
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)

_AUTH_PATTERNS = (
    "subscriber-only",
    "only available to subscribers",
    "must be logged into",
    "login required",
    "authentication required",
    "401",
    "403",
    "access denied",
    "unauthorized",
)

_GONE_PATTERNS = (
    "404",
    "not found",
    "deleted",
    "no longer available",
    "does not exist",
    "no video formats found",
    "unable to extract",
    "invalid url",
    "malformed url",
    "invalid video id",
    "unsupported url",
    "drm protected",
    "protected content",
    "encrypted content",
)


def classify_error_message(message: str) -> str:
    """Return ``"retryable"`` or ``"fatal"`` for a downloader error message.

    Server errors win over everything else, then auth/availability/input
    problems are fatal. Network, rate-limit and partial-transfer failures are
    retryable, and so is anything unrecognised.
    """
    lower = (message or "").lower()
    if any(p in lower for p in _SERVER_ERROR_PATTERNS):
        return RETRYABLE
    if any(p in lower for p in _AUTH_PATTERNS):
        return FATAL
    if "video" in lower and ("unavailable" in lower or "not available" in lower):
        return FATAL
    if any(p in lower for p in _GONE_PATTERNS):
        return FATAL
    return RETRYABLE


def is_auth_message(message: str) -> bool:
    lower = (message or "").lower()
    return any(p in lower for p in _AUTH_PATTERNS)


def wrap_download_error(exc: BaseException) -> StreamVaultError:
    """Map an arbitrary fetcher exception onto the taxonomy."""
    if isinstance(exc, StreamVaultError):
        return exc
    message = f"{type(exc).__name__}: {exc}"
    if classify_error_message(str(exc)) == FATAL:
        if is_auth_message(str(exc)):
            return AuthError(message)
        return TerminalError(message)
    return TransientError(message)
