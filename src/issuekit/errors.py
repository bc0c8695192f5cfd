"""Error taxonomy & redaction helpers.

Every failure that crosses a module boundary in issuekit is one of the
classes below, so callers can decide between "retry", "abort this batch"
and "report and carry on" without string matching.

Public API:
- GitHubAPIError and its transient / GraphQL subclasses
- AuthError, ConfigError, EditParseError, StoreError, MigrationError
- classify_error(exc) -> ErrorInfo
- redact(text) -> str
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

_SENSITIVE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ghp_[A-Za-z0-9]{20,40}"),  # GitHub classic tokens
    re.compile(r"github_pat_\w{20,}"),  # GitHub fine-grained tokens
    re.compile(r"(?i)(authorization:\s*(?:bearer|token)\s+)\S+"),
]

_REDACTION_PLACEHOLDER = "<redacted>"


class GitHubAPIError(RuntimeError):
    """Raised when the GitHub REST/GraphQL API returns an error."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        response_text: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.response_text = response_text


class TransientAPIError(GitHubAPIError):
    """A failure the retry loop may wait out.

    ``kind`` is one of ``rate_limit`` (blocking wait until the declared reset),
    ``throttle`` (short fixed wait) or ``server`` (5xx, linear backoff).
    ``delay`` is the wait the server asked for, in seconds, when known.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        delay: float | None = None,
        status: int | None = None,
        response_text: str | None = None,
    ):
        super().__init__(message, status=status, response_text=response_text)
        self.kind = kind
        self.delay = delay


class GraphQLError(GitHubAPIError):
    """A GraphQL reply carried an ``errors`` array that is not a rate limit."""

    def __init__(self, message: str, *, response_text: str | None = None):
        super().__init__(f"graphql error: {message}", status=200, response_text=response_text)
        self.message = message


class AuthError(RuntimeError):
    pass


class ConfigError(RuntimeError):
    pass


class StoreError(RuntimeError):
    pass


class MigrationError(StoreError):
    def __init__(self, from_version: int, to_version: int, cause: BaseException):
        super().__init__(f"migration v{from_version} -> v{to_version} failed: {cause}")
        self.from_version = from_version
        self.to_version = to_version
        self.cause = cause


class EditParseError(ValueError):
    """Structural problem in an edited text buffer; nothing was sent."""

    def __init__(self, problems: list[str]):
        super().__init__("\n".join(problems))
        self.problems = problems


@dataclass
class ErrorInfo:
    category: str
    message: str
    original_type: str
    transient: bool = False
    details: dict[str, Any] | None = None


def redact(text: str) -> str:
    """Redact sensitive tokens in arbitrary text."""
    if not text:
        return text
    redacted = text
    for pat in _SENSITIVE_PATTERNS:
        if pat.groups:
            redacted = pat.sub(lambda m: m.group(1) + _REDACTION_PLACEHOLDER, redacted)
        else:
            redacted = pat.sub(_REDACTION_PLACEHOLDER, redacted)
    return redacted


def classify_error(exc: BaseException) -> ErrorInfo:
    """Best-effort classification of an exception.

    - TransientAPIError -> 'github.<kind>', transient
    - GraphQLError -> 'github.graphql'
    - GitHubAPIError -> 'github.http'
    - EditParseError -> 'parse'
    - AuthError / ConfigError / StoreError -> 'auth' / 'config' / 'store'
    - Network-y keywords -> 'network', transient
    - Fallback -> 'generic'
    """
    msg = redact(str(exc) if exc else "")
    name = exc.__class__.__name__

    if isinstance(exc, TransientAPIError):
        return ErrorInfo(
            f"github.{exc.kind}", msg, name, transient=True, details={"status": exc.status}
        )
    if isinstance(exc, GraphQLError):
        return ErrorInfo("github.graphql", msg, name)
    if isinstance(exc, GitHubAPIError):
        return ErrorInfo("github.http", msg, name, details={"status": exc.status})
    if isinstance(exc, EditParseError):
        return ErrorInfo("parse", msg, name, details={"problems": list(exc.problems)})
    if isinstance(exc, AuthError):
        return ErrorInfo("auth", msg, name)
    if isinstance(exc, ConfigError):
        return ErrorInfo("config", msg, name)
    if isinstance(exc, StoreError):
        return ErrorInfo("store", msg, name)
    low = msg.lower()
    if any(k in low for k in ("timeout", "timed out", "connection reset", "temporarily unavailable")):
        return ErrorInfo("network", msg, name, transient=True)
    return ErrorInfo("generic", msg, name)


__all__ = [
    "AuthError",
    "ConfigError",
    "EditParseError",
    "ErrorInfo",
    "GitHubAPIError",
    "GraphQLError",
    "MigrationError",
    "StoreError",
    "TransientAPIError",
    "classify_error",
    "redact",
]
