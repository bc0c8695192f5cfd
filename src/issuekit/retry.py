"""Centralized retry / backoff helpers.

``run_with_retries`` wraps a thunk that talks to GitHub. The thunk signals a
recoverable condition by raising :class:`~issuekit.errors.TransientAPIError`;
anything else propagates immediately.

Three kinds of transient failure are distinguished:

* ``server``     - 5xx replies; retried ``server_error_attempts`` times with a
                   linear backoff of ``backoff_step * failures`` seconds.
* ``rate_limit`` - exhausted quota; the loop blocks for the delay the server
                   declared (reset time plus margin) and retries the same call.
* ``throttle``   - "submitted too quickly" style pushback; short fixed wait.

Rate-limit and throttle waits are bounded by ``max_rate_limit_waits`` so a
misbehaving server cannot hang a run forever.

Environment overrides:
  ISSUEKIT_RETRY_ATTEMPTS (server error attempts, default 3)
  ISSUEKIT_RETRY_BASE (linear backoff step in seconds, default 2)
  ISSUEKIT_RETRY_MAX_SLEEP (cap on any single sleep, unset = no cap)
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .errors import TransientAPIError

T = TypeVar("T")

logger = logging.getLogger(__name__)

TRANSIENT_TOKENS = (
    "rate limit",
    "abuse detection",
    "secondary rate",
    "submitted too quickly",
    "wait a few minutes",
)

_RE_RETRY_AFTER = re.compile(r"retry[-\s]after:?\s*(\d+)", re.IGNORECASE)
_RE_SECONDS_HINT = re.compile(r"wait\s*(\d+)\s*seconds", re.IGNORECASE)


def _extract_explicit_backoff(text: str) -> float | None:
    """Extract an explicit backoff (seconds) from error output.

    Supports patterns like:
      Retry-After: 12
      retry after 12
      wait 30 seconds
    Returns None if no valid positive value found.
    """
    if not text:
        return None
    for pat in (_RE_RETRY_AFTER, _RE_SECONDS_HINT):
        m = pat.search(text)
        if m:
            val = float(m.group(1))
            return val if val > 0 else None
    return None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_cap() -> float | None:
    raw = os.environ.get("ISSUEKIT_RETRY_MAX_SLEEP")
    if not raw:
        return None
    try:
        cap = float(raw)
    except ValueError:
        return None
    return cap if cap >= 0 else None


@dataclass
class RetryConfig:
    server_error_attempts: int = field(
        default_factory=lambda: int(_env_float("ISSUEKIT_RETRY_ATTEMPTS", 3))
    )
    backoff_step: float = field(default_factory=lambda: _env_float("ISSUEKIT_RETRY_BASE", 2.0))
    rate_limit_margin: float = 60.0
    max_rate_limit_waits: int = 10
    graphql_rate_limit_sleep: float = 600.0
    graphql_throttle_sleep: float = 5.0
    max_sleep: float | None = field(default_factory=_env_cap)
    sleep: Callable[[float], None] = time.sleep
    on_wait: Callable[[TransientAPIError, float], None] | None = None


def is_transient(output: str) -> bool:
    out_lower = output.lower()
    return any(tok in out_lower for tok in TRANSIENT_TOKENS)


def compute_sleep(exc: TransientAPIError, failures: int, cfg: RetryConfig) -> float:
    """Seconds to wait before the next attempt after ``exc``."""
    if exc.kind == "server":
        sleep_for = cfg.backoff_step * failures
    elif exc.delay is not None:
        sleep_for = max(0.0, exc.delay)
    else:
        explicit = _extract_explicit_backoff(exc.response_text or str(exc))
        if explicit is not None:
            sleep_for = explicit
        elif exc.kind == "throttle":
            sleep_for = cfg.graphql_throttle_sleep
        else:
            sleep_for = cfg.graphql_rate_limit_sleep
    if cfg.max_sleep is not None:
        sleep_for = min(sleep_for, cfg.max_sleep)
    return sleep_for


def run_with_retries(fn: Callable[[], T], *, cfg: RetryConfig | None = None) -> T:
    cfg = cfg or RetryConfig()
    server_failures = 0
    waits = 0
    while True:
        try:
            return fn()
        except TransientAPIError as exc:
            if exc.kind == "server":
                server_failures += 1
                if server_failures >= max(1, cfg.server_error_attempts):
                    raise
                count = server_failures
            else:
                waits += 1
                if waits > cfg.max_rate_limit_waits:
                    raise
                count = waits
            sleep_for = compute_sleep(exc, count, cfg)
            logger.warning(
                "transient %s error (%s), attempt %d, sleeping %.1fs",
                exc.kind,
                exc,
                count,
                sleep_for,
            )
            if cfg.on_wait is not None:
                cfg.on_wait(exc, sleep_for)
            cfg.sleep(sleep_for)


__all__ = ["RetryConfig", "compute_sleep", "is_transient", "run_with_retries"]
