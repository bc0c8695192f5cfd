"""Pytest configuration for issuekit tests.

Puts the in-repo ``src`` directory on ``sys.path`` so the package imports
without an editable install, and provides a fake ``requests`` session that
serves queued responses.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from issuekit.github_rest import GitHubRestClient  # noqa: E402
from issuekit.retry import RetryConfig  # noqa: E402
from issuekit.store import EventStore  # noqa: E402


@dataclass
class DummyResponse:
    status_code: int
    payload: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        if isinstance(self.payload, Exception):
            raise self.payload
        if isinstance(self.payload, str):
            return json.loads(self.payload)
        return self.payload

    @property
    def text(self) -> str:
        if self.payload is None or isinstance(self.payload, Exception):
            return "" if self.payload is None else "not json"
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload)


class DummySession:
    def __init__(self, responses: list[DummyResponse] | None = None):
        self._responses = list(responses or [])
        self.request_log: list[tuple[str, str, dict[str, Any]]] = []
        self.headers: dict[str, str] = {}

    def queue(self, *responses: DummyResponse) -> None:
        self._responses.extend(responses)

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> DummyResponse:
        self.request_log.append((method, url, {"headers": headers, "json": json, "params": params}))
        if not self._responses:
            raise AssertionError(f"No response queued for {method} {url}")
        return self._responses.pop(0)

    @property
    def pending(self) -> int:
        return len(self._responses)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def session() -> DummySession:
    return DummySession()


@pytest.fixture
def client(session: DummySession, sleeps: list[float]) -> GitHubRestClient:
    return GitHubRestClient(
        token="tkn",
        repo="o/r",
        session=session,  # type: ignore[arg-type]
        retry=RetryConfig(server_error_attempts=3, backoff_step=2.0, sleep=sleeps.append, max_sleep=None),
        clock=lambda: 1000.0,
    )


@pytest.fixture
def store(tmp_path: Path) -> Iterator[EventStore]:
    with EventStore(tmp_path / "issues.db") as s:
        yield s


@pytest.fixture
def kit_caplog(caplog: pytest.LogCaptureFixture) -> Iterator[pytest.LogCaptureFixture]:
    """caplog that also sees records from the non-propagating ``issuekit`` logger."""
    logger = logging.getLogger("issuekit")
    logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger="issuekit")
    try:
        yield caplog
    finally:
        logger.removeHandler(caplog.handler)
