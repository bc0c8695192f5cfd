"""Tests for terminal output helpers."""

from __future__ import annotations

import io

import pytest

from issuekit.sync import FeedReport, SyncReport
from issuekit.ux import (
    Colors,
    colorize,
    print_error,
    print_success,
    print_summary_box,
    print_sync_report,
    print_warning,
)


def _tty() -> io.StringIO:
    stream = io.StringIO()
    stream.isatty = lambda: True  # type: ignore[method-assign]
    return stream


def test_colorize_with_tty_support(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    monkeypatch.setenv("TERM", "xterm-256color")

    result = colorize("test", Colors.RED, bold=True, stream=_tty())
    assert result == f"{Colors.BOLD}{Colors.RED}test{Colors.RESET}"


def test_colorize_respects_no_color(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NO_COLOR", "1")
    assert colorize("test", Colors.RED, bold=True, stream=_tty()) == "test"


def test_colorize_dumb_terminal(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    monkeypatch.setenv("TERM", "dumb")
    assert colorize("test", Colors.GREEN, stream=_tty()) == "test"


def test_colorize_no_tty(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    assert colorize("test", Colors.GREEN, stream=io.StringIO()) == "test"


def test_status_lines() -> None:
    stream = io.StringIO()
    print_success("done", stream)
    print_error("broken", stream)
    print_warning("careful", stream)
    assert stream.getvalue().splitlines() == ["✓ done", "✗ broken", "⚠ careful"]


def test_summary_box_aligns_keys() -> None:
    stream = io.StringIO()
    print_summary_box("o/r", [("issues since", "2015-01-08T05:17:06Z"), ("raw", 3), ("etag", "-")], stream)
    assert stream.getvalue().splitlines() == [
        "o/r",
        "  issues since  2015-01-08T05:17:06Z",
        "  raw           3",
        "  etag          -",
    ]


def test_sync_report_lists_each_feed() -> None:
    report = SyncReport(
        project="o/r",
        feeds=[
            FeedReport(project="o/r", feed="issues", pages=2, fetched=150, inserted=150),
            FeedReport(project="o/r", feed="comments"),
            FeedReport(project="o/r", feed="events", not_modified=True),
            FeedReport(project="o/r", feed="events#7"),
        ],
    )
    stream = io.StringIO()
    print_sync_report(report, stream)
    assert stream.getvalue().splitlines() == [
        "✓ sync o/r: 150 new raw event(s)",
        "    issues: 150 new of 150 fetched in 2 page(s)",
        "    comments: 0 new of 0 fetched in 0 page(s)",
        "    events: not modified",
    ]
