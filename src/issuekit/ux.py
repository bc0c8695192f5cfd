"""Terminal output helpers for the CLI."""

from __future__ import annotations

import os
import sys
from collections.abc import Sequence
from typing import TextIO

from .sync import FeedReport, SyncReport


class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"


def supports_color(stream: TextIO | None = None) -> bool:
    """Colour only real terminals, and never with NO_COLOR or TERM=dumb."""
    stream = stream or sys.stdout
    if os.environ.get("NO_COLOR") or os.environ.get("TERM") == "dumb":
        return False
    return bool(getattr(stream, "isatty", None)) and stream.isatty()


def colorize(text: str, color: str, bold: bool = False, stream: TextIO | None = None) -> str:
    if not supports_color(stream):
        return text
    prefix = (Colors.BOLD if bold else "") + color
    return f"{prefix}{text}{Colors.RESET}"


def _mark(symbol: str, color: str, message: str, stream: TextIO) -> None:
    print(colorize(symbol, color, bold=True, stream=stream) + " " + message, file=stream)


def print_success(message: str, stream: TextIO | None = None) -> None:
    _mark("✓", Colors.GREEN, message, stream or sys.stderr)


def print_error(message: str, stream: TextIO | None = None) -> None:
    _mark("✗", Colors.RED, message, stream or sys.stderr)


def print_warning(message: str, stream: TextIO | None = None) -> None:
    _mark("⚠", Colors.YELLOW, message, stream or sys.stderr)


def print_info(message: str, stream: TextIO | None = None) -> None:
    _mark("ℹ", Colors.BLUE, message, stream or sys.stderr)


def print_summary_box(
    title: str, items: Sequence[tuple[str, str | int]], stream: TextIO | None = None
) -> None:
    """Aligned ``key  value`` lines under a heading."""
    stream = stream or sys.stdout
    width = max((len(k) for k, _ in items), default=0)
    print(colorize(title, Colors.CYAN, bold=True, stream=stream), file=stream)
    for key, value in items:
        shown = str(value)
        if shown in ("", "-"):
            shown = colorize("-", Colors.DIM, stream=stream)
        print(f"  {key.ljust(width)}  {shown}", file=stream)


def _feed_line(feed: FeedReport) -> str:
    if feed.not_modified:
        return f"{feed.feed}: not modified"
    return f"{feed.feed}: {feed.inserted} new of {feed.fetched} fetched in {feed.pages} page(s)"


def print_sync_report(report: SyncReport, stream: TextIO | None = None) -> None:
    stream = stream or sys.stderr
    title = f"{'resync' if report.resync else 'sync'} {report.project}"
    print_success(f"{title}: {report.inserted} new raw event(s)", stream)
    for feed in report.feeds:
        if feed.inserted or feed.not_modified or feed.feed in ("issues", "comments", "events"):
            print(colorize("    " + _feed_line(feed), Colors.DIM, stream=stream), file=stream)


__all__ = [
    "Colors",
    "colorize",
    "print_error",
    "print_info",
    "print_success",
    "print_summary_box",
    "print_sync_report",
    "print_warning",
    "supports_color",
]
