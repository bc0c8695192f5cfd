"""Interactive sessions: one processing loop per open window.

Windows share nothing but a :class:`SessionContext`, which owns the
open-window registry and the advisory caches. Every shared map is guarded by
its own lock; none of them is a source of truth.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .editor import TextBuffer
from .errors import GitHubAPIError, classify_error, redact
from .github_rest import GitHubRestClient, Milestone
from .models import IssueState
from .query import format_issue_list, search_issues, sort_issues
from .textform import (
    MilestoneResolver,
    bulk_apply,
    bulk_edit_start,
    read_bulk_ids,
    render_issue,
    write_issue,
)

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    pass


class SessionRegistry:
    """Open windows by title; fires ``on_empty`` when the last one closes."""

    def __init__(self, on_empty: Callable[[], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._windows: dict[str, Window] = {}
        self.on_empty = on_empty

    def add(self, window: Window) -> None:
        with self._lock:
            if window.title in self._windows:
                raise SessionError(f"{window.title} is already open")
            self._windows[window.title] = window

    def remove(self, window: Window) -> None:
        with self._lock:
            if self._windows.get(window.title) is window:
                del self._windows[window.title]
            empty = not self._windows
        if empty and self.on_empty is not None:
            self.on_empty()

    def get(self, title: str) -> Window | None:
        with self._lock:
            return self._windows.get(title)

    def titles(self) -> list[str]:
        with self._lock:
            return sorted(self._windows)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class IssueCache:
    """Issue-by-number cache used to speed up bulk views."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._issues: dict[tuple[str, int], IssueState] = {}

    def get(self, project: str, number: int) -> IssueState | None:
        with self._lock:
            return self._issues.get((project, number))

    def put(self, project: str, issue: IssueState) -> None:
        with self._lock:
            self._issues[(project, issue.number)] = issue

    def forget(self, project: str, number: int) -> None:
        with self._lock:
            self._issues.pop((project, number), None)


class MilestoneCache:
    """Open milestones per project, loaded once on first use."""

    def __init__(self, loader: Callable[[str], list[Milestone]]) -> None:
        self._lock = threading.Lock()
        self._loader = loader
        self._lists: dict[str, list[Milestone]] = {}

    def get(self, project: str) -> list[Milestone]:
        with self._lock:
            if project not in self._lists:
                self._lists[project] = self._loader(project)
            return list(self._lists[project])

    def invalidate(self, project: str | None = None) -> None:
        with self._lock:
            if project is None:
                self._lists.clear()
            else:
                self._lists.pop(project, None)

    def resolver(self, project: str) -> MilestoneResolver:
        def resolve(name: str) -> int | None:
            for m in self.get(project):
                if m.title == name:
                    return m.number
            return None

        return resolve


class BusyIndicator:
    """Toggle ``on_tick`` every ``interval`` seconds while a block runs.

    Purely cosmetic; ``on_tick(False)`` is always the last call.
    """

    def __init__(self, on_tick: Callable[[bool], None], interval: float = 0.5) -> None:
        self.on_tick = on_tick
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    def _run(self) -> None:
        on = False
        while not self._stop.wait(self.interval):
            on = not on
            self.ticks += 1
            self.on_tick(on)

    def __enter__(self) -> BusyIndicator:
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="issuekit-busy", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.on_tick(False)


@dataclass
class SessionContext:
    client: GitHubRestClient
    project: str
    registry: SessionRegistry = field(default_factory=SessionRegistry)
    issues: IssueCache = field(default_factory=IssueCache)
    milestone_loader: Callable[[str], list[Milestone]] | None = None
    errors: list[str] = field(default_factory=list)
    busy_interval: float = 0.5
    milestones: MilestoneCache = field(init=False)
    _errors_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        self.milestones = MilestoneCache(
            self.milestone_loader
            or (lambda project: self.client.for_repo(project).list_open_milestones())
        )

    def add_error(self, line: str) -> None:
        with self._errors_lock:
            self.errors.append(line)

    def report_error(self, where: str, exc: BaseException) -> None:
        info = classify_error(exc)
        line = redact(f"{where}: {info.message}")
        self.add_error(line)
        logger.warning("%s (%s)", line, info.category)

    def busy(self, on_tick: Callable[[bool], None] | None = None) -> BusyIndicator:
        return BusyIndicator(on_tick or (lambda _on: None), self.busy_interval)


Handler = Callable[["Window", str, Any], None]


class Window:
    """One open view with its own command loop thread.

    Commands are ``(name, arg)`` pairs; ``close`` ends the loop. A failing
    command is recorded on the context and the loop keeps going.
    """

    def __init__(self, ctx: SessionContext, title: str, handler: Handler) -> None:
        self.ctx = ctx
        self.title = title
        self.handler = handler
        self.commands: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._thread: threading.Thread | None = None

    def start(self) -> Window:
        self.ctx.registry.add(self)
        self._thread = threading.Thread(target=self._loop, name=f"issuekit-{self.title}", daemon=True)
        self._thread.start()
        return self

    def send(self, command: str, arg: Any = None) -> None:
        self.commands.put((command, arg))

    def close(self) -> None:
        self.send("close")

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _loop(self) -> None:
        try:
            while True:
                command, arg = self.commands.get()
                if command == "close":
                    return
                try:
                    self.handler(self, command, arg)
                except Exception as exc:  # noqa: BLE001 - shown in the error log
                    self.ctx.report_error(f"{self.title} {command}", exc)
        finally:
            self.ctx.registry.remove(self)


def issue_handler(number: int, buffer: TextBuffer, *, width: int = 70) -> Handler:
    """Handler for a single-issue window: ``get`` loads, ``put`` saves."""
    loaded: dict[str, IssueState] = {}

    def handle(window: Window, command: str, arg: Any) -> None:
        ctx = window.ctx
        client = ctx.client.for_repo(ctx.project)
        if command == "get":
            with ctx.busy():
                issue = IssueState.from_api(client.get_issue(number))
                comments = client.list_comments(number)
                events = client.list_issue_events(number)
            ctx.issues.put(ctx.project, issue)
            loaded["issue"] = issue
            buffer.put(render_issue(issue, comments, events, width=width))
        elif command == "put":
            if "issue" not in loaded:
                raise SessionError(f"#{number} was never loaded")
            warnings: list[str] = []
            with ctx.busy():
                result = write_issue(
                    client,
                    loaded["issue"],
                    buffer.load(),
                    resolver=ctx.milestones.resolver(ctx.project),
                    warnings=warnings,
                )
            for msg in warnings:
                ctx.add_error(f"{window.title}: {msg}")
            if result.errors:
                raise GitHubAPIError(result.summary())
            ctx.issues.forget(ctx.project, number)
            window.send("get")
        else:
            raise SessionError(f"unknown command {command!r}")

    return handle


def open_issue(ctx: SessionContext, number: int, buffer: TextBuffer) -> Window | None:
    """Open (and load) a window for issue ``number`` unless one is already open."""
    title = f"{ctx.project}/{number}"
    if ctx.registry.get(title) is not None:
        return None
    window = Window(ctx, title, issue_handler(number, buffer)).start()
    window.send("get")
    return window


def search_handler(q: str, buffer: TextBuffer) -> Handler:
    """Handler for a search window.

    ``get`` runs the query and lists the results, ``sort`` toggles between
    title order and newest-first, and ``bulk`` opens a bulk-edit window (its
    buffer is the argument) for the issues still listed in this one.
    """
    found: list[IssueState] = []
    by_number = [False]

    def show() -> None:
        buffer.put(format_issue_list(sort_issues(found, by_number=by_number[0])))

    def handle(window: Window, command: str, arg: Any) -> None:
        ctx = window.ctx
        if command == "get":
            client = ctx.client.for_repo(ctx.project)
            with ctx.busy():
                issues = search_issues(client, q, resolver=ctx.milestones.resolver(ctx.project))
            for issue in issues:
                ctx.issues.put(ctx.project, issue)
            found[:] = issues
            show()
        elif command == "sort":
            by_number[0] = not by_number[0]
            show()
        elif command == "bulk":
            ids = read_bulk_ids(buffer.load())
            if not ids:
                raise SessionError("no issues listed")
            open_bulk(ctx, ids, arg)
        else:
            raise SessionError(f"unknown command {command!r}")

    return handle


def open_search(ctx: SessionContext, q: str, buffer: TextBuffer) -> Window | None:
    title = f"{ctx.project}/search {q}".rstrip()
    if ctx.registry.get(title) is not None:
        return None
    window = Window(ctx, title, search_handler(q, buffer)).start()
    window.send("get")
    return window


def bulk_handler(numbers: list[int], buffer: TextBuffer) -> Handler:
    """Handler for a bulk-edit window over ``numbers``.

    ``get`` builds the common header from cached issues (fetching the rest),
    ``put`` applies the buffer to every listed issue and reloads.
    """
    base: dict[str, IssueState] = {}

    def handle(window: Window, command: str, arg: Any) -> None:
        ctx = window.ctx
        client = ctx.client.for_repo(ctx.project)
        if command == "get":
            issues = []
            with ctx.busy():
                for number in numbers:
                    issue = ctx.issues.get(ctx.project, number)
                    if issue is None:
                        issue = IssueState.from_api(client.get_issue(number))
                        ctx.issues.put(ctx.project, issue)
                    issues.append(issue)
            base["issue"], text = bulk_edit_start(issues)
            buffer.put(text)
        elif command == "put":
            if "issue" not in base:
                raise SessionError(f"{window.title} was never loaded")
            warnings: list[str] = []
            with ctx.busy():
                result = bulk_apply(
                    client,
                    base["issue"],
                    buffer.load(),
                    resolver=ctx.milestones.resolver(ctx.project),
                    status=lambda msg: logger.info("%s: %s", window.title, msg),
                    warnings=warnings,
                )
            for msg in warnings:
                ctx.add_error(f"{window.title}: {msg}")
            for number in result.ids:
                ctx.issues.forget(ctx.project, number)
            if not result.ok:
                failed = ", ".join(f"#{n}" for n in result.failed_ids)
                raise GitHubAPIError(f"bulk edit failed for {failed}")
            window.send("get")
        else:
            raise SessionError(f"unknown command {command!r}")

    return handle


def open_bulk(ctx: SessionContext, numbers: list[int], buffer: TextBuffer) -> Window | None:
    title = f"{ctx.project}/bulk " + ",".join(str(n) for n in numbers)
    if ctx.registry.get(title) is not None:
        return None
    window = Window(ctx, title, bulk_handler(numbers, buffer)).start()
    window.send("get")
    return window


__all__ = [
    "BusyIndicator",
    "IssueCache",
    "MilestoneCache",
    "SessionContext",
    "SessionError",
    "SessionRegistry",
    "Window",
    "bulk_handler",
    "issue_handler",
    "open_bulk",
    "open_issue",
    "open_search",
    "search_handler",
]
