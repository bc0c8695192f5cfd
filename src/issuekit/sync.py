"""Incremental synchronization of GitHub issue data into the local store.

Each project has three feeds, always processed in this order:

* ``issues``   - ``/repos/{p}/issues?state=all&sort=updated&direction=asc``
* ``comments`` - ``/repos/{p}/issues/comments?sort=updated&direction=asc``
* ``events``   - ``/repos/{p}/issues/events`` (newest first)

The two date-ordered feeds resume from a stored ``since`` timestamp and commit
one transaction per page: the page's rows and the advanced checkpoint land
together or not at all. The event feed has no usable ordering key other than
the event id, so it walks newest-first until it reaches the stored high-water
id and records the newest id (and the page ETag) in the same transaction as
the rows.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .errors import GitHubAPIError, StoreError
from .github_rest import GitHubRestClient
from .logging import StructuredLogger, get_logger
from .models import ItemType, ProjectSync, format_time, issue_number_from_url, parse_time
from .store import EventStore

FEEDS = ("issues", "comments", "events")


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    CHECKPOINTED = "checkpointed"
    FAILED = "failed"


@dataclass
class FeedReport:
    project: str
    feed: str
    state: SyncState = SyncState.IDLE
    transitions: list[SyncState] = field(default_factory=lambda: [SyncState.IDLE])
    pages: int = 0
    fetched: int = 0
    inserted: int = 0
    checkpoint_before: Any = None
    checkpoint_after: Any = None
    not_modified: bool = False
    error: str | None = None

    def move(self, state: SyncState) -> None:
        if self.state is not state:
            self.state = state
            self.transitions.append(state)


@dataclass
class SyncReport:
    project: str
    resync: bool = False
    feeds: list[FeedReport] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return sum(f.inserted for f in self.feeds)

    @property
    def ok(self) -> bool:
        return all(f.state is SyncState.CHECKPOINTED for f in self.feeds)


def _encode(item: dict[str, Any]) -> bytes:
    return json.dumps(item, sort_keys=True, separators=(",", ":")).encode("utf-8")


class Synchronizer:
    """Drives a :class:`GitHubRestClient` to fill an :class:`EventStore`."""

    def __init__(
        self,
        store: EventStore,
        client: GitHubRestClient,
        *,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.logger = logger or get_logger()

    def _project(self, name: str) -> ProjectSync:
        proj = self.store.get_project(name)
        if proj is None:
            raise StoreError(f"project {name!r} is not tracked; run 'issuekit add {name}'")
        return proj

    # ---- whole project --------------------------------------------------
    def sync_project(self, name: str, *, resync: bool = False) -> SyncReport:
        """Run every feed of ``name`` in order; the first failure propagates.

        With ``resync`` the repository event feed only refreshes its
        high-water mark and every known issue's event list is walked in full.
        """
        report = SyncReport(project=name, resync=resync)
        with self.logger.timed_operation("sync_project", project=name, resync=resync):
            report.feeds.append(self.sync_issues(name))
            report.feeds.append(self.sync_comments(name))
            if resync:
                report.feeds.append(self.sync_events(name, short=True))
                report.feeds.extend(self.resync_by_issue(name))
            else:
                report.feeds.append(self.sync_events(name))
        return report

    # ---- date-ordered feeds ---------------------------------------------
    def sync_issues(self, name: str) -> FeedReport:
        return self._sync_by_date(name, "issues")

    def sync_comments(self, name: str) -> FeedReport:
        return self._sync_by_date(name, "comments")

    def _sync_by_date(self, name: str, feed: str) -> FeedReport:
        proj = self._project(name)
        client = self.client.for_repo(name)
        if feed == "issues":
            url = client.repo_path("/issues")
            item_type = ItemType.ISSUE
            checkpoint_field = "issue_date"
            since = proj.issue_date
        else:
            url = client.repo_path("/issues/comments")
            item_type = ItemType.COMMENT
            checkpoint_field = "comment_date"
            since = proj.comment_date

        params: dict[str, Any] = {"sort": "updated", "direction": "asc"}
        if item_type is ItemType.ISSUE:
            params["state"] = "all"
        if since is not None:
            params["since"] = format_time(since)

        report = FeedReport(project=name, feed=feed, checkpoint_before=since)
        high: datetime | None = since
        try:
            report.move(SyncState.FETCHING)
            for page in client.paginate(url, params=params):
                report.pages += 1
                report.fetched += len(page.items)
                report.move(SyncState.PERSISTING)
                with self.store.transaction():
                    inserted, page_high = self._persist_dated(name, item_type, page.items)
                    if page_high is not None and (high is None or page_high > high):
                        high = page_high
                        self.store.save_checkpoint(name, **{checkpoint_field: high})
                report.inserted += inserted
                self.logger.log_sync_batch(
                    name, feed, inserted, page=report.pages, since=format_time(high)
                )
                report.move(SyncState.FETCHING)
        except Exception as exc:
            report.move(SyncState.FAILED)
            report.error = str(exc)
            self.logger.log_error(f"sync {name} {feed} failed", error=str(exc), project=name)
            raise
        report.checkpoint_after = high
        report.move(SyncState.CHECKPOINTED)
        return report

    def _persist_dated(
        self, name: str, item_type: ItemType, items: list[dict[str, Any]]
    ) -> tuple[int, datetime | None]:
        inserted = 0
        high: datetime | None = None
        for item in items:
            updated = parse_time(item.get("updated_at"))
            if updated is None:
                raise GitHubAPIError(f"malformed {item_type.value}: no updated_at")
            identity = item.get("url")
            if not identity:
                raise GitHubAPIError(f"malformed {item_type.value}: no url")
            if item_type is ItemType.ISSUE:
                number = int(item.get("number") or 0)
            else:
                number = issue_number_from_url(item.get("issue_url"))
            if not number:
                raise GitHubAPIError(f"cannot find issue number for {identity}")
            if self.store.insert_raw(
                identity,
                name,
                number,
                item_type,
                _encode(item),
                parse_time(item.get("created_at")),
            ):
                inserted += 1
            if high is None or updated > high:
                high = updated
        return inserted, high

    # ---- event feed -----------------------------------------------------
    def sync_events(self, name: str, *, short: bool = False) -> FeedReport:
        """Walk the repository event feed newest-first down to the high-water id.

        ``short`` only records the newest id and ETag without storing events.
        """
        return self._sync_events(name, issue=None, short=short)

    def sync_issue_events(self, name: str, number: int) -> FeedReport:
        """Walk one issue's full event list, ignoring the high-water mark."""
        return self._sync_events(name, issue=number, short=False)

    def resync_by_issue(self, name: str) -> list[FeedReport]:
        reports = []
        for number in self.store.issue_numbers(name):
            reports.append(self.sync_issue_events(name, number))
        return reports

    def _sync_events(self, name: str, *, issue: int | None, short: bool) -> FeedReport:
        proj = self._project(name)
        client = self.client.for_repo(name)
        if issue is None:
            url = client.repo_path("/issues/events")
            etag = proj.event_etag
            feed = "events"
        else:
            url = client.repo_path(f"/issues/{issue}/events")
            etag = None
            feed = f"events#{issue}"

        report = FeedReport(project=name, feed=feed, checkpoint_before=proj.event_id)
        first_id = 0
        first_etag: str | None = None
        try:
            report.move(SyncState.FETCHING)
            with self.store.transaction():
                for page in client.paginate(url, etag=etag):
                    if page.not_modified:
                        report.not_modified = True
                        break
                    report.pages += 1
                    report.fetched += len(page.items)
                    report.move(SyncState.PERSISTING)
                    stop = False
                    for item in page.items:
                        event_id = int(item.get("id") or 0)
                        if not event_id:
                            raise GitHubAPIError("malformed event: no id")
                        if not first_id:
                            first_id = event_id
                            first_etag = page.etag
                        if issue is None and (
                            short or (proj.event_id and event_id <= proj.event_id)
                        ):
                            stop = True
                            break
                        if self._persist_event(name, issue, item):
                            report.inserted += 1
                    if stop:
                        break
                    report.move(SyncState.FETCHING)
                if issue is None and first_id and first_id > proj.event_id:
                    self.store.save_checkpoint(name, event_id=first_id, event_etag=first_etag)
        except Exception as exc:
            report.move(SyncState.FAILED)
            report.error = str(exc)
            self.logger.log_error(f"sync {name} {feed} failed", error=str(exc), project=name)
            raise
        report.checkpoint_after = max(first_id, proj.event_id) if issue is None else proj.event_id
        self.logger.log_sync_batch(
            name, feed, report.inserted, not_modified=report.not_modified, event_id=first_id
        )
        report.move(SyncState.CHECKPOINTED)
        return report

    def _persist_event(self, name: str, issue: int | None, item: dict[str, Any]) -> bool:
        if issue is not None:
            number = issue
        else:
            owner = item.get("issue") or {}
            number = int(owner.get("number") or 0) if isinstance(owner, dict) else 0
        if not number:
            raise GitHubAPIError(f"cannot find issue number for event {item.get('id')}")
        identity = item.get("url") or f"{self.client.base_url}/repos/{name}/issues/events/{item['id']}"
        return self.store.insert_raw(
            identity,
            name,
            number,
            ItemType.EVENT,
            _encode(item),
            parse_time(item.get("created_at")),
        )


def sync_all(
    synchronizer: Synchronizer,
    names: list[str],
    *,
    resync: bool = False,
    on_error: Callable[[str, Exception], None] | None = None,
) -> dict[str, SyncReport | Exception]:
    """Sync several projects; a failure in one does not stop the others."""
    results: dict[str, SyncReport | Exception] = {}
    for name in names:
        try:
            results[name] = synchronizer.sync_project(name, resync=resync)
        except Exception as exc:  # noqa: BLE001 - isolated per project
            results[name] = exc
            if on_error is not None:
                on_error(name, exc)
    return results


__all__ = [
    "FEEDS",
    "FeedReport",
    "SyncReport",
    "SyncState",
    "Synchronizer",
    "sync_all",
]
