"""Issue queries.

A query made only of simple ``key:value`` terms is answered with the
repository issue list endpoint, which sees changes immediately; anything
else goes through the search API.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .github_rest import GitHubRestClient
from .models import IssueState
from .textform import MilestoneResolver, issue_to_json


@dataclass
class ListOptions:
    milestone: str = ""
    state: str = ""
    assignee: str = ""
    creator: str = ""
    mentioned: str = ""
    labels: list[str] = field(default_factory=list)
    sort: str = ""

    def params(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in ("milestone", "state", "assignee", "creator", "mentioned", "sort"):
            value = getattr(self, key)
            if value:
                out[key] = value
        if self.labels:
            out["labels"] = ",".join(self.labels)
        return out


_SIMPLE_KEYS = {
    "state": "state",
    "assignee": "assignee",
    "author": "creator",
    "mentions": "mentioned",
    "sort": "sort",
}


def query_to_list_options(q: str, resolver: MilestoneResolver | None = None) -> ListOptions | None:
    """Translate ``q`` into list options, or None if only search can answer it.

    Each key may appear once; a milestone must resolve to a known number.
    """
    if '"' in q or "'" in q:
        return None
    opt = ListOptions()
    for term in q.split():
        key, sep, val = term.partition(":")
        if not sep:
            return None
        if key in _SIMPLE_KEYS:
            attr = _SIMPLE_KEYS[key]
            if getattr(opt, attr) or not val:
                return None
            setattr(opt, attr, val)
        elif key == "label":
            if opt.labels or not val:
                return None
            opt.labels = val.split(",")
        elif key == "milestone":
            if opt.milestone or not val or resolver is None:
                return None
            number = resolver(val)
            if number is None:
                return None
            opt.milestone = str(number)
        elif key == "no" and val == "milestone":
            if opt.milestone:
                return None
            opt.milestone = "none"
        else:
            return None
    return opt


def sort_issues(issues: Iterable[IssueState], *, by_number: bool = False) -> list[IssueState]:
    if by_number:
        return sorted(issues, key=lambda i: -i.number)
    return sorted(issues, key=lambda i: (i.title, i.number))


def search_issues(
    client: GitHubRestClient,
    q: str,
    *,
    resolver: MilestoneResolver | None = None,
) -> list[IssueState]:
    """Issues matching ``q``, sorted by title then number."""
    opt = query_to_list_options(q, resolver if resolver is not None else client.resolve_milestone)
    if opt is not None:
        items = client.list_repo_issues(opt.params())
    else:
        items = client.search_issues(q)
    return sort_issues(IssueState.from_api(i) for i in items)


def format_issue_list(issues: Iterable[IssueState]) -> str:
    return "".join(f"{i.number}\t{i.title}\n" for i in issues)


def issues_to_json(project: str, issues: Iterable[IssueState]) -> list[dict[str, Any]]:
    return [issue_to_json(project, i) for i in issues]


__all__ = [
    "ListOptions",
    "format_issue_list",
    "issues_to_json",
    "query_to_list_options",
    "search_issues",
    "sort_issues",
]
