"""Reports computed from the ``history`` table.

All reports replay :class:`HistoryAction` rows in time order (stable, so
actions with equal times keep their sequence order) and emit one row per
day or week.
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import Action, HistoryAction, format_time

NO_MILESTONE = "No Milestone"

_REPLAYED = frozenset(
    {
        Action.CREATE,
        Action.MILESTONE,
        Action.MILESTONE_PROBE,
        Action.DEMILESTONE,
        Action.CLOSE,
        Action.CLOSE_PROBE,
        Action.REOPEN,
        Action.LABEL,
        Action.UNLABEL,
    }
)


@dataclass
class Table:
    header: list[str]
    rows: list[list[Any]] = field(default_factory=list)

    def as_dicts(self) -> list[dict[str, Any]]:
        return [dict(zip(self.header, row)) for row in self.rows]


def render_table(table: Table) -> str:
    """Tab-separated text with a header line."""
    lines = ["\t".join(table.header)]
    lines += ["\t".join(str(v) for v in row) for row in table.rows]
    return "\n".join(lines) + "\n"


def render_json(table: Table) -> str:
    return json.dumps(table.as_dicts(), indent=2)


@dataclass
class _Issue:
    created: bool = False
    closed: bool = False
    milestone: str = ""
    labels: set[str] = field(default_factory=set)

    @property
    def open(self) -> bool:
        return self.created and not self.closed


def _timeline(actions: Iterable[HistoryAction]) -> list[tuple[str, HistoryAction]]:
    out = []
    for a in actions:
        if a.action not in _REPLAYED or a.time is None:
            continue
        out.append((format_time(a.time) or "", a))
    out.sort(key=lambda pair: pair[0])
    return out


def _apply(state: dict[int, _Issue], a: HistoryAction) -> None:
    s = state.setdefault(a.issue_number, _Issue())
    if a.action is Action.CREATE:
        s.created = True
    elif a.action in (Action.MILESTONE, Action.MILESTONE_PROBE):
        if a.text:
            s.milestone = a.text
    elif a.action is Action.DEMILESTONE:
        if s.milestone == a.text:
            s.milestone = ""
    elif a.action in (Action.CLOSE, Action.CLOSE_PROBE):
        s.closed = True
    elif a.action is Action.REOPEN:
        s.closed = False
    elif a.action is Action.LABEL:
        s.labels.add(a.text)
    elif a.action is Action.UNLABEL:
        s.labels.discard(a.text)


def replay_daily(actions: Iterable[HistoryAction]) -> Iterator[tuple[str, dict[int, _Issue]]]:
    """Yield ``(YYYY-MM-DD, state)`` after the last action of each day.

    ``state`` is live and keeps changing after the next yield.
    """
    state: dict[int, _Issue] = {}
    last = ""
    for when, a in _timeline(actions):
        day = when[:10]
        if day != last:
            if last:
                yield last, state
            last = day
        _apply(state, a)
    if last:
        yield last, state


def _daily(
    actions: Iterable[HistoryAction],
    columns: Sequence[str],
    count: Callable[[_Issue], Iterable[str]],
    since: str | None,
) -> Table:
    table = Table(header=["Date", *columns])
    for day, state in replay_daily(actions):
        if since and day < since:
            continue
        counts: Counter[str] = Counter()
        for issue in state.values():
            if issue.open:
                counts.update(count(issue))
        table.rows.append([day, *(counts[c] for c in columns)])
    return table


def daily_open_by_milestone(
    actions: Iterable[HistoryAction],
    milestones: Sequence[str],
    *,
    since: str | None = None,
) -> Table:
    """Open issues per day in each of ``milestones`` and in no milestone."""
    wanted = set(milestones)

    def bucket(issue: _Issue) -> Iterable[str]:
        if not issue.milestone:
            return (NO_MILESTONE,)
        return (issue.milestone,) if issue.milestone in wanted else ()

    return _daily(actions, [NO_MILESTONE, *milestones], bucket, since)


def daily_label_counts(
    actions: Iterable[HistoryAction],
    labels: Sequence[str],
    *,
    since: str | None = None,
) -> Table:
    """Open issues per day carrying each of ``labels``."""
    return _daily(actions, list(labels), lambda issue: issue.labels & set(labels), since)


def _week(when: datetime) -> str:
    year, week, _ = when.isocalendar()
    return f"{year}-W{week:02d}"


def weekly_activity(
    actions: Iterable[HistoryAction],
    *,
    top: int = 40,
    kind: Action | None = None,
    since: str | None = None,
) -> Table:
    """Per ISO week, the number of actions by each of the ``top`` most active actors."""
    selected = [
        a
        for a in actions
        if a.time is not None
        and a.actor
        and (kind is None or a.action is kind)
        and (not since or (format_time(a.time) or "") >= since)
    ]
    totals = Counter(a.actor for a in selected)
    actors = sorted(totals, key=lambda who: (-totals[who], who))[:top]
    weeks: dict[str, Counter[str]] = {}
    for a in selected:
        if a.time is not None:
            weeks.setdefault(_week(a.time), Counter())[a.actor] += 1
    table = Table(header=["Week", *actors])
    for week in sorted(weeks):
        table.rows.append([week, *(weeks[week][who] for who in actors)])
    return table


__all__ = [
    "NO_MILESTONE",
    "Table",
    "daily_label_counts",
    "daily_open_by_milestone",
    "render_json",
    "render_table",
    "replay_daily",
    "weekly_activity",
]
