from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class ItemType(str, Enum):
    ISSUE = "issue"
    COMMENT = "comment"
    EVENT = "event"


class Action(str, Enum):
    CREATE = "create"
    COMMENT = "comment"
    LABEL = "label"
    UNLABEL = "unlabel"
    MILESTONE = "milestone"
    DEMILESTONE = "demilestone"
    CLOSE = "close"
    REOPEN = "reopen"
    RENAME = "rename"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    MERGE = "merge"
    REFERENCE = "reference"
    # Probes: fields already set when the issue was created.
    ASSIGN_PROBE = "assign?"
    MILESTONE_PROBE = "milestone?"
    CLOSE_PROBE = "close?"


def parse_time(value: Any) -> datetime | None:
    """Parse a GitHub ISO-8601 timestamp (``...Z``) into an aware datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_time(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _login(obj: Any) -> str:
    if isinstance(obj, dict):
        return str(obj.get("login") or "")
    return ""


def _blank_to_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class RawEvent:
    """One remote item exactly as received; never mutated once stored."""

    identity: str
    project: str
    issue_number: int
    type: ItemType
    payload: bytes
    observed_at: datetime | None
    seq: int = 0

    def data(self) -> dict[str, Any]:
        return json.loads(self.payload)


@dataclass
class ProjectSync:
    name: str
    event_etag: str | None = None
    event_id: int = 0
    issue_date: datetime | None = None
    comment_date: datetime | None = None
    refill_seq: int = 0


@dataclass(frozen=True)
class HistoryAction:
    project: str
    issue_number: int
    time: datetime | None
    actor: str
    action: Action
    text: str
    sequence_key: int


# ---- tagged payload union ------------------------------------------------


@dataclass(frozen=True)
class IssuePayload:
    number: int
    title: str
    actor: str
    created_at: datetime | None
    assignees: tuple[str, ...]
    milestone: str | None
    closed_at: datetime | None
    closed_by: str


@dataclass(frozen=True)
class CommentPayload:
    issue_number: int
    actor: str
    created_at: datetime | None
    body: str


@dataclass(frozen=True)
class EventPayload:
    id: int
    issue_number: int
    kind: str
    actor: str
    created_at: datetime | None
    commit_id: str
    labels: tuple[str, ...]
    milestone: str
    assignees: tuple[str, ...]
    rename_from: str
    rename_to: str


Payload = Union[IssuePayload, CommentPayload, EventPayload]


def _label_names(data: dict[str, Any]) -> tuple[str, ...]:
    names = [str(lab.get("name") or "") for lab in data.get("labels") or [] if isinstance(lab, dict)]
    single = data.get("label")
    if isinstance(single, dict) and single.get("name") and single["name"] not in names:
        names.insert(0, str(single["name"]))
    return tuple(n for n in names if n)


def issue_number_from_url(url: Any) -> int:
    """Issue number from the last path segment of an ``issue_url``."""
    if not isinstance(url, str) or not url:
        return 0
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else 0


def decode_payload(item_type: ItemType, data: dict[str, Any]) -> Payload:
    """Dispatch a raw JSON object to its typed payload once."""
    if item_type is ItemType.ISSUE:
        milestone = data.get("milestone") or {}
        assignees = [_login(a) for a in data.get("assignees") or []]
        if not assignees and data.get("assignee"):
            assignees = [_login(data.get("assignee"))]
        return IssuePayload(
            number=int(data.get("number") or 0),
            title=str(data.get("title") or ""),
            actor=_login(data.get("user")),
            created_at=parse_time(data.get("created_at")),
            assignees=tuple(a for a in assignees if a),
            milestone=_blank_to_none(milestone.get("title")) if isinstance(milestone, dict) else None,
            closed_at=parse_time(data.get("closed_at")),
            closed_by=_login(data.get("closed_by")),
        )
    if item_type is ItemType.COMMENT:
        return CommentPayload(
            issue_number=issue_number_from_url(data.get("issue_url")),
            actor=_login(data.get("user")),
            created_at=parse_time(data.get("created_at")),
            body=str(data.get("body") or ""),
        )
    issue = data.get("issue") or {}
    number = int(issue.get("number") or 0) if isinstance(issue, dict) else 0
    if not number:
        number = issue_number_from_url(data.get("issue_url"))
    assignees = [_login(a) for a in data.get("assignees") or []]
    if not assignees and data.get("assignee"):
        assignees = [_login(data.get("assignee"))]
    rename = data.get("rename") or {}
    return EventPayload(
        id=int(data.get("id") or 0),
        issue_number=number,
        kind=str(data.get("event") or ""),
        actor=_login(data.get("actor")),
        created_at=parse_time(data.get("created_at")),
        commit_id=str(data.get("commit_id") or ""),
        labels=_label_names(data),
        milestone=str((data.get("milestone") or {}).get("title") or ""),
        assignees=tuple(a for a in assignees if a),
        rename_from=str(rename.get("from") or ""),
        rename_to=str(rename.get("to") or ""),
    )


# ---- edit engine -----------------------------------------------------------

REACTION_GLYPHS = (
    ("+1", "\N{THUMBS UP SIGN}"),
    ("-1", "\N{THUMBS DOWN SIGN}"),
    ("laugh", "\N{SMILING FACE WITH OPEN MOUTH AND TIGHTLY-CLOSED EYES}"),
    ("confused", "\N{CONFUSED FACE}"),
    ("heart", "\N{BLACK HEART SUIT}"),
    ("hooray", "\N{PARTY POPPER}"),
    ("rocket", "\N{ROCKET}"),
    ("eyes", "\N{EYES}"),
)


@dataclass(frozen=True)
class Reactions:
    counts: tuple[tuple[str, int], ...] = ()

    @classmethod
    def from_api(cls, data: Any) -> Reactions:
        if not isinstance(data, dict):
            return cls()
        return cls(tuple((key, int(data.get(key) or 0)) for key, _ in REACTION_GLYPHS))

    def as_dict(self) -> dict[str, int]:
        return {k: v for k, v in self.counts}

    def __bool__(self) -> bool:
        return any(v for _, v in self.counts)

    def __str__(self) -> str:
        have = self.as_dict()
        return " ".join(f"{glyph} {have[key]}" for key, glyph in REACTION_GLYPHS if have.get(key))


@dataclass(frozen=True)
class IssueState:
    """Live snapshot of an issue used as the baseline for an edit.

    ``assignee`` and ``milestone`` are None when unset; the empty string is
    never stored.
    """

    number: int
    title: str = ""
    state: str = ""
    assignee: str | None = None
    labels: frozenset[str] = frozenset()
    milestone: str | None = None
    locked: bool = False
    closed_at: datetime | None = None
    url: str = ""
    reporter: str = ""
    created_at: datetime | None = None
    body: str | None = None
    reactions: Reactions = field(default_factory=Reactions)

    def __post_init__(self) -> None:
        object.__setattr__(self, "assignee", _blank_to_none(self.assignee))
        object.__setattr__(self, "milestone", _blank_to_none(self.milestone))
        object.__setattr__(self, "labels", frozenset(self.labels))

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> IssueState:
        milestone = data.get("milestone")
        return cls(
            number=int(data.get("number") or 0),
            title=str(data.get("title") or ""),
            state=str(data.get("state") or ""),
            assignee=_login(data.get("assignee")) or None,
            labels=frozenset(
                str(lab.get("name")) for lab in data.get("labels") or [] if isinstance(lab, dict)
            ),
            milestone=milestone.get("title") if isinstance(milestone, dict) else None,
            locked=bool(data.get("locked")),
            closed_at=parse_time(data.get("closed_at")),
            url=str(data.get("html_url") or ""),
            reporter=_login(data.get("user")),
            created_at=parse_time(data.get("created_at")),
            body=data.get("body"),
            reactions=Reactions.from_api(data.get("reactions")),
        )


@dataclass
class EditIntent:
    """Field changes extracted from an edited buffer.

    For the optional fields None means "leave alone". ``assignee_change`` and
    ``milestone_change`` use ``""`` to mean "clear".
    """

    title_change: str | None = None
    state_change: str | None = None
    assignee_change: str | None = None
    labels_replace: frozenset[str] | None = None
    label_adds: tuple[str, ...] = ()
    label_removes: tuple[str, ...] = ()
    milestone_change: str | None = None
    milestone_number: int | None = None
    new_comment: str | None = None

    def has_metadata(self) -> bool:
        return any(
            v is not None
            for v in (
                self.title_change,
                self.state_change,
                self.assignee_change,
                self.labels_replace,
                self.milestone_change,
            )
        )

    def is_empty(self) -> bool:
        return (
            not self.has_metadata()
            and not self.label_adds
            and not self.label_removes
            and not self.new_comment
        )

    def metadata_fields(self) -> dict[str, Any]:
        """Keyword arguments for a single metadata PATCH."""
        out: dict[str, Any] = {}
        if self.title_change is not None:
            out["title"] = self.title_change
        if self.state_change is not None:
            out["state"] = self.state_change
        if self.assignee_change is not None:
            out["assignee"] = self.assignee_change
        if self.labels_replace is not None:
            out["labels"] = sorted(self.labels_replace)
        if self.milestone_change is not None:
            out["milestone"] = self.milestone_number if self.milestone_change else None
        return out


__all__ = [
    "Action",
    "CommentPayload",
    "EditIntent",
    "EventPayload",
    "HistoryAction",
    "IssuePayload",
    "IssueState",
    "ItemType",
    "Payload",
    "ProjectSync",
    "RawEvent",
    "Reactions",
    "decode_payload",
    "format_time",
    "issue_number_from_url",
    "parse_time",
]
