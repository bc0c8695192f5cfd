"""Plain-text rendering and editing of issues.

An issue is shown as a block of ``Key: value`` header lines, a blank line,
then the report and the conversation. Editing works by rendering, letting
the user change the text, and diffing the parsed header against the issue
it was rendered from: only fields whose value actually changed turn into
API calls, so saving an untouched buffer does nothing.

Text typed between the header block and the ``Reported by`` line (or, for
bulk edits, the issue list) is posted as a new comment.
"""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from .errors import EditParseError, GitHubAPIError
from .github_rest import GitHubRestClient
from .models import EditIntent, IssueState, Reactions, format_time, parse_time

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_WIDTH = 70
REPORTED_MARKER = "\nReported by "
BULK_HEADER = "\nBulk editing these issues:"
COMMENT_PLACEHOLDER = "<optional comment here>"
BODY_PLACEHOLDER = "<describe issue here>"
CREATE_TEMPLATE = f"Title: \nAssignee: \nLabels: \nMilestone: \n\n{BODY_PLACEHOLDER}\n"

HEADER_KEYS = ("Title", "State", "Assignee", "Closed", "Labels", "Milestone", "URL", "Reactions")
READ_ONLY_KEYS = frozenset({"Closed", "URL", "Reactions"})
HIDDEN_EVENTS = frozenset({"mentioned", "subscribed", "unsubscribed"})

MilestoneResolver = Callable[[str], Optional[int]]


# ---- rendering --------------------------------------------------------------


def _fmt(dt: datetime | None) -> str:
    return dt.strftime(TIME_FORMAT) if dt is not None else ""


def wrap(text: str, prefix: str = "\t", width: int = DEFAULT_WIDTH) -> str:
    """Break lines longer than ``width`` at the last space, indenting with ``prefix``."""
    out: list[str] = []
    text = text.replace("\r\n", "\n")
    for i, line in enumerate(text.split("\n")):
        if i > 0:
            out.append("\n" + prefix)
        s = line
        while len(s) > width:
            cut = s.rfind(" ", 0, width)
            if cut < 0:
                cut = width - 1
            cut += 1
            out.append(s[:cut] + "\n" + prefix)
            s = s[cut:]
        out.append(s)
    return "".join(out)


def format_labels(labels: Iterable[str]) -> str:
    return " ".join(shlex.quote(name) for name in sorted(labels))


def parse_labels(value: str) -> list[str]:
    """Inverse of :func:`format_labels`; raises ValueError on bad quoting."""
    return shlex.split(value)


def _body_text(body: str | None, *, width: int, raw: bool) -> str:
    if body is None:
        return ""
    if raw:
        return f"\n{body}\n\n"
    text = body.strip()
    if not text:
        return ""
    return f"\n\t{wrap(text, chr(9), width)}\n"


def _comment_block(comment: dict[str, Any], *, width: int, raw: bool) -> str:
    created = parse_time(comment.get("created_at"))
    user = (comment.get("user") or {}).get("login", "")
    block = f"{format_time(created) or ''}\n"
    block += f"\nComment by {user} ({_fmt(created)})\n"
    block += _body_text(comment.get("body"), width=width, raw=raw)
    reactions = Reactions.from_api(comment.get("reactions"))
    if reactions:
        block += f"\n\t{reactions}\n"
    return block


def _event_block(event: dict[str, Any]) -> str | None:
    kind = str(event.get("event") or "")
    if kind in HIDDEN_EVENTS:
        return None
    created = parse_time(event.get("created_at"))
    actor = (event.get("actor") or {}).get("login", "")
    when = _fmt(created)
    block = f"{format_time(created) or ''}\n"
    if kind in ("closed", "referenced", "merged"):
        commit = str(event.get("commit_id") or "")
        suffix = f" in commit {commit[:7]}" if commit else ""
        block += f"\n* {actor} {kind}{suffix} ({when})\n"
    elif kind in ("assigned", "unassigned"):
        assignee = (event.get("assignee") or {}).get("login", "")
        block += f"\n* {actor} {kind} {assignee} ({when})\n"
    elif kind in ("labeled", "unlabeled"):
        label = (event.get("label") or {}).get("name", "")
        block += f"\n* {actor} {kind} {label} ({when})\n"
    elif kind in ("milestoned", "demilestoned"):
        verb = "added to milestone" if kind == "milestoned" else "removed from milestone"
        title = (event.get("milestone") or {}).get("title", "")
        block += f"\n* {actor} {verb} {title} ({when})\n"
    elif kind == "renamed":
        rename = event.get("rename") or {}
        block += (
            f"\n* {actor} changed title ({when})\n"
            f"  - {rename.get('from', '')}\n  + {rename.get('to', '')}\n"
        )
    else:
        block += f"\n* {actor} {kind} ({when})\n"
    return block


def render_header(issue: IssueState) -> str:
    lines = [
        f"Title: {issue.title}",
        f"State: {issue.state}",
        f"Assignee: {issue.assignee or ''}",
    ]
    if issue.closed_at is not None:
        lines.append(f"Closed: {_fmt(issue.closed_at)}")
    lines += [
        f"Labels: {format_labels(issue.labels)}",
        f"Milestone: {issue.milestone or ''}",
        f"URL: {issue.url}",
        f"Reactions: {issue.reactions}",
    ]
    return "\n".join(lines) + "\n"


def render_issue(
    issue: IssueState,
    comments: Sequence[dict[str, Any]] = (),
    events: Sequence[dict[str, Any]] = (),
    *,
    width: int = DEFAULT_WIDTH,
    raw: bool = False,
) -> str:
    """Render an issue with its conversation.

    Comments and events are merged by sorting their formatted blocks, each of
    which starts with an RFC 3339 timestamp line that is stripped on output;
    blocks with the same timestamp therefore fall back to text order.
    """
    out = render_header(issue)
    out += f"{REPORTED_MARKER}{issue.reporter} ({_fmt(issue.created_at)})\n"
    out += _body_text(issue.body, width=width, raw=raw)
    blocks = [_comment_block(c, width=width, raw=raw) for c in comments]
    for ev in events:
        block = _event_block(ev)
        if block is not None:
            blocks.append(block)
    for block in sorted(blocks):
        out += block.split("\n", 1)[1]
    return out


def bulk_edit_start(issues: Sequence[IssueState]) -> tuple[IssueState, str]:
    """Common baseline of ``issues`` and the bulk-edit text for it.

    Fields that differ between issues render blank; labels render as the
    intersection.
    """
    if not issues:
        raise ValueError("no issues to edit")
    first = issues[0]
    state: str | None = first.state
    assignee = first.assignee
    milestone = first.milestone
    labels = set(first.labels)
    for issue in issues[1:]:
        if state != issue.state:
            state = None
        if assignee != issue.assignee:
            assignee = None
        if milestone != issue.milestone:
            milestone = None
        labels &= issue.labels
    base = IssueState(
        number=-1,
        state=state or "",
        assignee=assignee,
        labels=frozenset(labels),
        milestone=milestone,
    )
    text = (
        f"State: {base.state}\n"
        f"Assignee: {base.assignee or ''}\n"
        f"Labels: {format_labels(base.labels)}\n"
        f"Milestone: {base.milestone or ''}\n"
        f"\n{COMMENT_PLACEHOLDER}\n"
        f"{BULK_HEADER}\n"
    )
    text += "".join(f"{issue.number}\t{issue.title}\n" for issue in issues)
    return base, text


def read_bulk_ids(text: str) -> list[int]:
    """Issue numbers from lines of the form ``123<tab or space>anything``."""
    ids = []
    for line in text.split("\n"):
        head = line.split("\t", 1)[0].split(" ", 1)[0].lstrip("#")
        if head.isdigit():
            ids.append(int(head))
    return ids


# ---- parsing / diffing ------------------------------------------------------


@dataclass
class ParsedHeader:
    fields: dict[str, str]
    offset: int
    problems: list[str] = field(default_factory=list)


def parse_header(text: str) -> ParsedHeader:
    """Read ``Key: value`` lines up to the first blank line.

    ``offset`` is the index just past that blank line. Lines starting with
    ``#`` are skipped.
    """
    fields: dict[str, str] = {}
    problems: list[str] = []
    off = 0
    while off < len(text):
        end = text.find("\n", off)
        nxt = len(text) if end < 0 else end + 1
        line = text[off:nxt].strip()
        off = nxt
        if not line:
            break
        if line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        if not sep or key not in HEADER_KEYS:
            problems.append(f"unknown summary line: {line}")
            continue
        fields[key] = value.strip()
    return ParsedHeader(fields=fields, offset=off, problems=problems)


def _changed(value: str | None, original: str | None) -> str | None:
    if value is None:
        return None
    if value == (original or "").strip():
        return None
    return value


def parse_edit(
    text: str,
    original: IssueState,
    *,
    bulk: bool = False,
    resolver: MilestoneResolver | None = None,
    warnings: list[str] | None = None,
) -> EditIntent:
    """Diff an edited buffer against ``original``.

    Structural problems raise :class:`EditParseError` listing every bad line.
    An unknown milestone is only a warning (appended to ``warnings``) and
    leaves the milestone alone; a blank milestone clears it.
    """
    header = parse_header(text)
    problems = list(header.problems)
    intent = EditIntent()
    f = header.fields

    intent.title_change = _changed(f.get("Title"), original.title)
    intent.state_change = _changed(f.get("State"), original.state)
    intent.assignee_change = _changed(f.get("Assignee"), original.assignee)

    if "Labels" in f:
        try:
            new_labels = parse_labels(f["Labels"])
        except ValueError as exc:
            problems.append(f"bad Labels line: {exc}")
            new_labels = sorted(original.labels)
        if bulk:
            intent.label_adds = tuple(dict.fromkeys(n for n in new_labels if n not in original.labels))
            intent.label_removes = tuple(sorted(original.labels - set(new_labels)))
        elif set(new_labels) != original.labels:
            intent.labels_replace = frozenset(new_labels)

    if problems:
        raise EditParseError(problems)

    milestone = _changed(f.get("Milestone"), original.milestone)
    if milestone == "":
        intent.milestone_change = ""
    elif milestone is not None:
        number = _resolve(milestone, resolver, warnings)
        if number is not None:
            intent.milestone_change = milestone
            intent.milestone_number = number

    marker = BULK_HEADER if bulk else REPORTED_MARKER
    i = text.find(marker)
    if i >= header.offset:
        comment = text[header.offset : i].strip()
        if comment and comment != COMMENT_PLACEHOLDER:
            intent.new_comment = comment
    return intent


def _resolve(name: str, resolver: MilestoneResolver | None, warnings: list[str] | None) -> int | None:
    def warn(msg: str) -> None:
        logger.warning(msg)
        if warnings is not None:
            warnings.append(msg)

    if resolver is None:
        warn(f"Cannot look up milestone {name}; ignoring milestone change.")
        return None
    try:
        number = resolver(name)
    except GitHubAPIError as exc:
        warn(f"Error loading milestone list: {exc}; ignoring milestone change.")
        return None
    if number is None:
        warn(f"Unknown milestone: {name}")
    return number


# ---- applying ---------------------------------------------------------------


def _join_did(did: list[str]) -> str:
    if len(did) == 1:
        text = did[0]
    elif len(did) == 2:  # noqa: PLR2004
        text = f"{did[0]} and {did[1]}"
    else:
        text = ", ".join(did[:-1]) + f", and {did[-1]}"
    return text[0].upper() + text[1:]


@dataclass
class ApplyResult:
    number: int
    did: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def failed(self) -> bool:
        """Nothing succeeded and something went wrong."""
        return bool(self.errors) and not self.did

    @property
    def partial(self) -> bool:
        return bool(self.errors) and bool(self.did)

    def summary(self) -> str:
        if not self.errors:
            return _join_did(self.did) + "." if self.did else "no changes"
        lines = list(self.errors)
        if self.did:
            lines.append(f"({_join_did(self.did)} successfully.)")
        return "\n".join(lines)


def apply_edit(client: GitHubRestClient, number: int, intent: EditIntent) -> ApplyResult:
    """Send ``intent`` to issue ``number``.

    Order: comment, one metadata PATCH, label additions, label removals. A
    failing step does not stop later steps, and nothing already done is
    undone.
    """
    result = ApplyResult(number=number)
    if intent.new_comment:
        try:
            client.create_comment(number, intent.new_comment)
            result.did.append("saved comment")
        except GitHubAPIError as exc:
            result.errors.append(f"error saving comment: {exc}")
    if intent.has_metadata():
        try:
            client.edit_issue(number, **intent.metadata_fields())
            result.did.append("updated metadata")
        except GitHubAPIError as exc:
            result.errors.append(f"error changing metadata: {exc}")
    if intent.label_adds:
        try:
            client.add_labels(number, intent.label_adds)
            if len(intent.label_adds) == 1:
                result.did.append(f"added label {intent.label_adds[0]}")
            else:
                result.did.append("added labels")
        except GitHubAPIError as exc:
            result.errors.append(f"error adding labels: {exc}")
    for label in intent.label_removes:
        try:
            client.remove_label(number, label)
            result.did.append(f"removed label {label}")
        except GitHubAPIError as exc:
            result.errors.append(f"error removing label {label}: {exc}")
    return result


def write_issue(
    client: GitHubRestClient,
    original: IssueState,
    text: str,
    *,
    resolver: MilestoneResolver | None = None,
    warnings: list[str] | None = None,
) -> ApplyResult:
    """Parse ``text`` against ``original`` and apply the difference."""
    intent = parse_edit(text, original, resolver=resolver, warnings=warnings)
    if intent.is_empty():
        return ApplyResult(number=original.number)
    return apply_edit(client, original.number, intent)


def create_from_text(
    client: GitHubRestClient,
    text: str,
    *,
    resolver: MilestoneResolver | None = None,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    """Create a new issue from a filled-in :data:`CREATE_TEMPLATE`."""
    header = parse_header(text)
    blank = IssueState(number=0)
    intent = parse_edit(text, blank, resolver=resolver, warnings=warnings)
    if not intent.title_change:
        raise EditParseError(["missing Title"])
    body = text[header.offset :].strip()
    if body == BODY_PLACEHOLDER:
        body = ""
    return client.create_issue(
        title=intent.title_change,
        body=body,
        labels=sorted(intent.labels_replace or ()),
        milestone=intent.milestone_number,
        assignee=intent.assignee_change or None,
    )


@dataclass
class BulkResult:
    ids: list[int]
    results: dict[int, ApplyResult] = field(default_factory=dict)

    @property
    def failed_ids(self) -> list[int]:
        return [n for n, r in self.results.items() if r.errors]

    @property
    def ok(self) -> bool:
        return not self.failed_ids


def bulk_apply(
    client: GitHubRestClient,
    base: IssueState,
    text: str,
    *,
    resolver: MilestoneResolver | None = None,
    status: Callable[[str], None] | None = None,
    sleep: Callable[[float], None] | None = None,
    warnings: list[str] | None = None,
) -> BulkResult:
    """Apply one bulk-edit buffer to every issue listed in it.

    The buffer is validated against a placeholder issue first; nothing is
    sent unless that succeeds. Issues are then updated one by one. When the
    rate limit is used up the loop waits for the reset and continues with
    the next issue.
    """
    say = status or (lambda msg: logger.info(msg))
    nap = sleep or (client.retry.sleep if client.retry else time.sleep)
    i = text.find(BULK_HEADER)
    if i < 0:
        raise EditParseError(["cannot find bulk edit issue list"])
    ids = read_bulk_ids(text[i:])
    if not ids:
        raise EditParseError(["found no issues in bulk edit issue list"])

    intent = parse_edit(
        text, replace(base, number=-1), bulk=True, resolver=resolver, warnings=warnings
    )
    result = BulkResult(ids=ids)
    say(f"updating {len(ids)} issue{'' if len(ids) == 1 else 's'}")
    if intent.is_empty():
        return result

    for index, number in enumerate(ids):
        if index and index % 10 == 0:
            say(f"updated {index}/{len(ids)} issues")
        while client.rate.exhausted:
            delta = max(client.rate.reset - client.clock(), 0.0) + 120.0
            say(
                f"updated {index}/{len(ids)} issues; pausing {int(delta // 60)} minutes "
                "to respect GitHub rate limit"
            )
            if nap is not None:
                nap(delta)
            try:
                client.rate_limit()
            except GitHubAPIError as exc:
                say(f"reading rate limit: {exc}")
                break
        res = apply_edit(client, number, intent)
        result.results[number] = res
        if res.errors:
            say(f"writing #{number}: " + res.summary().replace("\n", "\n\t"))
    return result


# ---- JSON output ------------------------------------------------------------


def issue_to_json(
    project: str,
    issue: IssueState,
    comments: Sequence[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    out: dict[str, Any] = {
        "Number": issue.number,
        "Ref": f"{project}#{issue.number}",
        "Title": issue.title,
        "State": issue.state,
        "Assignee": issue.assignee or "",
        "Closed": format_time(issue.closed_at),
        "Labels": sorted(issue.labels),
        "Milestone": issue.milestone or "",
        "URL": f"https://github.com/{project}/issues/{issue.number}",
        "Reporter": issue.reporter,
        "Created": format_time(issue.created_at),
        "Text": issue.body or "",
        "Comments": [],
        "Reactions": issue.reactions.as_dict(),
    }
    for c in comments or ():
        out["Comments"].append(
            {
                "Author": (c.get("user") or {}).get("login", ""),
                "Time": format_time(parse_time(c.get("created_at"))),
                "Text": c.get("body") or "",
                "Reactions": Reactions.from_api(c.get("reactions")).as_dict(),
            }
        )
    return out


__all__ = [
    "BULK_HEADER",
    "COMMENT_PLACEHOLDER",
    "CREATE_TEMPLATE",
    "REPORTED_MARKER",
    "ApplyResult",
    "BulkResult",
    "apply_edit",
    "bulk_apply",
    "bulk_edit_start",
    "create_from_text",
    "format_labels",
    "issue_to_json",
    "parse_edit",
    "parse_header",
    "parse_labels",
    "read_bulk_ids",
    "render_header",
    "render_issue",
    "wrap",
    "write_issue",
]
