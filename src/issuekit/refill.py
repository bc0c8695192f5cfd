"""Projection of raw events into the ``history`` table.

:func:`project_actions` is pure: the same raw events always yield the same
actions with the same sequence keys, so history can be dropped and replayed
at any time. The key of an action is ``seq * 1000 + index`` where ``seq`` is
the raw event's arrival sequence and ``index`` its position among the actions
derived from that event; appending raw events therefore never changes the key
of an action produced earlier.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime

from .errors import StoreError
from .logging import StructuredLogger, get_logger
from .models import (
    Action,
    CommentPayload,
    EventPayload,
    HistoryAction,
    IssuePayload,
    Payload,
    RawEvent,
    decode_payload,
)
from .store import EventStore

logger = logging.getLogger(__name__)

ACTIONS_PER_EVENT = 1000

SIMPLE_KINDS = {
    "reopened": Action.REOPEN,
}
COMMIT_KINDS = {
    "closed": Action.CLOSE,
    "merged": Action.MERGE,
    "referenced": Action.REFERENCE,
}
LABEL_KINDS = {"labeled": Action.LABEL, "unlabeled": Action.UNLABEL}
MILESTONE_KINDS = {"milestoned": Action.MILESTONE, "demilestoned": Action.DEMILESTONE}
ASSIGN_KINDS = {"assigned": Action.ASSIGN, "unassigned": Action.UNASSIGN}

# Kinds GitHub emits that carry nothing the history tracks.
IGNORED_KINDS = frozenset(
    {
        "mentioned",
        "subscribed",
        "unsubscribed",
        "head_ref_deleted",
        "head_ref_restored",
        "head_ref_force_pushed",
        "base_ref_changed",
        "base_ref_force_pushed",
        "locked",
        "unlocked",
        "cross-referenced",
        "comment_deleted",
        "review_requested",
        "review_request_removed",
        "review_dismissed",
        "added_to_project",
        "added_to_project_v2",
        "moved_columns_in_project",
        "removed_from_project",
        "removed_from_project_v2",
        "project_v2_item_status_changed",
        "converted_note_to_issue",
        "converted_to_discussion",
        "marked_as_duplicate",
        "unmarked_as_duplicate",
        "pinned",
        "unpinned",
        "transferred",
        "connected",
        "disconnected",
        "deployed",
        "deployment_environment_changed",
        "ready_for_review",
        "convert_to_draft",
        "automatic_base_change_succeeded",
        "automatic_base_change_failed",
        "user_blocked",
        "issue_type_added",
        "issue_type_changed",
        "issue_type_removed",
        "sub_issue_added",
        "sub_issue_removed",
        "parent_issue_added",
        "parent_issue_removed",
    }
)


@dataclass
class _Draft:
    issue: int
    time: datetime | None
    actor: str
    action: Action
    text: str = ""


def _issue_drafts(p: IssuePayload) -> list[_Draft]:
    out = [_Draft(p.number, p.created_at, p.actor, Action.CREATE, p.title)]
    if p.assignees:
        out.append(_Draft(p.number, p.created_at, p.actor, Action.ASSIGN_PROBE, ", ".join(p.assignees)))
    if p.milestone:
        out.append(_Draft(p.number, p.created_at, p.actor, Action.MILESTONE_PROBE, p.milestone))
    if p.closed_at is not None:
        out.append(_Draft(p.number, p.closed_at, p.closed_by, Action.CLOSE_PROBE))
    return out


def _event_drafts(raw: RawEvent, p: EventPayload) -> list[_Draft]:
    number = p.issue_number or raw.issue_number
    when = p.created_at or raw.observed_at
    kind = p.kind
    if kind in SIMPLE_KINDS:
        return [_Draft(number, when, p.actor, SIMPLE_KINDS[kind])]
    if kind in COMMIT_KINDS:
        return [_Draft(number, when, p.actor, COMMIT_KINDS[kind], p.commit_id)]
    if kind in LABEL_KINDS:
        return [_Draft(number, when, p.actor, LABEL_KINDS[kind], name) for name in p.labels]
    if kind in MILESTONE_KINDS:
        return [_Draft(number, when, p.actor, MILESTONE_KINDS[kind], p.milestone)]
    if kind in ASSIGN_KINDS:
        return [_Draft(number, when, p.actor, ASSIGN_KINDS[kind], ", ".join(p.assignees))]
    if kind == "renamed":
        return [_Draft(number, when, p.actor, Action.RENAME, f"{p.rename_from}\n{p.rename_to}")]
    if kind in IGNORED_KINDS:
        logger.debug("ignoring %s event %d on %s#%d", kind, p.id, raw.project, number)
    else:
        logger.warning("unknown event kind %r on %s#%d (raw seq %d)", kind, raw.project, number, raw.seq)
    return []


def _drafts(raw: RawEvent, payload: Payload) -> list[_Draft]:
    if isinstance(payload, IssuePayload):
        return _issue_drafts(payload)
    if isinstance(payload, CommentPayload):
        number = payload.issue_number or raw.issue_number
        return [_Draft(number, payload.created_at or raw.observed_at, payload.actor, Action.COMMENT, payload.body)]
    return _event_drafts(raw, payload)


def actions_for(raw: RawEvent) -> list[HistoryAction]:
    """History actions derived from one raw event (possibly none)."""
    try:
        data = json.loads(raw.payload)
    except ValueError:
        logger.warning("raw event %d (%s) has unparseable payload; skipped", raw.seq, raw.identity)
        return []
    if not isinstance(data, dict):
        logger.warning("raw event %d (%s) is not an object; skipped", raw.seq, raw.identity)
        return []
    drafts = _drafts(raw, decode_payload(raw.type, data))
    if len(drafts) >= ACTIONS_PER_EVENT:
        logger.warning("raw event %d produced %d actions; truncated", raw.seq, len(drafts))
        drafts = drafts[: ACTIONS_PER_EVENT - 1]
    return [
        HistoryAction(
            project=raw.project,
            issue_number=d.issue,
            time=d.time,
            actor=d.actor,
            action=d.action,
            text=d.text,
            sequence_key=raw.seq * ACTIONS_PER_EVENT + index,
        )
        for index, d in enumerate(drafts)
    ]


def project_actions(events: Iterable[RawEvent]) -> Iterator[HistoryAction]:
    """Replay raw events (in arrival order) into history actions."""
    for raw in events:
        yield from actions_for(raw)


@dataclass
class RefillResult:
    project: str
    full: bool
    events: int
    actions: int
    refill_seq: int


def refill(
    store: EventStore,
    project: str,
    *,
    full: bool = False,
    log: StructuredLogger | None = None,
) -> RefillResult:
    """Bring ``history`` for ``project`` up to date with its raw events.

    Incremental mode projects only raw events newer than the stored
    ``refill_seq``. ``full`` drops the project's history and replays
    everything. Either way the work is a single transaction.
    """
    log = log or get_logger()
    proj = store.get_project(project)
    if proj is None:
        raise StoreError(f"project {project!r} is not tracked")
    after = 0 if full else proj.refill_seq
    events = 0
    actions = 0
    last = after
    with log.timed_operation("refill", project=project, full=full):
        with store.transaction():
            if full:
                store.delete_history(project)
            batch: list[HistoryAction] = []
            for raw in list(store.raw_events(project, after_seq=after)):
                events += 1
                last = raw.seq
                batch.extend(actions_for(raw))
                if len(batch) >= 500:  # noqa: PLR2004
                    actions += store.append_history(batch)
                    batch = []
            if batch:
                actions += store.append_history(batch)
            store.save_checkpoint(project, refill_seq=last)
    log.log_operation("refill_done", project=project, events=events, actions=actions)
    return RefillResult(project=project, full=full, events=events, actions=actions, refill_seq=last)


__all__ = [
    "IGNORED_KINDS",
    "RefillResult",
    "actions_for",
    "project_actions",
    "refill",
]
