from __future__ import annotations

import json
from itertools import count

from issuekit.models import Action, HistoryAction, parse_time
from issuekit.report import (
    NO_MILESTONE,
    daily_label_counts,
    daily_open_by_milestone,
    render_json,
    render_table,
    weekly_activity,
)

_seq = count(1000, 1000)


def act(number: int, when: str, action: Action, text: str = '', actor: str = 'gopher') -> HistoryAction:
    return HistoryAction(
        project='o/r',
        issue_number=number,
        time=parse_time(when),
        actor=actor,
        action=action,
        text=text,
        sequence_key=next(_seq),
    )


def milestone_history() -> list[HistoryAction]:
    return [
        act(1, '2015-01-01T10:00:00Z', Action.CREATE, 'first'),
        act(1, '2015-01-01T10:00:00Z', Action.MILESTONE_PROBE, 'Go1.5'),
        act(2, '2015-01-01T12:00:00Z', Action.CREATE, 'second'),
        act(2, '2015-01-02T09:00:00Z', Action.MILESTONE, 'Go1.6'),
        act(1, '2015-01-03T08:00:00Z', Action.CLOSE),
        act(1, '2015-01-03T08:00:00Z', Action.COMMENT, 'closing'),
    ]


def test_daily_open_by_milestone():
    table = daily_open_by_milestone(milestone_history(), ['Go1.5'])
    assert table.header == ['Date', NO_MILESTONE, 'Go1.5']
    assert table.rows == [
        ['2015-01-01', 1, 1],
        ['2015-01-02', 0, 1],
        ['2015-01-03', 0, 0],
    ]


def test_since_drops_earlier_days_but_keeps_their_state():
    table = daily_open_by_milestone(milestone_history(), ['Go1.5', 'Go1.6'], since='2015-01-02')
    assert table.rows == [
        ['2015-01-02', 0, 1, 1],
        ['2015-01-03', 0, 0, 1],
    ]


def test_input_order_does_not_matter():
    history = milestone_history()
    assert daily_open_by_milestone(list(reversed(history)), ['Go1.5']).rows == daily_open_by_milestone(
        history, ['Go1.5']
    ).rows


def test_demilestone_only_clears_matching_title():
    history = [
        act(5, '2015-03-01T00:00:00Z', Action.CREATE),
        act(5, '2015-03-01T01:00:00Z', Action.MILESTONE, 'Go1.5'),
        act(5, '2015-03-02T00:00:00Z', Action.DEMILESTONE, 'Go1.4'),
        act(5, '2015-03-03T00:00:00Z', Action.DEMILESTONE, 'Go1.5'),
    ]
    table = daily_open_by_milestone(history, ['Go1.5'])
    assert [row[1:] for row in table.rows] == [[0, 1], [0, 1], [1, 0]]


def test_daily_label_counts_with_reopen():
    history = [
        act(1, '2015-01-01T00:00:00Z', Action.CREATE),
        act(1, '2015-01-01T01:00:00Z', Action.LABEL, 'NeedsFix'),
        act(2, '2015-01-01T02:00:00Z', Action.CREATE),
        act(2, '2015-01-01T03:00:00Z', Action.LABEL, 'NeedsFix'),
        act(2, '2015-01-02T00:00:00Z', Action.CLOSE),
        act(1, '2015-01-03T00:00:00Z', Action.UNLABEL, 'NeedsFix'),
        act(2, '2015-01-04T00:00:00Z', Action.REOPEN),
    ]
    table = daily_label_counts(history, ['NeedsFix'])
    assert table.rows == [
        ['2015-01-01', 2],
        ['2015-01-02', 1],
        ['2015-01-03', 0],
        ['2015-01-04', 1],
    ]


def test_weekly_activity_ranks_actors():
    history = [
        act(1, '2015-01-05T00:00:00Z', Action.COMMENT, actor='rsc'),
        act(1, '2015-01-06T00:00:00Z', Action.COMMENT, actor='rsc'),
        act(2, '2015-01-07T00:00:00Z', Action.COMMENT, actor='bob'),
        act(2, '2015-01-12T00:00:00Z', Action.COMMENT, actor='rsc'),
        act(3, '2015-01-12T00:00:00Z', Action.COMMENT, actor='adg'),
        act(3, '2015-01-12T00:00:00Z', Action.LABEL, 'x', actor='adg'),
        act(3, '2015-01-13T00:00:00Z', Action.LABEL, 'y', actor=''),
    ]

    table = weekly_activity(history, top=2, kind=Action.COMMENT)

    assert table.header == ['Week', 'rsc', 'adg']
    assert table.rows == [['2015-W02', 2, 0], ['2015-W03', 1, 1]]

    everything = weekly_activity(history)
    assert everything.header == ['Week', 'rsc', 'adg', 'bob']
    assert everything.rows[-1] == ['2015-W03', 1, 2, 0]


def test_renderers():
    table = daily_open_by_milestone(milestone_history()[:3], ['Go1.5'])
    assert render_table(table) == f'Date\t{NO_MILESTONE}\tGo1.5\n2015-01-01\t1\t1\n'
    assert json.loads(render_json(table)) == [{'Date': '2015-01-01', NO_MILESTONE: 1, 'Go1.5': 1}]
