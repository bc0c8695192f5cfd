from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

import pytest

from issuekit.errors import MigrationError, StoreError
from issuekit.migrations import CURRENT_SCHEMA_VERSION, SCHEMA_V1_SQL
from issuekit.models import Action, HistoryAction, ItemType
from issuekit.store import EventStore

T1 = datetime(2015, 1, 8, 5, 17, 6, tzinfo=timezone.utc)


def _issue_payload(number: int, created: str = '2015-01-08T05:17:06Z') -> dict:
    return {'number': number, 'created_at': created, 'url': f'https://api.github.com/repos/o/r/issues/{number}'}


def test_fresh_database_is_current(tmp_path):
    with EventStore(tmp_path / 'db.sqlite') as store:
        version = store.conn.execute('PRAGMA user_version').fetchone()[0]
        tables = {r[0] for r in store.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert version == CURRENT_SCHEMA_VERSION
    assert {'project_sync', 'raw_events', 'history'} <= tables


def test_add_and_list_projects(store):
    assert store.add_project('golang/go') is True
    assert store.add_project('golang/go') is False
    assert store.add_project('o/r') is True
    assert [p.name for p in store.list_projects()] == ['golang/go', 'o/r']
    proj = store.get_project('o/r')
    assert proj is not None
    assert proj.event_id == 0 and proj.issue_date is None and proj.refill_seq == 0
    assert store.get_project('nobody/here') is None


def test_add_project_rejects_bad_names(store):
    with pytest.raises(StoreError):
        store.add_project('not-a-project')


def test_insert_raw_is_idempotent(store):
    store.add_project('o/r')
    payload = _issue_payload(1)
    assert store.insert_raw(payload['url'], 'o/r', 1, ItemType.ISSUE, payload, T1) is True
    assert store.insert_raw(payload['url'], 'o/r', 1, ItemType.ISSUE, payload, T1) is False
    assert store.count_raw('o/r') == 1
    # same identity in another feed type is a different item
    assert store.insert_raw(payload['url'], 'o/r', 1, ItemType.EVENT, b'{}', T1) is True
    assert store.count_raw() == 2


def test_raw_events_in_arrival_order(store):
    store.add_project('o/r')
    for n in (3, 1, 2):
        store.insert_raw(f'u{n}', 'o/r', n, ItemType.ISSUE, _issue_payload(n), T1)
    events = list(store.raw_events('o/r'))
    assert [e.issue_number for e in events] == [3, 1, 2]
    assert [e.seq for e in events] == sorted(e.seq for e in events)
    assert events[0].data()['number'] == 3
    assert events[0].observed_at == T1
    later = list(store.raw_events('o/r', after_seq=events[0].seq))
    assert [e.issue_number for e in later] == [1, 2]
    assert store.max_seq('o/r') == events[-1].seq
    assert store.issue_numbers('o/r') == [1, 2, 3]


def test_checkpoints_round_trip(store):
    store.add_project('o/r')
    store.save_checkpoint('o/r', issue_date=T1, event_id=99, event_etag='W/"x"')
    proj = store.get_project('o/r')
    assert proj.issue_date == T1
    assert proj.event_id == 99
    assert proj.event_etag == 'W/"x"'
    assert proj.comment_date is None


def test_checkpoint_errors(store):
    store.add_project('o/r')
    with pytest.raises(StoreError):
        store.save_checkpoint('o/r', bogus=1)
    with pytest.raises(StoreError):
        store.save_checkpoint('x/y', event_id=1)


def test_transaction_rolls_back_on_error(store):
    store.add_project('o/r')
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.insert_raw('u1', 'o/r', 1, ItemType.ISSUE, _issue_payload(1), T1)
            store.save_checkpoint('o/r', issue_date=T1)
            raise RuntimeError('network went away')
    assert store.count_raw('o/r') == 0
    assert store.get_project('o/r').issue_date is None


class _BusyOnCommit:
    """Connection wrapper whose first COMMIT fails as if the database were locked."""

    def __init__(self, conn):
        self._inner = conn
        self.failed = False

    def execute(self, sql, *args):
        if sql == 'COMMIT' and not self.failed:
            self.failed = True
            raise sqlite3.OperationalError('database is locked')
        return self._inner.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_failed_commit_rolls_back(store):
    store.add_project('o/r')
    real = store.conn
    store._conn = _BusyOnCommit(real)
    with pytest.raises(sqlite3.OperationalError):
        with store.transaction():
            store.insert_raw('u1', 'o/r', 1, ItemType.ISSUE, _issue_payload(1), T1)
    assert not real.in_transaction
    assert store.count_raw('o/r') == 0

    with store.transaction():
        store.insert_raw('u1', 'o/r', 1, ItemType.ISSUE, _issue_payload(1), T1)
    assert store.count_raw('o/r') == 1
    store._conn = real


def test_nested_transaction_joins_outer(store):
    store.add_project('o/r')
    with pytest.raises(RuntimeError):
        with store.transaction():
            with store.transaction():
                store.insert_raw('u1', 'o/r', 1, ItemType.ISSUE, _issue_payload(1), T1)
            raise RuntimeError('later failure')
    assert store.count_raw('o/r') == 0

    with store.transaction():
        with store.transaction():
            store.insert_raw('u1', 'o/r', 1, ItemType.ISSUE, _issue_payload(1), T1)
    assert store.count_raw('o/r') == 1


def test_retime_backfills_missing_times(store):
    store.add_project('o/r')
    store.insert_raw('u1', 'o/r', 1, ItemType.ISSUE, _issue_payload(1), None)
    store.insert_raw('u2', 'o/r', 2, ItemType.ISSUE, {'number': 2}, None)
    assert store.retime() == 1
    since = store.raw_since('o/r', T1)
    assert [e.identity for e in since] == ['u1']


def test_reset_project_is_explicit(store):
    store.add_project('o/r')
    store.insert_raw('u1', 'o/r', 1, ItemType.ISSUE, _issue_payload(1), T1)
    store.save_checkpoint('o/r', issue_date=T1, event_id=5, refill_seq=1)
    store.reset_project('o/r')
    assert store.count_raw('o/r') == 0
    proj = store.get_project('o/r')
    assert (proj.issue_date, proj.event_id, proj.refill_seq) == (None, 0, 0)


def _action(seq: int, issue: int = 1) -> HistoryAction:
    return HistoryAction('o/r', issue, T1, 'rsc', Action.CREATE, 'title', seq)


def test_history_append_and_read(store):
    assert store.append_history([_action(2000), _action(1000), _action(1001, issue=2)]) == 3
    assert [a.sequence_key for a in store.history('o/r')] == [1000, 1001, 2000]
    assert [a.sequence_key for a in store.history('o/r', issue=2)] == [1001]
    assert store.history('o/r')[0].action is Action.CREATE


def test_history_duplicate_key_rolls_back_batch(store):
    store.append_history([_action(1000)])
    with pytest.raises(StoreError):
        store.append_history([_action(3000), _action(1000)])
    assert [a.sequence_key for a in store.history('o/r')] == [1000]
    assert store.delete_history('o/r') == 1
    assert store.history('o/r') == []


def test_migrates_v1_database(tmp_path):
    path = tmp_path / 'old.db'
    conn = sqlite3.connect(str(path), isolation_level=None)
    conn.executescript(SCHEMA_V1_SQL)
    conn.execute("INSERT INTO project_sync (name, event_id) VALUES ('o/r', 42)")
    conn.execute('PRAGMA user_version = 1')
    conn.close()

    with EventStore(path) as store:
        assert store.conn.execute('PRAGMA user_version').fetchone()[0] == 2
        proj = store.get_project('o/r')
        assert proj.event_id == 42
        assert proj.refill_seq == 0
        store.append_history([_action(1000)])
        assert len(store.history('o/r')) == 1


def test_refuses_newer_database(tmp_path):
    path = tmp_path / 'new.db'
    conn = sqlite3.connect(str(path), isolation_level=None)
    conn.execute('CREATE TABLE project_sync (name TEXT PRIMARY KEY)')
    conn.execute('PRAGMA user_version = 9')
    conn.close()

    store = EventStore(path)
    with pytest.raises(MigrationError):
        store.initialize()
    store.close()
