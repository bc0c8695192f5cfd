"""Local SQLite store: raw events, per-project checkpoints, derived history.

``raw_events`` is append-only. Rows are only ever removed by the explicit
:meth:`EventStore.reset_project`. ``history`` is derived and may be dropped
and rebuilt at any time.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import StoreError
from .migrations import initialize_schema
from .models import (
    Action,
    HistoryAction,
    ItemType,
    ProjectSync,
    RawEvent,
    format_time,
    parse_time,
)

logger = logging.getLogger(__name__)

PROJECT_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")

_CHECKPOINT_FIELDS = ("event_etag", "event_id", "issue_date", "comment_date", "refill_seq")


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_time(value)
    return value


def _row_to_project(row: sqlite3.Row) -> ProjectSync:
    return ProjectSync(
        name=row["name"],
        event_etag=row["event_etag"],
        event_id=int(row["event_id"] or 0),
        issue_date=parse_time(row["issue_date"]),
        comment_date=parse_time(row["comment_date"]),
        refill_seq=int(row["refill_seq"] or 0),
    )


def _row_to_raw(row: sqlite3.Row) -> RawEvent:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return RawEvent(
        identity=row["identity"],
        project=row["project"],
        issue_number=int(row["issue"]),
        type=ItemType(row["type"]),
        payload=bytes(payload),
        observed_at=parse_time(row["observed_at"]),
        seq=int(row["seq"]),
    )


class EventStore:
    """One SQLite connection holding the whole local issue cache."""

    def __init__(self, db_path: str | Path, *, check_same_thread: bool = True) -> None:
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self._check_same_thread = check_same_thread
        self._conn: sqlite3.Connection | None = None
        self._depth = 0

    def __enter__(self) -> EventStore:
        self.initialize()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # autocommit; transactions are opened explicitly in transaction()
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> int:
        return initialize_schema(self.conn)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on any exception.

        Nested use joins the outer transaction.
        """
        conn = self.conn
        if self._depth:
            self._depth += 1
            try:
                yield conn
            finally:
                self._depth -= 1
            return
        conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            try:
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            self._depth = 0

    # ---- projects / checkpoints ---------------------------------------
    def add_project(self, name: str) -> bool:
        """Start tracking ``owner/repo``; False if it was already tracked."""
        if not PROJECT_RE.match(name):
            raise StoreError(f"invalid project name {name!r}; want owner/repo")
        with self.transaction() as conn:
            cur = conn.execute("INSERT OR IGNORE INTO project_sync (name) VALUES (?)", (name,))
        return cur.rowcount > 0

    def get_project(self, name: str) -> ProjectSync | None:
        row = self.conn.execute("SELECT * FROM project_sync WHERE name = ?", (name,)).fetchone()
        return _row_to_project(row) if row else None

    def list_projects(self) -> list[ProjectSync]:
        rows = self.conn.execute("SELECT * FROM project_sync ORDER BY name").fetchall()
        return [_row_to_project(r) for r in rows]

    def save_checkpoint(self, name: str, **fields: Any) -> None:
        unknown = set(fields) - set(_CHECKPOINT_FIELDS)
        if unknown:
            raise StoreError(f"unknown checkpoint field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return
        cols = ", ".join(f"{k} = ?" for k in fields)
        values = [_to_db(v) for v in fields.values()]
        with self.transaction() as conn:
            cur = conn.execute(f"UPDATE project_sync SET {cols} WHERE name = ?", (*values, name))
            if cur.rowcount == 0:
                raise StoreError(f"unknown project {name!r}")

    # ---- raw events ---------------------------------------------------
    def insert_raw(
        self,
        identity: str,
        project: str,
        issue_number: int,
        item_type: ItemType,
        payload: bytes | str | dict[str, Any],
        observed_at: datetime | None,
    ) -> bool:
        """Insert one raw item; re-inserting a known identity is a no-op.

        Returns True when a row was added.
        """
        if isinstance(payload, dict):
            payload = json.dumps(payload, sort_keys=True)
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO raw_events "
                "(identity, project, issue, type, payload, observed_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    identity,
                    project,
                    int(issue_number),
                    ItemType(item_type).value,
                    sqlite3.Binary(payload),
                    format_time(observed_at),
                ),
            )
        return cur.rowcount > 0

    def raw_events(self, project: str, after_seq: int = 0) -> Iterator[RawEvent]:
        """Raw events of ``project`` in arrival order."""
        cur = self.conn.execute(
            "SELECT * FROM raw_events WHERE project = ? AND seq > ? ORDER BY seq",
            (project, after_seq),
        )
        for row in cur:
            yield _row_to_raw(row)

    def raw_since(self, project: str, since: datetime) -> list[RawEvent]:
        rows = self.conn.execute(
            "SELECT * FROM raw_events WHERE project = ? AND observed_at >= ? ORDER BY seq",
            (project, format_time(since)),
        ).fetchall()
        return [_row_to_raw(r) for r in rows]

    def count_raw(self, project: str | None = None) -> int:
        if project is None:
            return int(self.conn.execute("SELECT COUNT(*) FROM raw_events").fetchone()[0])
        row = self.conn.execute(
            "SELECT COUNT(*) FROM raw_events WHERE project = ?", (project,)
        ).fetchone()
        return int(row[0])

    def max_seq(self, project: str) -> int:
        row = self.conn.execute(
            "SELECT MAX(seq) FROM raw_events WHERE project = ?", (project,)
        ).fetchone()
        return int(row[0] or 0)

    def issue_numbers(self, project: str) -> list[int]:
        rows = self.conn.execute(
            "SELECT DISTINCT issue FROM raw_events WHERE project = ? AND type = ? ORDER BY issue",
            (project, ItemType.ISSUE.value),
        ).fetchall()
        return [int(r[0]) for r in rows]

    def retime(self) -> int:
        """Backfill missing ``observed_at`` from each payload's ``created_at``."""
        rows = self.conn.execute(
            "SELECT seq, payload FROM raw_events WHERE observed_at IS NULL"
        ).fetchall()
        updated = 0
        with self.transaction() as conn:
            for row in rows:
                try:
                    data = json.loads(row["payload"])
                except ValueError:
                    logger.warning("raw event %d has unparseable payload", row["seq"])
                    continue
                when = parse_time(data.get("created_at")) if isinstance(data, dict) else None
                if when is None:
                    continue
                conn.execute(
                    "UPDATE raw_events SET observed_at = ? WHERE seq = ?",
                    (format_time(when), row["seq"]),
                )
                updated += 1
        return updated

    def reset_project(self, name: str) -> None:
        """Drop every raw event, history row and checkpoint of ``name``."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM raw_events WHERE project = ?", (name,))
            conn.execute("DELETE FROM history WHERE project = ?", (name,))
            conn.execute(
                "UPDATE project_sync SET event_etag = NULL, event_id = 0, issue_date = NULL, "
                "comment_date = NULL, refill_seq = 0 WHERE name = ?",
                (name,),
            )

    # ---- history --------------------------------------------------------
    def append_history(self, actions: Iterable[HistoryAction]) -> int:
        count = 0
        with self.transaction() as conn:
            for a in actions:
                try:
                    conn.execute(
                        "INSERT INTO history (project, seq, issue, time, actor, action, text) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            a.project,
                            a.sequence_key,
                            a.issue_number,
                            format_time(a.time),
                            a.actor,
                            a.action.value,
                            a.text,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise StoreError(
                        f"history row {a.project}/{a.sequence_key} already present"
                    ) from exc
                count += 1
        return count

    def delete_history(self, project: str) -> int:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM history WHERE project = ?", (project,))
        return cur.rowcount

    def history(self, project: str, issue: int | None = None) -> list[HistoryAction]:
        if issue is None:
            rows = self.conn.execute(
                "SELECT * FROM history WHERE project = ? ORDER BY seq", (project,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM history WHERE project = ? AND issue = ? ORDER BY seq",
                (project, issue),
            ).fetchall()
        return [
            HistoryAction(
                project=r["project"],
                issue_number=int(r["issue"]),
                time=parse_time(r["time"]),
                actor=r["actor"],
                action=Action(r["action"]),
                text=r["text"],
                sequence_key=int(r["seq"]),
            )
            for r in rows
        ]


__all__ = ["PROJECT_RE", "EventStore"]
