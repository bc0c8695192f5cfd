"""Schema versions for the local issue database.

The schema version lives in ``PRAGMA user_version``. A fresh database is
created straight from :data:`SCHEMA_SQL` and stamped with
:data:`CURRENT_SCHEMA_VERSION`; an older one is brought forward by running
the registered migrations in order, each inside its own transaction.

Adding a migration:
  1. Increment CURRENT_SCHEMA_VERSION
  2. Add ``migrate_v<N>_to_v<N+1>(conn)`` and register it in MIGRATIONS
  3. Update SCHEMA_SQL to match the post-migration state
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

from .errors import MigrationError

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2

SCHEMA_V1_SQL = """\
CREATE TABLE IF NOT EXISTS project_sync (
    name          TEXT PRIMARY KEY,
    event_etag    TEXT,
    event_id      INTEGER NOT NULL DEFAULT 0,
    issue_date    TEXT,
    comment_date  TEXT
);
CREATE TABLE IF NOT EXISTS raw_events (
    seq           INTEGER PRIMARY KEY AUTOINCREMENT,
    identity      TEXT NOT NULL,
    project       TEXT NOT NULL,
    issue         INTEGER NOT NULL,
    type          TEXT NOT NULL CHECK (type IN ('issue', 'comment', 'event')),
    payload       BLOB NOT NULL,
    observed_at   TEXT,
    UNIQUE (project, type, identity)
);
CREATE INDEX IF NOT EXISTS idx_raw_events_project_seq ON raw_events(project, seq);
CREATE INDEX IF NOT EXISTS idx_raw_events_issue ON raw_events(project, issue);
"""

HISTORY_SQL = """\
CREATE TABLE IF NOT EXISTS history (
    project       TEXT NOT NULL,
    seq           INTEGER NOT NULL,
    issue         INTEGER NOT NULL,
    time          TEXT,
    actor         TEXT NOT NULL DEFAULT '',
    action        TEXT NOT NULL,
    text          TEXT NOT NULL DEFAULT '',
    PRIMARY KEY (project, seq)
);
CREATE INDEX IF NOT EXISTS idx_history_issue ON history(project, issue, seq);
"""

SCHEMA_SQL = (
    SCHEMA_V1_SQL.replace(
        "comment_date  TEXT\n",
        "comment_date  TEXT,\n    refill_seq    INTEGER NOT NULL DEFAULT 0\n",
    )
    + HISTORY_SQL
)


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


def migrate_v1_to_v2(conn: sqlite3.Connection) -> None:
    """v1 -> v2: derived history table and its replay checkpoint.

    Changes:
      - new table 'history'
      - new column project_sync.refill_seq
    """
    for statement in HISTORY_SQL.split(";"):
        if statement.strip():
            conn.execute(statement)
    if "refill_seq" not in _columns(conn, "project_sync"):
        conn.execute("ALTER TABLE project_sync ADD COLUMN refill_seq INTEGER NOT NULL DEFAULT 0")


# Keys are the version being migrated FROM.
MIGRATIONS: dict[int, Callable[[sqlite3.Connection], None]] = {
    1: migrate_v1_to_v2,
}


def get_schema_version(conn: sqlite3.Connection) -> int:
    result: int = conn.execute("PRAGMA user_version").fetchone()[0]
    return result


def apply_pending_migrations(conn: sqlite3.Connection, target_version: int) -> int:
    """Apply all pending migrations from the current version up to ``target_version``.

    Returns the number of migrations applied. Raises MigrationError when one
    fails (the database stays at the last successful version) or when the
    database is newer than ``target_version``.
    """
    current = get_schema_version(conn)
    if current == target_version:
        return 0
    if current > target_version:
        raise MigrationError(
            current,
            target_version,
            ValueError(
                f"database schema v{current} is newer than this issuekit "
                f"(expects v{target_version}); downgrade is not supported"
            ),
        )

    applied = 0
    for version in range(current, target_version):
        migration = MIGRATIONS.get(version)
        if migration is None:
            raise MigrationError(
                version, version + 1, KeyError(f"no migration registered for v{version}")
            )
        logger.info("Applying migration v%d -> v%d ...", version, version + 1)
        try:
            conn.execute("BEGIN IMMEDIATE")
            migration(conn)
            conn.execute(f"PRAGMA user_version = {version + 1}")
            conn.execute("COMMIT")
            applied += 1
        except Exception as exc:
            conn.execute("ROLLBACK")
            raise MigrationError(version, version + 1, exc) from exc
    return applied


def initialize_schema(conn: sqlite3.Connection) -> int:
    """Create (fresh database) or migrate (existing database) the schema.

    Returns the schema version the database ends up at.
    """
    current = get_schema_version(conn)
    if current == 0:
        conn.executescript(SCHEMA_SQL)
        conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        return CURRENT_SCHEMA_VERSION
    apply_pending_migrations(conn, CURRENT_SCHEMA_VERSION)
    return get_schema_version(conn)


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "MIGRATIONS",
    "SCHEMA_SQL",
    "SCHEMA_V1_SQL",
    "apply_pending_migrations",
    "get_schema_version",
    "initialize_schema",
]
