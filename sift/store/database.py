"""SQLite database shared by the rule store, the pending batch and the audit log.

One connection per Database, guarded by a re-entrant lock so that every
logical operation (a rule mutation plus its audit row, or a full batch
evaluation) runs as a single transaction even when callers share the
instance across threads.
"""

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sift.errors import PersistenceError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS criteria (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    key_value       TEXT NOT NULL,
    key_type        TEXT NOT NULL CHECK (key_type IN ('domain', 'subdomain', 'email')),
    parent_id       INTEGER REFERENCES criteria(id),
    default_action  TEXT,
    user_email      TEXT NOT NULL,
    UNIQUE (key_value, key_type, user_email),
    CHECK ((key_type = 'subdomain') = (parent_id IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS idx_criteria_user ON criteria(user_email);
CREATE INDEX IF NOT EXISTS idx_criteria_parent ON criteria(parent_id);

CREATE TABLE IF NOT EXISTS patterns (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    criteria_id     INTEGER NOT NULL REFERENCES criteria(id),
    pattern         TEXT NOT NULL,
    action          TEXT NOT NULL,
    UNIQUE (criteria_id, pattern, action)
);

CREATE TABLE IF NOT EXISTS email_patterns (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    criteria_id     INTEGER NOT NULL REFERENCES criteria(id),
    direction       TEXT NOT NULL CHECK (direction IN ('from', 'to')),
    action          TEXT NOT NULL CHECK (action IN ('keep', 'delete')),
    email           TEXT NOT NULL,
    UNIQUE (criteria_id, direction, email)
);

CREATE TABLE IF NOT EXISTS audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_email      TEXT NOT NULL,
    action_type     TEXT NOT NULL,
    table_name      TEXT NOT NULL,
    record_id       INTEGER,
    domain          TEXT,
    details         TEXT NOT NULL,
    created_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_email);
CREATE INDEX IF NOT EXISTS idx_audit_created ON audit_log(created_at);

CREATE TABLE IF NOT EXISTS pending_emails (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id        TEXT NOT NULL,
    user_email      TEXT NOT NULL,
    from_email      TEXT NOT NULL,
    to_email        TEXT NOT NULL DEFAULT '',
    subject         TEXT NOT NULL DEFAULT '',
    primary_domain  TEXT NOT NULL DEFAULT '',
    subdomain       TEXT,
    email_date      TEXT,
    action          TEXT,
    matched_level   INTEGER,
    matched_rule    TEXT,
    matched_pattern TEXT,
    created_at      TEXT NOT NULL,
    UNIQUE (email_id, user_email)
);
CREATE INDEX IF NOT EXISTS idx_pending_user ON pending_emails(user_email);
"""


class Database:
    """Owns the SQLite connection and its transaction discipline.

    Usage::

        with Database("/path/to/sift.db") as db:
            rules = RuleStore(db)
            pending = PendingEmailStore(db)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        # Autocommit mode: transactions are opened explicitly in transaction().
        self._conn = sqlite3.connect(
            str(self._db_path), isolation_level=None, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction.

        Nested calls join the outermost transaction. Any exception rolls the
        whole unit back; sqlite errors surface as PersistenceError.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise PersistenceError(f"Could not open transaction: {exc}") from exc
            self._depth = 1
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._conn.execute("ROLLBACK")
                raise PersistenceError(str(exc)) from exc
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Serialize a read-only block against concurrent writers."""
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc
