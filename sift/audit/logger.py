"""Append-only audit log for rule mutations.

Rows live in the same SQLite database as the rules so that a mutation and
its audit record commit (or roll back) together. There is no
update or delete path.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

from sift.schemas.audit import AuditActionType, AuditLogEntry
from sift.store.database import Database

logger = logging.getLogger(__name__)

_INSERT = """
INSERT INTO audit_log
    (user_email, action_type, table_name, record_id, domain, details, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_FOR_USER = "SELECT * FROM audit_log WHERE user_email = ?"
_SELECT_BY_ID = "SELECT * FROM audit_log WHERE id = ? AND user_email = ?"


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row["id"],
        user_email=row["user_email"],
        action_type=AuditActionType(row["action_type"]),
        table_name=row["table_name"],
        record_id=row["record_id"],
        domain=row["domain"],
        details=json.loads(row["details"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class AuditLog:
    """Audit sink bound to a Database.

    Usage::

        audit = AuditLog(db)
        with db.transaction():
            ...  # rule writes
            audit_id = audit.record(entry)

        entries = audit.read_entries("me@example.com", since=some_datetime)
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def record(self, entry: AuditLogEntry) -> int:
        """Append one entry and return its id.

        Joins the caller's open transaction when there is one.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                _INSERT,
                (
                    entry.user_email,
                    entry.action_type.value,
                    entry.table_name,
                    entry.record_id,
                    entry.domain,
                    json.dumps(entry.details, sort_keys=True),
                    _timestamp(entry.created_at),
                ),
            )
        audit_id = cursor.lastrowid
        logger.debug(
            "Audit %d: %s %s record=%s user=%s",
            audit_id,
            entry.action_type.value,
            entry.table_name,
            entry.record_id,
            entry.user_email,
        )
        return audit_id

    def log_mutation(
        self,
        *,
        user_email: str,
        action_type: AuditActionType,
        table_name: str,
        record_id: int | None,
        domain: str | None,
        details: dict[str, Any],
    ) -> int:
        """Build and record an entry stamped with the current time."""
        entry = AuditLogEntry(
            user_email=user_email,
            action_type=action_type,
            table_name=table_name,
            record_id=record_id,
            domain=domain,
            details=details,
            created_at=datetime.now(UTC),
        )
        return self.record(entry)

    def get(self, audit_id: int, user_email: str) -> AuditLogEntry | None:
        with self._db.reading() as conn:
            row = conn.execute(_SELECT_BY_ID, (audit_id, user_email)).fetchone()
        return _row_to_entry(row) if row else None

    def read_entries(
        self,
        user_email: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditLogEntry]:
        """Read a user's audit entries, oldest first.

        Args:
            user_email: Owner of the entries.
            since: Only return entries created after this timestamp.
            limit: Keep only the newest N entries after filtering.
        """
        sql = _SELECT_FOR_USER
        params: list[Any] = [user_email]
        if since is not None:
            sql += " AND created_at > ?"
            params.append(_timestamp(since))
        sql += " ORDER BY id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._db.reading() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_entry(r) for r in reversed(rows)]

    def count(self, user_email: str) -> int:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM audit_log WHERE user_email = ?", (user_email,)
            ).fetchone()
        return row[0]
