"""Pending-email batch: the inbound messages awaiting classification.

Rows are owned by one user each. Evaluation resets and rewrites the
``action``/``matched_*`` columns; nothing else about a row changes after
ingestion except through a re-import of the same ``email_id``.
"""

import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from sift.domain_parser import parse_email_domain
from sift.errors import RuleValidationError
from sift.schemas.criteria import Action
from sift.schemas.pending import (
    ActionSummary,
    DeletionPreview,
    MatchedRule,
    PendingEmail,
    PreviewMatch,
)
from sift.store.database import Database

logger = logging.getLogger(__name__)

# Display order for summaries: most destructive first.
SUMMARY_ORDER = (
    Action.DELETE,
    Action.DELETE_1D,
    Action.DELETE_10D,
    Action.KEEP,
    Action.UNDECIDED,
)

_UPSERT = """
INSERT INTO pending_emails
    (email_id, user_email, from_email, to_email, subject,
     primary_domain, subdomain, email_date, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (email_id, user_email) DO UPDATE SET
    from_email = excluded.from_email,
    to_email = excluded.to_email,
    subject = excluded.subject,
    primary_domain = excluded.primary_domain,
    subdomain = excluded.subdomain,
    email_date = excluded.email_date
"""

_SELECT_FOR_USER = "SELECT * FROM pending_emails WHERE user_email = ? ORDER BY id"
_SELECT_FOR_USER_ACTION = (
    "SELECT * FROM pending_emails WHERE user_email = ? AND action = ? ORDER BY id"
)

_RESET = """
UPDATE pending_emails
SET action = NULL, matched_level = NULL, matched_rule = NULL, matched_pattern = NULL
WHERE user_email = ?
"""

_SAVE_RESULT = """
UPDATE pending_emails
SET action = ?, matched_level = ?, matched_rule = ?, matched_pattern = ?
WHERE id = ? AND user_email = ?
"""

_DELETE_FOR_USER = "DELETE FROM pending_emails WHERE user_email = ?"

_SUMMARY = """
SELECT action, COUNT(*) AS count, MIN(email_date) AS oldest, MAX(email_date) AS newest
FROM pending_emails
WHERE user_email = ? AND action IS NOT NULL
GROUP BY action
"""


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _user(user_email: str) -> str:
    return (user_email or "").strip().lower()


def _parse_date(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_email(row: sqlite3.Row) -> PendingEmail:
    matched = None
    if row["matched_rule"]:
        matched = MatchedRule(
            level=row["matched_level"],
            rule=row["matched_rule"],
            key=row["matched_pattern"],
        )
    return PendingEmail(
        id=row["id"],
        email_id=row["email_id"],
        user_email=row["user_email"],
        from_email=row["from_email"],
        to_email=row["to_email"],
        subject=row["subject"],
        primary_domain=row["primary_domain"],
        subdomain=row["subdomain"],
        email_date=_parse_date(row["email_date"]),
        action=Action(row["action"]) if row["action"] else None,
        matched_rule=matched,
    )


class PendingEmailStore:
    """Per-user batch of emails awaiting a keep/delete decision.

    Usage::

        pending = PendingEmailStore(db)
        pending.add([PendingEmail(email_id="m1", user_email="me@x.com", from_email="a@b.com")])
        for item in pending.summary("me@x.com"):
            print(item.action, item.count)
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    @property
    def db(self) -> Database:
        return self._db

    def add(self, emails: Iterable[PendingEmail]) -> int:
        """Insert or refresh emails, filling empty domain columns from ``from_email``.

        Re-importing an ``email_id`` updates its fields but keeps the last
        evaluation result until the next evaluation.

        Raises:
            RuleValidationError: If an email has no owner or no id.
        """
        rows = []
        now = datetime.now(UTC).isoformat()
        for email in emails:
            user = email.user_email.strip().lower()
            if not user or not email.email_id.strip():
                raise RuleValidationError("Pending emails need an email_id and a user_email")
            from_email = email.from_email.strip().lower()
            parsed = parse_email_domain(from_email)
            primary_domain = email.primary_domain.strip().lower() or parsed.primary_domain
            subdomain = (email.subdomain or "").strip().lower() or (
                parsed.full_domain if parsed.has_subdomain else None
            )
            email_date = _to_utc(email.email_date)
            rows.append(
                (
                    email.email_id.strip(),
                    user,
                    from_email,
                    email.to_email.strip().lower(),
                    email.subject,
                    primary_domain,
                    subdomain,
                    email_date.isoformat() if email_date else None,
                    now,
                )
            )

        with self._db.transaction() as conn:
            conn.executemany(_UPSERT, rows)
        logger.info("Stored %d pending email(s)", len(rows))
        return len(rows)

    def list_emails(self, user_email: str, action: Action | None = None) -> list[PendingEmail]:
        """Return a user's pending emails in ingestion order."""
        with self._db.reading() as conn:
            if action is None:
                rows = conn.execute(_SELECT_FOR_USER, (_user(user_email),)).fetchall()
            else:
                rows = conn.execute(
                    _SELECT_FOR_USER_ACTION, (_user(user_email), Action(action).value)
                ).fetchall()
        return [_row_to_email(r) for r in rows]

    def count(self, user_email: str) -> int:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM pending_emails WHERE user_email = ?", (_user(user_email),)
            ).fetchone()
        return row[0]

    def users_with_pending(self) -> list[str]:
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_email FROM pending_emails ORDER BY user_email"
            ).fetchall()
        return [r[0] for r in rows]

    def reset_actions(self, user_email: str) -> int:
        """Clear every evaluation result for a user."""
        with self._db.transaction() as conn:
            cursor = conn.execute(_RESET, (_user(user_email),))
        logger.debug("Reset %d pending email(s) for %s", cursor.rowcount, _user(user_email))
        return cursor.rowcount

    def save_results(self, emails: Iterable[PendingEmail]) -> int:
        """Write back action and matched rule for evaluated emails."""
        rows = []
        for email in emails:
            if email.id is None:
                raise RuleValidationError(f"Cannot save unstored email {email.email_id}")
            matched = email.matched_rule
            rows.append(
                (
                    email.action.value if email.action else None,
                    matched.level if matched else None,
                    matched.rule if matched else None,
                    matched.key if matched else None,
                    email.id,
                    email.user_email,
                )
            )
        with self._db.transaction() as conn:
            conn.executemany(_SAVE_RESULT, rows)
        return len(rows)

    def clear(self, user_email: str) -> int:
        """Remove a user's whole batch."""
        with self._db.transaction() as conn:
            cursor = conn.execute(_DELETE_FOR_USER, (_user(user_email),))
        logger.info("Cleared %d pending email(s) for %s", cursor.rowcount, user_email)
        return cursor.rowcount

    def summary(self, user_email: str) -> list[ActionSummary]:
        """Per-action counts with the oldest and newest email date."""
        with self._db.reading() as conn:
            rows = conn.execute(_SUMMARY, (_user(user_email),)).fetchall()

        by_action = {
            Action(r["action"]): ActionSummary(
                action=Action(r["action"]),
                count=r["count"],
                oldest_date=_parse_date(r["oldest"]),
                newest_date=_parse_date(r["newest"]),
            )
            for r in rows
        }
        return [by_action[a] for a in SUMMARY_ORDER if a in by_action]

    def preview(
        self,
        user_email: str,
        action: Action,
        min_age_days: int,
        *,
        now: datetime | None = None,
        limit: int = 100,
    ) -> DeletionPreview:
        """List emails carrying ``action`` that are at least ``min_age_days`` old.

        Emails with the action that are newer than the cutoff (or undated)
        are only counted, as ``skipped_count``.
        """
        action = Action(action)
        if min_age_days < 0:
            raise RuleValidationError("min_age_days must not be negative")
        cutoff = _to_utc(now or datetime.now(UTC)) - timedelta(days=min_age_days)

        matches: list[PreviewMatch] = []
        match_count = 0
        skipped = 0
        for email in self.list_emails(user_email, action):
            if email.email_date is None or email.email_date > cutoff:
                skipped += 1
                continue
            match_count += 1
            if len(matches) < limit:
                matches.append(
                    PreviewMatch(
                        email_id=email.email_id,
                        from_email=email.from_email,
                        subject=email.subject,
                        email_date=email.email_date,
                        matched_rule=email.matched_rule.rule if email.matched_rule else None,
                    )
                )

        return DeletionPreview(
            action=action,
            min_age_days=min_age_days,
            match_count=match_count,
            skipped_count=skipped,
            matches=matches,
        )
