"""Schemas for the pending-email batch.

Covers the lifecycle of one batch:
  ingestion -> reset -> evaluation -> summary / deletion preview
"""

from datetime import datetime

from pydantic import BaseModel, Field

from sift.schemas.criteria import Action, ErrorCode


class MatchedRule(BaseModel):
    """Which rung of the priority ladder decided an email, and on what."""

    level: int = Field(ge=1, le=12)
    rule: str  # e.g. "email_key.default", "pattern.keep", "domain.default"
    key: str | None = None  # literal address, pattern or domain that fired


class PendingEmail(BaseModel):
    """One inbound message awaiting classification."""

    id: int | None = None
    email_id: str
    user_email: str
    from_email: str
    to_email: str = ""
    subject: str = ""
    primary_domain: str = ""
    subdomain: str | None = None
    email_date: datetime | None = None
    action: Action | None = None
    matched_rule: MatchedRule | None = None


class EvaluationResult(BaseModel):
    """Pipeline result for one user's re-evaluation."""

    user_email: str
    success: bool = True
    message: str = ""
    code: ErrorCode | None = None
    total: int = 0
    summary: dict[str, int] = Field(default_factory=dict)  # action -> count


class ActionSummary(BaseModel):
    """Per-action count over a user's pending emails."""

    action: Action
    count: int
    oldest_date: datetime | None = None
    newest_date: datetime | None = None


class PreviewMatch(BaseModel):
    email_id: str
    from_email: str
    subject: str
    email_date: datetime | None = None
    matched_rule: str | None = None


class DeletionPreview(BaseModel):
    """Emails that a delete action would remove at a given minimum age."""

    action: Action
    min_age_days: int
    match_count: int = 0
    skipped_count: int = 0  # same action but too recent
    matches: list[PreviewMatch] = Field(default_factory=list)
