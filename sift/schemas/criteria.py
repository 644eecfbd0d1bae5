"""Schemas for the criteria rule set.

Covers the rule tree (domain -> subdomain, plus exact-address entries),
the patterns hanging off it, and the request/result vocabulary of the
mutation entry point:
  raw fields + intent -> RuleTarget -> RuleStore write -> ModifyResult
"""

from enum import StrEnum

from pydantic import BaseModel, Field

# --- Vocabularies ---


class Action(StrEnum):
    """Decision attached to a rule or assigned to an email."""

    KEEP = "keep"
    DELETE = "delete"
    DELETE_1D = "delete_1d"
    DELETE_10D = "delete_10d"
    UNDECIDED = "undecided"


# Actions a rule may carry (undecided is only ever an evaluation outcome).
RULE_ACTIONS = (Action.KEEP, Action.DELETE, Action.DELETE_1D, Action.DELETE_10D)

# Actions an email pattern may carry.
EMAIL_PATTERN_ACTIONS = (Action.KEEP, Action.DELETE)


class KeyType(StrEnum):
    """Kind of node in the criteria tree."""

    DOMAIN = "domain"
    SUBDOMAIN = "subdomain"
    EMAIL = "email"


class Dimension(StrEnum):
    """Which part of the rule set an operation targets."""

    DOMAIN = "domain"
    SUBDOMAIN = "subdomain"
    EMAIL = "email"
    SUBJECT = "subject"
    FROM_EMAIL = "from_email"
    TO_EMAIL = "to_email"


class Operation(StrEnum):
    ADD = "ADD"
    REMOVE = "REMOVE"
    UPDATE = "UPDATE"
    CLEAR = "CLEAR"
    GET = "GET"


class RuleLevel(StrEnum):
    """Granularity the caller picked when acting on an observed email."""

    DOMAIN = "domain"
    SUBDOMAIN = "subdomain"
    FROM_EMAIL = "from_email"
    TO_EMAIL = "to_email"


class Direction(StrEnum):
    FROM = "from"
    TO = "to"


class ErrorCode(StrEnum):
    """Machine-readable failure category carried on a ModifyResult."""

    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    PERSISTENCE_ERROR = "persistence_error"


# --- Rule rows ---


class CriteriaEntry(BaseModel):
    """A domain, subdomain or exact-address node."""

    id: int
    key_value: str
    key_type: KeyType
    parent_id: int | None = None
    default_action: Action | None = None
    user_email: str


class Pattern(BaseModel):
    """Case-insensitive subject substring rule attached to a criteria entry."""

    id: int
    criteria_id: int
    pattern: str
    action: Action


class EmailPattern(BaseModel):
    """Exact from/to address rule anchored on a domain-level entry."""

    id: int
    criteria_id: int
    direction: Direction
    action: Action
    email: str


class RuleSet(BaseModel):
    """Immutable snapshot of one user's full rule set."""

    user_email: str
    entries: list[CriteriaEntry] = Field(default_factory=list)
    patterns: list[Pattern] = Field(default_factory=list)
    email_patterns: list[EmailPattern] = Field(default_factory=list)

    model_config = {"frozen": True}


# --- Mutation protocol ---


class RuleTarget(BaseModel):
    """Where in the rule tree a raw-field request lands.

    Produced only by the rule store from raw email fields; callers never
    build one themselves.
    """

    dimension: Dimension
    key_value: str | None = None
    parent_domain: str | None = None
    parent_subdomain: str | None = None


class CriteriaView(BaseModel):
    """Read-only payload returned by GET."""

    entry: CriteriaEntry | None = None
    subdomains: list[CriteriaEntry] = Field(default_factory=list)
    patterns: list[Pattern] = Field(default_factory=list)
    email_patterns: list[EmailPattern] = Field(default_factory=list)
    subdomain_count: int = 0
    pattern_count: int = 0
    email_pattern_count: int = 0
    # subdomain key -> number of subject patterns, for subdomain listings
    subdomain_pattern_counts: dict[str, int] = Field(default_factory=dict)


class ModifyResult(BaseModel):
    """Outcome of a single rule-store call."""

    success: bool
    message: str
    record_id: int | None = None
    audit_id: int | None = None
    code: ErrorCode | None = None
    data: CriteriaView | None = None


class CriteriaStats(BaseModel):
    """Aggregate counts over one user's rule set."""

    user_email: str
    total_entries: int = 0
    with_default: dict[str, int] = Field(default_factory=dict)  # action -> count
    with_subject_patterns: int = 0
    subdomains: int = 0
    with_email_patterns: int = 0
