"""Schemas for the rule-mutation audit trail."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class AuditActionType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditLogEntry(BaseModel):
    """A record of one state-changing rule mutation."""

    id: int | None = None
    user_email: str
    action_type: AuditActionType
    table_name: str
    record_id: int | None = None
    domain: str | None = None
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Operation, dimension and before/after state of the mutation",
    )
    created_at: datetime
