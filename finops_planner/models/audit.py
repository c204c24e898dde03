"""Audit Log Entry: one immutable record of a state-changing action."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class AuditAction(str, Enum):
    PLAN_GENERATED = "PLAN_GENERATED"
    PLAN_APPROVED = "PLAN_APPROVED"
    PLAN_EXECUTED = "PLAN_EXECUTED"
    PLAN_ROLLED_BACK = "PLAN_ROLLED_BACK"


class AuditLogEntry(BaseModel):
    """Written by the lifecycle controller and the agent orchestrator only."""

    action: AuditAction
    plan_id: str
    performed_by: str                       # Verified identity of the actor
    created_at: Optional[datetime] = None   # Assigned by the ledger if omitted
    details: dict = {}
    sequence: Optional[int] = None          # Assigned by the ledger
