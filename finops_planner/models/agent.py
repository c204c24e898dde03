"""Agent descriptors and runtime state for the orchestrator."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class AgentKind(str, Enum):
    PLAN_GENERATION = "plan_generation"   # Invokes the plan generator
    NO_OP = "no_op"                       # Placeholder unit of work


class AgentRunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AgentDescriptor(BaseModel):
    """Static, process-wide description of one named agent."""

    id: str
    name: str
    description: str
    schedule: str                   # Human-readable, e.g. "Daily at 02:00 UTC"
    cron: Optional[str] = None      # Machine schedule; None = on-demand only
    kind: AgentKind = AgentKind.NO_OP


class AgentRunState(BaseModel):
    """Mutable runtime state, owned by the orchestrator."""

    agent_id: str
    enabled: bool = True
    running: bool = False
    run_count: int = 0
    last_run_at: Optional[datetime] = None
    last_status: Optional[AgentRunStatus] = None
    last_error: Optional[str] = None


class AgentRunResult(BaseModel):
    """Outcome of one completed agent run."""

    agent_id: str
    status: AgentRunStatus
    started_at: datetime
    finished_at: datetime
    plan_id: Optional[str] = None
    message: str = ""
