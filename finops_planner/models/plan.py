"""Action Plan: the reviewed, guardrail-checked bundle of opportunities."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from finops_planner.models.opportunity import Environment, Opportunity


class PlanStatus(str, Enum):
    PLANNED = "PLANNED"          # Initial
    APPROVED = "APPROVED"
    EXECUTED = "EXECUTED"
    ROLLED_BACK = "ROLLED_BACK"  # Terminal


class SchedulerTarget(BaseModel):
    """One resource touched by the simulated scheduler rule."""
    resource: str
    service: str
    action: str                  # "stop" | "modify" | "snapshot_and_delete" | "apply_lifecycle"


class SchedulerRule(BaseModel):
    """The scheduler rule a real execution would have created."""
    name: str
    schedule: str
    targets: List[SchedulerTarget]


class ExecutionDetails(BaseModel):
    """Record of a simulated execution. No external system is mutated."""

    simulated: bool = True
    scheduler_rule: SchedulerRule
    resources_affected: int
    execution_window: str


class RecommendationCandidate(BaseModel):
    """
    Structured output expected from the recommendation generator.

    Fails closed: a candidate missing its objective, steps or rollback
    steps is rejected rather than patched up.
    """

    objective: str = Field(min_length=1)
    steps: List[str] = Field(min_length=1)
    rollback: List[str] = Field(min_length=1)
    guardrails_hint: List[str] = []
    est_total_savings_usd_month: Optional[float] = None   # Advisory only

    @field_validator("objective")
    @classmethod
    def validate_objective(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("objective must not be blank")
        return v

    @field_validator("steps", "rollback")
    @classmethod
    def validate_no_blank_lines(cls, v: List[str]) -> List[str]:
        if any(not line.strip() for line in v):
            raise ValueError("steps must not contain blank entries")
        return v


class ActionPlan(BaseModel):
    """
    A plan of at most five opportunities with a mandated rollback plan.

    Safety invariants (DEV/TEST only, blast radius, rollback present) are not
    enforced here. The guardrail policy re-checks them from the current
    fields on every transition.
    """

    plan_id: str
    objective: str
    env: Environment
    top_opportunities: List[Opportunity]
    recommended_steps: List[str]
    guardrails_checked: List[str] = []
    rollback_plan: List[str]
    execution_window: Optional[str] = None
    est_total_savings_usd_month: float
    generator_reported_savings_usd_month: Optional[float] = None
    status: PlanStatus = PlanStatus.PLANNED
    created_by: str
    created_at: datetime

    # APPROVAL
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    # EXECUTION
    executed_at: Optional[datetime] = None
    execution_details: Optional[ExecutionDetails] = None

    # ROLLBACK
    rolled_back_by: Optional[str] = None
    rolled_back_at: Optional[datetime] = None
    rollback_reason: Optional[str] = None
