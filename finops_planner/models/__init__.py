"""FinOps Planner data models."""

from finops_planner.models.agent import (
    AgentDescriptor,
    AgentKind,
    AgentRunResult,
    AgentRunState,
    AgentRunStatus,
)
from finops_planner.models.audit import AuditAction, AuditLogEntry
from finops_planner.models.opportunity import (
    Environment,
    Opportunity,
    OpportunityType,
    RiskLevel,
    Service,
)
from finops_planner.models.plan import (
    ActionPlan,
    ExecutionDetails,
    PlanStatus,
    RecommendationCandidate,
    SchedulerRule,
    SchedulerTarget,
)

__all__ = [
    "ActionPlan",
    "AgentDescriptor",
    "AgentKind",
    "AgentRunResult",
    "AgentRunState",
    "AgentRunStatus",
    "AuditAction",
    "AuditLogEntry",
    "Environment",
    "ExecutionDetails",
    "Opportunity",
    "OpportunityType",
    "PlanStatus",
    "RecommendationCandidate",
    "RiskLevel",
    "SchedulerRule",
    "SchedulerTarget",
    "Service",
]
