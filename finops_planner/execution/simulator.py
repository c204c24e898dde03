"""
Execution Simulator: records what executing an approved plan would do.

Behavioral Contract:
- Accepts only plans in APPROVED status
- Never mutates an external system; the output is a description of the
  scheduler rule and per-resource actions a real run would create
- The simulated action for each resource is derived from its opportunity type
"""

import logging
from typing import Dict, Optional

from finops_planner.config.settings import PlannerConfig
from finops_planner.errors import InvalidTransition
from finops_planner.models.opportunity import Opportunity, OpportunityType
from finops_planner.models.plan import (
    ActionPlan,
    ExecutionDetails,
    PlanStatus,
    SchedulerRule,
    SchedulerTarget,
)

logger = logging.getLogger(__name__)

DEFAULT_ACTION = "modify"


class ExecutionSimulator:
    """
    Builds ExecutionDetails for approved plans. In production this is where
    scheduler rules and resource modifications would be dispatched.
    """

    def __init__(self, config: Optional[PlannerConfig] = None):
        self.config = config or PlannerConfig()
        self._actions: Dict[OpportunityType, str] = {}
        self._register_default_actions()

    def _register_default_actions(self) -> None:
        """Map opportunity types to the simulated change they imply."""
        self._actions[OpportunityType.EC2_OFFHOURS] = "stop"
        self._actions[OpportunityType.RDS_OFFHOURS] = "stop"
        self._actions[OpportunityType.EC2_RIGHTSIZE] = "modify"
        self._actions[OpportunityType.RDS_RIGHTSIZE] = "modify"
        self._actions[OpportunityType.EBS_UNUSED] = "snapshot_and_delete"
        self._actions[OpportunityType.S3_LIFECYCLE] = "apply_lifecycle"

    def register_action(self, opportunity_type: OpportunityType, action: str) -> None:
        """Register a custom simulated action for an opportunity type."""
        self._actions[opportunity_type] = action

    def action_for(self, opportunity: Opportunity) -> str:
        return self._actions.get(opportunity.type, DEFAULT_ACTION)

    def simulate(self, plan: ActionPlan) -> ExecutionDetails:
        """
        Describe the execution of an approved plan.

        GUARD: Never simulate a plan that has not been approved.
        """
        if plan.status != PlanStatus.APPROVED:
            raise InvalidTransition(
                plan.plan_id, plan.status.value, PlanStatus.EXECUTED.value
            )

        targets = [
            SchedulerTarget(
                resource=opp.resource,
                service=opp.service.value,
                action=self.action_for(opp),
            )
            for opp in plan.top_opportunities
        ]

        details = ExecutionDetails(
            simulated=True,
            scheduler_rule=SchedulerRule(
                name=f"{self.config.scheduler_rule_prefix}-{plan.plan_id}",
                schedule=self.config.scheduler_cron,
                targets=targets,
            ),
            resources_affected=len(targets),
            execution_window=self.config.execution_window_label,
        )
        logger.debug(
            "Simulated execution for plan %s: %d targets", plan.plan_id, len(targets)
        )
        return details
