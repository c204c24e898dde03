"""
Recommendation generation: the prose half of an action plan.

The production backend is an LLM call that returns structured text; the
planner treats it as a black box behind the RecommendationGenerator
protocol. The template generator below is deterministic and covers every
opportunity type the discovery process emits.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Protocol, Tuple, Union

from finops_planner.models.opportunity import Opportunity, OpportunityType
from finops_planner.models.plan import RecommendationCandidate


class RecommendationGenerator(Protocol):
    """Protocol for pluggable recommendation backends."""

    def generate(
        self, opportunities: List[Opportunity]
    ) -> Union[RecommendationCandidate, dict]: ...


# Rule output: (recommended step, rollback step)
StepRule = Callable[[Opportunity, str], Tuple[str, str]]


class TemplateRecommendationGenerator:
    """
    Rule-based recommendation generator for the prototype.
    Produces one step and one rollback step per opportunity, keyed by type.
    """

    def __init__(self, execution_window: str = "19:00-07:00", max_resources: int = 5):
        self.execution_window = execution_window
        self.max_resources = max_resources
        self._rules: Dict[OpportunityType, StepRule] = {}
        self._register_default_rules()

    def _register_default_rules(self) -> None:
        """Register default step templates per opportunity type."""
        self._rules[OpportunityType.EC2_OFFHOURS] = self._rule_offhours
        self._rules[OpportunityType.RDS_OFFHOURS] = self._rule_offhours
        self._rules[OpportunityType.EC2_RIGHTSIZE] = self._rule_rightsize
        self._rules[OpportunityType.RDS_RIGHTSIZE] = self._rule_rightsize
        self._rules[OpportunityType.EBS_UNUSED] = self._rule_unused_volume
        self._rules[OpportunityType.S3_LIFECYCLE] = self._rule_lifecycle

    def register_rule(self, opportunity_type: OpportunityType, rule: StepRule) -> None:
        """Register a custom template for an opportunity type."""
        self._rules[opportunity_type] = rule

    def generate(self, opportunities: List[Opportunity]) -> RecommendationCandidate:
        """Build objective, steps and rollback steps for the selected opportunities."""
        steps = ["Review and validate resource metrics for all targeted resources"]
        rollback = []

        for opp in opportunities:
            rule = self._rules.get(opp.type, self._rule_generic)
            step, undo = rule(opp, self.execution_window)
            steps.append(step)
            rollback.append(undo)

        steps.append(
            f"Execute changes during the {self.execution_window} maintenance window"
        )
        steps.append("Monitor resource performance post-change")
        rollback.append("Validate application functionality")

        total = sum(o.est_savings_usd_month for o in opportunities)
        envs = sorted({o.env.value for o in opportunities})

        return RecommendationCandidate(
            objective=(
                f"Reduce monthly spend by ${total:,.2f} across "
                f"{len(opportunities)} {'/'.join(envs)} resource(s)"
            ),
            steps=steps,
            rollback=rollback,
            guardrails_hint=[
                "ENV in [DEV, TEST]",
                f"blast-radius<={self.max_resources}",
                f"window={self.execution_window}",
                "no PROD",
            ],
            est_total_savings_usd_month=total,
        )

    # --- Step Templates ---

    def _rule_offhours(self, opp: Opportunity, window: str) -> Tuple[str, str]:
        return (
            f"Schedule {opp.service.value} {opp.resource} to stop during off-hours "
            f"({window}) on weekdays",
            f"Re-enable the 24/7 schedule for {opp.resource}",
        )

    def _rule_rightsize(self, opp: Opportunity, window: str) -> Tuple[str, str]:
        current = _metric(opp, "current_type", "current size")
        target = _metric(opp, "recommended_type", "the recommended size")
        return (
            f"Resize {opp.service.value} {opp.resource} from {current} to {target}",
            f"Restore {opp.resource} to its original size ({current})",
        )

    def _rule_unused_volume(self, opp: Opportunity, window: str) -> Tuple[str, str]:
        return (
            f"Snapshot unattached volume {opp.resource}, then propose deletion",
            f"Restore {opp.resource} from its pre-deletion snapshot",
        )

    def _rule_lifecycle(self, opp: Opportunity, window: str) -> Tuple[str, str]:
        days = _metric(opp, "transition_days", 30)
        return (
            f"Apply a lifecycle rule moving objects in {opp.resource} "
            f"to Standard-IA after {days} days",
            f"Remove the lifecycle rule from {opp.resource}",
        )

    def _rule_generic(self, opp: Opportunity, window: str) -> Tuple[str, str]:
        return (
            f"Apply {opp.type.value} to {opp.service.value} {opp.resource}",
            f"Revert {opp.type.value} on {opp.resource}",
        )


def _metric(opp: Opportunity, key: str, default: Optional[object]) -> object:
    value = opp.metrics.get(key) if isinstance(opp.metrics, dict) else None
    return value if value not in (None, "") else default
