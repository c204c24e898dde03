"""
Guardrail Policy: the mandatory safety predicates for action plans.

Evaluates a plan against named guardrails in a fixed order and stops at the
first failure. Pure: never touches storage, never mutates the plan.

Behavioral Contract:
- Returns the ordered list of satisfied guardrail ids, or raises
  GuardrailViolation naming the first failing rule
- Always recomputes from the plan's current fields; a stored
  `guardrails_checked` snapshot is never consulted
- PROD is always rejected; no override exists
"""

import logging
import re
from typing import Callable, Dict, List, Optional, Sequence

from finops_planner.config.settings import PlannerConfig
from finops_planner.errors import GuardrailViolation
from finops_planner.models.opportunity import Environment
from finops_planner.models.plan import ActionPlan

logger = logging.getLogger(__name__)

ENV_SCOPE = "ENV_SCOPE"
BLAST_RADIUS = "BLAST_RADIUS"
ROLLBACK_PRESENT = "ROLLBACK_PRESENT"
WINDOW_DEFINED = "WINDOW_DEFINED"

MANDATORY_GUARDRAILS = (ENV_SCOPE, BLAST_RADIUS, ROLLBACK_PRESENT, WINDOW_DEFINED)
APPROVAL_GUARDRAILS = (ENV_SCOPE, BLAST_RADIUS, ROLLBACK_PRESENT)

ALLOWED_ENVS = (Environment.DEV, Environment.TEST)

_WINDOW_PATTERN = re.compile(
    r"\b\d{1,2}:\d{2}\s*(?:-|–|to)\s*\d{1,2}:\d{2}\b|\bwindow\b", re.IGNORECASE
)

# A check returns None when satisfied, or a human-readable violation detail.
GuardrailCheck = Callable[[ActionPlan, PlannerConfig], Optional[str]]


def _check_env_scope(plan: ActionPlan, config: PlannerConfig) -> Optional[str]:
    """Plan and every opportunity must be DEV or TEST."""
    if plan.env not in ALLOWED_ENVS:
        return f"plan env is {plan.env.value}; only DEV and TEST are allowed"
    for opp in plan.top_opportunities:
        if opp.env not in ALLOWED_ENVS:
            return f"opportunity {opp.id} ({opp.resource}) is in {opp.env.value}"
    return None


def _check_blast_radius(plan: ActionPlan, config: PlannerConfig) -> Optional[str]:
    count = len(plan.top_opportunities)
    if count > config.max_resources:
        return f"plan touches {count} resources; limit is {config.max_resources}"
    return None


def _check_rollback_present(plan: ActionPlan, config: PlannerConfig) -> Optional[str]:
    if not any(step.strip() for step in plan.rollback_plan):
        return "plan has no rollback steps"
    return None


def _check_window_defined(plan: ActionPlan, config: PlannerConfig) -> Optional[str]:
    """Presence only: scheduling correctness is not evaluated here."""
    if plan.execution_window and plan.execution_window.strip():
        return None
    if any(_WINDOW_PATTERN.search(step) for step in plan.recommended_steps):
        return None
    return "plan does not reference a maintenance window"


_DESCRIPTIONS = {
    ENV_SCOPE: "Plan and all opportunities are scoped to DEV or TEST; PROD is never touched.",
    BLAST_RADIUS: "A plan affects at most {max_resources} resources.",
    ROLLBACK_PRESENT: "A plan carries at least one rollback step.",
    WINDOW_DEFINED: "A plan references a maintenance window (default {window}).",
}


class GuardrailPolicy:
    """
    The guardrail evaluator. Evaluated at generation time and again on
    every lifecycle transition.
    """

    def __init__(self, config: Optional[PlannerConfig] = None):
        self.config = config or PlannerConfig()
        self._checks: Dict[str, GuardrailCheck] = {
            ENV_SCOPE: _check_env_scope,
            BLAST_RADIUS: _check_blast_radius,
            ROLLBACK_PRESENT: _check_rollback_present,
            WINDOW_DEFINED: _check_window_defined,
        }

    def evaluate(
        self,
        plan: ActionPlan,
        guardrails: Sequence[str] = MANDATORY_GUARDRAILS,
    ) -> List[str]:
        """
        Check `plan` against `guardrails` in order.

        Returns the satisfied guardrail ids; raises GuardrailViolation on
        the first failure.
        """
        passed = []
        for name in guardrails:
            check = self._checks.get(name)
            if check is None:
                raise KeyError(f"Unknown guardrail: {name}")
            detail = check(plan, self.config)
            if detail is not None:
                logger.warning(
                    "Guardrail %s failed for plan %s: %s", name, plan.plan_id, detail
                )
                raise GuardrailViolation(name, detail, plan_id=plan.plan_id)
            passed.append(name)
        return passed

    def describe(self) -> List[dict]:
        """The guardrail catalogue, in evaluation order."""
        return [
            {
                "id": name,
                "description": _DESCRIPTIONS[name].format(
                    max_resources=self.config.max_resources,
                    window=self.config.execution_window,
                ),
            }
            for name in MANDATORY_GUARDRAILS
        ]
