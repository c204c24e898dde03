"""
Plan Generator: turns opportunities into a guardrail-checked action plan.

Pipeline:
  FILTER → RANK (savings desc, stable) → TOP N → RECOMMEND → ASSEMBLE →
  GUARDRAILS
Persistence belongs to the lifecycle controller (`register`), which writes
the plan and its PLAN_GENERATED entry together.

Behavioral Contract:
- PROD opportunities are never selected, whatever the filters say
- The selection is never trimmed to "fix" a guardrail violation
- The locally computed savings total is authoritative; the generator's
  own figure is kept as advisory only
- At most `recommendation_max_workers` generator calls are in flight. A call
  that times out keeps its worker until it returns, so when every worker is
  held by a hung call new requests fail fast instead of queueing
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import uuid4

from pydantic import ValidationError as SchemaError

from finops_planner.config.settings import PlannerConfig
from finops_planner.errors import (
    FinOpsError,
    NoOpportunitiesAvailable,
    RecommendationGenerationFailed,
    UpstreamFailure,
    UpstreamTimeout,
    ValidationError,
)
from finops_planner.guardrails.policy import ALLOWED_ENVS, GuardrailPolicy
from finops_planner.models.opportunity import Environment, Opportunity, RiskLevel
from finops_planner.models.plan import ActionPlan, PlanStatus, RecommendationCandidate
from finops_planner.opportunities.store import (
    filter_label,
    filter_opportunities,
    parse_filter,
)
from finops_planner.planning.recommendations import (
    RecommendationGenerator,
    TemplateRecommendationGenerator,
)
from finops_planner.plans.store import PlanStore

logger = logging.getLogger(__name__)

SAVINGS_TOLERANCE_USD = 0.01


def new_plan_id(now: Optional[datetime] = None) -> str:
    """plan-YYYY-MM-DD-xxxxxx"""
    now = now or datetime.utcnow()
    return f"plan-{now.date().isoformat()}-{uuid4().hex[:6]}"


class PlanGenerator:
    """Selects opportunities and assembles candidate plans."""

    def __init__(
        self,
        plan_store: PlanStore,
        guardrails: Optional[GuardrailPolicy] = None,
        recommendation_generator: Optional[RecommendationGenerator] = None,
        config: Optional[PlannerConfig] = None,
    ):
        self.config = config or PlannerConfig()
        self.plan_store = plan_store
        self.guardrails = guardrails or GuardrailPolicy(self.config)
        self.recommender = recommendation_generator or TemplateRecommendationGenerator(
            execution_window=self.config.execution_window,
            max_resources=self.config.max_resources,
        )
        workers = self.config.recommendation_max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="recommendation"
        )
        self._slots = threading.BoundedSemaphore(workers)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def select_opportunities(
        self,
        opportunities: Iterable[Opportunity],
        env_filter: str = "ALL",
        risk_filter: str = "ALL",
    ) -> List[Opportunity]:
        """Top-N eligible opportunities by savings, ties kept in input order."""
        eligible = [
            o for o in filter_opportunities(opportunities, env_filter, risk_filter)
            if o.env in ALLOWED_ENVS
        ]
        ranked = sorted(eligible, key=lambda o: o.est_savings_usd_month, reverse=True)
        return ranked[: self.config.max_resources]

    def build_plan(
        self,
        opportunities: Iterable[Opportunity],
        env_filter: str = "ALL",
        risk_filter: str = "ALL",
        requester: str = "",
        plan_id: Optional[str] = None,
    ) -> ActionPlan:
        """
        Assemble and guardrail-check a candidate plan without persisting it.

        Raises NoOpportunitiesAvailable, RecommendationGenerationFailed,
        UpstreamTimeout, UpstreamFailure or GuardrailViolation.
        """
        if not requester or not requester.strip():
            raise ValidationError("requester is required", {"field": "requester"})

        env = parse_filter(env_filter, Environment, "env")
        parse_filter(risk_filter, RiskLevel, "risk")

        selected = self.select_opportunities(opportunities, env_filter, risk_filter)
        if not selected:
            raise NoOpportunitiesAvailable(filter_label(env_filter), filter_label(risk_filter))

        total = sum(o.est_savings_usd_month for o in selected)
        candidate = self._recommend(selected)

        reported = candidate.est_total_savings_usd_month
        if reported is not None and abs(reported - total) > SAVINGS_TOLERANCE_USD:
            logger.warning(
                "Generator reported $%.2f/month but selected opportunities sum to "
                "$%.2f/month; keeping the local sum",
                reported, total,
            )

        plan = ActionPlan(
            plan_id=self._resolve_plan_id(plan_id),
            objective=candidate.objective,
            env=env if env is not None else self.config.default_plan_env,
            top_opportunities=[o.model_copy(deep=True) for o in selected],
            recommended_steps=list(candidate.steps),
            rollback_plan=list(candidate.rollback),
            execution_window=self.config.execution_window,
            est_total_savings_usd_month=total,
            generator_reported_savings_usd_month=reported,
            status=PlanStatus.PLANNED,
            created_by=requester,
            created_at=datetime.utcnow(),
        )

        plan.guardrails_checked = self.guardrails.evaluate(plan)
        return plan

    def _recommend(self, selected: List[Opportunity]) -> RecommendationCandidate:
        """Call the external generator under a timeout and validate its output."""
        if self._closed:
            raise UpstreamFailure("Plan generator is shut down", {"closed": True})
        if not self._slots.acquire(blocking=False):
            logger.warning("All recommendation workers are busy; rejecting request")
            raise UpstreamFailure(
                "All recommendation workers are busy",
                {"max_workers": self.config.recommendation_max_workers},
            )

        snapshot = [o.model_copy(deep=True) for o in selected]
        timeout = self.config.recommendation_timeout_seconds
        try:
            future = self._executor.submit(self._call_generator, snapshot)
        except RuntimeError as e:
            self._slots.release()
            raise UpstreamFailure("Plan generator is shut down", {"closed": True}) from e

        try:
            raw = future.result(timeout=timeout)
        except FuturesTimeout:
            logger.warning(
                "Recommendation generator exceeded %ss; its worker stays busy until it returns",
                timeout,
            )
            raise UpstreamTimeout(
                f"Recommendation generator did not answer within {timeout}s",
                {"timeout_seconds": timeout},
            )
        except FinOpsError:
            raise
        except Exception as e:
            raise RecommendationGenerationFailed(
                f"Recommendation generator failed: {e}",
                {"cause": type(e).__name__},
            ) from e

        try:
            if isinstance(raw, RecommendationCandidate):
                return RecommendationCandidate.model_validate(raw.model_dump())
            return RecommendationCandidate.model_validate(raw)
        except SchemaError as e:
            raise RecommendationGenerationFailed(
                "Recommendation generator returned a malformed candidate",
                {"errors": [err["msg"] for err in e.errors()]},
            ) from e

    def _call_generator(self, snapshot: List[Opportunity]):
        """Runs on a worker thread. The slot is freed before the result is published."""
        try:
            return self.recommender.generate(snapshot)
        finally:
            self._slots.release()

    def _resolve_plan_id(self, candidate: Optional[str]) -> str:
        if candidate is not None:
            if not candidate.strip():
                raise ValidationError("plan_id must not be blank", {"field": "plan_id"})
            if self.plan_store.exists(candidate):
                raise ValidationError(
                    f"Plan id {candidate} is already in use", {"plan_id": candidate}
                )
            return candidate

        plan_id = new_plan_id()
        while self.plan_store.exists(plan_id):
            plan_id = new_plan_id()
        return plan_id

    def audit_details(
        self, plan: ActionPlan, env_filter: str, risk_filter: str, **extra
    ) -> dict:
        """Details recorded with the PLAN_GENERATED entry."""
        details = {
            "opportunities_count": len(plan.top_opportunities),
            "env_filter": filter_label(env_filter),
            "risk_filter": filter_label(risk_filter),
            "est_total_savings_usd_month": plan.est_total_savings_usd_month,
        }
        details.update(extra)
        return details

    def close(self) -> None:
        """Stop accepting generator calls. Hung calls are not waited for."""
        self._closed = True
        self._executor.shutdown(wait=False)
