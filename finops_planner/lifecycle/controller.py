"""
Plan Lifecycle Controller: the plan state machine.

States:
  PLANNED → APPROVED → EXECUTED → ROLLED_BACK
No transition returns to PLANNED; ROLLED_BACK is terminal.

Behavioral Contract:
- Every transition re-runs the guardrail policy from current plan fields
- A status change and its audit entry commit in one transaction
- Transitions on one plan are serialized (per-plan lock plus a status
  compare-and-swap); different plans never wait on each other here
- The loser of a race gets InvalidTransition, never a second audit entry
"""

import logging
import threading
import weakref
from datetime import datetime
from typing import List, Optional

from finops_planner.audit.ledger import AuditLedger
from finops_planner.config.settings import PlannerConfig
from finops_planner.errors import (
    GuardrailViolation,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from finops_planner.execution.simulator import ExecutionSimulator
from finops_planner.guardrails.policy import (
    APPROVAL_GUARDRAILS,
    ENV_SCOPE,
    MANDATORY_GUARDRAILS,
    GuardrailPolicy,
)
from finops_planner.models.audit import AuditAction, AuditLogEntry
from finops_planner.models.opportunity import Environment
from finops_planner.models.plan import ActionPlan, PlanStatus
from finops_planner.plans.store import PlanStore

logger = logging.getLogger(__name__)


class PlanLifecycleController:
    """Owns every status change of an ActionPlan after generation."""

    def __init__(
        self,
        plan_store: PlanStore,
        audit_ledger: AuditLedger,
        guardrails: Optional[GuardrailPolicy] = None,
        simulator: Optional[ExecutionSimulator] = None,
        config: Optional[PlannerConfig] = None,
    ):
        if plan_store.db is not audit_ledger.db:
            raise ValueError("plan store and audit ledger must share one database")
        self.config = config or PlannerConfig()
        self.plan_store = plan_store
        self.audit_ledger = audit_ledger
        self.guardrails = guardrails or GuardrailPolicy(self.config)
        self.simulator = simulator or ExecutionSimulator(self.config)

        # Entries vanish once no transition holds them.
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    # --- Queries ---

    def get_plan(self, plan_id: str) -> ActionPlan:
        plan = self.plan_store.get(plan_id)
        if plan is None:
            raise NotFound("Plan", plan_id)
        return plan

    def list_plans(self, status: Optional[PlanStatus] = None) -> List[ActionPlan]:
        return self.plan_store.list(status)

    # --- Transitions ---

    def register(
        self, plan: ActionPlan, requester: str, details: Optional[dict] = None
    ) -> ActionPlan:
        """
        Persist a freshly generated plan together with its PLAN_GENERATED entry.

        The full guardrail policy runs first; a violating plan is never stored.
        """
        _require_actor(requester)
        if plan.status != PlanStatus.PLANNED:
            raise InvalidTransition(
                plan.plan_id, plan.status.value, PlanStatus.PLANNED.value
            )
        plan = plan.model_copy(update={
            "guardrails_checked": self.guardrails.evaluate(plan, MANDATORY_GUARDRAILS),
        })

        with self.plan_store.db.transaction():
            self.plan_store.create(plan)
            self.audit_ledger.append(AuditLogEntry(
                action=AuditAction.PLAN_GENERATED,
                plan_id=plan.plan_id,
                performed_by=requester,
                details=details or {},
            ))

        logger.info(
            "Plan %s generated by %s: %d opportunities, $%.2f/month",
            plan.plan_id, requester, len(plan.top_opportunities),
            plan.est_total_savings_usd_month,
        )
        return plan

    def approve(self, plan_id: str, actor: str) -> ActionPlan:
        """PLANNED → APPROVED."""
        _require_actor(actor)
        with self._plan_lock(plan_id):
            plan = self.get_plan(plan_id)
            self._require_status(plan, PlanStatus.PLANNED, PlanStatus.APPROVED)
            self.guardrails.evaluate(plan, APPROVAL_GUARDRAILS)

            updated = plan.model_copy(update={
                "status": PlanStatus.APPROVED,
                "approved_by": actor,
                "approved_at": datetime.utcnow(),
            })
            self._commit(
                updated,
                expected=PlanStatus.PLANNED,
                action=AuditAction.PLAN_APPROVED,
                actor=actor,
                details={"plan_objective": plan.objective},
            )

        logger.info("Plan %s approved by %s", plan_id, actor)
        return updated

    def execute(self, plan_id: str, actor: str) -> ActionPlan:
        """APPROVED → EXECUTED. Simulation only."""
        _require_actor(actor)
        with self._plan_lock(plan_id):
            plan = self.get_plan(plan_id)
            self._require_status(plan, PlanStatus.APPROVED, PlanStatus.EXECUTED)

            # Hard stop, independent of the policy configuration.
            if plan.env == Environment.PROD:
                logger.warning("Refusing to execute PROD plan %s", plan_id)
                raise GuardrailViolation(
                    ENV_SCOPE, "execution against PROD is never allowed", plan_id=plan_id
                )
            self.guardrails.evaluate(plan, MANDATORY_GUARDRAILS)

            execution_details = self.simulator.simulate(plan)
            updated = plan.model_copy(update={
                "status": PlanStatus.EXECUTED,
                "executed_at": datetime.utcnow(),
                "execution_details": execution_details,
            })
            self._commit(
                updated,
                expected=PlanStatus.APPROVED,
                action=AuditAction.PLAN_EXECUTED,
                actor=actor,
                details=execution_details.model_dump(mode="json"),
            )

        logger.info(
            "Plan %s executed (simulated) by %s: %d resources",
            plan_id, actor, execution_details.resources_affected,
        )
        return updated

    def rollback(self, plan_id: str, actor: str, reason: Optional[str] = None) -> ActionPlan:
        """EXECUTED → ROLLED_BACK. Terminal."""
        _require_actor(actor)
        reason = (reason or "").strip() or "manual rollback"
        with self._plan_lock(plan_id):
            plan = self.get_plan(plan_id)
            self._require_status(plan, PlanStatus.EXECUTED, PlanStatus.ROLLED_BACK)

            updated = plan.model_copy(update={
                "status": PlanStatus.ROLLED_BACK,
                "rolled_back_by": actor,
                "rolled_back_at": datetime.utcnow(),
                "rollback_reason": reason,
            })
            self._commit(
                updated,
                expected=PlanStatus.EXECUTED,
                action=AuditAction.PLAN_ROLLED_BACK,
                actor=actor,
                details={"reason": reason, "rollback_plan": list(plan.rollback_plan)},
            )

        logger.info("Plan %s rolled back by %s: %s", plan_id, actor, reason)
        return updated

    # --- Internals ---

    def _plan_lock(self, plan_id: str) -> threading.Lock:
        """The plan's mutex. Stays registered only while some caller references it."""
        with self._locks_guard:
            lock = self._locks.get(plan_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[plan_id] = lock
            return lock

    def _require_status(
        self, plan: ActionPlan, expected: PlanStatus, attempted: PlanStatus
    ) -> None:
        if plan.status != expected:
            logger.warning(
                "Rejected %s for plan %s: status is %s",
                attempted.value, plan.plan_id, plan.status.value,
            )
            raise InvalidTransition(plan.plan_id, plan.status.value, attempted.value)

    def _commit(
        self,
        updated: ActionPlan,
        expected: PlanStatus,
        action: AuditAction,
        actor: str,
        details: dict,
    ) -> None:
        """Swap the status and append the audit entry atomically."""
        with self.plan_store.db.transaction():
            if not self.plan_store.compare_and_set(updated, expected):
                current = self.plan_store.get(updated.plan_id)
                raise InvalidTransition(
                    updated.plan_id,
                    current.status.value if current else "MISSING",
                    updated.status.value,
                )
            self.audit_ledger.append(AuditLogEntry(
                action=action,
                plan_id=updated.plan_id,
                performed_by=actor,
                details=details,
            ))


def _require_actor(actor: str) -> None:
    if not actor or not actor.strip():
        raise ValidationError("actor identity is required", {"field": "actor"})
