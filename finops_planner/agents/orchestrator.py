"""
Agent Orchestrator: the fixed set of named background agents.

Agents:
  opportunity_discoverer, plan_optimizer  → generate a plan from the store
  execution_monitor, finops_assistant     → placeholder units of work

Behavioral Contract:
- The registry is closed: exactly the four descriptors below
- At most one run per agent id is in flight; the check-and-set is a
  single non-blocking lock acquire, one lock per agent
- `running` is cleared when a run ends, whether it succeeded or failed
- Plans are recorded through the lifecycle controller, never written directly
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from croniter import croniter

from finops_planner.config.settings import PlannerConfig
from finops_planner.errors import AgentDisabled, AlreadyRunning, FinOpsError, NotFound
from finops_planner.lifecycle.controller import PlanLifecycleController
from finops_planner.models.agent import (
    AgentDescriptor,
    AgentKind,
    AgentRunResult,
    AgentRunState,
    AgentRunStatus,
)
from finops_planner.opportunities.store import ALL, OpportunityStore
from finops_planner.planning.generator import PlanGenerator

logger = logging.getLogger(__name__)

DEFAULT_AGENTS = (
    AgentDescriptor(
        id="opportunity_discoverer",
        name="Opportunity Discoverer",
        description="Scans resources and turns new opportunities into a plan",
        schedule="Daily at 02:00 UTC",
        cron="0 2 * * *",
        kind=AgentKind.PLAN_GENERATION,
    ),
    AgentDescriptor(
        id="plan_optimizer",
        name="Plan Optimizer",
        description="Generates optimized action plans from opportunities",
        schedule="Daily at 03:00 UTC",
        cron="0 3 * * *",
        kind=AgentKind.PLAN_GENERATION,
    ),
    AgentDescriptor(
        id="execution_monitor",
        name="Execution Monitor",
        description="Monitors plan execution and tracks results",
        schedule="Every 4 hours",
        cron="0 */4 * * *",
        kind=AgentKind.NO_OP,
    ),
    AgentDescriptor(
        id="finops_assistant",
        name="FinOps Assistant",
        description="Interactive chat assistant for user guidance",
        schedule="On-demand",
        cron=None,
        kind=AgentKind.NO_OP,
    ),
)


def build_agent_registry(config: Optional[PlannerConfig] = None) -> List[AgentDescriptor]:
    """The fixed descriptor list, with cron overrides from config applied."""
    overrides = (config or PlannerConfig()).agent_schedules
    unknown = set(overrides) - {d.id for d in DEFAULT_AGENTS}
    if unknown:
        raise ValueError(f"Schedule overrides for unknown agents: {sorted(unknown)}")

    registry = []
    for descriptor in DEFAULT_AGENTS:
        if descriptor.id in overrides:
            cron = overrides[descriptor.id]
            if cron is not None and not croniter.is_valid(cron):
                raise ValueError(f"Invalid cron for {descriptor.id}: {cron}")
            descriptor = descriptor.model_copy(update={"cron": cron})
        registry.append(descriptor)
    return registry


class AgentOrchestrator:
    """Toggles, runs and schedules the named agents."""

    def __init__(
        self,
        opportunity_store: OpportunityStore,
        plan_generator: PlanGenerator,
        lifecycle: PlanLifecycleController,
        config: Optional[PlannerConfig] = None,
        started_at: Optional[datetime] = None,
    ):
        self.config = config or PlannerConfig()
        self.opportunity_store = opportunity_store
        self.plan_generator = plan_generator
        self.lifecycle = lifecycle
        self.started_at = started_at or datetime.utcnow()

        self._descriptors: Dict[str, AgentDescriptor] = {
            d.id: d for d in build_agent_registry(self.config)
        }
        self._states: Dict[str, AgentRunState] = {
            agent_id: AgentRunState(agent_id=agent_id) for agent_id in self._descriptors
        }
        self._run_locks: Dict[str, threading.Lock] = {
            agent_id: threading.Lock() for agent_id in self._descriptors
        }
        self._state_locks: Dict[str, threading.Lock] = {
            agent_id: threading.Lock() for agent_id in self._descriptors
        }
        self._heartbeat_running = False

    @property
    def descriptors(self) -> List[AgentDescriptor]:
        return list(self._descriptors.values())

    def get_state(self, agent_id: str) -> AgentRunState:
        self._descriptor(agent_id)
        with self._state_locks[agent_id]:
            return self._states[agent_id].model_copy()

    def status(self) -> List[dict]:
        """Descriptor plus current run state for every agent."""
        return [
            {
                **descriptor.model_dump(mode="json"),
                **self.get_state(descriptor.id).model_dump(mode="json"),
            }
            for descriptor in self._descriptors.values()
        ]

    def toggle(self, agent_id: str) -> AgentRunState:
        """Flip `enabled`. An in-flight run is unaffected."""
        self._descriptor(agent_id)
        with self._state_locks[agent_id]:
            state = self._states[agent_id]
            state.enabled = not state.enabled
            snapshot = state.model_copy()
        logger.info("Agent %s %s", agent_id, "enabled" if snapshot.enabled else "disabled")
        return snapshot

    def run(self, agent_id: str, requester: str) -> AgentRunResult:
        """
        Run one agent's unit of work now.

        Raises NotFound, AgentDisabled or AlreadyRunning before any work
        starts; failures of the work itself propagate after run state is
        recorded.
        """
        descriptor = self._descriptor(agent_id)
        if not self.get_state(agent_id).enabled:
            raise AgentDisabled(agent_id)

        run_lock = self._run_locks[agent_id]
        if not run_lock.acquire(blocking=False):
            raise AlreadyRunning(agent_id)

        started_at = datetime.utcnow()
        try:
            self._update_state(agent_id, running=True)
            logger.info("Agent %s started by %s", agent_id, requester)
            plan_id, message = self._perform(descriptor, requester)
        except Exception as e:
            if isinstance(e, FinOpsError):
                logger.warning("Agent %s failed: %s", agent_id, e.message)
            else:
                logger.exception("Agent %s failed unexpectedly", agent_id)
            self._finish(agent_id, started_at, AgentRunStatus.FAILED, error=str(e))
            raise
        else:
            self._finish(agent_id, started_at, AgentRunStatus.SUCCEEDED)
        finally:
            self._update_state(agent_id, running=False)
            run_lock.release()

        logger.info("Agent %s finished: %s", agent_id, message)
        return AgentRunResult(
            agent_id=agent_id,
            status=AgentRunStatus.SUCCEEDED,
            started_at=started_at,
            finished_at=datetime.utcnow(),
            plan_id=plan_id,
            message=message,
        )

    # --- Scheduling ---

    def next_run_at(self, agent_id: str) -> Optional[datetime]:
        """Next scheduled fire time after the last run (or process start)."""
        descriptor = self._descriptor(agent_id)
        if descriptor.cron is None:
            return None
        base = self.get_state(agent_id).last_run_at or self.started_at
        return croniter(descriptor.cron, base).get_next(datetime)

    def due_agents(self, now: Optional[datetime] = None) -> List[str]:
        """Enabled, scheduled agents whose next fire time has passed."""
        now = now or datetime.utcnow()
        due = []
        for agent_id in self._descriptors:
            if not self.get_state(agent_id).enabled:
                continue
            next_fire = self.next_run_at(agent_id)
            if next_fire is not None and next_fire <= now:
                due.append(agent_id)
        return due

    def run_due(
        self, now: Optional[datetime] = None, requester: str = "scheduler"
    ) -> List[AgentRunResult]:
        """Run every due agent. One agent's failure does not stop the others."""
        now = now or datetime.utcnow()
        results = []
        for agent_id in self.due_agents(now):
            try:
                results.append(self.run(agent_id, requester))
            except FinOpsError as e:
                results.append(AgentRunResult(
                    agent_id=agent_id,
                    status=AgentRunStatus.FAILED,
                    started_at=now,
                    finished_at=datetime.utcnow(),
                    message=e.message,
                ))
        return results

    async def run_async(
        self,
        stop_event: Optional[asyncio.Event] = None,
        requester: str = "scheduler",
    ) -> None:
        """Heartbeat loop that runs due agents until `stop_event` is set."""
        self._heartbeat_running = True
        if stop_event is None:
            stop_event = asyncio.Event()

        try:
            while not stop_event.is_set():
                self.run_due(requester=requester)
                try:
                    await asyncio.wait_for(
                        stop_event.wait(),
                        timeout=self.config.agent_heartbeat_seconds,
                    )
                except asyncio.TimeoutError:
                    continue
        finally:
            self._heartbeat_running = False

    @property
    def heartbeat_status(self) -> str:
        return "running" if self._heartbeat_running else "stopped"

    # --- Units of work ---

    def _perform(self, descriptor: AgentDescriptor, requester: str):
        if descriptor.kind == AgentKind.PLAN_GENERATION:
            return self._generate_plan(descriptor, requester)
        return None, f"{descriptor.name} completed - all systems nominal"

    def _generate_plan(self, descriptor: AgentDescriptor, requester: str):
        opportunities = self.opportunity_store.list_opportunities(ALL, ALL)
        plan = self.plan_generator.build_plan(
            opportunities, ALL, ALL, requester=requester
        )
        self.lifecycle.register(
            plan,
            requester,
            details=self.plan_generator.audit_details(
                plan, ALL, ALL, agent=descriptor.id, auto_generated=True
            ),
        )
        return plan.plan_id, (
            f"Plan {plan.plan_id} generated from "
            f"{len(plan.top_opportunities)} opportunities"
        )

    # --- Internals ---

    def _descriptor(self, agent_id: str) -> AgentDescriptor:
        descriptor = self._descriptors.get(agent_id)
        if descriptor is None:
            raise NotFound("Agent", agent_id)
        return descriptor

    def _update_state(self, agent_id: str, **changes) -> None:
        with self._state_locks[agent_id]:
            state = self._states[agent_id]
            for field, value in changes.items():
                setattr(state, field, value)

    def _finish(
        self,
        agent_id: str,
        started_at: datetime,
        status: AgentRunStatus,
        error: Optional[str] = None,
    ) -> None:
        with self._state_locks[agent_id]:
            state = self._states[agent_id]
            state.run_count += 1
            state.last_run_at = started_at
            state.last_status = status
            state.last_error = error
