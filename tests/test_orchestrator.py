"""Tests for the Agent Orchestrator."""

import asyncio
import threading
from datetime import datetime

import pytest

from finops_planner.agents.orchestrator import (
    DEFAULT_AGENTS,
    AgentOrchestrator,
    build_agent_registry,
)
from finops_planner.audit.ledger import AuditLedger
from finops_planner.config.settings import PlannerConfig
from finops_planner.errors import (
    AgentDisabled,
    AlreadyRunning,
    NoOpportunitiesAvailable,
    NotFound,
    StorageError,
)
from finops_planner.lifecycle.controller import PlanLifecycleController
from finops_planner.models.agent import AgentRunStatus
from finops_planner.models.audit import AuditAction
from finops_planner.models.opportunity import (
    Environment,
    Opportunity,
    OpportunityType,
    RiskLevel,
    Service,
)
from finops_planner.opportunities.store import OpportunityStore
from finops_planner.planning.generator import PlanGenerator
from finops_planner.plans.store import PlanStore
from finops_planner.storage.database import Database

STARTED = datetime(2025, 1, 15, 0, 0)


def _make_opportunity(opp_id: str, savings: float, env=Environment.DEV) -> Opportunity:
    return Opportunity(
        id=opp_id,
        service=Service.EC2,
        type=OpportunityType.EC2_OFFHOURS,
        resource=f"i-{opp_id}",
        env=env,
        risk=RiskLevel.LOW,
        est_savings_usd_month=savings,
    )


class GatedGenerator:
    """Blocks inside generate() until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def generate(self, opportunities):
        self.entered.set()
        self.release.wait(timeout=5)
        return {"objective": "Gated plan", "steps": ["Stop in window"], "rollback": ["Start"]}


def _make_orchestrator(
    opportunities=None,
    recommender=None,
    config=None,
    started_at=STARTED,
):
    config = config or PlannerConfig()
    db = Database()
    plans = PlanStore(db)
    ledger = AuditLedger(db)
    store = OpportunityStore(opportunities)
    generator = PlanGenerator(plans, recommendation_generator=recommender, config=config)
    lifecycle = PlanLifecycleController(plans, ledger, config=config)
    orchestrator = AgentOrchestrator(
        store, generator, lifecycle, config=config, started_at=started_at
    )
    return orchestrator, plans, ledger


class TestAgentRegistry:
    def test_fixed_agent_set(self):
        assert [d.id for d in build_agent_registry()] == [
            "opportunity_discoverer",
            "plan_optimizer",
            "execution_monitor",
            "finops_assistant",
        ]

    def test_default_schedules(self):
        crons = {d.id: d.cron for d in DEFAULT_AGENTS}
        assert crons == {
            "opportunity_discoverer": "0 2 * * *",
            "plan_optimizer": "0 3 * * *",
            "execution_monitor": "0 */4 * * *",
            "finops_assistant": None,
        }

    def test_schedule_override(self):
        registry = build_agent_registry(
            PlannerConfig(agent_schedules={"finops_assistant": "0 9 * * *"})
        )
        assert registry[3].cron == "0 9 * * *"
        assert DEFAULT_AGENTS[3].cron is None

    def test_invalid_cron_rejected(self):
        with pytest.raises(ValueError):
            build_agent_registry(PlannerConfig(agent_schedules={"plan_optimizer": "not a cron"}))

    def test_unknown_agent_override_rejected(self):
        with pytest.raises(ValueError):
            build_agent_registry(PlannerConfig(agent_schedules={"cost_oracle": "0 1 * * *"}))


class TestAgentRuns:
    def setup_method(self):
        self.orchestrator, self.plans, self.ledger = _make_orchestrator([
            _make_opportunity("a", 120.0),
            _make_opportunity("b", 300.0, Environment.TEST),
            _make_opportunity("c", 50.0, Environment.PROD),
        ])

    def test_initial_state(self):
        state = self.orchestrator.get_state("plan_optimizer")
        assert state.enabled is True
        assert state.running is False
        assert state.run_count == 0

    def test_plan_generation_run(self):
        result = self.orchestrator.run("plan_optimizer", "alice@example.com")
        assert result.status == AgentRunStatus.SUCCEEDED
        assert result.plan_id is not None

        plan = self.plans.get(result.plan_id)
        assert plan.created_by == "alice@example.com"
        assert [o.id for o in plan.top_opportunities] == ["b", "a"]

        entries = list(self.ledger.list(plan_id=result.plan_id))
        assert len(entries) == 1
        assert entries[0].action == AuditAction.PLAN_GENERATED
        assert entries[0].details["agent"] == "plan_optimizer"
        assert entries[0].details["auto_generated"] is True

        state = self.orchestrator.get_state("plan_optimizer")
        assert state.run_count == 1
        assert state.last_status == AgentRunStatus.SUCCEEDED
        assert state.last_run_at is not None
        assert state.running is False

    def test_discoverer_also_generates(self):
        result = self.orchestrator.run("opportunity_discoverer", "alice@example.com")
        assert self.plans.exists(result.plan_id)

    def test_no_op_agent(self):
        result = self.orchestrator.run("execution_monitor", "alice@example.com")
        assert result.plan_id is None
        assert "nominal" in result.message
        assert self.plans.count() == 0
        assert self.ledger.count() == 0

    def test_unknown_agent(self):
        with pytest.raises(NotFound):
            self.orchestrator.run("cost_oracle", "alice@example.com")
        with pytest.raises(NotFound):
            self.orchestrator.toggle("cost_oracle")

    def test_toggle(self):
        assert self.orchestrator.toggle("plan_optimizer").enabled is False
        assert self.orchestrator.toggle("plan_optimizer").enabled is True

    def test_disabled_agent_has_no_side_effects(self):
        self.orchestrator.toggle("plan_optimizer")
        with pytest.raises(AgentDisabled):
            self.orchestrator.run("plan_optimizer", "alice@example.com")
        state = self.orchestrator.get_state("plan_optimizer")
        assert state.run_count == 0
        assert state.running is False
        assert self.plans.count() == 0
        assert self.ledger.count() == 0

    def test_failure_clears_running(self):
        orchestrator, plans, _ = _make_orchestrator([_make_opportunity("p", 10.0, Environment.PROD)])
        with pytest.raises(NoOpportunitiesAvailable):
            orchestrator.run("plan_optimizer", "alice@example.com")
        state = orchestrator.get_state("plan_optimizer")
        assert state.running is False
        assert state.last_status == AgentRunStatus.FAILED
        assert state.last_error
        assert plans.count() == 0

        # The lock was released, so a later run is not reported as concurrent.
        with pytest.raises(NoOpportunitiesAvailable):
            orchestrator.run("plan_optimizer", "alice@example.com")
        assert orchestrator.get_state("plan_optimizer").run_count == 2

    def test_status_merges_descriptor_and_state(self):
        rows = self.orchestrator.status()
        assert len(rows) == 4
        assert rows[0]["id"] == "opportunity_discoverer"
        assert rows[0]["cron"] == "0 2 * * *"
        assert rows[0]["enabled"] is True
        assert rows[0]["running"] is False


class TestConcurrentRuns:
    def test_second_run_rejected_while_first_in_flight(self):
        recommender = GatedGenerator()
        orchestrator, plans, _ = _make_orchestrator(
            [_make_opportunity("a", 100.0)], recommender=recommender
        )
        results = []
        worker = threading.Thread(
            target=lambda: results.append(orchestrator.run("plan_optimizer", "alice@example.com"))
        )
        worker.start()
        try:
            assert recommender.entered.wait(timeout=5)
            assert orchestrator.get_state("plan_optimizer").running is True

            with pytest.raises(AlreadyRunning):
                orchestrator.run("plan_optimizer", "bob@example.com")

            # Other agents are not blocked.
            orchestrator.run("execution_monitor", "bob@example.com")
        finally:
            recommender.release.set()
            worker.join(timeout=5)

        assert len(results) == 1
        assert results[0].status == AgentRunStatus.SUCCEEDED
        assert plans.count() == 1
        state = orchestrator.get_state("plan_optimizer")
        assert state.running is False
        assert state.run_count == 1


class TestScheduling:
    def setup_method(self):
        self.orchestrator, self.plans, _ = _make_orchestrator([_make_opportunity("a", 100.0)])

    def test_next_run_at(self):
        assert self.orchestrator.next_run_at("opportunity_discoverer") == datetime(2025, 1, 15, 2, 0)
        assert self.orchestrator.next_run_at("execution_monitor") == datetime(2025, 1, 15, 4, 0)
        assert self.orchestrator.next_run_at("finops_assistant") is None

    def test_due_agents(self):
        due = self.orchestrator.due_agents(datetime(2025, 1, 15, 3, 30))
        assert due == ["opportunity_discoverer", "plan_optimizer"]

    def test_nothing_due_before_first_fire(self):
        assert self.orchestrator.due_agents(datetime(2025, 1, 15, 1, 59)) == []

    def test_disabled_agents_not_due(self):
        self.orchestrator.toggle("plan_optimizer")
        assert self.orchestrator.due_agents(datetime(2025, 1, 15, 3, 30)) == ["opportunity_discoverer"]

    def test_run_due(self):
        results = self.orchestrator.run_due(datetime(2025, 1, 15, 4, 30))
        assert [r.agent_id for r in results] == [
            "opportunity_discoverer", "plan_optimizer", "execution_monitor",
        ]
        assert all(r.status == AgentRunStatus.SUCCEEDED for r in results)
        assert self.plans.count() == 2

    def test_run_due_collects_failures(self):
        orchestrator, _, _ = _make_orchestrator([])
        results = orchestrator.run_due(datetime(2025, 1, 15, 3, 30))
        assert [r.status for r in results] == [AgentRunStatus.FAILED, AgentRunStatus.FAILED]
        assert all(r.message for r in results)

    def test_heartbeat_loop_stops(self):
        orchestrator, _, _ = _make_orchestrator(started_at=None)

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(orchestrator.run_async(stop))
            await asyncio.sleep(0.01)
            assert orchestrator.heartbeat_status == "running"
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert orchestrator.heartbeat_status == "stopped"


class TestStorageFailures:
    def setup_method(self):
        self.orchestrator, self.plans, _ = _make_orchestrator([_make_opportunity("a", 100.0)])
        self.plans.db.close()

    def test_run_raises_storage_error(self):
        with pytest.raises(StorageError):
            self.orchestrator.run("plan_optimizer", "alice@example.com")
        state = self.orchestrator.get_state("plan_optimizer")
        assert state.running is False
        assert state.last_status == AgentRunStatus.FAILED

    def test_run_due_records_storage_failures(self):
        results = self.orchestrator.run_due(datetime(2025, 1, 15, 3, 30))
        assert [r.agent_id for r in results] == ["opportunity_discoverer", "plan_optimizer"]
        assert [r.status for r in results] == [AgentRunStatus.FAILED, AgentRunStatus.FAILED]
        assert all("Storage" in r.message for r in results)

    def test_heartbeat_survives_storage_failures(self):
        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(self.orchestrator.run_async(stop))
            await asyncio.sleep(0.05)
            assert not task.done()
            assert self.orchestrator.heartbeat_status == "running"
            stop.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())
        assert self.orchestrator.heartbeat_status == "stopped"
        assert self.orchestrator.get_state("plan_optimizer").last_status == AgentRunStatus.FAILED
