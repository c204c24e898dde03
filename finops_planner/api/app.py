"""
FinOps Planner API: FastAPI endpoints.

Exposes the kernel's functionality via a REST API for:
- Opportunity ingestion and listing
- Plan generation and lifecycle (approve / execute / rollback)
- Audit log queries and integrity checks
- Agent control (toggle / run)

The caller's identity comes from the X-User-Email header (set by the
authenticating proxy); requests without it act as `default_actor`.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from finops_planner.agents.orchestrator import AgentOrchestrator
from finops_planner.audit.ledger import AuditLedger
from finops_planner.config.settings import PlannerConfig, configure_logging
from finops_planner.errors import (
    AgentDisabled,
    AlreadyRunning,
    FinOpsError,
    GuardrailViolation,
    InvalidTransition,
    NotFound,
    UpstreamFailure,
    UpstreamTimeout,
    ValidationError,
)
from finops_planner.execution.simulator import ExecutionSimulator
from finops_planner.guardrails.policy import GuardrailPolicy
from finops_planner.lifecycle.controller import PlanLifecycleController
from finops_planner.models.audit import AuditAction
from finops_planner.models.opportunity import Opportunity
from finops_planner.models.plan import PlanStatus
from finops_planner.opportunities.store import OpportunityStore
from finops_planner.planning.generator import PlanGenerator
from finops_planner.planning.recommendations import RecommendationGenerator
from finops_planner.plans.store import PlanStore
from finops_planner.storage.database import Database

logger = logging.getLogger(__name__)


# --- Request/Response Models ---

class OpportunityIngestRequest(BaseModel):
    opportunities: List[Opportunity]


class GeneratePlanRequest(BaseModel):
    env_filter: str = "ALL"
    risk_filter: str = "ALL"
    plan_id: Optional[str] = None     # Client-supplied candidate id


class RollbackRequest(BaseModel):
    reason: Optional[str] = None


# --- Error Mapping ---

_STATUS_CODES = {
    NotFound: 404,
    ValidationError: 422,
    GuardrailViolation: 409,
    InvalidTransition: 409,
    AgentDisabled: 409,
    AlreadyRunning: 409,
    UpstreamTimeout: 504,
    UpstreamFailure: 502,
}


def _status_code_for(exc: FinOpsError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 500


# --- Application Factory ---

def create_app(
    config: Optional[PlannerConfig] = None,
    opportunity_store: Optional[OpportunityStore] = None,
    database: Optional[Database] = None,
    recommendation_generator: Optional[RecommendationGenerator] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize components
    cfg = config or PlannerConfig()
    db = database or Database(cfg.database_path)
    opportunities = opportunity_store or OpportunityStore()
    plans = PlanStore(db)
    ledger = AuditLedger(db)
    guardrails = GuardrailPolicy(cfg)
    generator = PlanGenerator(
        plan_store=plans,
        guardrails=guardrails,
        recommendation_generator=recommendation_generator,
        config=cfg,
    )
    lifecycle = PlanLifecycleController(
        plan_store=plans,
        audit_ledger=ledger,
        guardrails=guardrails,
        simulator=ExecutionSimulator(cfg),
        config=cfg,
    )
    orchestrator = AgentOrchestrator(
        opportunity_store=opportunities,
        plan_generator=generator,
        lifecycle=lifecycle,
        config=cfg,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        generator.close()
        logger.info("Plan generator shut down")

    app = FastAPI(
        title="FinOps Planner API",
        description="Guardrail-checked cost optimization plans with an audited lifecycle",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.config = cfg
    app.state.opportunity_store = opportunities
    app.state.plan_store = plans
    app.state.audit_ledger = ledger
    app.state.plan_generator = generator
    app.state.lifecycle = lifecycle
    app.state.orchestrator = orchestrator

    @app.exception_handler(FinOpsError)
    async def handle_finops_error(request: Request, exc: FinOpsError):
        return JSONResponse(
            status_code=_status_code_for(exc),
            content={
                "error": type(exc).__name__,
                "message": exc.message,
                "details": exc.details,
            },
        )

    def current_user(x_user_email: Optional[str] = Header(default=None)) -> str:
        return (x_user_email or "").strip() or cfg.default_actor

    # === OPPORTUNITIES ===

    @app.post("/opportunities")
    def ingest_opportunities(req: OpportunityIngestRequest):
        """Load discovered opportunities."""
        count = opportunities.upsert_many(req.opportunities)
        return {"status": "ingested", "count": count}

    @app.get("/opportunities")
    def list_opportunities(env: str = "ALL", risk: str = "ALL"):
        """Filtered opportunities, highest savings first."""
        items = opportunities.list_opportunities(env, risk)
        return {
            "opportunities": [o.model_dump(mode="json") for o in items],
            "count": len(items),
            "total_savings_usd_month": sum(o.est_savings_usd_month for o in items),
        }

    # === PLANS ===

    @app.post("/plans/generate")
    def generate_plan(req: GeneratePlanRequest, user: str = Depends(current_user)):
        """Generate a plan from the current opportunities."""
        plan = generator.build_plan(
            opportunities.list_opportunities(req.env_filter, req.risk_filter),
            env_filter=req.env_filter,
            risk_filter=req.risk_filter,
            requester=user,
            plan_id=req.plan_id,
        )
        plan = lifecycle.register(
            plan, user, details=generator.audit_details(plan, req.env_filter, req.risk_filter)
        )
        return plan.model_dump(mode="json")

    @app.get("/plans")
    def list_plans(status: Optional[PlanStatus] = None):
        """All plans, newest first."""
        return [p.model_dump(mode="json") for p in lifecycle.list_plans(status)]

    @app.get("/plans/{plan_id}")
    def get_plan(plan_id: str):
        return lifecycle.get_plan(plan_id).model_dump(mode="json")

    @app.post("/plans/{plan_id}/approve")
    def approve_plan(plan_id: str, user: str = Depends(current_user)):
        return lifecycle.approve(plan_id, user).model_dump(mode="json")

    @app.post("/plans/{plan_id}/execute")
    def execute_plan(plan_id: str, user: str = Depends(current_user)):
        """Simulated execution. No infrastructure is changed."""
        return lifecycle.execute(plan_id, user).model_dump(mode="json")

    @app.post("/plans/{plan_id}/rollback")
    def rollback_plan(
        plan_id: str,
        req: Optional[RollbackRequest] = None,
        user: str = Depends(current_user),
    ):
        reason = req.reason if req else None
        return lifecycle.rollback(plan_id, user, reason).model_dump(mode="json")

    # === AUDIT ===

    @app.get("/audit")
    def list_audit_log(
        plan_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        order: str = "desc",
        limit: Optional[int] = 100,
    ):
        """Audit entries, newest first by default."""
        entries = ledger.list(plan_id=plan_id, action=action, order=order, limit=limit)
        return [e.model_dump(mode="json") for e in entries]

    @app.get("/audit/verify")
    def verify_audit_log():
        """Verify chain integrity."""
        return {
            "integrity_valid": ledger.verify_chain_integrity(),
            "total_records": ledger.count(),
        }

    # === GUARDRAILS ===

    @app.get("/guardrails")
    def list_guardrails():
        return guardrails.describe()

    # === AGENTS ===

    @app.get("/agents")
    def list_agents():
        """Descriptor and run state for every agent."""
        return {
            "agents": orchestrator.status(),
            "heartbeat": orchestrator.heartbeat_status,
        }

    @app.post("/agents/{agent_id}/toggle")
    def toggle_agent(agent_id: str):
        return orchestrator.toggle(agent_id).model_dump(mode="json")

    @app.post("/agents/{agent_id}/run")
    def run_agent(agent_id: str, user: str = Depends(current_user)):
        return orchestrator.run(agent_id, user).model_dump(mode="json")

    # === CONFIG ===

    @app.get("/config")
    def get_config():
        """Effective planner configuration."""
        return cfg.model_dump(mode="json")

    return app


def _default_app() -> FastAPI:
    cfg = PlannerConfig()
    configure_logging(cfg.log_level)
    return create_app(cfg)


# Default application instance
app = _default_app()
