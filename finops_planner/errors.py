"""
Error taxonomy for the FinOps Planner kernel.

Every failure the kernel raises is a FinOpsError carrying a human-readable
message and a JSON-serializable details dict. The API layer maps each class
to an HTTP status; nothing inside the kernel retries or downgrades them.
"""

from typing import Optional


class FinOpsError(Exception):
    """Base exception for all planner kernel errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FinOpsError):
    """Raised when input is malformed or incomplete."""
    pass


class NoOpportunitiesAvailable(ValidationError):
    """Raised when filtering leaves nothing to build a plan from."""

    def __init__(self, env_filter: str, risk_filter: str):
        super().__init__(
            f"No eligible opportunities for env={env_filter}, risk={risk_filter}",
            {"env_filter": env_filter, "risk_filter": risk_filter},
        )


class InvalidEntry(ValidationError):
    """Raised when an audit entry is missing a required field or is out of order."""
    pass


class GuardrailViolation(FinOpsError):
    """Raised when a named guardrail fails. Never retried automatically."""

    def __init__(self, guardrail: str, detail: str, plan_id: Optional[str] = None):
        super().__init__(
            f"Guardrail {guardrail} violated: {detail}",
            {"guardrail": guardrail, "detail": detail, "plan_id": plan_id},
        )
        self.guardrail = guardrail
        self.detail = detail
        self.plan_id = plan_id


class InvalidTransition(FinOpsError):
    """Raised when a lifecycle precondition is not met, including lost races."""

    def __init__(self, plan_id: str, current: str, attempted: str):
        super().__init__(
            f"Cannot move plan {plan_id} to {attempted}: status is {current}",
            {"plan_id": plan_id, "current": current, "attempted": attempted},
        )
        self.plan_id = plan_id
        self.current = current
        self.attempted = attempted


class AgentDisabled(FinOpsError):
    """Raised when running an agent that is switched off."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} is disabled", {"agent_id": agent_id})
        self.agent_id = agent_id


class AlreadyRunning(FinOpsError):
    """Raised when an agent already has a run in flight."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} is already running", {"agent_id": agent_id})
        self.agent_id = agent_id


class UpstreamFailure(FinOpsError):
    """Raised when an external dependency (generator, storage) fails."""
    pass


class UpstreamTimeout(UpstreamFailure):
    """Raised when an external dependency does not answer in time."""
    pass


class RecommendationGenerationFailed(UpstreamFailure):
    """Raised when the recommendation generator fails or returns a malformed candidate."""
    pass


class StorageError(UpstreamFailure):
    """Raised when the plan/audit database cannot be read or written."""
    pass


class NotFound(FinOpsError):
    """Raised for unknown plan or agent ids."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} {identifier} not found", {"kind": kind, "id": identifier})
        self.kind = kind
        self.identifier = identifier
