"""
Planner configuration.

Defaults match the planning policy: five resources per plan, change window
19:00-07:00. Every field can be overridden through FINOPS_* environment
variables (pydantic-settings), e.g. FINOPS_RECOMMENDATION_TIMEOUT_SECONDS=10.
"""

import logging
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from finops_planner.models.opportunity import Environment


class PlannerConfig(BaseSettings):
    """Configuration for plan generation, lifecycle and agents."""

    # Blast radius. May be lowered, never raised above five.
    max_resources: int = Field(default=5, ge=1, le=5)
    execution_window: str = "19:00-07:00"
    execution_window_label: str = "19:00-07:00 UTC"
    scheduler_cron: str = "cron(0 19 ? * MON-FRI *)"
    scheduler_rule_prefix: str = "finops-offhours"
    default_plan_env: Environment = Environment.DEV

    recommendation_timeout_seconds: float = Field(default=30.0, gt=0)
    recommendation_max_workers: int = Field(default=4, ge=1)
    default_actor: str = "api_user"
    database_path: str = ":memory:"

    agent_heartbeat_seconds: int = Field(default=60, ge=1)
    agent_schedules: Dict[str, Optional[str]] = {}   # agent id -> cron override

    log_level: str = "INFO"

    model_config = {"env_prefix": "FINOPS_"}

    @field_validator("default_plan_env")
    @classmethod
    def validate_default_plan_env(cls, v: Environment) -> Environment:
        if v == Environment.PROD:
            raise ValueError("default_plan_env cannot be PROD")
        return v


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler for application entrypoints. Library code never calls this."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
