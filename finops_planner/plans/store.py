"""
Plan Store: persistence for Action Plans.

Behavioral Contract:
- Plans are created once and never deleted; history lives in `status`.
- Status changes go through `compare_and_set`, which only succeeds if the
  stored status still matches what the caller read.
"""

import logging
from typing import List, Optional

from finops_planner.errors import ValidationError
from finops_planner.models.plan import ActionPlan, PlanStatus
from finops_planner.storage.database import Database

logger = logging.getLogger(__name__)


class PlanStore:
    """SQLite-backed plan collection."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or Database()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the plans table if it doesn't exist."""
        self.db.execute_script([
            """
            CREATE TABLE IF NOT EXISTS plans (
                plan_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                env TEXT NOT NULL,
                created_at TEXT NOT NULL,
                plan_json TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_plans_status ON plans(status)",
        ])

    def create(self, plan: ActionPlan) -> ActionPlan:
        """Insert a new plan. Fails if the plan_id is already taken."""
        with self.db.transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM plans WHERE plan_id = ?", (plan.plan_id,)
            ).fetchone()
            if existing:
                raise ValidationError(
                    f"Plan id {plan.plan_id} is already in use",
                    {"plan_id": plan.plan_id},
                )
            conn.execute(
                "INSERT INTO plans (plan_id, status, env, created_at, plan_json) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    plan.plan_id,
                    plan.status.value,
                    plan.env.value,
                    plan.created_at.isoformat(timespec="microseconds"),
                    plan.model_dump_json(),
                ),
            )
        return plan

    def compare_and_set(self, plan: ActionPlan, expected_status: PlanStatus) -> bool:
        """
        Replace the stored plan only if its status is still `expected_status`.

        Returns False when another writer moved the plan first.
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE plans SET status = ?, env = ?, plan_json = ? "
                "WHERE plan_id = ? AND status = ?",
                (
                    plan.status.value,
                    plan.env.value,
                    plan.model_dump_json(),
                    plan.plan_id,
                    expected_status.value,
                ),
            )
            swapped = cursor.rowcount == 1
        if not swapped:
            logger.warning(
                "Status swap lost for plan %s (expected %s)",
                plan.plan_id, expected_status.value,
            )
        return swapped

    def get(self, plan_id: str) -> Optional[ActionPlan]:
        """Get a specific plan by id."""
        row = self.db.fetch_one(
            "SELECT plan_json FROM plans WHERE plan_id = ?", (plan_id,)
        )
        return ActionPlan.model_validate_json(row["plan_json"]) if row else None

    def exists(self, plan_id: str) -> bool:
        row = self.db.fetch_one("SELECT 1 FROM plans WHERE plan_id = ?", (plan_id,))
        return row is not None

    def list(self, status: Optional[PlanStatus] = None) -> List[ActionPlan]:
        """All plans, newest first, optionally restricted to one status."""
        if status is not None:
            rows = self.db.fetch_all(
                "SELECT plan_json FROM plans WHERE status = ? "
                "ORDER BY created_at DESC, rowid DESC",
                (status.value,),
            )
        else:
            rows = self.db.fetch_all(
                "SELECT plan_json FROM plans ORDER BY created_at DESC, rowid DESC"
            )
        return [ActionPlan.model_validate_json(r["plan_json"]) for r in rows]

    def count(self) -> int:
        row = self.db.fetch_one("SELECT COUNT(*) AS cnt FROM plans")
        return row["cnt"]
