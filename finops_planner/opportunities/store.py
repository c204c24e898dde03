"""
Opportunity Store: read view over externally discovered opportunities.

Updated by: the external discovery process (ingestion)
Queried by: Plan Generator + Agent Orchestrator
"""

import logging
import threading
from enum import Enum
from typing import Dict, Iterable, List, Optional, Type, TypeVar

from finops_planner.errors import ValidationError
from finops_planner.models.opportunity import Environment, Opportunity, RiskLevel

logger = logging.getLogger(__name__)

ALL = "ALL"

E = TypeVar("E", bound=Enum)


def parse_filter(value: Optional[str], enum_cls: Type[E], label: str) -> Optional[E]:
    """Turn a filter string into an enum member. "ALL" (or None) means no filter."""
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().upper()
    if normalized == ALL:
        return None
    try:
        return enum_cls(normalized)
    except ValueError:
        allowed = [ALL] + [m.value for m in enum_cls]
        raise ValidationError(
            f"Unknown {label} filter: {value}",
            {"filter": label, "value": str(value), "allowed": allowed},
        )


def filter_label(value: Optional[object]) -> str:
    """Printable form of a filter value (enum members print their value)."""
    if value is None:
        return ALL
    if isinstance(value, Enum):
        return value.value
    return str(value)


def filter_opportunities(
    opportunities: Iterable[Opportunity],
    env_filter: Optional[str] = ALL,
    risk_filter: Optional[str] = ALL,
) -> List[Opportunity]:
    """Apply env/risk filters, keeping input order."""
    env = parse_filter(env_filter, Environment, "env")
    risk = parse_filter(risk_filter, RiskLevel, "risk")
    return [
        o for o in opportunities
        if (env is None or o.env == env) and (risk is None or o.risk == risk)
    ]


class OpportunityStore:
    """
    In-memory opportunity collection for the prototype.
    Production would read from the discovery process's document store.
    """

    def __init__(self, opportunities: Optional[Iterable[Opportunity]] = None):
        self._opportunities: Dict[str, Opportunity] = {}
        self._lock = threading.Lock()
        if opportunities:
            self.upsert_many(opportunities)

    def upsert(self, opportunity: Opportunity) -> None:
        """Insert or replace an opportunity (keeps first-seen position)."""
        with self._lock:
            self._opportunities[opportunity.id] = opportunity

    def upsert_many(self, opportunities: Iterable[Opportunity]) -> int:
        count = 0
        for opportunity in opportunities:
            self.upsert(opportunity)
            count += 1
        logger.info("Ingested %d opportunities", count)
        return count

    def get(self, opportunity_id: str) -> Optional[Opportunity]:
        """Get a specific opportunity by id."""
        return self._opportunities.get(opportunity_id)

    def list_opportunities(
        self,
        env_filter: Optional[str] = ALL,
        risk_filter: Optional[str] = ALL,
    ) -> List[Opportunity]:
        """Filtered opportunities, highest savings first (stable on ties)."""
        with self._lock:
            snapshot = list(self._opportunities.values())
        matched = filter_opportunities(snapshot, env_filter, risk_filter)
        return sorted(matched, key=lambda o: o.est_savings_usd_month, reverse=True)

    def total_savings(
        self,
        env_filter: Optional[str] = ALL,
        risk_filter: Optional[str] = ALL,
    ) -> float:
        """Monthly savings across the filtered opportunities."""
        return sum(
            o.est_savings_usd_month
            for o in self.list_opportunities(env_filter, risk_filter)
        )

    def count(self) -> int:
        return len(self._opportunities)
