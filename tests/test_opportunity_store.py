"""Tests for the Opportunity Store and filter helpers."""

import pytest

from finops_planner.errors import ValidationError
from finops_planner.models.opportunity import (
    Environment,
    Opportunity,
    OpportunityType,
    RiskLevel,
    Service,
)
from finops_planner.opportunities.store import (
    ALL,
    OpportunityStore,
    filter_label,
    parse_filter,
)


def _make_opportunity(opp_id, savings, env=Environment.DEV, risk=RiskLevel.LOW):
    return Opportunity(
        id=opp_id,
        service=Service.RDS,
        type=OpportunityType.RDS_OFFHOURS,
        resource=f"db-{opp_id}",
        env=env,
        risk=risk,
        est_savings_usd_month=savings,
    )


class TestFilters:
    def test_all_means_no_filter(self):
        assert parse_filter(ALL, Environment, "env") is None
        assert parse_filter(None, Environment, "env") is None

    def test_case_insensitive(self):
        assert parse_filter("test", Environment, "env") == Environment.TEST
        assert parse_filter("High", RiskLevel, "risk") == RiskLevel.HIGH

    def test_unknown_value(self):
        with pytest.raises(ValidationError) as exc:
            parse_filter("STAGING", Environment, "env")
        assert "DEV" in exc.value.details["allowed"]

    def test_label(self):
        assert filter_label(None) == "ALL"
        assert filter_label(Environment.DEV) == "DEV"
        assert filter_label("TEST") == "TEST"


class TestOpportunityStore:
    def setup_method(self):
        self.store = OpportunityStore([
            _make_opportunity("a", 120.0, Environment.DEV, RiskLevel.LOW),
            _make_opportunity("b", 300.0, Environment.TEST, RiskLevel.MEDIUM),
            _make_opportunity("c", 50.0, Environment.PROD, RiskLevel.LOW),
            _make_opportunity("d", 90.0, Environment.DEV, RiskLevel.HIGH),
        ])

    def test_list_sorted_by_savings(self):
        assert [o.id for o in self.store.list_opportunities()] == ["b", "a", "d", "c"]

    def test_list_filtered(self):
        assert [o.id for o in self.store.list_opportunities("DEV")] == ["a", "d"]
        assert [o.id for o in self.store.list_opportunities(ALL, "LOW")] == ["a", "c"]

    def test_total_savings(self):
        assert self.store.total_savings() == 560.0
        assert self.store.total_savings("DEV") == 210.0

    def test_upsert_replaces(self):
        self.store.upsert(_make_opportunity("a", 10.0))
        assert self.store.count() == 4
        assert self.store.get("a").est_savings_usd_month == 10.0

    def test_upsert_many_counts(self):
        added = self.store.upsert_many([_make_opportunity("e", 1.0), _make_opportunity("f", 2.0)])
        assert added == 2
        assert self.store.count() == 6

    def test_get_missing(self):
        assert self.store.get("zzz") is None
