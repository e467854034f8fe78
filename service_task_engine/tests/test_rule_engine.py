"""
Unit tests for the rule catalog and rule engine.
"""

import json

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import NotFoundError, ValidationError
from shared.metrics import MetricsCollector
from shared.test_helpers import TestDataFactory
from service_task_engine.app.rules.catalog import RuleCatalog, default_catalog, load_catalog_file
from service_task_engine.app.rules.engine import RuleEngine
from service_task_engine.app.rules.models import DetectionRule, RuleCondition, Severity
from service_task_engine.app.rules.templates import render


def make_rule(rule_id, priority=0, conditions=None, **overrides):
    data = {
        "rule_id": rule_id,
        "name": rule_id,
        "entity_types": ["transaction"],
        "conditions": conditions if conditions is not None else [
            {"field": "flag", "operator": "eq", "value": True}
        ],
        "grey_area_type": "risk-identified",
        "severity": "medium",
        "title_template": f"{rule_id}: {{{{flag}}}}",
        "priority": priority,
    }
    data.update(overrides)
    return DetectionRule.from_dict(data)


class TestRuleCatalog:
    """Test cases for RuleCatalog."""

    def test_default_catalog_contents(self):
        catalog = default_catalog()

        assert catalog.version == 1
        assert len(catalog) == 20
        rule = catalog.get("fin_large_transaction")
        assert rule.severity is Severity.HIGH
        assert rule.conditions[0].value == 10_000_000
        assert rule.assign_to_roles == ("finance-manager", "cfo")

    def test_duplicate_rule_ids_rejected(self):
        with pytest.raises(ValidationError):
            RuleCatalog([make_rule("a"), make_rule("a")])

    def test_with_rule_enabled_returns_new_version(self):
        catalog = RuleCatalog([make_rule("a"), make_rule("b")], version=4)
        updated = catalog.with_rule_enabled("a", False)

        assert updated.version == 5
        assert updated.get("a").enabled is False
        assert catalog.get("a").enabled is True
        assert [r.rule_id for r in updated.enabled_rules()] == ["b"]

    def test_with_rule_enabled_unknown_rule(self):
        with pytest.raises(NotFoundError):
            default_catalog().with_rule_enabled("nope", True)

    def test_with_rule_appends_and_replaces(self):
        catalog = RuleCatalog([make_rule("a")])
        appended = catalog.with_rule(make_rule("b"))
        replaced = appended.with_rule(make_rule("a", priority=9))

        assert [r.rule_id for r in appended] == ["a", "b"]
        assert replaced.get("a").priority == 9
        assert replaced.version == 3

    def test_queries(self):
        catalog = default_catalog()

        assert all("employee" in r.entity_types for r in catalog.for_entity_type("employee"))
        assert all(r.severity is Severity.CRITICAL for r in catalog.by_severity("critical"))
        assert {r.grey_area_type for r in catalog.by_grey_area_type("approval-required")} == {"approval-required"}
        stats = catalog.stats()
        assert stats["total"] == 20
        assert stats["enabled"] == 20

    def test_from_dicts_skips_malformed_entries(self):
        metrics = MetricsCollector("task-engine-test")
        good = make_rule("good").to_dict()
        entries = [
            {**make_rule("bad_logic").to_dict(), "condition_logic": "xor"},
            {**make_rule("bad_severity").to_dict(), "severity": "extreme"},
            {**make_rule("bad_field").to_dict(), "conditions": [{"field": 5, "operator": "eq", "value": 1}]},
            {"name": "no id"},
            good,
        ]

        catalog = RuleCatalog.from_dicts(entries, version=3, metrics=metrics)

        assert [r.rule_id for r in catalog] == ["good"]
        assert catalog.version == 3
        assert metrics.sample("rules_skipped_total", rule_id="bad_logic") == 1.0
        assert metrics.sample("rules_skipped_total", rule_id="bad_field") == 1.0
        assert metrics.sample("rules_skipped_total", rule_id="#3") == 1.0

    def test_condition_field_must_be_a_path(self):
        with pytest.raises(ValueError):
            RuleCondition.from_dict({"field": 5, "operator": "eq", "value": 1})
        with pytest.raises(ValueError):
            RuleCondition.from_dict({"field": "", "operator": "eq", "value": 1})

    def test_load_catalog_file_rejects_non_list(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"rules": {"id": "x"}}))

        with pytest.raises(ValidationError):
            load_catalog_file(path)

    def test_dict_round_trip_accepts_camel_case(self):
        rule = default_catalog().get("hr_leave_conflict")
        assert DetectionRule.from_dict(rule.to_dict()) == rule
        assert rule.event_types == ("hr.leave_requested",)

    def test_load_catalog_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"version": 7, "rules": [make_rule("x").to_dict()]}))

        catalog = load_catalog_file(path)

        assert catalog.version == 7
        assert catalog.get("x") is not None


class TestTemplates:
    """Test cases for placeholder rendering."""

    def test_render_formats_values(self):
        entity = {"n": 5.0, "f": 2.5, "ok": False, "obj": {"a": 1}, "items": [1, 2], "none": None}
        text = render("{{n}}|{{f}}|{{ok}}|{{obj}}|{{items}}|{{none}}|{{missing.path}}", entity)
        assert text == '5|2.5|false|{"a":1}|[1,2]||'

    def test_render_empty_template(self):
        assert render("", {"a": 1}) == ""


class TestRuleEngine:
    """Test cases for RuleEngine."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("task-engine-test")

    @pytest.fixture
    def engine(self, metrics):
        return RuleEngine(default_catalog(), metrics)

    def test_large_transaction_matches(self, engine):
        entity = {"amount": {"amount": 12_000_000}, "type": "payment"}

        matches = engine.match_rules(entity, "transaction")

        assert [m.rule.rule_id for m in matches] == ["fin_large_transaction"]
        assert matches[0].title == "Large payment requires review: 12000000 UGX"
        assert matches[0].catalog_version == 1

    def test_threshold_is_exclusive(self, engine):
        entity = TestDataFactory.create_large_transaction(amount=10_000_000)
        assert engine.match_rules(entity, "transaction") == []

    def test_entity_type_filter(self, engine):
        entity = {"amount": {"amount": 12_000_000}, "type": "payment"}
        assert engine.match_rules(entity, "employee") == []

    def test_event_type_filter_uses_snapshot_event_type(self, engine):
        entity = TestDataFactory.create_leave_request()

        matches = engine.match_rules(entity, "request")
        assert [m.rule.rule_id for m in matches] == ["hr_leave_conflict"]
        assert matches[0].title == "Leave creates coverage gap: Brian Kamau"

        assert engine.match_rules(entity, "request", event_type="hr.leave_cancelled") == []

    def test_disabled_rules_are_ignored(self):
        engine = RuleEngine(default_catalog().with_rule_enabled("fin_large_transaction", False))
        entity = {"amount": {"amount": 12_000_000}, "type": "payment"}
        assert engine.match_rules(entity, "transaction") == []

    def test_priority_order_with_stable_ties(self):
        catalog = RuleCatalog([
            make_rule("low", priority=1),
            make_rule("tie-first", priority=5),
            make_rule("high", priority=10),
            make_rule("tie-second", priority=5),
        ])
        engine = RuleEngine(catalog)

        matches = engine.match_rules({"flag": True}, "transaction")

        assert [m.rule.rule_id for m in matches] == ["high", "tie-first", "tie-second", "low"]

    def test_malformed_rule_skipped_and_others_evaluated(self, metrics):
        catalog = RuleCatalog([
            make_rule("broken", conditions=[{"field": "flag", "operator": "regex", "value": ".*"}]),
            make_rule("ok"),
        ])
        engine = RuleEngine(catalog, metrics)

        report = engine.evaluate({"flag": True}, "transaction")

        assert [m.rule.rule_id for m in report.matches] == ["ok"]
        assert report.skipped_rules == ["broken"]
        assert metrics.sample("rules_skipped_total", rule_id="broken") == 1.0

    def test_non_string_condition_field_skips_only_that_rule(self, metrics):
        broken = DetectionRule(
            rule_id="bad",
            name="bad",
            entity_types=("transaction",),
            conditions=(RuleCondition(field=5, operator="eq", value=1),),
            grey_area_type="risk-identified",
            severity=Severity.LOW,
            title_template="bad",
        )
        engine = RuleEngine(RuleCatalog([broken, make_rule("good")]), metrics)

        report = engine.evaluate({"flag": True, "a": 1}, "transaction")

        assert [m.rule.rule_id for m in report.matches] == ["good"]
        assert report.skipped_rules == ["bad"]
        assert metrics.sample("rules_skipped_total", rule_id="bad") == 1.0

    def test_rule_without_conditions_never_matches(self):
        engine = RuleEngine(RuleCatalog([make_rule("empty", conditions=[])]))
        assert engine.match_rules({"flag": True}, "transaction") == []

    def test_reload_swaps_catalog(self, engine, metrics):
        previous = engine.catalog
        new_catalog = previous.with_rule_enabled("fin_large_transaction", False)

        returned = engine.reload(new_catalog)

        assert returned is previous
        assert engine.version == 2
        assert metrics.sample("catalog_version") == 2.0

    def test_in_flight_evaluation_keeps_old_catalog(self, engine):
        entity = {"amount": {"amount": 12_000_000}, "type": "payment"}
        catalog = engine.catalog
        engine.reload(catalog.with_rule_enabled("fin_large_transaction", False))

        # A caller that captured the catalog before the reload still sees version 1
        assert RuleEngine(catalog).match_rules(entity, "transaction")[0].catalog_version == 1
        assert engine.match_rules(entity, "transaction") == []

    def test_evaluation_does_not_mutate_entity(self, engine):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-1")
        before = json.dumps(entity, sort_keys=True)

        engine.match_rules(entity, "transaction")

        assert json.dumps(entity, sort_keys=True) == before
