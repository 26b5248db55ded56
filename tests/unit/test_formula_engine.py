"""
Unit tests for FormulaEngine.

Tests template processing, caching, invalidation-driven recomputation,
lookups and failure reporting.
"""

import pytest
from unittest.mock import Mock

from cardstream.bootstrap.config import EngineConfig
from cardstream.core.enums import ShortcodeKind
from cardstream.core.session_table import UNSET, SessionDataTable
from cardstream.errors import CardConfigurationError, ErrorCategory, ErrorCode
from cardstream.formulas.engine import FormulaEngine, is_expression_template
from cardstream.formulas.evaluator import ExpressionEvaluator


@pytest.fixture
def counting_engine(table, engine):
    """Sample engine whose evaluator counts calls."""
    evaluator = Mock(wraps=ExpressionEvaluator())
    counted = FormulaEngine(table, registry=engine.registry, evaluator=evaluator)
    return counted, evaluator


class TestTemplates:
    """Tests for ad-hoc expression and display templates."""

    def test_field_sum_with_unit(self, table):
        engine = FormulaEngine(table)
        table.set_field("a", 120)
        table.set_field("b", 2.5)

        result = engine.process("[field:a] + [field:b]", unit="kWh")

        assert result.success
        assert result.result == "122,5 kWh"
        assert result.value == 122.5
        assert sorted(result.dependencies) == ["field:a", "field:b"]

    def test_expression_template_cached(self, table):
        evaluator = Mock(wraps=ExpressionEvaluator())
        engine = FormulaEngine(table, evaluator=evaluator)
        table.set_field("a", 2)

        first = engine.process("[field:a] * 2")
        second = engine.process("[field:a] * 2")

        assert first.cached is False
        assert second.cached is True
        assert evaluator.evaluate.call_count == 1

        table.set_field("a", 3)
        third = engine.process("[field:a] * 2")
        assert third.value == 6.0
        assert evaluator.evaluate.call_count == 2

    def test_display_template(self, engine, table):
        table.set_field("floor_area", 120)
        table.set_field("heating_type", "oil")

        result = engine.process("Säästö [calc:annual_savings] vuodessa")

        assert result.success
        assert result.result == "Säästö 1 800 € vuodessa"

    def test_unset_field_is_zero(self, table):
        result = FormulaEngine(table).process("[field:missing] + 1")
        assert result.success
        assert result.value == 1.0

    def test_strict_fields(self, table):
        engine = FormulaEngine(table, config=EngineConfig(strict_fields=True))
        result = engine.process("[field:missing] + 1")

        assert result.success is False
        assert result.error_code == ErrorCode.RES_UNKNOWN_FIELD
        assert result.error_category == ErrorCategory.RESOLUTION

    def test_empty_template(self, table):
        result = FormulaEngine(table).process("")
        assert result.success is False

    def test_is_expression_template(self):
        assert is_expression_template("round([field:a] * 2, 1)") is True
        assert is_expression_template("Säästö [calc:x] vuodessa") is False


class TestRegisteredFormulas:
    """Tests for [calc:x] and [lookup:x] processing."""

    def test_formula_result(self, engine, table):
        table.set_field("floor_area", 120)

        result = engine.process("[calc:annual_energy]")

        assert result.success
        assert result.result == "12 000 kWh"
        assert result.kind == ShortcodeKind.CALC
        assert result.name == "annual_energy"
        assert "field:floor_area" in result.dependencies

    def test_cache_hit_skips_evaluator(self, counting_engine, table):
        engine, evaluator = counting_engine
        table.set_field("floor_area", 120)

        engine.process("[calc:annual_energy]")
        result = engine.process("[calc:annual_energy]")

        assert result.cached is True
        assert evaluator.evaluate.call_count == 1

    def test_field_change_recomputes(self, counting_engine, table):
        engine, evaluator = counting_engine
        table.set_field("floor_area", 120)
        engine.process("[calc:annual_energy]")

        table.set_field("floor_area", 150)
        assert table.get_calculation("annual_energy").is_stale

        result = engine.process("[calc:annual_energy]")
        assert result.value == 15000.0
        assert result.cached is False
        assert evaluator.evaluate.call_count == 2

    def test_nested_formula_with_lookup(self, counting_engine, table):
        engine, evaluator = counting_engine
        table.set_field("floor_area", 120)
        table.set_field("heating_type", "oil")

        result = engine.process("[calc:annual_savings]")

        assert result.success
        assert result.value == pytest.approx(1800.0)
        assert result.result == "1 800 €"
        # Lookup value actions do not touch the evaluator
        assert evaluator.evaluate.call_count == 2
        assert table.get_calculation("price_per_kwh", ShortcodeKind.LOOKUP).value == 0.15

    def test_lookup_change_propagates(self, engine, table):
        table.set_field("floor_area", 100)
        table.set_field("heating_type", "oil")
        engine.process("[calc:annual_savings]")

        table.set_field("heating_type", "electric")
        assert table.get_calculation("annual_savings").is_stale

        assert engine.process("[calc:annual_savings]").result == "2 000 €"

    def test_lookup_default(self, engine, table):
        table.set_field("heating_type", "district")
        result = engine.process("[lookup:price_per_kwh]")
        assert result.value == 0.1
        assert result.unit == "€/kWh"

    def test_override_field(self, engine, table):
        table.set_field("floor_area", 120)
        table.set_field("override_annual_energy", "5000")

        result = engine.process("[calc:annual_energy]")

        assert result.value == 5000.0
        assert result.result == "5 000 kWh"

    def test_recalculate_stale(self, engine, table):
        table.set_field("floor_area", 100)
        table.set_field("heating_type", "oil")
        engine.process("[calc:annual_savings]")

        table.set_field("floor_area", 200)
        results = engine.recalculate_stale()

        assert {r.name for r in results} == {"annual_energy", "annual_savings"}
        assert table.get_calculation("annual_savings").value == pytest.approx(3000.0)
        assert table.stale_records() == []

    def test_redefinition_invalidates(self, engine, table):
        table.set_field("floor_area", 100)
        engine.process("[calc:annual_energy]")

        engine.register_formula({"name": "annual_energy", "formula_text": "[field:floor_area] * 90", "unit": "kWh"})

        assert engine.process("[calc:annual_energy]").value == 9000.0

    def test_on_result_callback(self, engine, table):
        callback = Mock()
        engine.on_result(callback)
        table.set_field("floor_area", 100)

        engine.process("[calc:annual_energy]")
        engine.process("[calc:annual_energy]")  # Cached, not reported

        assert callback.call_count == 1
        assert callback.call_args[0][0].name == "annual_energy"

    def test_name_clash_between_formula_and_lookup(self, engine):
        with pytest.raises(CardConfigurationError) as exc_info:
            engine.register_formula({"name": "price_per_kwh", "formula_text": "1"})
        assert exc_info.value.code == ErrorCode.CFG_DUPLICATE_NAME


class TestFailures:
    """process() never raises; failures come back as results."""

    def test_undefined_formula(self, engine):
        result = engine.process("[calc:x]")

        assert result.success is False
        assert result.error_category == ErrorCategory.RESOLUTION
        assert result.error_code == ErrorCode.RES_UNKNOWN_CALC
        assert "x" in result.error

    def test_undefined_inside_expression(self, engine):
        result = engine.process("[calc:x] * 2")
        assert result.success is False
        assert result.error_category == ErrorCategory.RESOLUTION

    def test_host_stored_record_served(self, table):
        table.store_calculation("external", 42.0, "kpl")
        result = FormulaEngine(table).process("[calc:external]")
        assert result.success
        assert result.result == "42 kpl"

    def test_division_by_zero_keeps_prior_record(self, table):
        engine = FormulaEngine(table)
        engine.register_formula({"name": "ratio", "formula_text": "[field:a] / [field:b]"})
        table.set_field("a", 10)
        table.set_field("b", 2)
        engine.process("[calc:ratio]")

        table.set_field("b", 0)
        result = engine.process("[calc:ratio]")

        assert result.success is False
        assert result.error_code == ErrorCode.EVL_DIVISION_BY_ZERO
        assert result.error_category == ErrorCategory.EVALUATION
        assert table.get_calculation("ratio").value == 5.0

    def test_long_field_sum(self, table):
        table.set_field("a", 1)
        result = FormulaEngine(table).process("+".join(["[field:a]"] * 1200))

        assert result.success
        assert result.value == 1200.0

    def test_exhausted_recursion_reported(self, table, monkeypatch):
        def exhausted(self, node):
            raise RecursionError("maximum recursion depth exceeded")

        monkeypatch.setattr(ExpressionEvaluator, "_eval", exhausted)
        result = FormulaEngine(table).process("[field:a] * 2")

        assert result.success is False
        assert result.error_category == ErrorCategory.EVALUATION
        assert result.error == "Expression is too complex"

    def test_cycle_reported(self, table):
        engine = FormulaEngine(table)
        engine.register_formula({"name": "a", "formula_text": "[calc:b] + 1"})
        engine.register_formula({"name": "b", "formula_text": "[calc:a] + 1"})

        result = engine.process("[calc:a]")

        assert result.success is False
        assert result.error_category == ErrorCategory.CYCLE
        assert table.get_calculation("a") is UNSET

    def test_lookup_without_match_or_default(self, table):
        engine = FormulaEngine(table)
        engine.register_lookup({
            "name": "grant",
            "rules": [{
                "condition_logic": {"conditions": [{"field": "type", "operator": "equals", "value": "x"}]},
                "action_type": "value",
                "value": 1,
            }],
        })
        result = engine.process("[lookup:grant]")

        assert result.success is False
        assert result.error_code == ErrorCode.RES_NO_MATCH

    def test_lookup_error_action(self, table):
        engine = FormulaEngine(table)
        engine.register_lookup({"name": "grant", "default": {"action_type": "error", "message": "Ei tukea"}})

        result = engine.process("[lookup:grant]")

        assert result.error == "Ei tukea"
        assert result.error_code == ErrorCode.RES_LOOKUP_ERROR

    def test_lookup_table_and_formula_actions(self, table):
        engine = FormulaEngine(table)
        engine.register_formula({"name": "base", "formula_text": "[field:area] * 2", "unit": "kWh"})
        engine.register_lookup({
            "name": "factor",
            "rules": [{
                "condition_logic": {"conditions": [{"field": "mode", "operator": "equals", "value": "table"}]},
                "action_type": "table",
                "key_field": "heating",
                "table": {"oil": 1.5, "gas": 1.2},
            }],
            "default": {"action_type": "formula", "formula_text": "[calc:base]"},
        })
        table.set_field("area", 10)

        by_formula = engine.process("[lookup:factor]")
        assert by_formula.value == 20.0
        assert by_formula.unit == "kWh"

        table.set_field("mode", "table")
        table.set_field("heating", "gas")
        assert engine.process("[lookup:factor]").value == 1.2

        table.set_field("heating", "coal")
        assert engine.process("[lookup:factor]").error_code == ErrorCode.RES_NO_MATCH

    def test_result_to_dict(self, engine):
        data = engine.process("[calc:x]").to_dict()
        assert data["success"] is False
        assert data["error_category"] == "resolution"
        assert data["kind"] == "calc"


class TestIsolation:

    def test_sessions_do_not_share_records(self, engine):
        other_table = SessionDataTable("other")
        other = FormulaEngine(other_table, registry=engine.registry)
        engine.table.set_field("floor_area", 100)
        other_table.set_field("floor_area", 200)

        assert engine.process("[calc:annual_energy]").value == 10000.0
        assert other.process("[calc:annual_energy]").value == 20000.0
