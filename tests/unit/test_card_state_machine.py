"""
Unit tests for CardStateMachine and RevealScheduler.

Tests progressive reveal, completion, activation, reveal conditions,
delayed reveals and cascade protection.
"""

import pytest
from unittest.mock import Mock

from cardstream.bootstrap.config import RevealConfig, SessionConfig
from cardstream.cards.loader import load_bundle
from cardstream.cards.models import build_card_config
from cardstream.cards.reveal import RevealAction
from cardstream.cards.state_machine import CardStateMachine
from cardstream.cards.timers import ManualTimer
from cardstream.core.enums import ActivationPolicy, CardStatus
from cardstream.core.session_table import SessionDataTable
from cardstream.errors import (
    CardConfigurationError,
    ErrorCode,
    InvalidTransitionError,
    UnknownCardError,
)
from cardstream.formulas.engine import FormulaEngine


def _machine(raw_cards, timer=None, engine=None, table=None, **kwargs):
    cards = load_bundle({"cards": raw_cards}).cards
    table = table or (engine.table if engine is not None else SessionDataTable("s1"))
    return CardStateMachine(cards, table, engine=engine, timer=timer or ManualTimer(), **kwargs)


def _status(machine, card_id):
    return machine.get_state(card_id).status


def _revealed(machine):
    return [card_id for card_id, state in machine.states().items() if state.is_revealed]


@pytest.fixture
def three_forms(card_templates):
    _, form_card = card_templates
    return [form_card("a", 1, ["a"]), form_card("b", 2, ["b"]), form_card("c", 3, ["c"])]


class TestStart:
    """Tests for the initial state."""

    def test_first_card_revealed_and_active(self, three_forms):
        machine = _machine(three_forms)

        assert _revealed(machine) == ["a"]
        assert _status(machine, "a") == CardStatus.ACTIVE
        assert _status(machine, "b") == CardStatus.HIDDEN

    def test_start_is_idempotent(self, three_forms):
        machine = _machine(three_forms)
        assert machine.start() == []

    def test_autostart_disabled(self, three_forms):
        machine = _machine(three_forms, autostart=False)
        assert _revealed(machine) == []

        events = machine.start()
        assert [e.to_status for e in events] == ["active"]

    def test_needs_cards(self):
        with pytest.raises(CardConfigurationError):
            CardStateMachine([], SessionDataTable("s1"))

    def test_duplicate_ids(self):
        card = build_card_config({"id": "a", "type": "info"})
        with pytest.raises(CardConfigurationError, match="Duplicate"):
            CardStateMachine([card, card], SessionDataTable("s1"))

    def test_calculation_card_needs_engine(self, bundle):
        with pytest.raises(CardConfigurationError):
            CardStateMachine(bundle.cards, SessionDataTable("s1"))

    def test_first_info_card_auto_completes(self, card_templates):
        make_card, form_card = card_templates
        machine = _machine([
            make_card("intro", "info", 1, reveal_timing={"timing": "immediately"}),
            form_card("a", 2, ["a"]),
        ])

        assert _status(machine, "intro") == CardStatus.COMPLETE
        assert _status(machine, "a") == CardStatus.ACTIVE

    def test_empty_form_counts_as_complete(self, card_templates):
        _, form_card = card_templates
        machine = _machine([form_card("empty", 1, []), form_card("a", 2, ["a"])])

        assert _status(machine, "empty") == CardStatus.COMPLETE
        assert machine.active_card_id() == "a"


class TestProgression:
    """Tests for completion driven reveal."""

    def test_completing_reveals_next(self, three_forms):
        machine = _machine(three_forms)

        update = machine.update_field("a", "x")

        assert update.owner_card_id == "a"
        assert update.completion.complete is True
        assert _status(machine, "a") == CardStatus.COMPLETE
        assert _status(machine, "b") == CardStatus.ACTIVE
        assert _revealed(machine) == ["a", "b"]
        assert [(e.card_id, e.to_status) for e in update.transitions] == [("a", "complete"), ("b", "active")]

    def test_at_most_one_active(self, three_forms):
        machine = _machine(three_forms)
        for field_name in ("a", "b", "c"):
            machine.update_field(field_name, "x")
            assert len(machine.active_card_ids()) <= 1

    def test_hidden_card_fields_wait_for_reveal(self, three_forms):
        machine = _machine(three_forms)

        machine.update_field("c", "prefilled")
        assert _status(machine, "c") == CardStatus.HIDDEN

        machine.update_field("a", "x")
        machine.update_field("b", "x")
        assert _status(machine, "c") == CardStatus.COMPLETE

    def test_reveal_is_monotonic(self, three_forms):
        machine = _machine(three_forms)
        machine.update_field("a", "x")
        machine.update_field("a", "")
        machine.uncomplete_card("a")

        assert _revealed(machine) == ["a", "b"]

    def test_unowned_field(self, three_forms):
        update = _machine(three_forms).update_field("stray", 1)
        assert update.owner_card_id is None
        assert update.completion is None

    def test_first_card_owns_shared_field(self, card_templates):
        _, form_card = card_templates
        machine = _machine([form_card("a", 1, ["shared"]), form_card("b", 2, ["shared", "b"])])
        assert machine.owning_card("SHARED").id == "a"

    def test_missing_timing_reveals_immediately(self, card_templates):
        _, form_card = card_templates
        machine = _machine([form_card("a", 1, ["a"], timing=None), form_card("b", 2, ["b"])])

        machine.update_field("a", "x")

        assert machine.get_state("b").is_revealed
        assert [e.code for e in machine.errors.get_all()] == [ErrorCode.CFG_MISSING_TIMING]

    def test_missing_completion_rules_use_any_field(self, card_templates):
        make_card, form_card = card_templates
        machine = _machine([
            make_card(
                "a", "form", 1,
                card_fields=[{"field_name": "x"}, {"field_name": "y"}],
                reveal_timing={"timing": "immediately"},
            ),
            form_card("b", 2, ["b"]),
        ])

        machine.update_field("y", "1")

        assert _status(machine, "a") == CardStatus.COMPLETE
        assert ErrorCode.CFG_MISSING_COMPLETION in [e.code for e in machine.errors.get_all()]

    def test_last_card_completion(self, three_forms):
        machine = _machine(three_forms)
        for field_name in ("a", "b", "c"):
            machine.update_field(field_name, "x")

        assert all(s.status == CardStatus.COMPLETE for s in machine.states().values())
        assert machine.active_card_id() is None


class TestDelayedReveal:
    """Tests for after_delay timing."""

    def test_reveal_after_delay(self, card_templates):
        _, form_card = card_templates
        timer = ManualTimer()
        raw = form_card("a", 1, ["a"])
        raw["reveal_timing"] = {"timing": "after_delay", "delay_seconds": 2}
        machine = _machine([raw, form_card("b", 2, ["b"])], timer=timer)

        machine.update_field("a", "x")
        assert not machine.get_state("b").is_revealed
        assert [s.card_id for s in machine.scheduler.get_pending()] == ["b"]

        timer.advance(1.5)
        assert not machine.get_state("b").is_revealed

        timer.advance(0.5)
        assert machine.get_state("b").is_revealed
        assert machine.active_card_id() == "b"
        assert machine.scheduler.get_pending() == []

    def test_default_delay(self, card_templates):
        _, form_card = card_templates
        raw = form_card("a", 1, ["a"], timing="after_delay")
        machine = _machine([raw, form_card("b", 2, ["b"])], config=RevealConfig(default_delay_seconds=5))

        machine.update_field("a", "x")

        assert machine.scheduler.get_pending()[0].delay_seconds == 5

    def test_reset_cancels_pending(self, card_templates):
        _, form_card = card_templates
        timer = ManualTimer()
        raw = form_card("a", 1, ["a"], timing="after_delay")
        machine = _machine([raw, form_card("b", 2, ["b"])], timer=timer)
        machine.update_field("a", "x")

        machine.table.reset()
        machine.reset()
        timer.advance(10)

        assert _revealed(machine) == ["a"]
        assert _status(machine, "a") == CardStatus.ACTIVE

    def test_stale_generation_skipped(self, card_templates):
        _, form_card = card_templates
        timer = ManualTimer()
        raw = form_card("a", 1, ["a"], timing="after_delay")
        machine = _machine([raw, form_card("b", 2, ["b"])], timer=timer)
        notices = []
        machine.scheduler.on_notice(notices.append)

        machine.update_field("a", "x")
        scheduled = machine.scheduler.get_pending()[0]
        machine.scheduler._generation += 1
        timer.advance(5)

        assert scheduled.fired is True
        assert not machine.get_state("b").is_revealed
        assert notices[-1].action == RevealAction.SKIPPED

    def test_schedule_is_not_duplicated(self, card_templates):
        _, form_card = card_templates
        timer = ManualTimer()
        raw = form_card("a", 1, ["a"], timing="after_delay")
        machine = _machine([raw, form_card("b", 2, ["b"])], timer=timer)
        machine.update_field("a", "x")

        machine.complete_card("a")

        assert len(machine.scheduler.get_pending()) == 1
        assert timer.pending() == 1


class TestRevealConditions:
    """Tests for conditions cards place on their own reveal."""

    def test_unmet_condition_locks_then_unlocks(self, card_templates):
        make_card, form_card = card_templates
        machine = _machine([
            form_card("a", 1, ["a"]),
            make_card(
                "bonus", "info", 2,
                reveal_conditions=[{"type": "value_check", "target": "a", "operator": "equals", "value": "yes"}],
                reveal_timing={"timing": "immediately"},
            ),
            form_card("c", 3, ["c"]),
        ])

        machine.update_field("a", "no")
        assert _status(machine, "bonus") == CardStatus.LOCKED
        assert not machine.get_state("bonus").is_revealed

        machine.update_field("a", "yes")
        assert machine.get_state("bonus").is_revealed
        assert _status(machine, "bonus") == CardStatus.COMPLETE
        assert _status(machine, "c") == CardStatus.ACTIVE

    def test_condition_reveals_out_of_sequence(self, card_templates):
        make_card, form_card = card_templates
        machine = _machine([
            form_card("a", 1, ["a"]),
            form_card("b", 2, ["b"]),
            form_card("c", 3, ["c"]),
            make_card("summary", "info", 4, reveal_conditions=[{"type": "card_complete", "target": "a"}]),
        ])

        machine.update_field("a", "x")

        assert _revealed(machine) == ["a", "b", "summary"]
        assert not machine.get_state("c").is_revealed

    def test_early_revealed_card_takes_focus_in_sequence(self, card_templates):
        _, form_card = card_templates
        oil = [{"type": "value_check", "target": "heating", "operator": "equals", "value": "oil"}]
        machine = _machine([
            form_card("a", 1, ["heating", "area"]),
            form_card("b", 2, ["b"], reveal_conditions=oil),
            form_card("c", 3, ["c"]),
        ])

        machine.update_field("heating", "oil")
        assert _status(machine, "b") == CardStatus.UNLOCKED
        assert machine.active_card_id() == "a"

        events = machine.update_field("area", 120).transitions

        assert _status(machine, "a") == CardStatus.COMPLETE
        assert machine.active_card_id() == "b"
        assert ("b", "unlocked", "active") in [(e.card_id, e.from_status, e.to_status) for e in events]
        assert not machine.get_state("c").is_revealed

    def test_waiting_card_resumes_when_focus_frees(self, card_templates):
        make_card, form_card = card_templates
        timer = ManualTimer()
        machine = _machine([
            form_card("a", 1, ["a"], timing="after_delay"),
            form_card("b", 2, ["b"]),
            form_card("extra", 3, ["extra"], reveal_conditions=[{"type": "card_complete", "target": "a"}]),
        ], timer=timer, config=RevealConfig(default_delay_seconds=2))

        machine.update_field("a", "x")
        assert machine.active_card_id() == "extra"

        timer.advance(2)
        assert _status(machine, "b") == CardStatus.UNLOCKED

        machine.update_field("extra", "x")
        assert machine.active_card_id() == "b"

    def test_fields_complete_condition(self, card_templates):
        make_card, form_card = card_templates
        machine = _machine([
            form_card("a", 1, ["a", "b"]),
            make_card("hint", "info", 2, reveal_conditions=[{"type": "fields_complete", "target": ["a"]}]),
        ])

        machine.update_field("a", "x")

        assert machine.get_state("hint").is_revealed
        assert _status(machine, "a") == CardStatus.ACTIVE

    def test_always_condition_follows_sequence(self, card_templates):
        make_card, form_card = card_templates
        machine = _machine([
            form_card("a", 1, ["a"]),
            form_card("b", 2, ["b"]),
            make_card("c", "info", 3, reveal_conditions=[{"type": "always"}]),
        ])

        machine.update_field("stray", 1)

        assert not machine.get_state("c").is_revealed

    def test_card_complete_all(self, card_templates):
        make_card, form_card = card_templates
        machine = _machine([
            form_card("a", 1, ["a"]),
            form_card("b", 2, ["b"]),
            make_card("done", "info", 3, reveal_conditions=[{"type": "card_complete", "target": "all"}]),
        ])

        machine.update_field("a", "x")
        assert not machine.get_state("done").is_revealed

        machine.update_field("b", "x")
        assert _status(machine, "done") == CardStatus.COMPLETE

    def test_target_by_card_name(self, card_templates):
        make_card, form_card = card_templates
        first = form_card("a", 1, ["a"], name="Perustiedot")
        machine = _machine([
            first,
            form_card("b", 2, ["b"]),
            make_card("next", "info", 3, reveal_conditions=[{"type": "card_complete", "target": "Perustiedot"}]),
        ])

        machine.update_field("a", "x")

        assert machine.get_state("next").is_revealed

    def test_cascade_halts(self, card_templates):
        make_card, _ = card_templates
        raw = [make_card(c, "info", i, reveal_timing={"timing": "immediately"}) for i, c in enumerate("abcd")]
        notices = Mock()

        machine = _machine(raw, config=RevealConfig(max_cascade_length=2), autostart=False)
        machine.scheduler.on_notice(notices)
        machine.start()

        assert _revealed(machine) == ["a", "b"]
        assert [e.code for e in machine.errors.get_all()] == [ErrorCode.CYC_REVEAL]
        assert RevealAction.CYCLE in [c.args[0].action for c in notices.call_args_list]


class TestActivation:
    """Tests for explicit activation and demotion."""

    def test_activate_demotes_to_unlocked(self, three_forms):
        machine = _machine(three_forms)
        machine.update_field("a", "x")

        machine.activate_card("a")

        assert _status(machine, "a") == CardStatus.ACTIVE
        assert _status(machine, "b") == CardStatus.UNLOCKED
        assert machine.active_card_ids() == ["a"]

    def test_demote_to_complete_does_not_cascade(self, three_forms):
        machine = _machine(three_forms)
        machine.update_field("a", "x")

        machine.activate_card("a", policy=ActivationPolicy.DEMOTE_TO_COMPLETE)

        assert _status(machine, "b") == CardStatus.COMPLETE
        assert not machine.get_state("c").is_revealed

    def test_configured_policy(self, three_forms):
        machine = _machine(three_forms, config=RevealConfig(activation_policy="demote_to_complete"))
        machine.update_field("a", "x")

        machine.activate_card("a")

        assert _status(machine, "b") == CardStatus.COMPLETE

    def test_hidden_card_cannot_be_activated(self, three_forms):
        with pytest.raises(InvalidTransitionError):
            _machine(three_forms).activate_card("c")

    def test_unknown_card(self, three_forms):
        with pytest.raises(UnknownCardError):
            _machine(three_forms).activate_card("nope")


class TestExplicitTransitions:

    def test_uncomplete(self, three_forms):
        machine = _machine(three_forms)
        machine.update_field("a", "x")

        events = machine.uncomplete_card("a")

        assert [(e.from_status, e.to_status) for e in events] == [("complete", "unlocked")]

    def test_uncomplete_requires_complete(self, three_forms):
        with pytest.raises(InvalidTransitionError):
            _machine(three_forms).uncomplete_card("a")

    def test_lock_revealed_card_rejected(self, three_forms):
        with pytest.raises(InvalidTransitionError):
            _machine(three_forms).lock_card("a")

    def test_complete_hidden_card_rejected(self, three_forms):
        with pytest.raises(InvalidTransitionError):
            _machine(three_forms).complete_card("b")


class TestAdvance:
    """Tests for the advance (next button) action."""

    def test_invalid_card_does_not_advance(self, three_forms):
        machine = _machine(three_forms)

        result = machine.advance("a")

        assert result.advanced is False
        assert result.validation.messages() == {"a": SessionConfig().required_message}
        assert result.transitions == []
        assert not machine.get_state("b").is_revealed

    def test_valid_card_completes(self, three_forms):
        machine = _machine(three_forms)
        machine.table.set_field("a", "x")  # Written without the completion hook

        result = machine.advance("a")

        assert result.advanced is True
        assert _status(machine, "a") == CardStatus.COMPLETE
        assert machine.active_card_id() == "b"

    def test_custom_required_message(self, three_forms):
        machine = _machine(three_forms, required_message="Pakollinen")
        assert machine.advance("a").validation.messages() == {"a": "Pakollinen"}


class TestCalculationCards:
    """Tests for calculation cards backed by the formula engine."""

    def test_sample_flow(self, bundle, engine):
        timer = ManualTimer()
        machine = CardStateMachine(bundle.cards, engine.table, engine=engine, timer=timer)

        machine.update_field("floor_area", 120)
        machine.update_field("heating_type", "oil")

        assert _status(machine, "energy") == CardStatus.COMPLETE
        assert machine.calculation_results("energy")[0].result == "12 000 kWh"
        assert engine.table.get_field("energy_need") == 12000.0
        assert not machine.get_state("savings").is_revealed

        timer.advance(3)

        assert _status(machine, "savings") == CardStatus.COMPLETE
        assert machine.active_card_id() == "contact"

    def test_failing_calculation_is_retried(self, card_templates, table):
        make_card, form_card = card_templates
        engine = FormulaEngine(table)
        engine.register_formula({"name": "ratio", "formula_text": "[field:x] / [field:y]"})
        machine = _machine(
            [
                form_card("a", 1, ["x"]),
                make_card("calc", "calculation", 2, config={"main_result": "[calc:ratio]"},
                          reveal_timing={"timing": "immediately"}),
                form_card("c", 3, ["c"]),
            ],
            engine=engine,
        )

        machine.update_field("x", 10)
        assert _status(machine, "calc") == CardStatus.ACTIVE
        assert machine.calculation_results("calc")[0].success is False

        machine.update_field("y", 4)
        assert _status(machine, "calc") == CardStatus.COMPLETE
        assert machine.calculation_results("calc")[0].value == 2.5
        assert _status(machine, "c") == CardStatus.ACTIVE

    def test_evaluate_non_calculation_card(self, three_forms):
        with pytest.raises(InvalidTransitionError):
            _machine(three_forms).evaluate_calculation_card("a")


class TestHistory:

    def test_history_and_callbacks(self, three_forms):
        machine = _machine(three_forms)
        seen = []
        machine.on_transition(lambda e: 1 / 0)  # Failing callbacks are logged
        machine.on_transition(seen.append)

        machine.update_field("a", "x")

        assert [e.card_id for e in seen] == ["a", "b"]
        assert len(machine.get_history()) == 3

    def test_history_capped(self, three_forms):
        machine = _machine(three_forms, max_history=2)
        machine.update_field("a", "x")
        assert len(machine.get_history()) == 2

    def test_to_dict(self, three_forms):
        data = _machine(three_forms).to_dict()

        assert data["active_card_id"] == "a"
        assert data["cards"][0] == {
            "card_id": "a",
            "status": "active",
            "is_revealed": True,
            "revealed_at": data["cards"][0]["revealed_at"],
            "type": "form",
            "display_order": 1,
        }
        assert data["pending_reveals"] == []
