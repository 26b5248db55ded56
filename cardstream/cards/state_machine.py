"""
CardStream Card State Machine

Tracks the status of every card in a session:

    hidden -> locked / unlocked -> active -> complete

Reveal (is_revealed) is a separate gate owned by the RevealScheduler.
Form and submit cards complete through their completion rule; info,
visual and calculation cards complete on reveal (calculation cards only
once all their result templates evaluate). Completing a card hands the
next card to the scheduler and re-checks other cards' reveal conditions.

INVARIANT: after any public call returns, at most one card is active.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, TYPE_CHECKING
import logging

from cardstream.bootstrap.config import RevealConfig, SessionConfig
from cardstream.cards.completion import (
    CardValidation,
    CompletionCheck,
    evaluate_completion,
    is_empty_value,
    validate_card,
)
from cardstream.cards.models import CalculationCardConfig, CardConfig
from cardstream.cards.reveal import CardRuntimeState, RevealScheduler
from cardstream.cards.timers import DeferredTimer
from cardstream.cards.transitions import TransitionEvent, TransitionValidator
from cardstream.core.enums import ActivationPolicy, CardStatus, CardType, RevealConditionType
from cardstream.core.references import normalize_name
from cardstream.core.session_table import SessionDataTable
from cardstream.errors import (
    CardConfigurationError,
    ErrorAggregator,
    ErrorCode,
    InvalidTransitionError,
    UnknownCardError,
    create_configuration_gap,
)
from cardstream.formulas.lookups import ConditionOperator, LookupCondition
from cardstream.formulas.formatting import parse_number_input

if TYPE_CHECKING:
    from cardstream.formulas.engine import FormulaEngine, ProcessResult

logger = logging.getLogger(__name__)


@dataclass
class FieldUpdate:
    """What one update_field() call changed."""
    field_name: str
    owner_card_id: Optional[str] = None
    invalidated: List[str] = field(default_factory=list)
    completion: Optional[CompletionCheck] = None
    transitions: List[TransitionEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field_name": self.field_name,
            "owner_card_id": self.owner_card_id,
            "invalidated": self.invalidated,
            "complete": self.completion.complete if self.completion else None,
            "transitions": [t.to_dict() for t in self.transitions],
        }


@dataclass
class AdvanceResult:
    """Outcome of the advance (next button) action on a card."""
    card_id: str
    validation: CardValidation
    transitions: List[TransitionEvent] = field(default_factory=list)

    @property
    def advanced(self) -> bool:
        return self.validation.is_valid


class CardStateMachine:
    """
    Per-session card statuses.

    Usage:
        machine = CardStateMachine(cards, table, engine=engine, timer=ManualTimer())
        machine.update_field("postal_code", "00100")
        machine.get_state("card-2").is_revealed
    """

    def __init__(
        self,
        cards: Sequence[CardConfig],
        table: SessionDataTable,
        engine: Optional["FormulaEngine"] = None,
        timer: Optional[DeferredTimer] = None,
        config: Optional[RevealConfig] = None,
        errors: Optional[ErrorAggregator] = None,
        required_message: Optional[str] = None,
        max_history: int = 100,
        autostart: bool = True,
    ):
        if not cards:
            raise CardConfigurationError("A session needs at least one card", source="card_state_machine")

        self._cards: List[CardConfig] = sorted(cards, key=lambda c: c.display_order)
        self._index: Dict[str, int] = {}
        for position, card in enumerate(self._cards):
            if card.id in self._index:
                raise CardConfigurationError(
                    f"Duplicate card id '{card.id}'",
                    source="card_state_machine",
                    path=card.id,
                )
            self._index[card.id] = position

        self._field_owner: Dict[str, str] = {}
        for card in self._cards:
            for card_field in card.fields:
                if card_field.key in self._field_owner:
                    logger.warning(
                        f"Field '{card_field.field_name}' appears on '{self._field_owner[card_field.key]}' "
                        f"and '{card.id}'; the first card owns it"
                    )
                    continue
                self._field_owner[card_field.key] = card.id

        self._table = table
        self._engine = engine
        if engine is None and any(c.card_type == CardType.CALCULATION for c in self._cards):
            raise CardConfigurationError("Calculation cards need a formula engine", source="card_state_machine")
        self.config = config or RevealConfig()
        self.errors = errors if errors is not None else ErrorAggregator()
        self.required_message = required_message or SessionConfig().required_message
        self.scheduler = RevealScheduler(self, timer=timer, config=self.config, errors=self.errors)

        self._states: Dict[str, CardRuntimeState] = {c.id: CardRuntimeState(c.id) for c in self._cards}
        self._calc_results: Dict[str, List["ProcessResult"]] = {}
        self._history: List[TransitionEvent] = []
        self._max_history = max_history
        self._journals: List[List[TransitionEvent]] = []
        self._callbacks: List[Callable[[TransitionEvent], None]] = []
        self._started = False

        if autostart:
            self.start()

    # ==================== Lookup ====================

    @property
    def cards(self) -> List[CardConfig]:
        return list(self._cards)

    @property
    def table(self) -> SessionDataTable:
        return self._table

    def get_card(self, card_id: str) -> CardConfig:
        position = self._index.get(str(card_id))
        if position is None:
            raise UnknownCardError(f"Unknown card '{card_id}'", source="card_state_machine", path=str(card_id))
        return self._cards[position]

    def get_state(self, card_id: str) -> CardRuntimeState:
        state = self._states.get(str(card_id))
        if state is None:
            raise UnknownCardError(f"Unknown card '{card_id}'", source="card_state_machine", path=str(card_id))
        return state

    def states(self) -> Dict[str, CardRuntimeState]:
        return dict(self._states)

    def next_card(self, card_id: str) -> Optional[CardConfig]:
        position = self._index[self.get_card(card_id).id] + 1
        return self._cards[position] if position < len(self._cards) else None

    def owning_card(self, field_name: str) -> Optional[CardConfig]:
        card_id = self._field_owner.get(normalize_name(field_name))
        return self.get_card(card_id) if card_id is not None else None

    def active_card_ids(self) -> List[str]:
        return [c.id for c in self._cards if self._states[c.id].status == CardStatus.ACTIVE]

    def active_card_id(self) -> Optional[str]:
        active = self.active_card_ids()
        return active[0] if active else None

    def calculation_results(self, card_id: str) -> List["ProcessResult"]:
        return list(self._calc_results.get(card_id, []))

    # ==================== Lifecycle ====================

    def start(self) -> List[TransitionEvent]:
        """Reveal the first card. Does nothing when already started."""
        if self._started:
            return []
        self._started = True
        with self._recording() as journal:
            self.scheduler.reveal_card(self._cards[0].id)
        return journal

    def reset(self) -> List[TransitionEvent]:
        """Cancel pending reveals and return every card to its initial state."""
        self.scheduler.cancel_pending()
        self._states = {c.id: CardRuntimeState(c.id) for c in self._cards}
        self._calc_results.clear()
        self._started = False
        logger.info("Card state machine reset")
        return self.start()

    # ==================== Field updates ====================

    def update_field(self, field_name: str, value: Any) -> FieldUpdate:
        """
        Write a field and re-evaluate the owning card's completion rule.

        Also retries calculation cards that have not completed yet and
        reveals cards whose reveal conditions now hold.
        """
        invalidated = self._table.set_field(field_name, value)
        update = self.field_changed(field_name)
        update.invalidated = invalidated
        return update

    def field_changed(self, field_name: str) -> FieldUpdate:
        """
        React to a field already written to the table: completion of the
        owning card, calculation card retries, reveal conditions.
        """
        with self._recording() as journal:
            update = FieldUpdate(field_name=field_name)

            owner = self.owning_card(field_name)
            if owner is not None:
                update.owner_card_id = owner.id
                state = self._states[owner.id]
                if state.is_revealed and state.status != CardStatus.COMPLETE:
                    update.completion = self._check_completion(owner)
                    if update.completion.complete:
                        self._complete(owner, set(), trigger="field_update")
            else:
                logger.debug(f"Field '{field_name}' is not owned by any card")

            self.retry_calculation_cards()
            self._reveal_satisfied(set())

        update.transitions = journal
        return update

    def _check_completion(self, card: CardConfig) -> CompletionCheck:
        check = evaluate_completion(card, self._table)
        if check.config_gap:
            message = f"Card '{card.id}' has no completion rules; using any_field"
            logger.warning(message)
            self.errors.add(create_configuration_gap(
                message,
                source="card_state_machine",
                path=card.id,
                code=ErrorCode.CFG_MISSING_COMPLETION,
            ))
        return check

    # ==================== Explicit transitions ====================

    def complete_card(self, card_id: str) -> List[TransitionEvent]:
        """Mark a revealed card complete and cascade."""
        card = self.get_card(card_id)
        state = self._states[card.id]
        if not state.is_revealed:
            raise InvalidTransitionError(
                f"Card '{card.id}' is not revealed and cannot be completed",
                source="card_state_machine",
                path=card.id,
            )
        with self._recording() as journal:
            self._complete(card, set(), trigger="complete")
        return journal

    def activate_card(self, card_id: str, policy: Optional[ActivationPolicy] = None) -> List[TransitionEvent]:
        """
        Make a revealed card the active one.

        Any other active card is demoted per ``policy`` (defaults to the
        configured activation_policy). Demoting to complete is a status
        change only and does not cascade.
        """
        card = self.get_card(card_id)
        state = self._states[card.id]
        if not state.is_revealed:
            raise InvalidTransitionError(
                f"Card '{card.id}' is not revealed and cannot be activated",
                source="card_state_machine",
                path=card.id,
            )
        with self._recording() as journal:
            self._activate(card.id, policy or ActivationPolicy(self.config.activation_policy), trigger="activate")
        return journal

    def uncomplete_card(self, card_id: str) -> List[TransitionEvent]:
        """complete -> unlocked, e.g. when the user reopens a finished card."""
        card = self.get_card(card_id)
        with self._recording() as journal:
            if self._states[card.id].status != CardStatus.COMPLETE:
                raise InvalidTransitionError(
                    f"Card '{card.id}' is not complete",
                    source="card_state_machine",
                    path=card.id,
                )
            self._transition(card.id, CardStatus.UNLOCKED, trigger="uncomplete")
        return journal

    def lock_card(self, card_id: str) -> List[TransitionEvent]:
        """hidden -> locked for a card reached before its reveal conditions hold."""
        card = self.get_card(card_id)
        state = self._states[card.id]
        if state.is_revealed:
            raise InvalidTransitionError(
                f"Card '{card.id}' is already revealed and cannot be locked",
                source="card_state_machine",
                path=card.id,
            )
        with self._recording() as journal:
            self._transition(card.id, CardStatus.LOCKED, trigger="lock", reason="reveal conditions not met")
        return journal

    # ==================== Validation ====================

    def validate_card(self, card_id: str) -> CardValidation:
        return validate_card(self.get_card(card_id), self._table, self.required_message)

    def advance(self, card_id: str) -> AdvanceResult:
        """
        The advance action: validate the card and complete it if valid.

        An invalid card keeps its status and nothing is revealed.
        """
        card = self.get_card(card_id)
        validation = self.validate_card(card.id)
        result = AdvanceResult(card_id=card.id, validation=validation)
        if not validation.is_valid:
            logger.info(f"Advance blocked on '{card.id}': {len(validation.issues)} issue(s)")
            return result
        if self._states[card.id].status != CardStatus.COMPLETE:
            result.transitions = self.complete_card(card.id)
        return result

    # ==================== Reveal hooks ====================

    def conditions_met(self, card: CardConfig) -> bool:
        """All of the card's reveal conditions hold (no conditions: True)."""
        return all(self._condition_met(card, condition) for condition in card.reveal_conditions)

    def _condition_met(self, card: CardConfig, condition) -> bool:
        ctype = condition.type
        if ctype == RevealConditionType.ALWAYS:
            return True

        if ctype == RevealConditionType.CARD_COMPLETE:
            targets = condition.target
            if not targets or targets == ("all",):
                targets = tuple(c.id for c in self._cards if c.id != card.id)
            return all(self._target_complete(t) for t in targets)

        if ctype == RevealConditionType.FIELDS_COMPLETE:
            return all(not is_empty_value(self._table.get_field(t)) for t in condition.target)

        if ctype == RevealConditionType.VALUE_CHECK:
            if not condition.target:
                return False
            try:
                operator = ConditionOperator(condition.operator or "equals")
            except ValueError:
                logger.warning(f"Unknown operator '{condition.operator}' on card '{card.id}'")
                return False
            return LookupCondition(normalize_name(condition.target[0]), operator, condition.value).evaluate(self._table)

        return False

    def _target_complete(self, target: str) -> bool:
        state = self._states.get(str(target))
        if state is None:
            # Targets may name a card instead of its id
            matches = [c.id for c in self._cards if c.name == target]
            if not matches:
                logger.warning(f"Reveal condition targets unknown card '{target}'")
                return False
            state = self._states[matches[0]]
        return state.status == CardStatus.COMPLETE

    def settle_revealed(self, card: CardConfig, visited: Set[str]) -> None:
        """Status of a card right after the scheduler revealed it."""
        if card.collects_input:
            if self.active_card_id() is None:
                self._transition(card.id, CardStatus.ACTIVE, trigger="reveal")
            else:
                self._transition(card.id, CardStatus.UNLOCKED, trigger="reveal")
            if self._check_completion(card).complete:
                self._complete(card, visited, trigger="reveal")
            return

        if isinstance(card, CalculationCardConfig) and not self._run_calculation_card(card):
            status = CardStatus.ACTIVE if self.active_card_id() is None else CardStatus.UNLOCKED
            self._transition(card.id, status, trigger="reveal", reason="calculation incomplete")
            return

        self._complete(card, visited, trigger="reveal")

    # ==================== Calculation cards ====================

    def evaluate_calculation_card(self, card_id: str) -> List["ProcessResult"]:
        """Process every result template of a calculation card."""
        card = self.get_card(card_id)
        if not isinstance(card, CalculationCardConfig):
            raise InvalidTransitionError(
                f"Card '{card.id}' is a {card.card_type.value} card, not a calculation card",
                source="card_state_machine",
                path=card.id,
            )
        if self._engine is None:
            raise CardConfigurationError(
                f"Calculation card '{card.id}' needs a formula engine",
                source="card_state_machine",
                path=card.id,
            )
        results = [self._engine.process(t.template, unit=t.unit) for t in card.results]
        self._calc_results[card.id] = results
        return results

    def _run_calculation_card(self, card: CalculationCardConfig) -> bool:
        if not card.results:
            logger.warning(f"Calculation card '{card.id}' has no result templates")
            return True
        results = self.evaluate_calculation_card(card.id)
        failed = [r for r in results if not r.success]
        if failed:
            logger.info(f"Calculation card '{card.id}' incomplete: {failed[0].error}")
            return False

        if card.result_field:
            number = parse_number_input(results[0].value)
            if number is not None:
                self._table.set_field(card.result_field, number)
        return True

    def retry_calculation_cards(self, visited: Optional[Set[str]] = None) -> List[str]:
        """Retry revealed calculation cards that have not completed. Returns completed ids."""
        visited = set() if visited is None else visited
        completed = []
        for card in self._cards:
            state = self._states[card.id]
            if card.card_type != CardType.CALCULATION or not state.is_revealed:
                continue
            if state.status == CardStatus.COMPLETE:
                continue
            if self._run_calculation_card(card):
                self._complete(card, visited, trigger="calculation_retry")
                completed.append(card.id)
        return completed

    # ==================== Internals ====================

    def _complete(self, card: CardConfig, visited: Set[str], trigger: str) -> None:
        if self._states[card.id].status != CardStatus.COMPLETE:
            self._transition(card.id, CardStatus.COMPLETE, trigger=trigger)
        self.scheduler.schedule_next(card, visited)
        self._reveal_satisfied(visited)
        self._ensure_active()

    def resume_card(self, card_id: str, trigger: str = "resume") -> bool:
        """
        unlocked -> active for a card that was revealed while another card
        held focus. Does nothing while some card is active.
        """
        state = self.get_state(card_id)
        if self.active_card_id() is not None or not state.is_revealed:
            return False
        if state.status != CardStatus.UNLOCKED:
            return False
        self._transition(state.card_id, CardStatus.ACTIVE, trigger=trigger, reason="no other card active")
        return True

    def _ensure_active(self) -> None:
        if self.active_card_id() is not None:
            return
        for card in self._cards:
            if self.resume_card(card.id):
                return

    def _reveal_satisfied(self, visited: Set[str]) -> None:
        for card in self._cards:
            state = self._states[card.id]
            if state.is_revealed:
                continue
            # Cards without real conditions only follow the sequence
            if all(c.type == RevealConditionType.ALWAYS for c in card.reveal_conditions):
                continue
            if self.conditions_met(card):
                self.scheduler.reveal_card(card.id, visited)

    def _activate(self, card_id: str, policy: ActivationPolicy, trigger: str) -> None:
        demote_to = CardStatus.COMPLETE if policy == ActivationPolicy.DEMOTE_TO_COMPLETE else CardStatus.UNLOCKED
        for other in self.active_card_ids():
            if other != card_id:
                self._transition(other, demote_to, trigger=trigger, reason=f"'{card_id}' activated")
        self._transition(card_id, CardStatus.ACTIVE, trigger=trigger)

    def _transition(self, card_id: str, to_status: CardStatus, trigger: str, reason: str = "") -> Optional[TransitionEvent]:
        state = self._states[card_id]
        from_status = state.status
        if from_status == to_status:
            return None
        TransitionValidator.validate(card_id, from_status, to_status)

        state.status = to_status
        event = TransitionEvent(
            card_id=card_id,
            from_status=from_status.value,
            to_status=to_status.value,
            trigger=trigger,
            reason=reason or TransitionValidator.get_transition_description(from_status, to_status),
        )
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        for journal in self._journals:
            journal.append(event)

        logger.info(f"Card '{card_id}': {from_status.value} -> {to_status.value} ({trigger})")
        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Transition callback error: {e}")
        return event

    @contextmanager
    def _recording(self) -> Iterator[List[TransitionEvent]]:
        journal: List[TransitionEvent] = []
        self._journals.append(journal)
        try:
            yield journal
        finally:
            self._journals.pop()

    def on_transition(self, callback: Callable[[TransitionEvent], None]) -> None:
        self._callbacks.append(callback)

    def get_history(self, limit: int = 50) -> List[TransitionEvent]:
        return self._history[-limit:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cards": [
                dict(self._states[c.id].to_dict(), type=c.card_type.value, display_order=c.display_order)
                for c in self._cards
            ],
            "active_card_id": self.active_card_id(),
            "pending_reveals": [s.card_id for s in self.scheduler.get_pending()],
        }
