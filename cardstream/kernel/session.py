"""
kernel/session.py - Card session facade.

One CardSession per visitor: a data table, a formula engine, the card
state machine and an event dispatcher, wired together with one explicit
configuration object. This is the entry point hosts (widget API, CLI,
embedded widget) talk to.

INVARIANT: public operations never raise CardStreamError; failures come
back as OperationResult / ProcessResult with success=False.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
import logging
import time
import uuid

from cardstream.bootstrap.config import CardStreamConfig
from cardstream.cards.loader import ContentBundle
from cardstream.cards.models import CardConfig, InfoCardConfig, SubmitCardConfig, VisualCardConfig
from cardstream.cards.reveal import RevealAction, RevealNotice
from cardstream.cards.state_machine import CardStateMachine
from cardstream.cards.timers import DeferredTimer, ManualTimer
from cardstream.cards.transitions import TransitionEvent
from cardstream.core.enums import ActivationPolicy, CardStatus, CardType, ShortcodeKind
from cardstream.core.session_table import UNSET, SessionDataTable
from cardstream.dependencies.invalidation import InvalidationEvent
from cardstream.errors import (
    CardConfigurationError,
    CardStreamError,
    ErrorAggregator,
    ErrorCategory,
    ErrorCode,
    ErrorInfo,
)
from cardstream.formulas.engine import FormulaEngine, ProcessResult
from cardstream.kernel.event_dispatcher import EventDispatcher
from cardstream.kernel.events import (
    CalculationCompletedEvent,
    CalculationFailedEvent,
    CalculationsInvalidatedEvent,
    CardRevealEvent,
    CardStatusEvent,
    ConfigurationWarningEvent,
    FieldUpdatedEvent,
    SessionEventType,
    SessionResetEvent,
    SubmissionCollectedEvent,
)

logger = logging.getLogger(__name__)

Submitter = Callable[[Dict[str, Any]], Any]
PersistenceHook = Callable[[str, Dict[str, Any]], None]

_STATUS_EVENTS = {
    CardStatus.ACTIVE.value: SessionEventType.CARD_ACTIVATED,
    CardStatus.COMPLETE.value: SessionEventType.CARD_COMPLETED,
    CardStatus.LOCKED.value: SessionEventType.CARD_LOCKED,
}

_REVEAL_EVENTS = {
    RevealAction.REVEALED: SessionEventType.CARD_REVEALED,
    RevealAction.SCHEDULED: SessionEventType.REVEAL_SCHEDULED,
    RevealAction.SKIPPED: SessionEventType.REVEAL_SKIPPED,
    RevealAction.CANCELLED: SessionEventType.REVEAL_SKIPPED,
    RevealAction.CYCLE: SessionEventType.REVEAL_SKIPPED,
}


def new_session_id() -> str:
    """Opaque id for hosts that do not bring their own."""
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class OperationResult:
    """Structured outcome of a session operation."""
    success: bool
    operation: str
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_category: Optional[str] = None
    validation: Dict[str, str] = field(default_factory=dict)
    transitions: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def failure(cls, operation: str, error: CardStreamError, **kwargs) -> "OperationResult":
        return cls(
            success=False,
            operation=operation,
            error=error.message,
            error_code=error.code.name,
            error_category=error.category.value,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "operation": self.operation,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "error_category": self.error_category,
            "validation": self.validation,
            "transitions": self.transitions,
        }


class CardSession:
    """
    A visitor's pass through the card sequence.

    Usage:
        session = CardSession(load_bundle(data), session_id="abc", timer=ManualTimer())
        session.update_field("annual_consumption", 18000)
        session.process("[calc:annual_savings]").result
        session.advance()
        session.tick(3)          # ManualTimer: fire delayed reveals
        session.submit()
    """

    def __init__(
        self,
        content: Union[ContentBundle, Sequence[CardConfig]],
        session_id: Optional[str] = None,
        config: Optional[CardStreamConfig] = None,
        timer: Optional[DeferredTimer] = None,
        submitter: Optional[Submitter] = None,
        persistence: Optional[PersistenceHook] = None,
    ):
        """
        Raises:
            CardConfigurationError: content cannot start a session
        """
        if isinstance(content, ContentBundle):
            bundle = content
        else:
            bundle = ContentBundle(cards=list(content))

        self.config = config or CardStreamConfig()
        self.session_id = session_id or new_session_id()
        self.timer = timer or ManualTimer()
        self._submitter = submitter
        self._persistence = persistence
        self._content = bundle

        self.errors = ErrorAggregator()
        self.events = EventDispatcher(self.session_id, max_history=self.config.session.max_event_history)
        self.table = SessionDataTable(self.session_id)
        self.engine = FormulaEngine(self.table, config=self.config.engine)

        try:
            for definition in bundle.formulas:
                self.engine.register_formula(definition)
            for definition in bundle.lookups:
                self.engine.register_lookup(definition)
        except CardStreamError as e:
            raise CardConfigurationError(
                f"Invalid formula content: {e.message}",
                source="card_session",
                path=e.path,
                code=e.code,
            )

        self.machine = CardStateMachine(
            bundle.cards,
            self.table,
            engine=self.engine,
            timer=self.timer,
            config=self.config.reveal,
            errors=self.errors,
            required_message=self.config.session.required_message,
            max_history=self.config.session.max_event_history,
            autostart=False,
        )

        self._debounce_handle = None
        self._submitted = False
        self._wire()
        self.machine.start()

        logger.info(
            f"Session {self.session_id} started with {len(bundle.cards)} cards"
            f"{' (embedded mode)' if self.embedded_mode else ''}"
        )

    @property
    def embedded_mode(self) -> bool:
        return self.config.session.embedded_mode

    @property
    def submitted(self) -> bool:
        return self._submitted

    # ==================== Fields ====================

    def update_field(self, field_name: str, value: Any) -> OperationResult:
        """Write a field value and run everything that depends on it."""
        try:
            old_value = self.table.get_field(field_name)
            update = self.machine.update_field(field_name, value)
        except (CardStreamError, ValueError) as e:
            return self._failure("update_field", e)

        self._after_field_change(field_name, old_value, value, update.owner_card_id)
        return OperationResult(
            success=True,
            operation="update_field",
            data=update.to_dict(),
            transitions=[t.to_dict() for t in update.transitions],
        )

    def on_field_changed(self, field_name: str) -> OperationResult:
        """
        For hosts that wrote the table directly: re-evaluate the owning
        card, retry calculation cards and check reveal conditions.
        """
        try:
            update = self.machine.field_changed(field_name)
        except CardStreamError as e:
            return self._failure("on_field_changed", e)

        self._schedule_recalculation()
        return OperationResult(
            success=True,
            operation="on_field_changed",
            data=update.to_dict(),
            transitions=[t.to_dict() for t in update.transitions],
        )

    def _after_field_change(
        self,
        field_name: str,
        old_value: Any,
        new_value: Any,
        owner_card_id: Optional[str],
    ) -> None:
        self.events.emit(FieldUpdatedEvent(
            field_name=field_name,
            old_value=None if old_value is UNSET else old_value,
            new_value=new_value,
            owner_card_id=owner_card_id,
            data_version=self.table.version,
        ))
        self._schedule_recalculation()
        self._persist()

    def _schedule_recalculation(self) -> None:
        delay = self.config.engine.debounce_seconds
        if delay <= 0:
            return
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self.timer.schedule(delay, self._run_debounced_recalculation)

    def _run_debounced_recalculation(self) -> None:
        self._debounce_handle = None
        self.engine.recalculate_stale()

    def _persist(self) -> None:
        if self.embedded_mode or self._persistence is None:
            return
        try:
            self._persistence(self.session_id, self.table.fields())
        except Exception as e:
            logger.error(f"Persistence hook failed for {self.session_id}: {e}")

    # ==================== Cards ====================

    def advance(self, card_id: Optional[str] = None) -> OperationResult:
        """
        Next button: validate the card (default: the active one) and
        complete it when valid.
        """
        try:
            target = card_id or self.machine.active_card_id()
            if target is None:
                return OperationResult(success=False, operation="advance", error="No active card")
            result = self.machine.advance(target)
        except CardStreamError as e:
            return self._failure("advance", e)

        if not result.advanced:
            return OperationResult(
                success=False,
                operation="advance",
                data={"card_id": result.card_id},
                error="Validation failed",
                error_code=ErrorCode.VAL_REQUIRED.name if any(
                    i.code == ErrorCode.VAL_REQUIRED for i in result.validation.issues
                ) else ErrorCode.VAL_RULE.name,
                error_category=ErrorCategory.VALIDATION.value,
                validation=result.validation.messages(),
            )
        return OperationResult(
            success=True,
            operation="advance",
            data={"card_id": result.card_id},
            transitions=[t.to_dict() for t in result.transitions],
        )

    def complete_card(self, card_id: str) -> OperationResult:
        return self._run_transitions("complete_card", lambda: self.machine.complete_card(card_id))

    def activate_card(self, card_id: str, policy: Optional[str] = None) -> OperationResult:
        def run() -> List[TransitionEvent]:
            return self.machine.activate_card(card_id, ActivationPolicy(policy) if policy else None)
        return self._run_transitions("activate_card", run)

    def uncomplete_card(self, card_id: str) -> OperationResult:
        return self._run_transitions("uncomplete_card", lambda: self.machine.uncomplete_card(card_id))

    def validate_card(self, card_id: str) -> OperationResult:
        try:
            validation = self.machine.validate_card(card_id)
        except CardStreamError as e:
            return self._failure("validate_card", e)
        return OperationResult(
            success=validation.is_valid,
            operation="validate_card",
            data=validation.to_dict(),
            validation=validation.messages(),
        )

    def _run_transitions(self, operation: str, run: Callable[[], List[TransitionEvent]]) -> OperationResult:
        try:
            transitions = run()
        except (CardStreamError, ValueError) as e:
            return self._failure(operation, e)
        return OperationResult(
            success=True,
            operation=operation,
            transitions=[t.to_dict() for t in transitions],
        )

    def tick(self, seconds: float) -> OperationResult:
        """Advance a ManualTimer; fires delayed reveals that fall due."""
        if not isinstance(self.timer, ManualTimer):
            return OperationResult(success=False, operation="tick", error="Session timer is not a ManualTimer")
        fired = self.timer.advance(seconds)
        return OperationResult(success=True, operation="tick", data={"fired": fired, "now": self.timer.now})

    # ==================== Calculations ====================

    def process(self, template: str, unit: Optional[str] = None) -> ProcessResult:
        return self.engine.process(template, unit=unit)

    def evaluate_card(self, card_id: str) -> OperationResult:
        """
        Results a card displays: every result template of a calculation
        card, or the rendered body of an info/visual card.
        """
        try:
            card = self.machine.get_card(card_id)
            if card.card_type == CardType.CALCULATION:
                results = self.machine.evaluate_calculation_card(card.id)
            elif isinstance(card, (InfoCardConfig, VisualCardConfig)) and card.body:
                results = [self.engine.process(card.body)]
            else:
                results = []
        except CardStreamError as e:
            return self._failure("evaluate_card", e)

        failed = [r for r in results if not r.success]
        return OperationResult(
            success=not failed,
            operation="evaluate_card",
            data={"card_id": card_id, "results": [r.to_dict() for r in results]},
            error=failed[0].error if failed else None,
            error_category=failed[0].error_category.value if failed and failed[0].error_category else None,
        )

    # ==================== Submission ====================

    def collect_submission(self) -> Dict[str, Any]:
        """Flat field map plus current calculation values under calc_results."""
        payload = dict(self.table.fields())
        payload["calc_results"] = {
            record.name: record.value
            for record in self.table.calculations().values()
            if record.kind != ShortcodeKind.TEMPLATE
        }
        payload["session_id"] = self.session_id
        return payload

    def submit(self, card_id: Optional[str] = None) -> OperationResult:
        """
        Validate the submit card and hand the collected values to the
        submission callable.
        """
        try:
            submit_card = self._submit_card(card_id)
            if submit_card is not None:
                validation = self.machine.validate_card(submit_card.id)
                if not validation.is_valid:
                    return OperationResult(
                        success=False,
                        operation="submit",
                        data={"card_id": submit_card.id},
                        error="Validation failed",
                        error_code=ErrorCode.VAL_REQUIRED.name,
                        error_category=ErrorCategory.VALIDATION.value,
                        validation=validation.messages(),
                    )
        except CardStreamError as e:
            return self._failure("submit", e)

        payload = self.collect_submission()
        delivered = False
        if self._submitter is not None:
            try:
                self._submitter(payload)
                delivered = True
            except Exception as e:
                logger.error(f"Submission failed for {self.session_id}: {e}")
                return OperationResult(
                    success=False,
                    operation="submit",
                    error=f"Submission failed: {e}",
                    error_code=ErrorCode.STA_SUBMISSION.name,
                    error_category=ErrorCategory.STATE.value,
                )

        self._submitted = True
        transitions: List[TransitionEvent] = []
        if submit_card is not None and self.machine.get_state(submit_card.id).status != CardStatus.COMPLETE:
            try:
                transitions = self.machine.complete_card(submit_card.id)
            except CardStreamError as e:
                logger.warning(f"Submitted but could not complete '{submit_card.id}': {e.message}")

        self.events.emit(SubmissionCollectedEvent(
            field_count=len(self.table.fields()),
            calculation_count=len(payload["calc_results"]),
            delivered=delivered,
            data_version=self.table.version,
        ))
        logger.info(f"Submission collected for {self.session_id}")
        return OperationResult(
            success=True,
            operation="submit",
            data={"payload": payload, "delivered": delivered},
            transitions=[t.to_dict() for t in transitions],
        )

    def _submit_card(self, card_id: Optional[str]) -> Optional[CardConfig]:
        if card_id is not None:
            return self.machine.get_card(card_id)
        submit_cards = [c for c in self.machine.cards if isinstance(c, SubmitCardConfig)]
        return submit_cards[-1] if submit_cards else None

    # ==================== Lifecycle ====================

    def reset(self, new_id: bool = False) -> OperationResult:
        """
        Clean slate: pending reveals cancelled, data cleared, first card
        revealed again. With new_id the session gets a fresh id.
        """
        cancelled = len(self.machine.scheduler.get_pending())
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        if new_id:
            self.session_id = new_session_id()
            self.table.session_id = self.session_id
            self.events.session_id = self.session_id

        self.table.reset()
        self.engine.invalidation.clear_history()
        self.errors.clear()
        self._submitted = False
        transitions = self.machine.reset()

        self.events.emit(SessionResetEvent(
            cancelled_reveals=cancelled,
            new_session_id=self.session_id if new_id else None,
        ))
        return OperationResult(
            success=True,
            operation="reset",
            data={"session_id": self.session_id, "cancelled_reveals": cancelled},
            transitions=[t.to_dict() for t in transitions],
        )

    def get_state(self) -> Dict[str, Any]:
        """Snapshot for hosts."""
        state = self.machine.to_dict()
        state.update({
            "session_id": self.session_id,
            "embedded_mode": self.embedded_mode,
            "submitted": self._submitted,
            "fields": self.table.fields(),
            "calculations": {k: r.to_dict() for k, r in self.table.calculations().items()},
            "errors": self.errors.generate_report().to_dict(),
        })
        return state

    # ==================== Wiring ====================

    def _wire(self) -> None:
        self.machine.on_transition(self._on_transition)
        self.machine.scheduler.on_notice(self._on_reveal_notice)
        self.engine.on_result(self._on_process_result)
        self.engine.invalidation.on_invalidate(self._on_invalidation)
        self.errors.on_error(self._on_error)

    def _on_transition(self, event: TransitionEvent) -> None:
        self.events.emit(CardStatusEvent(
            event_type=_STATUS_EVENTS.get(event.to_status, SessionEventType.CARD_STATUS_CHANGED),
            card_id=event.card_id,
            from_status=event.from_status,
            to_status=event.to_status,
            trigger=event.trigger,
            data_version=self.table.version,
        ))

    def _on_reveal_notice(self, notice: RevealNotice) -> None:
        self.events.emit(CardRevealEvent(
            event_type=_REVEAL_EVENTS[notice.action],
            card_id=notice.card_id,
            delay_seconds=notice.delay_seconds,
            source_card_id=notice.source_card_id,
            reason=notice.reason or notice.action.value,
            data_version=self.table.version,
        ))

    def _on_process_result(self, result: ProcessResult) -> None:
        if result.success:
            self.events.emit(CalculationCompletedEvent(
                name=result.name,
                result=result.result,
                value=result.value,
                unit=result.unit,
                data_version=self.table.version,
            ))
        else:
            self.events.emit(CalculationFailedEvent(
                name=result.name,
                error=result.error or "",
                error_category=result.error_category.value if result.error_category else None,
                data_version=self.table.version,
            ))

    def _on_invalidation(self, event: InvalidationEvent) -> None:
        if not event.invalidated_records:
            return
        self.events.emit(CalculationsInvalidatedEvent(
            trigger=event.trigger_node or "",
            invalidated=list(event.invalidated_records),
            data_version=self.table.version,
        ))

    def _on_error(self, error: ErrorInfo) -> None:
        if error.category != ErrorCategory.CONFIGURATION:
            return
        self.events.emit(ConfigurationWarningEvent(
            code=error.code.name,
            message=error.message,
            card_id=error.path,
            data_version=self.table.version,
        ))

    def _failure(self, operation: str, error: Exception) -> OperationResult:
        if isinstance(error, CardStreamError):
            logger.info(f"{operation} failed: {error.message}")
            self.errors.add(error.to_error_info())
            return OperationResult.failure(operation, error)
        logger.info(f"{operation} failed: {error}")
        return OperationResult(
            success=False,
            operation=operation,
            error=str(error),
            error_category=ErrorCategory.VALIDATION.value,
        )
