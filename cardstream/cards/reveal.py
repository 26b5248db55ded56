"""
CardStream Reveal Scheduler

RevealScheduler is the only writer of CardRuntimeState.is_revealed. A
reveal is one way: false -> true, at most once per session.

Timing of the card after a completed card:
    immediately     reveal synchronously, inside the current cascade
    after_delay     ScheduledReveal handle on a DeferredTimer; when it fires
                    it re-checks that the card is still unrevealed and the
                    session generation is unchanged
    (missing)       immediate, recorded as a configuration gap

A cascade carries the set of cards it already visited; reaching one of them
again halts the cascade with a cycle error instead of looping.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING
import logging

from cardstream.bootstrap.config import RevealConfig
from cardstream.cards.timers import DeferredTimer, ManualTimer, TimerHandle
from cardstream.core.enums import CardStatus, RevealTimingMode
from cardstream.errors import (
    CyclicDependencyError,
    ErrorAggregator,
    ErrorCode,
    create_configuration_gap,
)

if TYPE_CHECKING:
    from cardstream.cards.models import CardConfig
    from cardstream.cards.state_machine import CardStateMachine

logger = logging.getLogger(__name__)


# =============================================================================
# RUNTIME STATE
# =============================================================================

class CardRuntimeState:
    """Status and reveal gate of one card in one session."""

    __slots__ = ("card_id", "status", "_revealed", "_revealed_at")

    def __init__(self, card_id: str, status: CardStatus = CardStatus.HIDDEN):
        self.card_id = card_id
        self.status = status
        self._revealed = False
        self._revealed_at: Optional[str] = None

    @property
    def is_revealed(self) -> bool:
        return self._revealed

    @property
    def revealed_at(self) -> Optional[str]:
        return self._revealed_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_id": self.card_id,
            "status": self.status.value,
            "is_revealed": self._revealed,
            "revealed_at": self._revealed_at,
        }

    def __repr__(self) -> str:
        return f"CardRuntimeState({self.card_id!r}, {self.status.value}, revealed={self._revealed})"


def _grant_reveal(state: CardRuntimeState) -> None:
    # Only RevealScheduler calls this
    state._revealed = True
    state._revealed_at = datetime.utcnow().isoformat()


# =============================================================================
# SCHEDULED REVEALS
# =============================================================================

class RevealAction(str, Enum):
    REVEALED = "revealed"
    SCHEDULED = "scheduled"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    CYCLE = "cycle"


@dataclass
class RevealNotice:
    """What the scheduler did with one card."""
    card_id: str
    action: RevealAction
    delay_seconds: float = 0.0
    source_card_id: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_id": self.card_id,
            "action": self.action.value,
            "delay_seconds": self.delay_seconds,
            "source_card_id": self.source_card_id,
            "reason": self.reason,
        }


@dataclass
class ScheduledReveal:
    """Cancellable handle for a delayed reveal, keyed by card id."""
    card_id: str
    generation: int
    delay_seconds: float
    source_card_id: Optional[str] = None
    scheduled_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    cancelled: bool = False
    fired: bool = False
    timer_handle: Optional[TimerHandle] = None

    @property
    def is_pending(self) -> bool:
        return not self.cancelled and not self.fired

    def cancel(self) -> None:
        self.cancelled = True
        if self.timer_handle is not None:
            self.timer_handle.cancel()


# =============================================================================
# SCHEDULER
# =============================================================================

class RevealScheduler:
    """
    Reveals cards and schedules the card after a completed one.

    Status changes that follow a reveal (activate, unlock, auto-complete)
    are delegated to the CardStateMachine.
    """

    def __init__(
        self,
        machine: "CardStateMachine",
        timer: Optional[DeferredTimer] = None,
        config: Optional[RevealConfig] = None,
        errors: Optional[ErrorAggregator] = None,
    ):
        self._machine = machine
        self.timer = timer or ManualTimer()
        self.config = config or RevealConfig()
        self.errors = errors if errors is not None else ErrorAggregator()

        self._pending: Dict[str, ScheduledReveal] = {}
        self._generation = 0
        self._callbacks: List[Callable[[RevealNotice], None]] = []

    @property
    def generation(self) -> int:
        return self._generation

    # ==================== Reveal ====================

    def reveal_card(self, card_id: str, visited: Optional[Set[str]] = None) -> bool:
        """
        Reveal a card and settle its status.

        Returns True if the card was revealed by this call. An already
        revealed card is left alone.
        """
        visited = set() if visited is None else visited
        state = self._machine.get_state(card_id)

        if state.is_revealed:
            self._emit(RevealNotice(card_id, RevealAction.SKIPPED, reason="already revealed"))
            return False

        if card_id in visited or len(visited) >= self.config.max_cascade_length:
            self._halt_cascade(card_id, visited)
            return False

        card = self._machine.get_card(card_id)
        if not self._machine.conditions_met(card):
            self._machine.lock_card(card_id)
            self._emit(RevealNotice(card_id, RevealAction.SKIPPED, reason="reveal conditions not met"))
            return False
        visited.add(card_id)

        pending = self._pending.pop(card_id, None)
        if pending is not None:
            pending.cancel()

        _grant_reveal(state)
        logger.info(f"Revealed card '{card_id}'")
        self._emit(RevealNotice(card_id, RevealAction.REVEALED))

        self._machine.settle_revealed(card, visited)
        return True

    def schedule_next(self, card: "CardConfig", visited: Optional[Set[str]] = None) -> Optional[ScheduledReveal]:
        """
        Reveal the card after ``card`` according to ``card.reveal_timing``.

        Returns the handle for delayed reveals, None otherwise.
        """
        next_card = self._machine.next_card(card.id)
        if next_card is None:
            return None
        next_state = self._machine.get_state(next_card.id)
        if next_state.is_revealed:
            # Revealed early by its conditions; it may still be waiting for focus
            self._machine.resume_card(next_card.id, trigger="sequence")
            return None

        timing = card.reveal_timing
        if timing is None:
            self._record_gap(
                f"Card '{card.id}' has no reveal_timing; revealing '{next_card.id}' immediately",
                card.id,
                ErrorCode.CFG_MISSING_TIMING,
            )
            self.reveal_card(next_card.id, visited)
            return None

        if timing.mode == RevealTimingMode.IMMEDIATELY:
            self.reveal_card(next_card.id, visited)
            return None

        delay = timing.delay_seconds
        if delay is None:
            delay = self.config.default_delay_seconds
            logger.debug(f"Card '{card.id}' after_delay without delay_seconds, using {delay}s")
        return self._schedule(next_card.id, delay, source_card_id=card.id)

    def _schedule(self, card_id: str, delay: float, source_card_id: Optional[str]) -> ScheduledReveal:
        existing = self._pending.get(card_id)
        if existing is not None and existing.is_pending:
            logger.debug(f"Reveal of '{card_id}' already scheduled")
            return existing

        scheduled = ScheduledReveal(
            card_id=card_id,
            generation=self._generation,
            delay_seconds=delay,
            source_card_id=source_card_id,
        )
        scheduled.timer_handle = self.timer.schedule(delay, lambda: self._fire(scheduled))
        self._pending[card_id] = scheduled

        logger.info(f"Scheduled reveal of '{card_id}' in {delay}s")
        self._emit(RevealNotice(card_id, RevealAction.SCHEDULED, delay_seconds=delay, source_card_id=source_card_id))
        return scheduled

    def _fire(self, scheduled: ScheduledReveal) -> None:
        if self._pending.get(scheduled.card_id) is scheduled:
            del self._pending[scheduled.card_id]

        if scheduled.cancelled or scheduled.fired:
            return
        scheduled.fired = True

        if scheduled.generation != self._generation:
            self._emit(RevealNotice(scheduled.card_id, RevealAction.SKIPPED, reason="session moved on"))
            return
        if self._machine.get_state(scheduled.card_id).is_revealed:
            self._emit(RevealNotice(scheduled.card_id, RevealAction.SKIPPED, reason="already revealed"))
            return

        self.reveal_card(scheduled.card_id)

    # ==================== Cancellation ====================

    def cancel_pending(self) -> int:
        """Invalidate every scheduled reveal. Returns how many were pending."""
        self._generation += 1
        count = 0
        for scheduled in self._pending.values():
            if scheduled.is_pending:
                scheduled.cancel()
                count += 1
                self._emit(RevealNotice(scheduled.card_id, RevealAction.CANCELLED))
        self._pending.clear()
        if count:
            logger.info(f"Cancelled {count} scheduled reveals")
        return count

    def get_pending(self) -> List[ScheduledReveal]:
        return [s for s in self._pending.values() if s.is_pending]

    # ==================== Internals ====================

    def _halt_cascade(self, card_id: str, visited: Set[str]) -> None:
        error = CyclicDependencyError(
            f"Reveal cascade revisited card '{card_id}'; cascade halted",
            source="reveal_scheduler",
            path=card_id,
            code=ErrorCode.CYC_REVEAL,
            cycle=sorted(visited) + [card_id],
        )
        logger.error(error.message)
        self.errors.add(error.to_error_info())
        self._emit(RevealNotice(card_id, RevealAction.CYCLE, reason=error.message))

    def _record_gap(self, message: str, card_id: str, code: ErrorCode) -> None:
        logger.warning(message)
        self.errors.add(create_configuration_gap(message, source="reveal_scheduler", path=card_id, code=code))

    def on_notice(self, callback: Callable[[RevealNotice], None]) -> None:
        self._callbacks.append(callback)

    def _emit(self, notice: RevealNotice) -> None:
        for callback in self._callbacks:
            try:
                callback(notice)
            except Exception as e:
                logger.error(f"Reveal callback error: {e}")
