"""
CardStream Card Transitions

Defines legal card status transitions and transition events.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List
import uuid

from cardstream.core.enums import CardStatus
from cardstream.errors import InvalidTransitionError


# ==================== Legal Status Transitions ====================
# Maps each status to the statuses it can move to

LEGAL_TRANSITIONS: Dict[CardStatus, List[CardStatus]] = {
    CardStatus.HIDDEN: [
        CardStatus.LOCKED,
        CardStatus.UNLOCKED,
        CardStatus.ACTIVE,
        CardStatus.COMPLETE,
    ],

    CardStatus.LOCKED: [
        CardStatus.UNLOCKED,
        CardStatus.ACTIVE,
        CardStatus.COMPLETE,
    ],

    CardStatus.UNLOCKED: [
        CardStatus.ACTIVE,
        CardStatus.COMPLETE,
    ],

    CardStatus.ACTIVE: [
        CardStatus.COMPLETE,
        CardStatus.UNLOCKED,
    ],

    CardStatus.COMPLETE: [
        CardStatus.ACTIVE,
        CardStatus.UNLOCKED,
    ],
}


# ==================== Transition Event ====================

@dataclass
class TransitionEvent:
    """
    Record of a card status transition.
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    card_id: str = ""
    from_status: str = ""
    to_status: str = ""
    trigger: str = ""  # field_update, reveal, activate, complete, uncomplete, lock, reset
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitionEvent":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ==================== Transition Validator ====================

class TransitionValidator:
    """
    Validates card status transitions.
    """

    @staticmethod
    def is_valid_transition(from_status: CardStatus, to_status: CardStatus) -> bool:
        return to_status in LEGAL_TRANSITIONS.get(from_status, [])

    @staticmethod
    def get_valid_transitions(from_status: CardStatus) -> List[CardStatus]:
        return LEGAL_TRANSITIONS.get(from_status, [])

    @staticmethod
    def validate(card_id: str, from_status: CardStatus, to_status: CardStatus) -> None:
        """
        Raise InvalidTransitionError unless the move is legal.

        Staying in the same status is always allowed.
        """
        if from_status == to_status:
            return
        if not TransitionValidator.is_valid_transition(from_status, to_status):
            raise InvalidTransitionError(
                f"Card '{card_id}' cannot move from {from_status.value} to {to_status.value}",
                source="card_state_machine",
                path=card_id,
            )

    @staticmethod
    def get_transition_description(from_status: CardStatus, to_status: CardStatus) -> str:
        descriptions = {
            (CardStatus.HIDDEN, CardStatus.ACTIVE): "Revealed and activated",
            (CardStatus.HIDDEN, CardStatus.UNLOCKED): "Revealed behind the active card",
            (CardStatus.HIDDEN, CardStatus.LOCKED): "Reached but reveal conditions not met",
            (CardStatus.HIDDEN, CardStatus.COMPLETE): "Auto-completed on reveal",
            (CardStatus.LOCKED, CardStatus.ACTIVE): "Reveal conditions satisfied",
            (CardStatus.LOCKED, CardStatus.UNLOCKED): "Reveal conditions satisfied",
            (CardStatus.UNLOCKED, CardStatus.ACTIVE): "Activated by user",
            (CardStatus.ACTIVE, CardStatus.COMPLETE): "Completion rule satisfied",
            (CardStatus.ACTIVE, CardStatus.UNLOCKED): "Demoted by another card",
            (CardStatus.COMPLETE, CardStatus.ACTIVE): "Reopened for editing",
            (CardStatus.COMPLETE, CardStatus.UNLOCKED): "Completion withdrawn",
        }
        return descriptions.get((from_status, to_status), f"{from_status.value} -> {to_status.value}")
