"""
CardStream Session Events

Typed events emitted by a CardSession. Hosts subscribe through the
session's EventDispatcher (e.g. to push card state to a widget or to
forward configuration warnings to monitoring).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


# =============================================================================
# EVENT TYPES
# =============================================================================

class SessionEventType(str, Enum):
    """Types of session events."""

    # Data events
    FIELD_UPDATED = "field_updated"
    CALCULATIONS_INVALIDATED = "calculations_invalidated"
    CALCULATION_COMPLETED = "calculation_completed"
    CALCULATION_FAILED = "calculation_failed"

    # Card events
    CARD_REVEALED = "card_revealed"
    CARD_ACTIVATED = "card_activated"
    CARD_COMPLETED = "card_completed"
    CARD_LOCKED = "card_locked"
    CARD_STATUS_CHANGED = "card_status_changed"
    REVEAL_SCHEDULED = "reveal_scheduled"
    REVEAL_SKIPPED = "reveal_skipped"

    # Session events
    SESSION_RESET = "session_reset"
    SUBMISSION_COLLECTED = "submission_collected"
    CONFIGURATION_WARNING = "configuration_warning"


# =============================================================================
# BASE EVENT
# =============================================================================

@dataclass
class SessionEvent:
    """
    Base class for session events.

    All session events have:
    - event_id: Unique identifier
    - event_type: Type classification
    - session_id: Owning session
    - timestamp: When the event occurred
    - data_version: Data table version at time of event
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4())[:12])
    event_type: SessionEventType = SessionEventType.FIELD_UPDATED
    session_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "data_version": self.data_version,
        }


# =============================================================================
# DATA EVENTS
# =============================================================================

@dataclass
class FieldUpdatedEvent(SessionEvent):
    """Emitted after a field value is written."""
    event_type: SessionEventType = field(default=SessionEventType.FIELD_UPDATED)
    field_name: str = ""
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    owner_card_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "owner_card_id": self.owner_card_id,
        })
        return base


@dataclass
class CalculationsInvalidatedEvent(SessionEvent):
    """Emitted when a field change marks calculation records stale."""
    event_type: SessionEventType = field(default=SessionEventType.CALCULATIONS_INVALIDATED)
    trigger: str = ""
    invalidated: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "trigger": self.trigger,
            "invalidated": self.invalidated,
        })
        return base


@dataclass
class CalculationCompletedEvent(SessionEvent):
    event_type: SessionEventType = field(default=SessionEventType.CALCULATION_COMPLETED)
    name: str = ""
    result: str = ""
    value: Optional[Any] = None
    unit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "name": self.name,
            "result": self.result,
            "value": self.value,
            "unit": self.unit,
        })
        return base


@dataclass
class CalculationFailedEvent(SessionEvent):
    event_type: SessionEventType = field(default=SessionEventType.CALCULATION_FAILED)
    name: str = ""
    error: str = ""
    error_category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "name": self.name,
            "error": self.error,
            "error_category": self.error_category,
        })
        return base


# =============================================================================
# CARD EVENTS
# =============================================================================

@dataclass
class CardStatusEvent(SessionEvent):
    """
    Emitted on every card status transition. event_type is narrowed to
    CARD_ACTIVATED / CARD_COMPLETED / CARD_LOCKED where one applies.
    """
    event_type: SessionEventType = field(default=SessionEventType.CARD_STATUS_CHANGED)
    card_id: str = ""
    from_status: str = ""
    to_status: str = ""
    trigger: str = ""

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "card_id": self.card_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "trigger": self.trigger,
        })
        return base


@dataclass
class CardRevealEvent(SessionEvent):
    """Emitted for reveals, scheduled reveals and skipped reveals."""
    event_type: SessionEventType = field(default=SessionEventType.CARD_REVEALED)
    card_id: str = ""
    delay_seconds: float = 0.0
    source_card_id: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "card_id": self.card_id,
            "delay_seconds": self.delay_seconds,
            "source_card_id": self.source_card_id,
            "reason": self.reason,
        })
        return base


# =============================================================================
# SESSION EVENTS
# =============================================================================

@dataclass
class SessionResetEvent(SessionEvent):
    event_type: SessionEventType = field(default=SessionEventType.SESSION_RESET)
    cancelled_reveals: int = 0
    new_session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "cancelled_reveals": self.cancelled_reveals,
            "new_session_id": self.new_session_id,
        })
        return base


@dataclass
class SubmissionCollectedEvent(SessionEvent):
    event_type: SessionEventType = field(default=SessionEventType.SUBMISSION_COLLECTED)
    field_count: int = 0
    calculation_count: int = 0
    delivered: bool = False

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "field_count": self.field_count,
            "calculation_count": self.calculation_count,
            "delivered": self.delivered,
        })
        return base


@dataclass
class ConfigurationWarningEvent(SessionEvent):
    """A configuration gap was papered over to keep the flow moving."""
    event_type: SessionEventType = field(default=SessionEventType.CONFIGURATION_WARNING)
    code: str = ""
    message: str = ""
    card_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        base = super().to_dict()
        base.update({
            "code": self.code,
            "message": self.message,
            "card_id": self.card_id,
        })
        return base
