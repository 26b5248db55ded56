"""
CardStream Kernel

Session facade, session registry and the per-session event dispatcher.
"""

from .events import (
    SessionEventType,
    SessionEvent,
    FieldUpdatedEvent,
    CalculationsInvalidatedEvent,
    CalculationCompletedEvent,
    CalculationFailedEvent,
    CardStatusEvent,
    CardRevealEvent,
    SessionResetEvent,
    SubmissionCollectedEvent,
    ConfigurationWarningEvent,
)

from .event_dispatcher import EventDispatcher

from .session import (
    CardSession,
    OperationResult,
    new_session_id,
)

from .registry import SessionRegistry

__all__ = [
    "SessionEventType",
    "SessionEvent",
    "FieldUpdatedEvent",
    "CalculationsInvalidatedEvent",
    "CalculationCompletedEvent",
    "CalculationFailedEvent",
    "CardStatusEvent",
    "CardRevealEvent",
    "SessionResetEvent",
    "SubmissionCollectedEvent",
    "ConfigurationWarningEvent",
    "EventDispatcher",
    "CardSession",
    "OperationResult",
    "new_session_id",
    "SessionRegistry",
]
