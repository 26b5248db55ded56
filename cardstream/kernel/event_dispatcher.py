"""
CardStream EventDispatcher

Instance-scoped event dispatcher. Every CardSession owns one, so sessions
never see each other's events and tests can use isolated dispatchers.
"""

from collections import deque
from itertools import count
from typing import Callable, Deque, Dict, List, Optional
import logging

from cardstream.kernel.events import SessionEvent, SessionEventType


logger = logging.getLogger("kernel.event_dispatcher")


EventHandler = Callable[[SessionEvent], None]


class EventDispatcher:
    """
    Per-session publish/subscribe.

    Handlers subscribe to one SessionEventType or, with subscribe_all, to
    everything (e.g. a websocket pushing state to the widget). The last
    ``max_history`` events are kept for inspection.

    Usage:
        dispatcher = EventDispatcher(session_id="session_1")
        dispatcher.subscribe(SessionEventType.CARD_REVEALED, handler)
        dispatcher.subscribe_all(push_to_widget)
        dispatcher.emit(CardRevealEvent(card_id="2"))
    """

    def __init__(self, session_id: str = "", max_history: int = 100):
        self.session_id = session_id
        self._typed: Dict[SessionEventType, List[EventHandler]] = {}
        self._wildcard: List[EventHandler] = []
        self._history: Deque[SessionEvent] = deque(maxlen=max_history)
        self._ids = count(1)
        self._paused = False

    # ==================== Subscriptions ====================

    def subscribe(self, event_type: SessionEventType, handler: EventHandler) -> str:
        """
        Subscribe to one event type.

        Returns:
            Subscription ID, or "" if the handler was already subscribed
        """
        return self._add(self._typed.setdefault(event_type, []), handler, f"sub_{event_type.value}")

    def subscribe_all(self, handler: EventHandler) -> str:
        """Subscribe to every event type."""
        return self._add(self._wildcard, handler, "sub_all")

    def _add(self, handlers: List[EventHandler], handler: EventHandler, prefix: str) -> str:
        if handler in handlers:
            return ""
        handlers.append(handler)
        sub_id = f"{prefix}_{next(self._ids)}"
        logger.debug(f"{self.session_id or 'dispatcher'}: {sub_id}")
        return sub_id

    def unsubscribe(self, event_type: SessionEventType, handler: EventHandler) -> bool:
        return self._remove(self._typed.get(event_type, []), handler)

    def unsubscribe_all(self, handler: EventHandler) -> bool:
        return self._remove(self._wildcard, handler)

    @staticmethod
    def _remove(handlers: List[EventHandler], handler: EventHandler) -> bool:
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        return True

    def clear_handlers(self, event_type: Optional[SessionEventType] = None) -> None:
        if event_type is not None:
            self._typed.pop(event_type, None)
            return
        self._typed.clear()
        self._wildcard.clear()

    @property
    def handler_count(self) -> int:
        return len(self._wildcard) + sum(len(h) for h in self._typed.values())

    # ==================== Emission ====================

    def emit(self, event: SessionEvent) -> None:
        """Record the event and notify subscribers. Handler failures are logged."""
        if self._paused:
            logger.debug(f"Paused, dropped {event.event_type.value}")
            return

        event.session_id = event.session_id or self.session_id
        self._history.append(event)

        receivers = list(self._typed.get(event.event_type, ())) + list(self._wildcard)
        for handler in receivers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"{event.event_type.value} handler {getattr(handler, '__name__', handler)} failed: {e}")

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused

    # ==================== History ====================

    def get_history(
        self,
        limit: int = 20,
        event_type: Optional[SessionEventType] = None,
    ) -> List[SessionEvent]:
        """Most recent events, optionally filtered by type."""
        history = [e for e in self._history if event_type is None or e.event_type == event_type]
        return history[-limit:]

    def clear_history(self) -> None:
        self._history.clear()

    @property
    def event_count(self) -> int:
        return len(self._history)
