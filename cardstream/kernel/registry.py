"""
kernel/registry.py - Sessions by id.

Hosts that serve many visitors keep their CardSessions here. The
registry creates sessions from one shared content bundle and evicts the
least recently used session once max_sessions is reached.
"""

from __future__ import annotations
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional
import logging

from cardstream.bootstrap.config import CardStreamConfig
from cardstream.cards.loader import ContentBundle
from cardstream.cards.timers import DeferredTimer
from cardstream.kernel.session import CardSession, Submitter, new_session_id

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Get-or-create access to sessions.

    Usage:
        registry = SessionRegistry(bundle, config)
        session = registry.get_or_create(request_session_id)
        fresh = registry.new_session()  # "start over" from the widget
    """

    def __init__(
        self,
        content: ContentBundle,
        config: Optional[CardStreamConfig] = None,
        timer_factory: Optional[Callable[[], DeferredTimer]] = None,
        submitter: Optional[Submitter] = None,
    ):
        self._content = content
        self.config = config or CardStreamConfig()
        self._timer_factory = timer_factory
        self._submitter = submitter
        self._sessions: "OrderedDict[str, CardSession]" = OrderedDict()

    @property
    def content(self) -> ContentBundle:
        return self._content

    def get(self, session_id: str) -> Optional[CardSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    def get_or_create(self, session_id: Optional[str] = None) -> CardSession:
        if session_id:
            existing = self.get(session_id)
            if existing is not None:
                return existing
        return self._create(session_id or new_session_id())

    def new_session(self) -> CardSession:
        """Always a fresh session with a new id."""
        return self._create(new_session_id())

    def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.machine.scheduler.cancel_pending()
        return True

    def rekey(self, old_id: str, session: CardSession) -> None:
        """Re-register a session whose id changed on reset."""
        self._sessions.pop(old_id, None)
        self._sessions[session.session_id] = session

    def clear(self) -> int:
        count = len(self._sessions)
        for session in self._sessions.values():
            session.machine.scheduler.cancel_pending()
        self._sessions.clear()
        logger.info(f"Cleared {count} sessions")
        return count

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def _create(self, session_id: str) -> CardSession:
        while len(self._sessions) >= max(1, self.config.session.max_sessions):
            evicted_id, evicted = self._sessions.popitem(last=False)
            evicted.machine.scheduler.cancel_pending()
            logger.info(f"Evicted least recently used session {evicted_id}")

        session = CardSession(
            self._content,
            session_id=session_id,
            config=self.config,
            timer=self._timer_factory() if self._timer_factory else None,
            submitter=self._submitter,
        )
        self._sessions[session.session_id] = session
        return session

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessions": len(self._sessions),
            "max_sessions": self.config.session.max_sessions,
            "cards": len(self._content.cards),
        }
