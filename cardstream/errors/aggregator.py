"""
errors/aggregator.py - Collect and report errors per session

Configuration gaps are logged and also kept here so that operators can
see which card templates need fixing.
"""

from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Set, Tuple
from datetime import datetime, timezone
import logging

from .taxonomy import ErrorInfo, ErrorCategory, ErrorSeverity

logger = logging.getLogger(__name__)

_BLOCKING = (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)


@dataclass
class ErrorReport:
    """Snapshot of what went wrong in one session."""

    total_errors: int = 0
    by_severity: Dict[str, int] = field(default_factory=dict)
    by_category: Dict[str, int] = field(default_factory=dict)
    gaps_by_card: Dict[str, int] = field(default_factory=dict)
    summary: str = ""
    errors: List[ErrorInfo] = field(default_factory=list)
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "by_severity": self.by_severity,
            "by_category": self.by_category,
            "gaps_by_card": self.gaps_by_card,
            "summary": self.summary,
            "generated_at": self.generated_at,
            "errors": [e.to_dict() for e in self.errors],
        }


class ErrorAggregator:
    """
    Error sink shared by the engine, the state machine and the scheduler.

    The same card can be revisited many times during a session, so an
    error with the same code, path and message is recorded once.
    """

    def __init__(self, max_errors: int = 500):
        self._errors: List[ErrorInfo] = []
        self._seen: Set[Tuple[Any, ...]] = set()
        self._max_errors = max_errors
        self._callbacks: List[Callable[[ErrorInfo], None]] = []

    def add(self, error: ErrorInfo) -> bool:
        """Record an error. Returns False for a duplicate."""
        key = (error.code, error.path, error.message)
        if key in self._seen:
            return False
        self._seen.add(key)

        self._errors.append(error)
        del self._errors[:-self._max_errors]

        for callback in self._callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")
        return True

    def on_error(self, callback: Callable[[ErrorInfo], None]) -> None:
        """Called for every newly recorded error."""
        self._callbacks.append(callback)

    # ==================== Queries ====================

    def get_all(self) -> List[ErrorInfo]:
        return list(self._errors)

    def get_by_severity(self, severity: ErrorSeverity) -> List[ErrorInfo]:
        return [e for e in self._errors if e.severity == severity]

    def get_by_category(self, category: ErrorCategory) -> List[ErrorInfo]:
        return [e for e in self._errors if e.category == category]

    def get_by_source(self, source: str) -> List[ErrorInfo]:
        return [e for e in self._errors if e.source == source]

    def has_errors(self) -> bool:
        """True when anything worse than a warning was recorded."""
        return any(e.severity in _BLOCKING for e in self._errors)

    # ==================== Reporting ====================

    def generate_report(self) -> ErrorReport:
        severities = Counter(e.severity.value for e in self._errors)
        categories = Counter(e.category.value for e in self._errors)
        gaps = Counter(
            e.path or "-" for e in self._errors if e.category == ErrorCategory.CONFIGURATION
        )

        blocking = sum(severities.get(s.value, 0) for s in _BLOCKING)
        if blocking:
            summary = f"{blocking} error(s) found"
        elif gaps:
            summary = f"{sum(gaps.values())} configuration gap(s) need attention"
        elif severities.get(ErrorSeverity.WARNING.value):
            summary = f"{severities[ErrorSeverity.WARNING.value]} warning(s) found"
        else:
            summary = "No significant issues"

        return ErrorReport(
            total_errors=len(self._errors),
            by_severity=dict(severities),
            by_category=dict(categories),
            gaps_by_card=dict(gaps),
            summary=summary,
            errors=list(self._errors),
        )

    def clear(self) -> None:
        self._errors.clear()
        self._seen.clear()
