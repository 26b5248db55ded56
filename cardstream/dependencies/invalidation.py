"""
CardStream Invalidation Engine

Pushes value changes down the dependency graph: every cached record that
references a changed field (or a changed formula result) directly or
transitively is marked stale in the session data table. Stale records are
recomputed lazily on the next process() call, or eagerly by
FormulaEngine.recalculate_stale().
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, TYPE_CHECKING
import logging

from cardstream.core.enums import ShortcodeKind
from cardstream.core.references import node_id, split_node_id

if TYPE_CHECKING:
    from .graph import DependencyGraph
    from cardstream.core.session_table import SessionDataTable

logger = logging.getLogger(__name__)


class InvalidationReason(str, Enum):
    FIELD_CHANGED = "field_changed"                  # User changed an input
    CALCULATION_CHANGED = "calculation_changed"      # Upstream result changed
    MANUAL_INVALIDATION = "manual_invalidation"      # Host forced invalidation
    DEFINITION_CHANGED = "definition_changed"        # Formula/lookup re-registered
    SESSION_RESET = "session_reset"


class InvalidationScope(str, Enum):
    DOWNSTREAM = "downstream"  # Dependents of one node
    ALL = "all"                # Every cached record


def _display(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class InvalidationEvent:
    """One change and the records it made stale."""
    trigger_node: Optional[str] = None
    reason: InvalidationReason = InvalidationReason.FIELD_CHANGED
    scope: InvalidationScope = InvalidationScope.DOWNSTREAM

    # Every downstream node, and the records that flipped from current to stale
    affected_nodes: List[str] = field(default_factory=list)
    invalidated_records: List[str] = field(default_factory=list)

    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger_node": self.trigger_node,
            "reason": self.reason.value,
            "scope": self.scope.value,
            "affected_nodes": list(self.affected_nodes),
            "invalidated_records": list(self.invalidated_records),
            "old_value": _display(self.old_value),
            "new_value": _display(self.new_value),
            "occurred_at": self.occurred_at,
        }


class InvalidationEngine:
    """
    Marks cached calculation records stale when their inputs change.

    Attached to a SessionDataTable as its invalidator: the table calls
    on_field_changed / on_calculation_changed after value-changing writes.
    """

    def __init__(
        self,
        dependency_graph: "DependencyGraph",
        table: Optional["SessionDataTable"] = None,
        max_events: int = 1000,
    ):
        self._graph = dependency_graph
        self._table = table
        self._events: Deque[InvalidationEvent] = deque(maxlen=max_events)
        self._listeners: List[Callable[[InvalidationEvent], None]] = []

    def bind_table(self, table: "SessionDataTable") -> None:
        self._table = table
        table.attach_invalidator(self)

    # ==================== Triggers ====================

    def on_field_changed(self, field_name: str, old_value: Any = None, new_value: Any = None) -> List[str]:
        """Invalidate every record that references the field, directly or transitively."""
        event = self.invalidate_node(
            node_id(ShortcodeKind.FIELD, field_name),
            reason=InvalidationReason.FIELD_CHANGED,
            old_value=old_value,
            new_value=new_value,
        )
        return event.invalidated_records

    def on_calculation_changed(self, name: str, kind: ShortcodeKind = ShortcodeKind.CALC) -> List[str]:
        """Invalidate records downstream of a recomputed formula or lookup."""
        event = self.invalidate_node(
            node_id(kind, name),
            reason=InvalidationReason.CALCULATION_CHANGED,
        )
        return event.invalidated_records

    def invalidate_node(
        self,
        node: str,
        reason: InvalidationReason = InvalidationReason.MANUAL_INVALIDATION,
        old_value: Any = None,
        new_value: Any = None,
        include_self: bool = False,
    ) -> InvalidationEvent:
        """
        Mark everything downstream of ``node`` stale.

        ``include_self`` also marks the node's own record, e.g. when a
        formula is redefined. old_value/new_value only travel on the event.
        """
        event = InvalidationEvent(
            trigger_node=node,
            reason=reason,
            scope=InvalidationScope.DOWNSTREAM,
            old_value=old_value,
            new_value=new_value,
        )

        affected = self._graph.get_all_downstream(node)
        if include_self:
            affected.add(node)
        event.affected_nodes = self._graph.get_computation_order(affected)

        for affected_node in event.affected_nodes:
            if self._mark_record_stale(affected_node):
                event.invalidated_records.append(affected_node)

        self._record_event(event)
        if event.affected_nodes:
            self._notify_callbacks(event)
            logger.info(
                f"Invalidated {len(event.invalidated_records)} of "
                f"{len(event.affected_nodes)} downstream records due to {node} change"
            )

        return event

    def invalidate_all(self, reason: InvalidationReason = InvalidationReason.MANUAL_INVALIDATION) -> InvalidationEvent:
        """Mark every cached record stale."""
        event = InvalidationEvent(reason=reason, scope=InvalidationScope.ALL)

        if self._table is not None:
            for record in self._table.calculations().values():
                record_node = node_id(record.kind, record.name)
                event.affected_nodes.append(record_node)
                if self._table.mark_stale(record.name, record.kind):
                    event.invalidated_records.append(record_node)

        self._record_event(event)
        self._notify_callbacks(event)

        logger.warning(f"Full invalidation: {len(event.invalidated_records)} records")
        return event

    # ==================== Status ====================

    def mark_valid(self, node: str) -> None:
        """Mark a record as current (after recalculation)."""
        if self._table is None:
            return
        kind, name = split_node_id(node)
        self._table.mark_current(name, kind)

    def is_stale(self, node: str) -> bool:
        if self._table is None:
            return False
        kind, name = split_node_id(node)
        record = self._table.get_calculation(name, kind)
        return bool(record) and record.is_stale

    def get_stale_nodes(self) -> List[str]:
        """Stale records as node ids, dependencies first."""
        if self._table is None:
            return []
        stale = [node_id(r.kind, r.name) for r in self._table.stale_records()]
        return self._graph.get_computation_order(stale)

    def _mark_record_stale(self, node: str) -> bool:
        if self._table is None:
            return False
        kind, name = split_node_id(node)
        if kind == ShortcodeKind.FIELD:
            return False
        return self._table.mark_stale(name, kind)

    # ==================== Events ====================

    def _record_event(self, event: InvalidationEvent) -> None:
        self._events.append(event)

    def _notify_callbacks(self, event: InvalidationEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener failed for {event.trigger_node or event.scope.value}: {e}")

    def on_invalidate(self, callback: Callable[[InvalidationEvent], None]) -> None:
        self._listeners.append(callback)

    def get_events(self, limit: int = 100) -> List[InvalidationEvent]:
        """Most recent invalidation events, oldest first."""
        return list(self._events)[-limit:]

    def clear_history(self) -> None:
        self._events.clear()
