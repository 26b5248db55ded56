"""
CardStream Session Data Table

Per-session store of user field values and computed formula/lookup
results. Field names are matched case-insensitively; the spelling used on
the last write is kept for submission.

INVARIANT: A CalculationRecord is stale iff one of its dependencies changed
after computed_at. Records are overwritten or marked stale, never deleted
(except by reset()).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol
import logging

from cardstream.core.enums import ShortcodeKind
from cardstream.core.references import normalize_name

logger = logging.getLogger(__name__)


class _Unset:
    """Sentinel for a field or record that has never been written."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


class Invalidator(Protocol):
    """What the table needs from the invalidation engine."""

    def on_field_changed(self, field_name: str, old_value: Any = None, new_value: Any = None) -> List[str]:
        ...

    def on_calculation_changed(self, name: str, kind: ShortcodeKind = ShortcodeKind.CALC) -> List[str]:
        ...


def values_differ(old: Any, new: Any) -> bool:
    """True when a write actually changes the stored value."""
    if old is UNSET:
        return True
    if type(old) is not type(new):
        return True
    return old != new


def record_key(name: str, kind: ShortcodeKind = ShortcodeKind.CALC) -> str:
    """
    Storage key for a computed record. Formulas and lookups share one
    namespace; ad-hoc templates are keyed by their exact text.
    """
    if ShortcodeKind(kind) == ShortcodeKind.TEMPLATE:
        return f"template:{name.strip()}"
    return normalize_name(name)


@dataclass
class FieldRecord:
    """A user supplied value."""
    name: str
    value: Any
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class CalculationRecord:
    """Cached result of a formula, lookup or expression template."""
    name: str
    value: Any
    unit: Optional[str] = None
    kind: ShortcodeKind = ShortcodeKind.CALC
    display: str = ""
    is_stale: bool = False
    computed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "kind": self.kind.value,
            "display": self.display,
            "is_stale": self.is_stale,
            "computed_at": self.computed_at.isoformat(),
        }


class SessionDataTable:
    """
    Field values and calculation records for one session.

    The table does not know the dependency graph itself. When an
    invalidator is attached, value-changing writes are reported to it and
    it marks the affected records stale through mark_stale().
    """

    def __init__(self, session_id: str = "", invalidator: Optional[Invalidator] = None):
        self.session_id = session_id
        self._fields: Dict[str, FieldRecord] = {}
        self._calculations: Dict[str, CalculationRecord] = {}
        self._invalidator = invalidator
        self._version = 0

    def attach_invalidator(self, invalidator: Invalidator) -> None:
        self._invalidator = invalidator

    @property
    def version(self) -> int:
        """Incremented on every value-changing write."""
        return self._version

    # ==================== Fields ====================

    def set_field(self, name: str, value: Any) -> List[str]:
        """
        Store a field value.

        Returns:
            Names of calculation records invalidated by the write
            (empty when the value did not change).
        """
        key = normalize_name(name)
        if not key:
            raise ValueError("Field name must not be empty")

        previous = self._fields.get(key)
        old_value = previous.value if previous is not None else UNSET
        self._fields[key] = FieldRecord(name=str(name).strip(), value=value)

        if not values_differ(old_value, value):
            logger.debug(f"Field '{key}' unchanged, no invalidation")
            return []

        self._version += 1
        if self._invalidator is None:
            return []
        return self._invalidator.on_field_changed(
            key,
            old_value=None if old_value is UNSET else old_value,
            new_value=value,
        )

    def get_field(self, name: str) -> Any:
        """Field value or UNSET."""
        record = self._fields.get(normalize_name(name))
        return record.value if record is not None else UNSET

    def has_field(self, name: str) -> bool:
        return normalize_name(name) in self._fields

    def fields(self) -> Dict[str, Any]:
        """Flat name -> value snapshot, keyed by the last written spelling."""
        return {record.name: record.value for record in self._fields.values()}

    # ==================== Calculations ====================

    def store_calculation(
        self,
        name: str,
        value: Any,
        unit: Optional[str] = None,
        kind: ShortcodeKind = ShortcodeKind.CALC,
        display: str = "",
    ) -> CalculationRecord:
        """
        Upsert a computed record and clear its stale flag.

        If the value differs from the previous one, records that depend on
        this one are invalidated.
        """
        kind = ShortcodeKind(kind)
        key = record_key(name, kind)
        previous = self._calculations.get(key)

        record = CalculationRecord(
            name=name.strip() if kind == ShortcodeKind.TEMPLATE else normalize_name(name),
            value=value,
            unit=unit,
            kind=kind,
            display=display,
        )
        self._calculations[key] = record

        if previous is not None and values_differ(previous.value, value):
            self._version += 1
            if self._invalidator is not None:
                self._invalidator.on_calculation_changed(record.name, kind)

        return record

    def get_calculation(self, name: str, kind: ShortcodeKind = ShortcodeKind.CALC) -> Any:
        """CalculationRecord or UNSET."""
        record = self._calculations.get(record_key(name, kind))
        return record if record is not None else UNSET

    def needs_recalculation(self, name: str, kind: ShortcodeKind = ShortcodeKind.CALC) -> bool:
        """True if the record is missing or stale."""
        record = self._calculations.get(record_key(name, kind))
        return record is None or record.is_stale

    def mark_current(self, name: str, kind: ShortcodeKind = ShortcodeKind.CALC) -> bool:
        """Clear the stale flag without recomputing. False if no record."""
        record = self._calculations.get(record_key(name, kind))
        if record is None:
            return False
        record.is_stale = False
        return True

    def mark_stale(self, name: str, kind: ShortcodeKind = ShortcodeKind.CALC) -> bool:
        """
        Flag a record for recomputation.

        Returns:
            True if the record existed and was current.
        """
        record = self._calculations.get(record_key(name, kind))
        if record is None or record.is_stale:
            return False
        record.is_stale = True
        return True

    def calculations(self) -> Dict[str, CalculationRecord]:
        return dict(self._calculations)

    def stale_records(self) -> List[CalculationRecord]:
        return [r for r in self._calculations.values() if r.is_stale]

    # ==================== Lifecycle ====================

    def reset(self) -> None:
        """Drop every field and record."""
        self._fields.clear()
        self._calculations.clear()
        self._version += 1
        logger.info(f"Session table reset: {self.session_id or '<anonymous>'}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "version": self._version,
            "fields": {k: r.to_dict() for k, r in self._fields.items()},
            "calculations": {k: r.to_dict() for k, r in self._calculations.items()},
        }
