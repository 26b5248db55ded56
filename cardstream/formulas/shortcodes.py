"""
CardStream Shortcode Resolver

Substitutes [field:x], [calc:x] and [lookup:x] tokens in a template with
values from the session data table, in a single pass. Substituted values
are never re-scanned, so user text containing brackets cannot inject new
tokens.

Two modes:
    EXPRESSION  values become evaluator literals (numbers, quoted text)
    DISPLAY     values become human readable text (formatted results)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, List, TYPE_CHECKING
import logging

from cardstream.core.enums import ShortcodeKind
from cardstream.core.references import SHORTCODE_PATTERN, ShortcodeRef, extract_shortcodes, normalize_name
from cardstream.core.session_table import UNSET
from cardstream.formulas.formatting import format_number, parse_number_input

if TYPE_CHECKING:
    from cardstream.core.session_table import SessionDataTable

logger = logging.getLogger(__name__)


class ResolveMode(str, Enum):
    EXPRESSION = "expression"
    DISPLAY = "display"


@dataclass
class ResolvedTemplate:
    """Template text after substitution."""
    text: str
    references: List[ShortcodeRef] = field(default_factory=list)
    unresolved: List[ShortcodeRef] = field(default_factory=list)
    unset_fields: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unresolved


def unresolved_marker(kind: ShortcodeKind, name: str) -> str:
    return f"[unresolved:{ShortcodeKind(kind).value}:{name}]"


def number_literal(value: float) -> str:
    """Plain decimal literal the evaluator can tokenize (no exponent)."""
    text = format(Decimal(repr(float(value))), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text.startswith("-"):
        return f"({text})"
    return text


def string_literal(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _is_empty(value: Any) -> bool:
    return value is UNSET or value is None or value == "" or value == []


class ShortcodeResolver:
    """
    Resolves shortcodes against one session data table.

    Args:
        table: Session data table to read from
        strict_fields: Treat unset fields as unresolved instead of 0/""
    """

    def __init__(self, table: "SessionDataTable", strict_fields: bool = False):
        self._table = table
        self.strict_fields = strict_fields

    def references(self, template: str) -> List[ShortcodeRef]:
        return extract_shortcodes(template)

    def resolve(self, template: str, mode: ResolveMode = ResolveMode.EXPRESSION) -> ResolvedTemplate:
        """Substitute every token in ``template``."""
        result = ResolvedTemplate(text="", references=extract_shortcodes(template))
        seen_unresolved = set()

        def substitute(match) -> str:
            kind = ShortcodeKind(match.group(1))
            name = normalize_name(match.group(2))

            if kind == ShortcodeKind.FIELD:
                value = self._table.get_field(name)
                if _is_empty(value):
                    if name not in result.unset_fields:
                        result.unset_fields.append(name)
                    if self.strict_fields:
                        return self._unresolved(result, seen_unresolved, kind, name, match.group(0))
                return self._field_text(value, mode)

            record = self._table.get_calculation(name, kind)
            if record is UNSET:
                return self._unresolved(result, seen_unresolved, kind, name, match.group(0))
            return self._record_text(record, mode)

        result.text = SHORTCODE_PATTERN.sub(substitute, template or "")
        if result.unresolved:
            logger.debug(f"Unresolved references in '{template}': {[r.token for r in result.unresolved]}")
        return result

    @staticmethod
    def _unresolved(result: ResolvedTemplate, seen: set, kind: ShortcodeKind, name: str, token: str) -> str:
        if (kind, name) not in seen:
            seen.add((kind, name))
            result.unresolved.append(ShortcodeRef(kind=kind, name=name, token=token))
        return unresolved_marker(kind, name)

    @staticmethod
    def _field_text(value: Any, mode: ResolveMode) -> str:
        if mode == ResolveMode.DISPLAY:
            if _is_empty(value):
                return ""
            if isinstance(value, (list, tuple)):
                return ", ".join(str(v) for v in value)
            return str(value)

        if _is_empty(value):
            return "0"
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (list, tuple)):
            return string_literal(", ".join(str(v) for v in value))
        number = parse_number_input(value)
        if number is not None:
            return number_literal(number)
        return string_literal(str(value))

    @staticmethod
    def _record_text(record, mode: ResolveMode) -> str:
        if mode == ResolveMode.DISPLAY:
            if record.display:
                return record.display
            return format_number(record.value, record.unit)

        if isinstance(record.value, bool):
            return "1" if record.value else "0"
        if isinstance(record.value, (int, float)):
            return number_literal(record.value)
        return string_literal(str(record.value))
