"""
CardStream Formula Definitions

Registered formulas and lookups addressed by [calc:name] and
[lookup:name]. Both kinds share one namespace, matching the single
record namespace of the session data table.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
import logging

from cardstream.core.enums import ShortcodeKind
from cardstream.core.references import normalize_name
from cardstream.errors import CardConfigurationError, ErrorCode
from cardstream.formulas.lookups import LookupDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FormulaDefinition:
    """A named formula."""
    name: str
    formula_text: str
    unit: Optional[str] = None
    decimals: Optional[int] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "formula_text": self.formula_text,
            "unit": self.unit,
            "decimals": self.decimals,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FormulaDefinition":
        if not data.get("name"):
            raise CardConfigurationError("Formula definition requires a name", source="definitions")
        if not data.get("formula_text"):
            raise CardConfigurationError(
                f"Formula '{data['name']}' has no formula_text",
                source="definitions",
                path=data["name"],
            )
        return cls(
            name=normalize_name(data["name"]),
            formula_text=data["formula_text"],
            unit=data.get("unit"),
            decimals=data.get("decimals"),
            description=data.get("description", ""),
        )


Definition = Union[FormulaDefinition, LookupDefinition]


class FormulaRegistry:
    """Formula and lookup definitions for one content bundle."""

    def __init__(self):
        self._formulas: Dict[str, FormulaDefinition] = {}
        self._lookups: Dict[str, LookupDefinition] = {}

    def register_formula(self, definition: FormulaDefinition) -> bool:
        """
        Add or replace a formula.

        Returns:
            True if an existing, different definition was replaced.
        """
        key = normalize_name(definition.name)
        if key in self._lookups:
            raise CardConfigurationError(
                f"'{key}' is already registered as a lookup",
                source="definitions",
                path=key,
                code=ErrorCode.CFG_DUPLICATE_NAME,
            )
        previous = self._formulas.get(key)
        self._formulas[key] = definition
        return previous is not None and previous != definition

    def register_lookup(self, definition: LookupDefinition) -> bool:
        """Add or replace a lookup; see register_formula."""
        key = normalize_name(definition.name)
        if key in self._formulas:
            raise CardConfigurationError(
                f"'{key}' is already registered as a formula",
                source="definitions",
                path=key,
                code=ErrorCode.CFG_DUPLICATE_NAME,
            )
        previous = self._lookups.get(key)
        self._lookups[key] = definition
        return previous is not None and previous != definition

    def get(self, kind: ShortcodeKind, name: str) -> Optional[Definition]:
        key = normalize_name(name)
        if ShortcodeKind(kind) == ShortcodeKind.LOOKUP:
            return self._lookups.get(key)
        return self._formulas.get(key)

    def get_formula(self, name: str) -> Optional[FormulaDefinition]:
        return self._formulas.get(normalize_name(name))

    def get_lookup(self, name: str) -> Optional[LookupDefinition]:
        return self._lookups.get(normalize_name(name))

    def formula_names(self) -> List[str]:
        return sorted(self._formulas)

    def lookup_names(self) -> List[str]:
        return sorted(self._lookups)

    def load(self, formulas: List[Dict[str, Any]] = (), lookups: List[Dict[str, Any]] = ()) -> None:
        """Register definitions from raw dicts."""
        for data in formulas:
            self.register_formula(FormulaDefinition.from_dict(data))
        for data in lookups:
            self.register_lookup(LookupDefinition.from_dict(data))
        logger.info(f"Registry loaded: {len(self._formulas)} formulas, {len(self._lookups)} lookups")

    def __len__(self) -> int:
        return len(self._formulas) + len(self._lookups)
