"""
CardStream Conditional Lookups

A lookup is an ordered list of rules. Each rule holds a condition group
(AND/OR over field comparisons) and an action; the first rule whose
conditions hold decides the result. When nothing matches, the default
action is used, and without a default the lookup fails.

Actions:
    formula  evaluate formula text (may reference fields, calcs, lookups)
    value    static value
    table    map a field's value through an inline key -> value table
    error    fail with a configured message
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, TYPE_CHECKING
import logging

from cardstream.core.enums import ShortcodeKind
from cardstream.core.references import SHORTCODE_PATTERN, extract_shortcodes, node_id, normalize_name
from cardstream.core.session_table import UNSET
from cardstream.errors import CardConfigurationError
from cardstream.formulas.formatting import parse_number_input

if TYPE_CHECKING:
    from cardstream.core.session_table import SessionDataTable

logger = logging.getLogger(__name__)


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"


class ConditionLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    FORMULA = "formula"
    VALUE = "value"
    TABLE = "table"
    ERROR = "error"


_NUMERIC_OPERATORS = {
    ConditionOperator.GREATER_THAN: lambda a, b: a > b,
    ConditionOperator.GREATER_THAN_OR_EQUAL: lambda a, b: a >= b,
    ConditionOperator.LESS_THAN: lambda a, b: a < b,
    ConditionOperator.LESS_THAN_OR_EQUAL: lambda a, b: a <= b,
}


def _field_name(raw: str) -> str:
    """Accept both 'heating_type' and '[field:heating_type]'."""
    match = SHORTCODE_PATTERN.fullmatch(str(raw).strip())
    if match and match.group(1) == ShortcodeKind.FIELD.value:
        return normalize_name(match.group(2))
    return normalize_name(raw)


def _same(a: Any, b: Any) -> bool:
    left = parse_number_input(a)
    right = parse_number_input(b)
    if left is not None and right is not None:
        return left == right
    return str(a) == str(b)


# =============================================================================
# CONDITIONS
# =============================================================================

@dataclass(frozen=True)
class LookupCondition:
    """Compare one field against a configured value."""
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, table: "SessionDataTable") -> bool:
        actual = table.get_field(self.field)

        # An unset field only satisfies the negative operators
        if actual is UNSET or actual is None:
            return self.operator in (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_IN)

        op = self.operator
        if op == ConditionOperator.EQUALS:
            return _same(actual, self.value)
        if op == ConditionOperator.NOT_EQUALS:
            return not _same(actual, self.value)
        if op in _NUMERIC_OPERATORS:
            left = parse_number_input(actual)
            right = parse_number_input(self.value)
            if left is None or right is None:
                return False
            return _NUMERIC_OPERATORS[op](left, right)
        if op == ConditionOperator.CONTAINS:
            return str(self.value).lower() in str(actual).lower()
        if op == ConditionOperator.STARTS_WITH:
            return str(actual).lower().startswith(str(self.value).lower())
        if op == ConditionOperator.ENDS_WITH:
            return str(actual).lower().endswith(str(self.value).lower())
        if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
            options = self.value if isinstance(self.value, (list, tuple, set)) else [self.value]
            found = any(_same(actual, option) for option in options)
            return found if op == ConditionOperator.IN else not found
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LookupCondition":
        try:
            operator = ConditionOperator(data.get("operator", "equals"))
        except ValueError:
            raise CardConfigurationError(
                f"Unknown condition operator '{data.get('operator')}'",
                source="lookups",
            )
        return cls(field=_field_name(data["field"]), operator=operator, value=data.get("value"))


# =============================================================================
# ACTIONS AND RULES
# =============================================================================

@dataclass(frozen=True)
class LookupAction:
    """What a matched rule (or the default) produces."""
    action_type: ActionType
    formula_text: str = ""
    value: Any = None
    unit: Optional[str] = None
    message: str = ""
    key_field: str = ""
    table: Tuple[Tuple[str, Any], ...] = ()

    def table_value(self, key: Any) -> Any:
        for table_key, table_value in self.table:
            if _same(key, table_key):
                return table_value
        return UNSET

    def references(self) -> Set[str]:
        """Graph node ids this action reads."""
        nodes = {ref.node_id for ref in extract_shortcodes(self.formula_text)}
        if self.action_type == ActionType.TABLE and self.key_field:
            nodes.add(node_id(ShortcodeKind.FIELD, self.key_field))
        return nodes

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"action_type": self.action_type.value}
        if self.formula_text:
            data["formula_text"] = self.formula_text
        if self.value is not None:
            data["value"] = self.value
        if self.unit:
            data["unit"] = self.unit
        if self.message:
            data["message"] = self.message
        if self.action_type == ActionType.TABLE:
            data["key_field"] = self.key_field
            data["table"] = dict(self.table)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LookupAction":
        # Rules from the content store nest the settings under action_config
        config = dict(data.get("action_config") or {})
        config.update({k: v for k, v in data.items() if k != "action_config"})

        try:
            action_type = ActionType(config.get("action_type", "value"))
        except ValueError:
            raise CardConfigurationError(
                f"Unknown lookup action '{config.get('action_type')}'",
                source="lookups",
            )

        if action_type == ActionType.FORMULA and not config.get("formula_text"):
            raise CardConfigurationError("Formula action missing formula_text", source="lookups")

        table = config.get("table") or {}
        return cls(
            action_type=action_type,
            formula_text=config.get("formula_text", "") or "",
            value=config.get("value"),
            unit=config.get("unit"),
            message=config.get("message", "") or "",
            key_field=_field_name(config["key_field"]) if config.get("key_field") else "",
            table=tuple((str(k), v) for k, v in table.items()),
        )


@dataclass(frozen=True)
class LookupRule:
    """Condition group plus action."""
    action: LookupAction
    conditions: Tuple[LookupCondition, ...] = ()
    logic: ConditionLogic = ConditionLogic.AND
    name: str = ""
    order_index: int = 0
    is_active: bool = True

    def matches(self, table: "SessionDataTable") -> bool:
        # An empty condition group always matches
        if not self.conditions:
            return True
        results = (c.evaluate(table) for c in self.conditions)
        if self.logic == ConditionLogic.AND:
            return all(results)
        return any(results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "order_index": self.order_index,
            "is_active": self.is_active,
            "condition_logic": {
                "type": self.logic.value,
                "conditions": [c.to_dict() for c in self.conditions],
            },
            **self.action.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "LookupRule":
        logic_data = data.get("condition_logic") or {}
        try:
            logic = ConditionLogic(str(logic_data.get("type", "AND")).upper())
        except ValueError:
            raise CardConfigurationError(
                f"Unknown condition logic '{logic_data.get('type')}'",
                source="lookups",
            )
        return cls(
            action=LookupAction.from_dict(data),
            conditions=tuple(LookupCondition.from_dict(c) for c in logic_data.get("conditions", [])),
            logic=logic,
            name=data.get("name", f"rule_{index}"),
            order_index=int(data.get("order_index", index)),
            is_active=bool(data.get("is_active", True)),
        )


# =============================================================================
# LOOKUP DEFINITION
# =============================================================================

@dataclass
class LookupSelection:
    """Which action a lookup chose, with the rules it looked at."""
    action: Optional[LookupAction]
    rule_name: Optional[str] = None
    used_default: bool = False
    evaluated: List[Tuple[str, bool]] = field(default_factory=list)


@dataclass(frozen=True)
class LookupDefinition:
    """Named conditional lookup."""
    name: str
    rules: Tuple[LookupRule, ...] = ()
    default: Optional[LookupAction] = None
    unit: Optional[str] = None
    decimals: Optional[int] = None
    title: str = ""

    def active_rules(self) -> List[LookupRule]:
        return sorted((r for r in self.rules if r.is_active), key=lambda r: r.order_index)

    def select(self, table: "SessionDataTable") -> LookupSelection:
        """First matching rule's action, else the default (or None)."""
        selection = LookupSelection(action=None)
        for rule in self.active_rules():
            matched = rule.matches(table)
            selection.evaluated.append((rule.name, matched))
            if matched:
                selection.action = rule.action
                selection.rule_name = rule.name
                logger.debug(f"Lookup '{self.name}' matched rule '{rule.name}'")
                return selection

        if self.default is not None:
            selection.action = self.default
            selection.used_default = True
        return selection

    def references(self) -> Set[str]:
        """Graph node ids of every field and formula any rule could read."""
        nodes: Set[str] = set()
        for rule in self.rules:
            nodes.update(node_id(ShortcodeKind.FIELD, c.field) for c in rule.conditions)
            nodes.update(rule.action.references())
        if self.default is not None:
            nodes.update(self.default.references())
        return nodes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "unit": self.unit,
            "decimals": self.decimals,
            "rules": [r.to_dict() for r in self.rules],
            "default": self.default.to_dict() if self.default else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LookupDefinition":
        if not data.get("name"):
            raise CardConfigurationError("Lookup definition requires a name", source="lookups")
        default = data.get("default")
        return cls(
            name=normalize_name(data["name"]),
            rules=tuple(LookupRule.from_dict(r, i) for i, r in enumerate(data.get("rules", []))),
            default=LookupAction.from_dict(default) if default else None,
            unit=data.get("unit"),
            decimals=data.get("decimals"),
            title=data.get("title", ""),
        )
