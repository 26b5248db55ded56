"""
CardStream Card Completion

Completion rules decide when a form card is done; field validation
produces the per-field messages shown when the user tries to advance.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, TYPE_CHECKING
import logging
import re

from cardstream.core.enums import CompletionType, FieldType
from cardstream.core.session_table import UNSET
from cardstream.errors import ErrorCode
from cardstream.formulas.formatting import parse_number_input

if TYPE_CHECKING:
    from cardstream.cards.models import CardConfig, CardField
    from cardstream.core.session_table import SessionDataTable

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CHOICE_TYPES = (FieldType.SELECT, FieldType.RADIO, FieldType.BUTTONS, FieldType.CHECKBOX)


def is_empty_value(value: Any, field_type: FieldType = FieldType.TEXT) -> bool:
    """
    A value counts as missing when unset, None, blank text or an empty
    selection. Zero is missing too, except for quantity fields.
    """
    if value is UNSET or value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    if isinstance(value, bool):
        return False
    if value == 0 and field_type != FieldType.QUANTITY:
        return True
    return False


# =============================================================================
# COMPLETION
# =============================================================================

@dataclass
class CompletionCheck:
    """Result of evaluating a card's completion rule."""
    complete: bool
    rule: CompletionType
    filled: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    config_gap: bool = False  # No rule configured; ANY_FIELD was used


def evaluate_completion(card: "CardConfig", table: "SessionDataTable") -> CompletionCheck:
    """Apply the card's completion rule to the current field values."""
    fields = card.fields
    rules = getattr(card, "completion_rules", None)
    rule = rules.type if rules is not None else CompletionType.ANY_FIELD

    if not fields:
        return CompletionCheck(complete=True, rule=rule)

    filled, missing = [], []
    for card_field in fields:
        if is_empty_value(table.get_field(card_field.field_name), card_field.field_type):
            missing.append(card_field.key)
        else:
            filled.append(card_field.key)

    check = CompletionCheck(complete=False, rule=rule, filled=filled, missing=missing, config_gap=rules is None)

    if rule == CompletionType.ALL_FIELDS:
        check.complete = not missing
    elif rule == CompletionType.ANY_FIELD:
        check.complete = bool(filled)
    else:
        required = list(rules.required_field_names) if rules and rules.required_field_names else [
            f.key for f in fields if f.required
        ]
        types = {f.key: f.field_type for f in fields}
        check.missing = [
            name for name in required
            if is_empty_value(table.get_field(name), types.get(name, FieldType.TEXT))
        ]
        check.complete = not check.missing

    return check


# =============================================================================
# VALIDATION
# =============================================================================

@dataclass
class FieldIssue:
    field_name: str
    message: str
    code: ErrorCode = ErrorCode.VAL_RULE

    def to_dict(self) -> Dict[str, Any]:
        return {"field_name": self.field_name, "message": self.message, "code": self.code.value}


@dataclass
class CardValidation:
    """Per-field validation outcome for one card."""
    card_id: str
    issues: List[FieldIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    def messages(self) -> Dict[str, str]:
        """First message per field."""
        result: Dict[str, str] = {}
        for issue in self.issues:
            result.setdefault(issue.field_name, issue.message)
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_id": self.card_id,
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
        }


def validate_field(card_field: "CardField", value: Any, required_message: str) -> List[FieldIssue]:
    """Check one value against the field's required flag and rules."""
    name = card_field.key
    if is_empty_value(value, card_field.field_type):
        if card_field.required:
            return [FieldIssue(name, required_message, ErrorCode.VAL_REQUIRED)]
        return []

    issues: List[FieldIssue] = []
    rules = card_field.validation_rules

    if card_field.field_type in (FieldType.NUMBER, FieldType.QUANTITY) or rules.min is not None or rules.max is not None:
        number = parse_number_input(value)
        if number is None:
            if card_field.field_type in (FieldType.NUMBER, FieldType.QUANTITY):
                issues.append(FieldIssue(name, "Syötä numero"))
        else:
            if rules.min is not None and number < rules.min:
                issues.append(FieldIssue(name, f"Arvon tulee olla vähintään {rules.min}"))
            if rules.max is not None and number > rules.max:
                issues.append(FieldIssue(name, f"Arvon tulee olla enintään {rules.max}"))

    if isinstance(value, str):
        if rules.min_length is not None and len(value) < rules.min_length:
            issues.append(FieldIssue(name, f"Vähintään {rules.min_length} merkkiä"))
        if rules.max_length is not None and len(value) > rules.max_length:
            issues.append(FieldIssue(name, f"Enintään {rules.max_length} merkkiä"))
        if rules.pattern:
            try:
                if not re.search(rules.pattern, value):
                    issues.append(FieldIssue(name, "Virheellinen muoto"))
            except re.error as e:
                logger.warning(f"Invalid pattern on field '{name}': {e}")
        if card_field.field_type == FieldType.EMAIL and not EMAIL_PATTERN.match(value.strip()):
            issues.append(FieldIssue(name, "Virheellinen sähköpostiosoite"))

    if card_field.field_type in CHOICE_TYPES and card_field.options:
        selected = value if isinstance(value, (list, tuple, set)) else [value]
        if rules.select_only_one and len(selected) > 1:
            issues.append(FieldIssue(name, "Valitse vain yksi vaihtoehto"))
        unknown = [v for v in selected if str(v) not in card_field.options]
        if unknown:
            issues.append(FieldIssue(name, "Valitse jokin annetuista vaihtoehdoista"))

    return issues


def validate_card(card: "CardConfig", table: "SessionDataTable", required_message: str) -> CardValidation:
    """Validate every field of a card against the session values."""
    validation = CardValidation(card_id=card.id)
    for card_field in card.fields:
        validation.issues.extend(
            validate_field(card_field, table.get_field(card_field.field_name), required_message)
        )
    return validation
