"""
CardStream Card Models

Immutable card definitions, one dataclass per card type. Raw templates
(validated by cards.schema) are turned into these variants by
build_card_config(), which rejects unknown types at construction.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union
import logging

from cardstream.core.enums import (
    CardType,
    CompletionType,
    FieldType,
    RevealConditionType,
    RevealTimingMode,
)
from cardstream.core.references import normalize_name
from cardstream.errors import CardConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


# =============================================================================
# FIELD DEFINITIONS
# =============================================================================

@dataclass(frozen=True)
class ValidationRules:
    """Per-field input rules."""
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    select_only_one: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ValidationRules":
        data = data or {}
        return cls(
            min=data.get("min"),
            max=data.get("max"),
            min_length=data.get("min_length", data.get("minLength")),
            max_length=data.get("max_length", data.get("maxLength")),
            pattern=data.get("pattern") or None,
            select_only_one=bool(data.get("select_only_one", data.get("selectOnlyOne", False))),
        )


@dataclass(frozen=True)
class CardField:
    """An input on a form or submit card."""
    field_name: str
    field_type: FieldType = FieldType.TEXT
    label: str = ""
    required: bool = False
    options: Tuple[str, ...] = ()
    validation_rules: ValidationRules = field(default_factory=ValidationRules)
    placeholder: str = ""

    @property
    def key(self) -> str:
        return normalize_name(self.field_name)


@dataclass(frozen=True)
class CompletionRules:
    """form_completion rule of a form card."""
    type: CompletionType = CompletionType.ALL_FIELDS
    required_field_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RevealCondition:
    """Condition a card places on its own reveal."""
    type: RevealConditionType
    target: Tuple[str, ...] = ()
    operator: Optional[str] = None
    value: Any = None


@dataclass(frozen=True)
class RevealTiming:
    """When the card after this one is revealed."""
    mode: RevealTimingMode = RevealTimingMode.IMMEDIATELY
    delay_seconds: Optional[float] = None


@dataclass(frozen=True)
class ResultTemplate:
    """One result line of a calculation card."""
    template: str
    label: str = ""
    unit: Optional[str] = None


# =============================================================================
# CARD VARIANTS
# =============================================================================

@dataclass(frozen=True)
class CardConfig:
    """Fields shared by every card type."""
    card_type: ClassVar[CardType]

    id: str
    name: str = ""
    title: str = ""
    display_order: int = 0
    reveal_conditions: Tuple[RevealCondition, ...] = ()
    reveal_timing: Optional[RevealTiming] = None
    description: str = ""

    @property
    def fields(self) -> Tuple[CardField, ...]:
        return ()

    @property
    def collects_input(self) -> bool:
        return self.card_type.collects_input

    def owns_field(self, field_name: str) -> bool:
        key = normalize_name(field_name)
        return any(f.key == key for f in self.fields)


@dataclass(frozen=True)
class FormCardConfig(CardConfig):
    card_type: ClassVar[CardType] = CardType.FORM

    card_fields: Tuple[CardField, ...] = ()
    completion_rules: Optional[CompletionRules] = None

    @property
    def fields(self) -> Tuple[CardField, ...]:
        return self.card_fields


@dataclass(frozen=True)
class SubmitCardConfig(FormCardConfig):
    """Final card; its fields (contact details) are validated before submission."""
    card_type: ClassVar[CardType] = CardType.SUBMIT

    submit_button_text: str = ""
    success_message: str = ""


@dataclass(frozen=True)
class CalculationCardConfig(CardConfig):
    """
    Shows formula results. Completes only once every result template
    evaluates successfully.
    """
    card_type: ClassVar[CardType] = CardType.CALCULATION

    results: Tuple[ResultTemplate, ...] = ()
    result_field: Optional[str] = None  # Numeric main result is copied into this field
    enable_edit_mode: bool = False

    @property
    def main_result(self) -> Optional[ResultTemplate]:
        return self.results[0] if self.results else None


@dataclass(frozen=True)
class InfoCardConfig(CardConfig):
    card_type: ClassVar[CardType] = CardType.INFO

    body: str = ""  # May contain display shortcodes


@dataclass(frozen=True)
class VisualCardConfig(CardConfig):
    card_type: ClassVar[CardType] = CardType.VISUAL

    visual_object_id: Optional[str] = None
    body: str = ""


AnyCardConfig = Union[
    FormCardConfig,
    SubmitCardConfig,
    CalculationCardConfig,
    InfoCardConfig,
    VisualCardConfig,
]


# =============================================================================
# FACTORY
# =============================================================================

def _option_value(option: Any) -> str:
    if isinstance(option, dict):
        return str(option.get("value", option.get("label", "")))
    return str(option)


def _build_fields(raw_fields: List[Dict[str, Any]]) -> Tuple[CardField, ...]:
    built = []
    for raw in raw_fields:
        try:
            field_type = FieldType(raw.get("field_type", "text"))
        except ValueError:
            raise CardConfigurationError(
                f"Unknown field type '{raw.get('field_type')}' for field '{raw.get('field_name')}'",
                source="card_models",
                path=raw.get("field_name"),
            )
        built.append(CardField(
            field_name=raw["field_name"],
            field_type=field_type,
            label=raw.get("label", "") or "",
            required=bool(raw.get("required", False)),
            options=tuple(_option_value(o) for o in raw.get("options") or []),
            validation_rules=ValidationRules.from_dict(raw.get("validation_rules")),
            placeholder=raw.get("placeholder", "") or "",
        ))
    return tuple(built)


def _build_completion(raw: Optional[Dict[str, Any]]) -> Optional[CompletionRules]:
    form_completion = (raw or {}).get("form_completion")
    if not form_completion:
        return None
    return CompletionRules(
        type=CompletionType(form_completion.get("type", "all_fields")),
        required_field_names=tuple(normalize_name(n) for n in form_completion.get("required_field_names") or []),
    )


def _build_conditions(raw: List[Dict[str, Any]]) -> Tuple[RevealCondition, ...]:
    conditions = []
    for item in raw or []:
        target = item.get("target")
        if target is None:
            targets: Tuple[str, ...] = ()
        elif isinstance(target, (list, tuple)):
            targets = tuple(str(t) for t in target)
        else:
            targets = (str(target),)
        conditions.append(RevealCondition(
            type=RevealConditionType(item["type"]),
            target=targets,
            operator=item.get("operator"),
            value=item.get("value"),
        ))
    return tuple(conditions)


def _build_timing(raw: Optional[Dict[str, Any]]) -> Optional[RevealTiming]:
    if not raw or not raw.get("timing"):
        return None
    delay = raw.get("delay_seconds")
    return RevealTiming(
        mode=RevealTimingMode(raw["timing"]),
        delay_seconds=float(delay) if delay is not None else None,
    )


def _common(raw: Dict[str, Any]) -> Dict[str, Any]:
    config = raw.get("config") or {}
    return {
        "id": str(raw["id"]),
        "name": raw.get("name", "") or "",
        "title": raw.get("title", "") or "",
        "display_order": int(raw.get("display_order", 0)),
        "reveal_conditions": _build_conditions(raw.get("reveal_conditions")),
        "reveal_timing": _build_timing(raw.get("reveal_timing")),
        "description": config.get("description", "") or "",
    }


def _build_form(raw: Dict[str, Any]) -> FormCardConfig:
    return FormCardConfig(
        card_fields=_build_fields(raw.get("card_fields") or []),
        completion_rules=_build_completion(raw.get("completion_rules")),
        **_common(raw),
    )


def _build_submit(raw: Dict[str, Any]) -> SubmitCardConfig:
    config = raw.get("config") or {}
    return SubmitCardConfig(
        card_fields=_build_fields(raw.get("card_fields") or []),
        completion_rules=_build_completion(raw.get("completion_rules")),
        submit_button_text=config.get("submit_button_text", "") or "",
        success_message=config.get("submit_success_message", "") or "",
        **_common(raw),
    )


def _build_calculation(raw: Dict[str, Any]) -> CalculationCardConfig:
    config = raw.get("config") or {}
    results = []
    if config.get("main_result"):
        results.append(ResultTemplate(
            template=config["main_result"],
            label=config.get("result_label", "") or "",
            unit=config.get("unit"),
        ))
    for extra in config.get("results") or []:
        results.append(ResultTemplate(
            template=extra["template"],
            label=extra.get("label", "") or "",
            unit=extra.get("unit"),
        ))
    return CalculationCardConfig(
        results=tuple(results),
        result_field=config.get("field_name") or None,
        enable_edit_mode=bool(config.get("enable_edit_mode", False)),
        **_common(raw),
    )


def _build_info(raw: Dict[str, Any]) -> InfoCardConfig:
    config = raw.get("config") or {}
    return InfoCardConfig(body=config.get("content", config.get("body", "")) or "", **_common(raw))


def _build_visual(raw: Dict[str, Any]) -> VisualCardConfig:
    config = raw.get("config") or {}
    return VisualCardConfig(
        visual_object_id=raw.get("visual_object_id"),
        body=config.get("content", config.get("body", "")) or "",
        **_common(raw),
    )


_BUILDERS = {
    CardType.FORM: _build_form,
    CardType.SUBMIT: _build_submit,
    CardType.CALCULATION: _build_calculation,
    CardType.INFO: _build_info,
    CardType.VISUAL: _build_visual,
}

if set(_BUILDERS) != set(CardType):
    raise RuntimeError("Every CardType needs a builder")


def build_card_config(raw: Dict[str, Any]) -> AnyCardConfig:
    """
    Build the typed card variant for a raw template dict.

    Raises:
        CardConfigurationError: unknown type or malformed template
    """
    try:
        card_type = CardType(raw.get("type"))
    except ValueError:
        raise CardConfigurationError(
            f"Unknown card type '{raw.get('type')}' for card '{raw.get('id')}'",
            source="card_models",
            path=str(raw.get("id")),
            code=ErrorCode.CFG_UNKNOWN_CARD_TYPE,
        )
    try:
        return _BUILDERS[card_type](raw)
    except (KeyError, ValueError, TypeError) as e:
        raise CardConfigurationError(
            f"Invalid template for card '{raw.get('id')}': {e}",
            source="card_models",
            path=str(raw.get("id")),
        )
