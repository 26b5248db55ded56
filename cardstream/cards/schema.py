"""
CardStream Content Schema

pydantic models for the externally authored content bundle (card
templates, formulas, lookups) as it arrives from the content store or a
static JSON file. Validation here catches structural problems; the typed
card variants are built afterwards by cards.models.build_card_config.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cardstream.core.enums import CompletionType, RevealConditionType, RevealTimingMode


class CardFieldSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field_name: str
    field_type: str = "text"
    label: str = ""
    placeholder: str = ""
    required: bool = False
    display_order: int = 0
    options: List[Any] = Field(default_factory=list)
    validation_rules: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("field_name")
    @classmethod
    def validate_field_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("field_name cannot be empty")
        return v.strip()

    @field_validator("validation_rules", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return v or {}


class FormCompletionSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: CompletionType = CompletionType.ALL_FIELDS
    required_field_names: List[str] = Field(default_factory=list)


class CompletionRulesSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    form_completion: Optional[FormCompletionSchema] = None


class RevealConditionSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: RevealConditionType
    target: Optional[Union[str, List[str]]] = None
    operator: Optional[str] = None
    value: Any = None


class RevealTimingSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timing: RevealTimingMode
    delay_seconds: Optional[float] = Field(default=None, ge=0)


class CardTemplateSchema(BaseModel):
    """One card template. ``fields`` is accepted as an alias of ``card_fields``."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    title: str = ""
    type: str
    display_order: int = 0
    is_active: bool = True
    visual_object_id: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    card_fields: List[CardFieldSchema] = Field(default_factory=list)
    completion_rules: Optional[CompletionRulesSchema] = None
    reveal_conditions: List[RevealConditionSchema] = Field(default_factory=list)
    reveal_timing: Optional[RevealTimingSchema] = None

    @model_validator(mode="before")
    @classmethod
    def merge_field_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("card_fields") and data.get("fields"):
            data = dict(data)
            data["card_fields"] = data.pop("fields")
        if isinstance(data, dict) and data.get("id") is not None:
            data = dict(data)
            data["id"] = str(data["id"])
        return data

    @field_validator("reveal_conditions", "card_fields", mode="before")
    @classmethod
    def none_to_list(cls, v: Any) -> Any:
        return v if v is not None else []

    @field_validator("config", mode="before")
    @classmethod
    def none_to_dict(cls, v: Any) -> Any:
        return v if v is not None else {}

    def to_raw(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        data["card_fields"] = sorted(data.get("card_fields", []), key=lambda f: f.get("display_order", 0))
        return data


class FormulaSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    formula_text: str
    unit: Optional[str] = None
    decimals: Optional[int] = Field(default=None, ge=0, le=10)
    description: str = ""


class ContentBundleSchema(BaseModel):
    """Everything a session needs: cards plus formula and lookup definitions."""
    model_config = ConfigDict(extra="ignore")

    cards: List[CardTemplateSchema] = Field(default_factory=list)
    formulas: List[FormulaSchema] = Field(default_factory=list)
    lookups: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("cards")
    @classmethod
    def unique_card_ids(cls, v: List[CardTemplateSchema]) -> List[CardTemplateSchema]:
        seen = set()
        for card in v:
            if card.id in seen:
                raise ValueError(f"Duplicate card id '{card.id}'")
            seen.add(card.id)
        return v
