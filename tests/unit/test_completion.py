"""
Unit tests for card completion rules and field validation.
"""

import pytest

from cardstream.cards.completion import evaluate_completion, is_empty_value, validate_card, validate_field
from cardstream.cards.models import CardField, ValidationRules, build_card_config
from cardstream.core.enums import CompletionType, FieldType
from cardstream.core.session_table import UNSET, SessionDataTable
from cardstream.errors import ErrorCode

REQUIRED = "Pakollinen kenttä"


def _table(**fields):
    table = SessionDataTable("s1")
    for name, value in fields.items():
        table.set_field(name, value)
    return table


def _form(rule=None, required_names=None, fields=("a", "b"), required=(True, False)):
    raw = {
        "id": "form",
        "type": "form",
        "card_fields": [
            {"field_name": name, "required": flag} for name, flag in zip(fields, required)
        ],
    }
    if rule is not None:
        raw["completion_rules"] = {
            "form_completion": {"type": rule, "required_field_names": required_names or []},
        }
    return build_card_config(raw)


class TestIsEmptyValue:

    @pytest.mark.parametrize("value", [UNSET, None, "", "   ", [], (), set(), 0, 0.0])
    def test_empty(self, value):
        assert is_empty_value(value) is True

    @pytest.mark.parametrize("value", ["x", "0", 1, -1, 0.5, ["a"], False, True])
    def test_not_empty(self, value):
        assert is_empty_value(value) is False

    def test_zero_quantity_is_a_value(self):
        assert is_empty_value(0, FieldType.QUANTITY) is False
        assert is_empty_value(0, FieldType.NUMBER) is True


class TestEvaluateCompletion:
    """Tests for the three completion rules."""

    def test_all_fields(self):
        card = _form("all_fields")

        partial = evaluate_completion(card, _table(a="x"))
        assert partial.complete is False
        assert partial.missing == ["b"]

        assert evaluate_completion(card, _table(a="x", b="y")).complete is True

    def test_any_field(self):
        card = _form("any_field")
        assert evaluate_completion(card, _table()).complete is False
        assert evaluate_completion(card, _table(b="y")).complete is True

    def test_required_fields_from_flags(self):
        card = _form("required_fields")
        check = evaluate_completion(card, _table(a="x"))

        assert check.complete is True
        assert check.rule == CompletionType.REQUIRED_FIELDS

    def test_required_fields_from_names(self):
        card = _form("required_fields", required_names=["B"])

        assert evaluate_completion(card, _table(a="x")).complete is False
        assert evaluate_completion(card, _table(b="y")).complete is True

    def test_missing_rule_falls_back_to_any_field(self):
        check = evaluate_completion(_form(), _table(b="y"))

        assert check.complete is True
        assert check.rule == CompletionType.ANY_FIELD
        assert check.config_gap is True

    def test_card_without_fields_is_complete(self):
        card = build_card_config({"id": "empty", "type": "form"})
        assert evaluate_completion(card, _table()).complete is True

    def test_zero_does_not_fill_a_field(self):
        card = _form("all_fields", fields=("a",), required=(True,))
        assert evaluate_completion(card, _table(a=0)).complete is False


class TestValidateField:
    """Tests for per-field validation messages."""

    def test_required(self):
        issues = validate_field(CardField("a", required=True), "", REQUIRED)

        assert len(issues) == 1
        assert issues[0].message == REQUIRED
        assert issues[0].code == ErrorCode.VAL_REQUIRED

    def test_optional_empty_is_fine(self):
        assert validate_field(CardField("a", FieldType.NUMBER), None, REQUIRED) == []

    def test_number_parsing(self):
        card_field = CardField("area", FieldType.NUMBER)
        assert validate_field(card_field, "2,5", REQUIRED) == []
        assert validate_field(card_field, "paljon", REQUIRED)[0].message == "Syötä numero"

    def test_min_max(self):
        card_field = CardField("area", FieldType.NUMBER, validation_rules=ValidationRules(min=10, max=1000))

        assert validate_field(card_field, 5, REQUIRED)[0].message == "Arvon tulee olla vähintään 10"
        assert validate_field(card_field, "1500", REQUIRED)[0].message == "Arvon tulee olla enintään 1000"
        assert validate_field(card_field, 120, REQUIRED) == []

    def test_length_rules(self):
        card_field = CardField("zip", validation_rules=ValidationRules(min_length=5, max_length=5))
        assert validate_field(card_field, "123", REQUIRED)[0].message == "Vähintään 5 merkkiä"
        assert validate_field(card_field, "123456", REQUIRED)[0].message == "Enintään 5 merkkiä"

    def test_pattern(self):
        card_field = CardField("zip", validation_rules=ValidationRules(pattern=r"^\d{5}$"))
        assert validate_field(card_field, "00100", REQUIRED) == []
        assert validate_field(card_field, "abcde", REQUIRED)[0].message == "Virheellinen muoto"

    def test_broken_pattern_ignored(self):
        card_field = CardField("zip", validation_rules=ValidationRules(pattern="(["))
        assert validate_field(card_field, "x", REQUIRED) == []

    def test_email(self):
        card_field = CardField("email", FieldType.EMAIL)
        assert validate_field(card_field, "matti@example.fi", REQUIRED) == []
        assert validate_field(card_field, "matti@", REQUIRED)[0].message == "Virheellinen sähköpostiosoite"

    def test_options(self):
        card_field = CardField("heating", FieldType.SELECT, options=("oil", "electric"))
        assert validate_field(card_field, "oil", REQUIRED) == []
        assert validate_field(card_field, "coal", REQUIRED)[0].message == "Valitse jokin annetuista vaihtoehdoista"

    def test_select_only_one(self):
        card_field = CardField(
            "heating",
            FieldType.CHECKBOX,
            options=("oil", "electric"),
            validation_rules=ValidationRules(select_only_one=True),
        )
        issues = validate_field(card_field, ["oil", "electric"], REQUIRED)
        assert [i.message for i in issues] == ["Valitse vain yksi vaihtoehto"]


class TestValidateCard:

    def test_messages_per_field(self, bundle):
        validation = validate_card(bundle.cards[0], _table(floor_area=5), REQUIRED)

        assert validation.is_valid is False
        assert validation.messages() == {
            "floor_area": "Arvon tulee olla vähintään 10",
            "heating_type": REQUIRED,
        }

    def test_valid_card(self, bundle):
        validation = validate_card(bundle.cards[0], _table(floor_area=120, heating_type="oil"), REQUIRED)

        assert validation.is_valid is True
        assert validation.to_dict()["issues"] == []
