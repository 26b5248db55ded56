"""
CardStream Test Configuration and Fixtures

A small heat pump calculator bundle used across unit and integration
tests:

    property  (form)         floor_area, heating_type   -> immediately
    energy    (calculation)  [calc:annual_energy]       -> after 3 s
    savings   (info)         display text with results  -> immediately
    contact   (submit)       name, email
"""

import copy

import pytest


SAMPLE_BUNDLE = {
    "cards": [
        {
            "id": "property",
            "name": "Kiinteistö",
            "title": "Kiinteistön tiedot",
            "type": "form",
            "display_order": 1,
            "card_fields": [
                {
                    "field_name": "floor_area",
                    "field_type": "number",
                    "label": "Pinta-ala",
                    "required": True,
                    "validation_rules": {"min": 10, "max": 1000},
                },
                {
                    "field_name": "heating_type",
                    "field_type": "select",
                    "label": "Nykyinen lämmitys",
                    "required": True,
                    "options": ["oil", "electric", "district"],
                },
            ],
            "completion_rules": {"form_completion": {"type": "all_fields"}},
            "reveal_timing": {"timing": "immediately"},
        },
        {
            "id": "energy",
            "name": "Energia",
            "type": "calculation",
            "display_order": 2,
            "config": {
                "main_result": "[calc:annual_energy]",
                "result_label": "Energiantarve",
                "field_name": "energy_need",
            },
            "reveal_timing": {"timing": "after_delay", "delay_seconds": 3},
        },
        {
            "id": "savings",
            "name": "Säästö",
            "type": "info",
            "display_order": 3,
            "config": {"content": "Arvioitu säästö [calc:annual_savings] vuodessa"},
            "reveal_timing": {"timing": "immediately"},
        },
        {
            "id": "contact",
            "name": "Yhteystiedot",
            "type": "submit",
            "display_order": 4,
            "card_fields": [
                {"field_name": "name", "field_type": "text", "required": True},
                {"field_name": "email", "field_type": "email", "required": True},
            ],
            "completion_rules": {"form_completion": {"type": "required_fields"}},
        },
    ],
    "formulas": [
        {"name": "annual_energy", "formula_text": "[field:floor_area] * 100", "unit": "kWh"},
        {
            "name": "annual_savings",
            "formula_text": "[calc:annual_energy] * [lookup:price_per_kwh]",
            "unit": "€",
            "decimals": 0,
        },
    ],
    "lookups": [
        {
            "name": "price_per_kwh",
            "unit": "€/kWh",
            "rules": [
                {
                    "name": "oil",
                    "condition_logic": {
                        "type": "AND",
                        "conditions": [{"field": "heating_type", "operator": "equals", "value": "oil"}],
                    },
                    "action_type": "value",
                    "value": 0.15,
                },
                {
                    "name": "electric",
                    "condition_logic": {
                        "type": "AND",
                        "conditions": [{"field": "heating_type", "operator": "equals", "value": "electric"}],
                    },
                    "action_type": "value",
                    "value": 0.2,
                },
            ],
            "default": {"action_type": "value", "value": 0.1},
        },
    ],
}


@pytest.fixture
def bundle_data():
    """Raw content bundle dict (deep copy, safe to mutate)."""
    return copy.deepcopy(SAMPLE_BUNDLE)


@pytest.fixture
def bundle(bundle_data):
    """Validated ContentBundle built from the sample data."""
    from cardstream.cards.loader import load_bundle

    return load_bundle(bundle_data)


@pytest.fixture
def table():
    from cardstream.core.session_table import SessionDataTable

    return SessionDataTable("test_session")


@pytest.fixture
def engine(table):
    """Formula engine bound to the table, with the sample formulas registered."""
    from cardstream.formulas.engine import FormulaEngine

    engine = FormulaEngine(table)
    for definition in SAMPLE_BUNDLE["formulas"]:
        engine.register_formula(copy.deepcopy(definition))
    for definition in SAMPLE_BUNDLE["lookups"]:
        engine.register_lookup(copy.deepcopy(definition))
    return engine


@pytest.fixture
def timer():
    from cardstream.cards.timers import ManualTimer

    return ManualTimer()


@pytest.fixture
def session(bundle, timer):
    """CardSession over the sample bundle driven by a ManualTimer."""
    from cardstream.kernel.session import CardSession

    return CardSession(bundle, session_id="test_session", timer=timer)


def make_card(card_id, card_type="form", order=0, **extra):
    """Raw card template dict for ad-hoc bundles."""
    raw = {"id": card_id, "type": card_type, "display_order": order}
    raw.update(extra)
    return raw


def form_card(card_id, order, fields, timing="immediately", **extra):
    """Form card with text fields and all_fields completion."""
    return make_card(
        card_id,
        "form",
        order,
        card_fields=[{"field_name": f, "required": True} for f in fields],
        completion_rules={"form_completion": {"type": "all_fields"}},
        reveal_timing={"timing": timing} if timing else None,
        **extra,
    )


@pytest.fixture
def card_templates():
    """Helpers for building ad-hoc card templates: (make_card, form_card)."""
    return make_card, form_card
