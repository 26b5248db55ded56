"""
CardStream Core Enumerations

All enumeration types shared by the formula engine and the card system.
"""

from enum import Enum


class CardStatus(str, Enum):
    """
    Lifecycle status of a card. Visibility is tracked separately
    by CardRuntimeState.is_revealed.
    """
    HIDDEN = "hidden"          # Not yet reached
    LOCKED = "locked"          # Reached by the cascade, reveal conditions unmet
    UNLOCKED = "unlocked"      # Reachable, waiting for the user
    ACTIVE = "active"          # Card the user is working on (at most one)
    COMPLETE = "complete"      # Completion rule satisfied


class CardType(str, Enum):
    """
    Card variants. Form and submit cards collect input; the others
    complete themselves as soon as they are revealed.
    """
    FORM = "form"
    CALCULATION = "calculation"
    INFO = "info"
    VISUAL = "visual"
    SUBMIT = "submit"

    @property
    def collects_input(self) -> bool:
        return self in (CardType.FORM, CardType.SUBMIT)


class CompletionType(str, Enum):
    """How a form card decides it is complete."""
    ALL_FIELDS = "all_fields"
    ANY_FIELD = "any_field"
    REQUIRED_FIELDS = "required_fields"


class RevealTimingMode(str, Enum):
    """When the next card is revealed after a card completes."""
    IMMEDIATELY = "immediately"
    AFTER_DELAY = "after_delay"


class RevealConditionType(str, Enum):
    """Conditions a card can place on its own reveal."""
    CARD_COMPLETE = "card_complete"       # Target card(s) complete ("all" for every other card)
    FIELDS_COMPLETE = "fields_complete"   # Named field(s) have values
    VALUE_CHECK = "value_check"           # Field compared against a value
    ALWAYS = "always"


class ActivationPolicy(str, Enum):
    """What happens to the previously active card when another is activated."""
    DEMOTE_TO_UNLOCKED = "demote_to_unlocked"
    DEMOTE_TO_COMPLETE = "demote_to_complete"


class ShortcodeKind(str, Enum):
    """Shortcode prefixes, plus TEMPLATE for cached ad-hoc expressions."""
    FIELD = "field"
    CALC = "calc"
    LOOKUP = "lookup"
    TEMPLATE = "template"


class FieldType(str, Enum):
    """Input widgets a form card can declare."""
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    SELECT = "select"
    RADIO = "radio"
    BUTTONS = "buttons"
    CHECKBOX = "checkbox"
    TEXTAREA = "textarea"
    QUANTITY = "quantity"
