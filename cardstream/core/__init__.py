"""
CardStream Core Module

Contains the foundation layer:
- Enumerations shared by the formula engine and the card system
- Shortcode grammar and graph node ids
- Session data table (field values, cached calculation records)
"""

from cardstream.core.enums import (
    CardStatus,
    CardType,
    CompletionType,
    RevealTimingMode,
    RevealConditionType,
    ActivationPolicy,
    ShortcodeKind,
    FieldType,
)
from cardstream.core.references import (
    SHORTCODE_PATTERN,
    ShortcodeRef,
    extract_shortcodes,
    normalize_name,
    node_id,
    split_node_id,
)
from cardstream.core.session_table import (
    UNSET,
    FieldRecord,
    CalculationRecord,
    SessionDataTable,
)

__all__ = [
    "CardStatus",
    "CardType",
    "CompletionType",
    "RevealTimingMode",
    "RevealConditionType",
    "ActivationPolicy",
    "ShortcodeKind",
    "FieldType",
    "SHORTCODE_PATTERN",
    "ShortcodeRef",
    "extract_shortcodes",
    "normalize_name",
    "node_id",
    "split_node_id",
    "UNSET",
    "FieldRecord",
    "CalculationRecord",
    "SessionDataTable",
]
