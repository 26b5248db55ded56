"""
CardStream Formulas Module

Shortcode resolution, sandboxed expression evaluation, number formatting,
conditional lookups and the formula engine that ties them together.
"""

from .evaluator import (
    ExpressionEvaluator,
    EvaluationResult,
    round_half_up,
)

from .formatting import (
    format_number,
    parse_formatted,
    parse_number_input,
)

from .shortcodes import (
    ShortcodeResolver,
    ResolvedTemplate,
    ResolveMode,
)

from .lookups import (
    LookupDefinition,
    LookupRule,
    LookupCondition,
    LookupAction,
    ConditionOperator,
    ConditionLogic,
    ActionType,
)

from .definitions import (
    FormulaDefinition,
    FormulaRegistry,
)

from .engine import (
    FormulaEngine,
    ProcessResult,
    is_expression_template,
)

__all__ = [
    "ExpressionEvaluator",
    "EvaluationResult",
    "round_half_up",
    "format_number",
    "parse_formatted",
    "parse_number_input",
    "ShortcodeResolver",
    "ResolvedTemplate",
    "ResolveMode",
    "LookupDefinition",
    "LookupRule",
    "LookupCondition",
    "LookupAction",
    "ConditionOperator",
    "ConditionLogic",
    "ActionType",
    "FormulaDefinition",
    "FormulaRegistry",
    "FormulaEngine",
    "ProcessResult",
    "is_expression_template",
]
