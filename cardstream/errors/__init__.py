"""
errors/ - Error Taxonomy

Structured error classification for the calculator core.
"""

from .taxonomy import (
    ErrorSeverity,
    ErrorCategory,
    ErrorCode,
    ErrorInfo,
    CardStreamError,
    ResolutionError,
    EvaluationError,
    ExpressionSyntaxError,
    DivisionByZeroError,
    NonFiniteResultError,
    ExpressionTypeError,
    CardConfigurationError,
    CyclicDependencyError,
    FieldValidationError,
    InvalidTransitionError,
    UnknownCardError,
    create_configuration_gap,
    create_validation_error,
)

from .aggregator import (
    ErrorReport,
    ErrorAggregator,
)

__all__ = [
    # Taxonomy
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorCode",
    "ErrorInfo",
    "create_configuration_gap",
    "create_validation_error",
    # Exceptions
    "CardStreamError",
    "ResolutionError",
    "EvaluationError",
    "ExpressionSyntaxError",
    "DivisionByZeroError",
    "NonFiniteResultError",
    "ExpressionTypeError",
    "CardConfigurationError",
    "CyclicDependencyError",
    "FieldValidationError",
    "InvalidTransitionError",
    "UnknownCardError",
    # Aggregation
    "ErrorReport",
    "ErrorAggregator",
]
