"""
errors/taxonomy.py - Error classification system

Every failure the calculator core can report falls into one of six
categories. Internally failures are raised as CardStreamError subclasses;
at the session boundary they are converted to ErrorInfo records so that
no exception escapes to the host widget.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum
import uuid


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories."""
    # Referenced field/calc/lookup is unknown or a lookup matched nothing (1xxx)
    RESOLUTION = "resolution"

    # Malformed expression, division by zero, non-finite result (2xxx)
    EVALUATION = "evaluation"

    # Missing reveal timing or completion rules, bad template (3xxx)
    CONFIGURATION = "configuration"

    # Formula or reveal cascade loops back on itself (4xxx)
    CYCLE = "cycle"

    # User input rejected by a card field rule (5xxx)
    VALIDATION = "validation"

    # Illegal card status transition (6xxx)
    STATE = "state"


class ErrorCode(Enum):
    """Specific error codes."""

    # Resolution (1xxx)
    RES_UNKNOWN_FIELD = 1001
    RES_UNKNOWN_CALC = 1002
    RES_UNKNOWN_LOOKUP = 1003
    RES_NO_MATCH = 1004
    RES_LOOKUP_ERROR = 1005

    # Evaluation (2xxx)
    EVL_SYNTAX = 2001
    EVL_DIVISION_BY_ZERO = 2002
    EVL_NON_FINITE = 2003
    EVL_TYPE = 2004
    EVL_FUNCTION = 2005

    # Configuration (3xxx)
    CFG_MISSING_TIMING = 3001
    CFG_MISSING_COMPLETION = 3002
    CFG_UNKNOWN_CARD_TYPE = 3003
    CFG_INVALID_TEMPLATE = 3004
    CFG_DUPLICATE_NAME = 3005

    # Cycle (4xxx)
    CYC_FORMULA = 4001
    CYC_REVEAL = 4002

    # Validation (5xxx)
    VAL_REQUIRED = 5001
    VAL_RULE = 5002

    # State (6xxx)
    STA_ILLEGAL_TRANSITION = 6001
    STA_UNKNOWN_CARD = 6002
    STA_SUBMISSION = 6003


@dataclass
class ErrorInfo:
    """Structured error representation."""

    error_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    code: ErrorCode = ErrorCode.EVL_SYNTAX
    category: ErrorCategory = ErrorCategory.EVALUATION
    severity: ErrorSeverity = ErrorSeverity.ERROR

    message: str = ""
    detail: str = ""

    # Context
    source: str = ""  # Component that raised
    path: Optional[str] = None  # Card id, formula name or field name

    recoverable: bool = True

    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "code": self.code.value,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "detail": self.detail,
            "source": self.source,
            "path": self.path,
            "recoverable": self.recoverable,
        }


# =============================================================================
# EXCEPTIONS
# =============================================================================

class CardStreamError(Exception):
    """Base exception; carries a code and category for reporting."""

    code: ErrorCode = ErrorCode.EVL_SYNTAX
    category: ErrorCategory = ErrorCategory.EVALUATION
    severity: ErrorSeverity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        source: str = "",
        path: Optional[str] = None,
        code: Optional[ErrorCode] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.path = path
        if code is not None:
            self.code = code

    def to_error_info(self) -> ErrorInfo:
        return ErrorInfo(
            code=self.code,
            category=self.category,
            severity=self.severity,
            message=self.message,
            source=self.source,
            path=self.path,
        )


class ResolutionError(CardStreamError):
    """A shortcode references something that has no value."""
    code = ErrorCode.RES_UNKNOWN_CALC
    category = ErrorCategory.RESOLUTION


class EvaluationError(CardStreamError):
    """Base for expression evaluation failures."""
    code = ErrorCode.EVL_SYNTAX
    category = ErrorCategory.EVALUATION


class ExpressionSyntaxError(EvaluationError):
    code = ErrorCode.EVL_SYNTAX


class DivisionByZeroError(EvaluationError):
    code = ErrorCode.EVL_DIVISION_BY_ZERO


class NonFiniteResultError(EvaluationError):
    code = ErrorCode.EVL_NON_FINITE


class ExpressionTypeError(EvaluationError):
    code = ErrorCode.EVL_TYPE


class CardConfigurationError(CardStreamError):
    """Card template or content bundle is unusable."""
    code = ErrorCode.CFG_INVALID_TEMPLATE
    category = ErrorCategory.CONFIGURATION


class CyclicDependencyError(CardStreamError):
    """Formula references or reveal cascade form a cycle."""
    code = ErrorCode.CYC_FORMULA
    category = ErrorCategory.CYCLE

    def __init__(
        self,
        message: str,
        source: str = "",
        path: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        cycle: Optional[List[str]] = None,
    ):
        super().__init__(message, source=source, path=path, code=code)
        self.cycle = list(cycle or [])


class FieldValidationError(CardStreamError):
    """User input failed a card field rule."""
    code = ErrorCode.VAL_RULE
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING


class InvalidTransitionError(CardStreamError):
    """Card status change not allowed from the current status."""
    code = ErrorCode.STA_ILLEGAL_TRANSITION
    category = ErrorCategory.STATE


class UnknownCardError(CardStreamError):
    code = ErrorCode.STA_UNKNOWN_CARD
    category = ErrorCategory.STATE


# =============================================================================
# FACTORIES
# =============================================================================

def create_configuration_gap(
    message: str,
    source: str,
    path: str = None,
    code: ErrorCode = ErrorCode.CFG_MISSING_TIMING,
) -> ErrorInfo:
    """Factory for configuration gaps that were papered over at runtime."""
    return ErrorInfo(
        code=code,
        category=ErrorCategory.CONFIGURATION,
        severity=ErrorSeverity.WARNING,
        message=message,
        source=source,
        path=path,
    )


def create_validation_error(
    message: str,
    source: str,
    path: str = None,
    code: ErrorCode = ErrorCode.VAL_RULE,
) -> ErrorInfo:
    """Factory for field validation errors."""
    return ErrorInfo(
        code=code,
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        message=message,
        source=source,
        path=path,
    )
