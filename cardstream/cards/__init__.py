"""
CardStream Cards Module

Card definitions, completion rules, the card state machine and the reveal
scheduler.
"""

from .models import (
    CardConfig,
    FormCardConfig,
    SubmitCardConfig,
    CalculationCardConfig,
    InfoCardConfig,
    VisualCardConfig,
    CardField,
    ValidationRules,
    CompletionRules,
    RevealCondition,
    RevealTiming,
    ResultTemplate,
    build_card_config,
)

from .completion import (
    CompletionCheck,
    CardValidation,
    FieldIssue,
    evaluate_completion,
    validate_card,
    is_empty_value,
)

from .transitions import (
    LEGAL_TRANSITIONS,
    TransitionEvent,
    TransitionValidator,
)

from .timers import (
    DeferredTimer,
    ManualTimer,
    AsyncioTimer,
)

from .reveal import (
    CardRuntimeState,
    RevealScheduler,
    ScheduledReveal,
    RevealNotice,
    RevealAction,
)

from .state_machine import (
    CardStateMachine,
    FieldUpdate,
    AdvanceResult,
)

from .loader import (
    ContentBundle,
    load_bundle,
    load_bundle_file,
)

__all__ = [
    "CardConfig",
    "FormCardConfig",
    "SubmitCardConfig",
    "CalculationCardConfig",
    "InfoCardConfig",
    "VisualCardConfig",
    "CardField",
    "ValidationRules",
    "CompletionRules",
    "RevealCondition",
    "RevealTiming",
    "ResultTemplate",
    "build_card_config",
    "CompletionCheck",
    "CardValidation",
    "FieldIssue",
    "evaluate_completion",
    "validate_card",
    "is_empty_value",
    "LEGAL_TRANSITIONS",
    "TransitionEvent",
    "TransitionValidator",
    "DeferredTimer",
    "ManualTimer",
    "AsyncioTimer",
    "CardRuntimeState",
    "RevealScheduler",
    "ScheduledReveal",
    "RevealNotice",
    "RevealAction",
    "CardStateMachine",
    "FieldUpdate",
    "AdvanceResult",
    "ContentBundle",
    "load_bundle",
    "load_bundle_file",
]
