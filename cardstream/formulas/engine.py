"""
CardStream Formula Engine

process(template) turns a template into a formatted result:

1. Detect the template kind: exactly one [calc:x] / [lookup:x] token
   means a registered definition; otherwise the text is an ad-hoc
   expression (cached under its own text) or display text (tokens replaced
   by formatted values, not cached).
2. Discover the referenced fields/formulas and record them in the
   dependency graph.
3. Return the cached record when it exists and is current. The evaluator
   is not invoked.
4. Otherwise bring referenced formulas up to date (dependencies first),
   substitute tokens, evaluate, and format with the declared unit.
5. Store the record, which clears its stale flag.
6. On failure return success=False and leave any prior record untouched.

INVARIANT: process() never raises; every failure is a ProcessResult.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging

from cardstream.bootstrap.config import EngineConfig
from cardstream.core.enums import ShortcodeKind
from cardstream.core.references import SHORTCODE_PATTERN, extract_shortcodes, node_id, single_reference, split_node_id
from cardstream.core.session_table import UNSET, CalculationRecord, SessionDataTable
from cardstream.dependencies.graph import DependencyGraph
from cardstream.dependencies.invalidation import InvalidationEngine, InvalidationReason
from cardstream.errors import (
    CardStreamError,
    CyclicDependencyError,
    ErrorCategory,
    ErrorCode,
    EvaluationError,
    ResolutionError,
)
from cardstream.formulas.definitions import FormulaDefinition, FormulaRegistry
from cardstream.formulas.evaluator import ExpressionEvaluator, tokenize, NAME, FUNCTIONS
from cardstream.formulas.formatting import format_number, parse_number_input
from cardstream.formulas.lookups import ActionType, LookupAction, LookupDefinition
from cardstream.formulas.shortcodes import ResolveMode, ShortcodeResolver

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class ProcessResult:
    """Outcome of FormulaEngine.process()."""
    success: bool
    result: str = ""  # Formatted display text
    value: Any = None
    unit: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    error_code: Optional[ErrorCode] = None
    cached: bool = False
    kind: ShortcodeKind = ShortcodeKind.TEMPLATE
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "result": self.result,
            "value": self.value,
            "unit": self.unit,
            "dependencies": self.dependencies,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "cached": self.cached,
            "kind": self.kind.value,
            "name": self.name,
        }


def is_expression_template(template: str) -> bool:
    """
    True if the text (with tokens blanked) only uses expression grammar.
    Anything else, e.g. "Säästö [calc:x] vuodessa", is display text.
    """
    blanked = SHORTCODE_PATTERN.sub("0", template)
    try:
        tokens = tokenize(blanked)
    except CardStreamError:
        return False
    return all(t[0] != NAME or t[1].lower() in FUNCTIONS for t in tokens)


# =============================================================================
# ENGINE
# =============================================================================

class FormulaEngine:
    """
    Session scoped formula and lookup engine.

    Usage:
        table = SessionDataTable("session_1")
        engine = FormulaEngine(table, registry)
        table.set_field("a", 120)
        table.set_field("b", 2.5)
        engine.process("[field:a] + [field:b]", unit="kWh").result  # "122,5 kWh"
    """

    def __init__(
        self,
        table: SessionDataTable,
        registry: Optional[FormulaRegistry] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        graph: Optional[DependencyGraph] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._table = table
        self.registry = registry or FormulaRegistry()
        self._evaluator = evaluator or ExpressionEvaluator()
        self._graph = graph or DependencyGraph()
        self.config = config or EngineConfig()

        self._invalidation = InvalidationEngine(self._graph, table)
        self._invalidation.bind_table(table)
        self._resolver = ShortcodeResolver(table, strict_fields=self.config.strict_fields)

        self._on_result_callbacks: List[Callable[[ProcessResult], None]] = []

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def invalidation(self) -> InvalidationEngine:
        return self._invalidation

    @property
    def table(self) -> SessionDataTable:
        return self._table

    # ==================== Registration ====================

    def register_formula(self, definition: Union[FormulaDefinition, Dict[str, Any]]) -> FormulaDefinition:
        if isinstance(definition, dict):
            definition = FormulaDefinition.from_dict(definition)
        if self.registry.register_formula(definition):
            self._invalidation.invalidate_node(
                node_id(ShortcodeKind.CALC, definition.name),
                reason=InvalidationReason.DEFINITION_CHANGED,
                include_self=True,
            )
        return definition

    def register_lookup(self, definition: Union[LookupDefinition, Dict[str, Any]]) -> LookupDefinition:
        if isinstance(definition, dict):
            definition = LookupDefinition.from_dict(definition)
        if self.registry.register_lookup(definition):
            self._invalidation.invalidate_node(
                node_id(ShortcodeKind.LOOKUP, definition.name),
                reason=InvalidationReason.DEFINITION_CHANGED,
                include_self=True,
            )
        return definition

    # ==================== Processing ====================

    def process(self, template: str, unit: Optional[str] = None) -> ProcessResult:
        """Evaluate a template; see module docstring."""
        template = template or ""
        ref = single_reference(template)
        if ref is not None:
            kind, name = ref.kind, ref.name
        elif is_expression_template(template):
            kind, name = ShortcodeKind.TEMPLATE, template.strip()
        else:
            kind, name = None, template

        try:
            if kind is None:
                result = self._render_display(template)
            else:
                result = self._compute(kind, name, stack=[], unit=unit)
        except CardStreamError as e:
            result = self._failure(e, kind or ShortcodeKind.TEMPLATE, name, unit)
            logger.info(f"Processing failed for '{template}': {e.message}")

        if not result.cached:
            self._notify(result)
        return result

    def recalculate_stale(self) -> List[ProcessResult]:
        """Recompute every stale record, dependencies first."""
        results = []
        for stale_node in self._invalidation.get_stale_nodes():
            kind, name = split_node_id(stale_node)
            if not self._table.needs_recalculation(name, kind):
                continue
            try:
                result = self._compute(kind, name, stack=[])
            except CardStreamError as e:
                result = self._failure(e, kind, name, None)
            self._notify(result)
            results.append(result)
        if results:
            logger.info(f"Recalculated {len(results)} stale records")
        return results

    def get_dependencies(self, template: str) -> List[str]:
        """Node ids referenced by a template."""
        return [ref.node_id for ref in extract_shortcodes(template)]

    def on_result(self, callback: Callable[[ProcessResult], None]) -> None:
        """Register a callback for computed (non-cached) results and failures."""
        self._on_result_callbacks.append(callback)

    # ==================== Internals ====================

    def _compute(
        self,
        kind: ShortcodeKind,
        name: str,
        stack: List[str],
        unit: Optional[str] = None,
    ) -> ProcessResult:
        """Compute (or return cached) a named formula, lookup or expression template."""
        current = node_id(kind, name)
        if current in stack:
            cycle = stack[stack.index(current):] + [current]
            raise CyclicDependencyError(
                f"Cyclic reference: {' -> '.join(cycle)}",
                source="formula_engine",
                path=current,
                cycle=cycle,
            )
        if len(stack) >= self.config.max_depth:
            raise CyclicDependencyError(
                f"Maximum formula depth exceeded at '{name}'",
                source="formula_engine",
                path=current,
            )

        if kind == ShortcodeKind.TEMPLATE:
            definition = None
            dependencies = self._graph.discover_dependencies(kind, name, name)
            display_unit, decimals = unit, None
        else:
            definition = self.registry.get(kind, name)
            if definition is None:
                return self._undefined(kind, name, unit)
            dependencies = self._discover(kind, definition)
            display_unit = unit or definition.unit
            decimals = definition.decimals

        record = self._table.get_calculation(name, kind)
        if record is not UNSET and not record.is_stale:
            logger.debug(f"Cache hit for {current}")
            return self._from_record(record, dependencies, unit=display_unit, decimals=decimals, cached=True)

        inner = stack + [current]
        if kind == ShortcodeKind.LOOKUP:
            value, value_unit = self._evaluate_lookup(definition, inner)
            display_unit = unit or value_unit
        else:
            override = self._override_value(name) if kind == ShortcodeKind.CALC else UNSET
            if override is not UNSET:
                value = override
            else:
                text = name if definition is None else definition.formula_text
                self._prepare_upstream(dependencies, inner)
                value = self._evaluate_text(text)

        display = format_number(value, display_unit, decimals, self.config.max_decimals)
        record = self._table.store_calculation(name, value, display_unit, kind, display)
        logger.debug(f"Computed {current} = {display}")
        return self._from_record(record, dependencies, unit=display_unit, decimals=decimals, cached=False)

    def _discover(self, kind: ShortcodeKind, definition) -> List[str]:
        if kind == ShortcodeKind.LOOKUP:
            dependencies = definition.references()
            self._graph.set_dependencies(node_id(kind, definition.name), dependencies)
            return sorted(dependencies)

        extra = []
        if self.config.enable_overrides:
            extra = [node_id(ShortcodeKind.FIELD, key) for key in self._override_keys(definition.name)]
        return sorted(self._graph.discover_dependencies(kind, definition.name, definition.formula_text, extra))

    def _undefined(self, kind: ShortcodeKind, name: str, unit: Optional[str]) -> ProcessResult:
        # A record stored directly by the host can still be served
        record = self._table.get_calculation(name, kind)
        if record is not UNSET:
            return self._from_record(record, [], unit=unit or record.unit, decimals=None, cached=True)
        code = ErrorCode.RES_UNKNOWN_LOOKUP if kind == ShortcodeKind.LOOKUP else ErrorCode.RES_UNKNOWN_CALC
        raise ResolutionError(
            f"{'Lookup' if kind == ShortcodeKind.LOOKUP else 'Formula'} '{name}' not found",
            source="formula_engine",
            path=name,
            code=code,
        )

    def _prepare_upstream(self, dependencies: Iterable[str], stack: List[str]) -> None:
        """Bring referenced formulas and lookups up to date, dependencies first."""
        for upstream in self._graph.get_computation_order(dependencies):
            kind, name = split_node_id(upstream)
            if kind in (ShortcodeKind.FIELD, ShortcodeKind.TEMPLATE):
                continue
            if not self._table.needs_recalculation(name, kind):
                continue
            missing = self._table.get_calculation(name, kind) is UNSET
            if missing and not self.config.compute_missing_upstream:
                raise ResolutionError(
                    f"'{name}' has not been calculated yet",
                    source="formula_engine",
                    path=name,
                    code=ErrorCode.RES_UNKNOWN_LOOKUP if kind == ShortcodeKind.LOOKUP else ErrorCode.RES_UNKNOWN_CALC,
                )
            self._compute(kind, name, stack)

    def _evaluate_text(self, text: str) -> Any:
        resolved = self._resolver.resolve(text, ResolveMode.EXPRESSION)
        if not resolved.is_complete:
            names = ", ".join(r.token for r in resolved.unresolved)
            code = ErrorCode.RES_UNKNOWN_FIELD if all(
                r.kind == ShortcodeKind.FIELD for r in resolved.unresolved
            ) else ErrorCode.RES_UNKNOWN_CALC
            raise ResolutionError(f"Unresolved reference(s): {names}", source="formula_engine", code=code)

        result = self._evaluator.evaluate(resolved.text)
        if not result.success:
            raise EvaluationError(result.error, source="evaluator", code=result.error_code)
        return result.value

    def _evaluate_lookup(self, definition: LookupDefinition, stack: List[str]) -> Tuple[Any, Optional[str]]:
        selection = definition.select(self._table)
        action: Optional[LookupAction] = selection.action
        if action is None:
            raise ResolutionError(
                f"No rules matched for lookup '{definition.name}' and no default action configured",
                source="formula_engine",
                path=definition.name,
                code=ErrorCode.RES_NO_MATCH,
            )

        value_unit = action.unit or definition.unit

        if action.action_type == ActionType.ERROR:
            raise ResolutionError(
                action.message or "Lookup resulted in configured error",
                source="formula_engine",
                path=definition.name,
                code=ErrorCode.RES_LOOKUP_ERROR,
            )

        if action.action_type == ActionType.VALUE:
            value = action.value
        elif action.action_type == ActionType.TABLE:
            value = action.table_value(self._table.get_field(action.key_field))
            if value is UNSET:
                raise ResolutionError(
                    f"No table entry in lookup '{definition.name}' for '{action.key_field}'",
                    source="formula_engine",
                    path=definition.name,
                    code=ErrorCode.RES_NO_MATCH,
                )
        else:
            self._prepare_upstream(action.references(), stack)
            value = self._evaluate_text(action.formula_text)
            if value_unit is None:
                ref = single_reference(action.formula_text)
                if ref is not None:
                    record = self._table.get_calculation(ref.name, ref.kind)
                    value_unit = record.unit if record is not UNSET else None

        number = parse_number_input(value) if isinstance(value, str) else None
        return (number if number is not None else value), value_unit

    def _render_display(self, template: str) -> ProcessResult:
        """Display text: tokens replaced by formatted values; not cached."""
        if not template.strip():
            raise EvaluationError("Empty template", source="formula_engine")

        dependencies = self.get_dependencies(template)
        self._prepare_upstream(dependencies, [])
        resolved = self._resolver.resolve(template, ResolveMode.DISPLAY)
        if not resolved.is_complete:
            names = ", ".join(r.token for r in resolved.unresolved)
            raise ResolutionError(f"Unresolved reference(s): {names}", source="formula_engine")

        return ProcessResult(
            success=True,
            result=resolved.text,
            value=resolved.text,
            dependencies=dependencies,
            kind=ShortcodeKind.TEMPLATE,
            name=template,
        )

    @staticmethod
    def _override_keys(name: str) -> List[str]:
        keys = [f"override_{name}", f"override_{name.replace('-', '_')}", f"override_{name.replace('_', '-')}"]
        return list(dict.fromkeys(keys))

    def _override_value(self, name: str) -> Any:
        """User supplied replacement for a formula result, or UNSET."""
        if not self.config.enable_overrides:
            return UNSET
        for key in self._override_keys(name):
            value = self._table.get_field(key)
            if value is UNSET or value is None or value == "":
                continue
            logger.info(f"Using override value for '{name}' from '{key}'")
            number = parse_number_input(value)
            return number if number is not None else value
        return UNSET

    def _from_record(
        self,
        record: CalculationRecord,
        dependencies: List[str],
        unit: Optional[str],
        decimals: Optional[int],
        cached: bool,
    ) -> ProcessResult:
        if cached and unit == record.unit and record.display:
            text = record.display
        else:
            text = format_number(record.value, unit, decimals, self.config.max_decimals)
        return ProcessResult(
            success=True,
            result=text,
            value=record.value,
            unit=unit,
            dependencies=list(dependencies),
            cached=cached,
            kind=record.kind,
            name=record.name,
        )

    def _known_dependencies(self, kind: ShortcodeKind, name: str) -> List[str]:
        if kind == ShortcodeKind.TEMPLATE:
            return self.get_dependencies(name)
        return sorted(self._graph.get_direct_dependencies(node_id(kind, name)))

    def _failure(self, error: CardStreamError, kind: ShortcodeKind, name: str, unit: Optional[str]) -> ProcessResult:
        return ProcessResult(
            success=False,
            unit=unit,
            dependencies=self._known_dependencies(kind, name),
            error=error.message,
            error_category=error.category,
            error_code=error.code,
            kind=kind,
            name=name,
        )

    def _notify(self, result: ProcessResult) -> None:
        for callback in self._on_result_callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Result callback error: {e}")
