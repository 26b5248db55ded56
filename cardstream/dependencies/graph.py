"""
CardStream Dependency Graph

Directed graph of shortcode references. An edge runs from a referenced
value (field, formula, lookup) to the formula that references it, so a
change can be pushed downstream to every record that must be recomputed.

Node ids:
    field:<name>      user input
    calc:<name>       registered formula
    lookup:<name>     registered conditional lookup
    template:<text>   ad-hoc expression template cached by its text

Edges are (re)discovered from formula text whenever a formula is
processed; discovering replaces that formula's previous edge set.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
from collections import deque
import logging

from cardstream.core.enums import ShortcodeKind
from cardstream.core.references import extract_shortcodes, node_id, split_node_id
from cardstream.errors import CyclicDependencyError

logger = logging.getLogger(__name__)


# =============================================================================
# NODES AND EDGES
# =============================================================================

@dataclass
class DependencyNode:
    """A referenced value or a formula in the graph."""
    node_id: str
    kind: ShortcodeKind

    depends_on: Set[str] = field(default_factory=set)
    depended_by: Set[str] = field(default_factory=set)

    computation_order: int = 0
    discovered_at: Optional[datetime] = None

    @property
    def name(self) -> str:
        return split_node_id(self.node_id)[1]

    def __hash__(self):
        return hash(self.node_id)


@dataclass
class DependencyEdge:
    """An edge in the dependency graph."""
    source: str      # Referenced value (dependency)
    target: str      # Referencing formula (dependent)

    def __hash__(self):
        return hash((self.source, self.target))


# =============================================================================
# DEPENDENCY GRAPH
# =============================================================================

class DependencyGraph:
    """
    Reference graph for one session's formulas.

    The graph is kept acyclic: discovering edges that would close a cycle
    is rejected and the formula's previous edges are restored.
    """

    def __init__(self):
        self._nodes: Dict[str, DependencyNode] = {}
        self._edges: Dict[Tuple[str, str], DependencyEdge] = {}
        self._order_dirty: bool = True

    def add_node(self, node: str) -> DependencyNode:
        """Add a node by id (``kind:name``)."""
        if node in self._nodes:
            return self._nodes[node]
        kind, _ = split_node_id(node)
        created = DependencyNode(node_id=node, kind=kind)
        self._nodes[node] = created
        self._order_dirty = True
        return created

    def add_dependency(self, dependent: str, dependency: str) -> DependencyEdge:
        """
        Add a dependency: dependent references dependency.

        Args:
            dependent: The formula node id
            dependency: The referenced node id
        """
        self.add_node(dependent)
        self.add_node(dependency)

        edge_key = (dependency, dependent)
        if edge_key in self._edges:
            return self._edges[edge_key]

        edge = DependencyEdge(source=dependency, target=dependent)
        self._edges[edge_key] = edge

        self._nodes[dependent].depends_on.add(dependency)
        self._nodes[dependency].depended_by.add(dependent)
        self._order_dirty = True
        return edge

    def clear_dependencies(self, dependent: str) -> Set[str]:
        """Remove every outgoing reference of a formula. Returns the old set."""
        node = self._nodes.get(dependent)
        if node is None:
            return set()
        previous = set(node.depends_on)
        for dependency in previous:
            self._edges.pop((dependency, dependent), None)
            upstream = self._nodes.get(dependency)
            if upstream is not None:
                upstream.depended_by.discard(dependent)
        node.depends_on.clear()
        self._order_dirty = True
        return previous

    def set_dependencies(self, dependent: str, dependencies: Iterable[str]) -> Set[str]:
        """
        Replace a formula's edge set.

        Raises:
            CyclicDependencyError: if the new edges close a cycle. The
                previous edges are restored first.
        """
        dependencies = set(dependencies)
        if dependent in dependencies:
            raise CyclicDependencyError(
                f"'{dependent}' references itself",
                source="dependency_graph",
                path=dependent,
                cycle=[dependent, dependent],
            )

        previous = self.clear_dependencies(dependent)
        self.add_node(dependent)
        for dependency in dependencies:
            self.add_dependency(dependent, dependency)

        cycle = self._find_cycle_through(dependent)
        if cycle:
            self.clear_dependencies(dependent)
            for dependency in previous:
                self.add_dependency(dependent, dependency)
            raise CyclicDependencyError(
                f"Cyclic dependency detected: {' -> '.join(cycle)}",
                source="dependency_graph",
                path=dependent,
                cycle=cycle,
            )

        self._nodes[dependent].discovered_at = datetime.utcnow()
        return dependencies

    def discover_dependencies(
        self,
        kind: ShortcodeKind,
        name: str,
        text: str,
        extra: Iterable[str] = (),
    ) -> Set[str]:
        """
        Scan formula text for shortcodes and record them as the formula's
        dependencies.

        Args:
            kind: Kind of the formula node (calc, lookup or template)
            name: Formula name (or template text)
            text: Text to scan
            extra: Additional node ids (e.g. fields read by lookup conditions)

        Returns:
            The formula's dependency node ids.
        """
        dependent = node_id(kind, name)
        dependencies = {ref.node_id for ref in extract_shortcodes(text)}
        dependencies.update(extra)
        self.set_dependencies(dependent, dependencies)
        logger.debug(f"Discovered {len(dependencies)} dependencies for {dependent}")
        return dependencies

    # ==================== Cycles and ordering ====================

    def _find_cycle_through(self, start: str) -> List[str]:
        """Path start -> ... -> start following depends_on, or []."""
        stack: List[Tuple[str, List[str]]] = [(start, [start])]
        visited: Set[str] = set()

        while stack:
            current, path = stack.pop()
            node = self._nodes.get(current)
            if node is None:
                continue
            for dependency in node.depends_on:
                if dependency == start:
                    return list(reversed(path + [start]))
                if dependency not in visited:
                    visited.add(dependency)
                    stack.append((dependency, path + [dependency]))
        return []

    def _topological(self) -> Tuple[List[str], Set[str]]:
        """Kahn's algorithm. Returns (ordered ids, ids left on cycles)."""
        pending = {n: len(node.depends_on) for n, node in self._nodes.items()}
        ready = deque(sorted(n for n, count in pending.items() if count == 0))
        ordered: List[str] = []

        while ready:
            current = ready.popleft()
            ordered.append(current)
            del pending[current]
            for dependent in sorted(self._nodes[current].depended_by):
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    ready.append(dependent)

        return ordered, set(pending)

    def detect_cycles(self) -> List[List[str]]:
        """Cycles present in the graph; empty while the graph is acyclic."""
        _, blocked = self._topological()
        cycles: List[List[str]] = []
        covered: Set[str] = set()
        for start in sorted(blocked):
            if start in covered:
                continue
            cycle = self._find_cycle_through(start)
            if cycle:
                cycles.append(cycle)
                covered.update(cycle)
        return cycles

    def _compute_order(self) -> None:
        ordered, blocked = self._topological()
        for position, n in enumerate(ordered):
            self._nodes[n].computation_order = position
        for n in blocked:
            self._nodes[n].computation_order = len(ordered)
        self._order_dirty = False

    def get_computation_order(self, nodes: Iterable[str]) -> List[str]:
        """Nodes sorted dependencies first."""
        if self._order_dirty:
            self._compute_order()
        return sorted(
            set(nodes),
            key=lambda n: (self._nodes[n].computation_order if n in self._nodes else 0, n),
        )

    # ==================== Queries ====================

    def get_direct_dependencies(self, node: str) -> Set[str]:
        found = self._nodes.get(node)
        return found.depends_on.copy() if found else set()

    def get_direct_dependents(self, node: str) -> Set[str]:
        found = self._nodes.get(node)
        return found.depended_by.copy() if found else set()

    def _reachable(self, node: str, direction: str) -> Set[str]:
        # ``seen`` also stops a cycle that slipped into the graph
        seen: Set[str] = set()
        frontier = [node]
        while frontier:
            found = self._nodes.get(frontier.pop())
            if found is None:
                continue
            fresh = getattr(found, direction) - seen
            seen |= fresh
            frontier.extend(fresh)
        seen.discard(node)
        return seen

    def get_all_dependencies(self, node: str) -> Set[str]:
        """All upstream nodes (transitive closure)."""
        return self._reachable(node, "depends_on")

    def get_all_downstream(self, node: str) -> Set[str]:
        """All formulas that reference ``node`` directly or transitively."""
        return self._reachable(node, "depended_by")

    def get_node(self, node: str) -> Optional[DependencyNode]:
        return self._nodes.get(node)

    def has_node(self, node: str) -> bool:
        return node in self._nodes

    def get_all_nodes(self) -> List[str]:
        """All node ids in computation order."""
        return self.get_computation_order(self._nodes.keys())

    def clear(self) -> None:
        self._nodes.clear()
        self._edges.clear()
        self._order_dirty = True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize graph for diagnostics."""
        return {
            "nodes": {
                n: {
                    "kind": node.kind.value,
                    "depends_on": sorted(node.depends_on),
                    "depended_by": sorted(node.depended_by),
                }
                for n, node in self._nodes.items()
            },
            "edges": [
                {"source": e.source, "target": e.target}
                for e in self._edges.values()
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DependencyGraph":
        graph = cls()
        for n in data.get("nodes", {}):
            graph.add_node(n)
        for edge_data in data.get("edges", []):
            graph.add_dependency(edge_data["target"], edge_data["source"])
        return graph
