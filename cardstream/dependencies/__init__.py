"""
CardStream Dependencies Module

Reference graph between fields, formulas and lookups, and the
invalidation engine that marks cached results stale.
"""

from .graph import (
    DependencyGraph,
    DependencyNode,
    DependencyEdge,
)

from .invalidation import (
    InvalidationEngine,
    InvalidationEvent,
    InvalidationReason,
    InvalidationScope,
)

__all__ = [
    "DependencyGraph",
    "DependencyNode",
    "DependencyEdge",
    "InvalidationEngine",
    "InvalidationEvent",
    "InvalidationReason",
    "InvalidationScope",
]
