"""
CardStream Shortcode References

The shortcode token grammar and the node ids the dependency graph uses
for referenced values.

    [field:<name>]   user input value
    [calc:<name>]    registered formula result
    [lookup:<name>]  conditional lookup result
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple
import re

from cardstream.core.enums import ShortcodeKind


SHORTCODE_PATTERN = re.compile(r"\[(field|calc|lookup):([^\]]+)\]")


def normalize_name(name: str) -> str:
    """Field, formula and lookup names are matched case-insensitively."""
    return str(name).strip().lower()


@dataclass(frozen=True)
class ShortcodeRef:
    """One shortcode occurrence (deduplicated by kind and normalized name)."""
    kind: ShortcodeKind
    name: str
    token: str

    @property
    def node_id(self) -> str:
        return node_id(self.kind, self.name)


def node_id(kind: ShortcodeKind, name: str) -> str:
    """Graph node id, e.g. ``field:floor_area`` or ``template:[field:a] * 2``."""
    kind = ShortcodeKind(kind)
    if kind == ShortcodeKind.TEMPLATE:
        return f"{kind.value}:{name.strip()}"
    return f"{kind.value}:{normalize_name(name)}"


def split_node_id(node: str) -> Tuple[ShortcodeKind, str]:
    """Inverse of node_id."""
    kind, _, name = node.partition(":")
    return ShortcodeKind(kind), name


def extract_shortcodes(text: str) -> List[ShortcodeRef]:
    """All shortcodes in ``text`` in order of first appearance."""
    refs: List[ShortcodeRef] = []
    seen = set()
    for match in SHORTCODE_PATTERN.finditer(text or ""):
        kind = ShortcodeKind(match.group(1))
        name = normalize_name(match.group(2))
        if (kind, name) in seen:
            continue
        seen.add((kind, name))
        refs.append(ShortcodeRef(kind=kind, name=name, token=match.group(0)))
    return refs


def single_reference(text: str) -> Optional[ShortcodeRef]:
    """
    The reference if ``text`` is exactly one calc or lookup token,
    otherwise None.
    """
    stripped = (text or "").strip()
    match = SHORTCODE_PATTERN.fullmatch(stripped)
    if match is None or match.group(1) == ShortcodeKind.FIELD.value:
        return None
    return ShortcodeRef(
        kind=ShortcodeKind(match.group(1)),
        name=normalize_name(match.group(2)),
        token=match.group(0),
    )
