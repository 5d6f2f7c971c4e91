"""Translate between cursor positions and scope reference chains.

A scope reference is ``(node type, symbol name)``, e.g.
``function_definition|calculate``. Positions are never stored; they are
recovered by resolving each reference against the current syntax tree.
Detection is grammar-agnostic and works on node type names alone.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from tree_sitter import Node

from scopemark.models import Issue, ScopeReference
from scopemark.syntax import SyntaxTree

logger = logging.getLogger(__name__)

# Substrings of node types that name a scope
SCOPE_PATTERNS = ("function", "method", "class")
# Substrings that disqualify a node even if it matches a scope pattern
SCOPE_EXCLUDE_PATTERNS = ("call", "invocation", "function_declarator")
# Declarations that become a scope when their value is a function
BINDING_PATTERNS = ("variable", "assignment", "lexical_declaration")
FUNCTION_VALUE_PATTERNS = ("function", "arrow")

FILE_TOP = (0, 0)


class ResolutionStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"


@dataclass
class Resolution:
    """Outcome of resolving one reference against a tree."""

    status: ResolutionStatus
    node: Node | None = None
    position: tuple[int, int] | None = None
    matches: int = 0

    @property
    def found(self) -> bool:
        return self.status == ResolutionStatus.FOUND


@dataclass
class ChainResolution:
    """Per-reference results for a chain, in chain order."""

    results: dict[ScopeReference, Resolution] = field(default_factory=dict)

    @property
    def found(self) -> list[ScopeReference]:
        return [ref for ref, res in self.results.items() if res.found]

    @property
    def not_found(self) -> list[ScopeReference]:
        return [ref for ref, res in self.results.items() if not res.found]

    @property
    def usable(self) -> bool:
        """True when at least one reference resolved to a live position."""
        return bool(self.found)


def _binds_function(node: Node) -> bool:
    """A variable/assignment whose value is a function or arrow function."""
    if not any(p in node.type for p in BINDING_PATTERNS):
        return False
    values = node.children_by_field_name("value")
    if not values:
        # JS lexical declarations keep the value one level down, on the declarator
        values = [
            v
            for child in node.named_children
            for v in child.children_by_field_name("value")
        ]
    return any(p in v.type for v in values for p in FUNCTION_VALUE_PATTERNS)


def is_named_scope(node: Node) -> bool:
    node_type = node.type
    if any(p in node_type for p in SCOPE_EXCLUDE_PATTERNS):
        return False
    if any(p in node_type for p in SCOPE_PATTERNS):
        return True
    return _binds_function(node)


def symbol_of(tree: SyntaxTree, node: Node) -> str | None:
    """Name of the construct a scope node declares."""
    name = node.child_by_field_name("name")
    if name is not None:
        return tree.text(name)

    # C/C++: function_definition -> function_declarator -> identifier
    declarator = node.child_by_field_name("declarator")
    while declarator is not None:
        if declarator.type == "identifier":
            return tree.text(declarator)
        inner_name = declarator.child_by_field_name("name")
        if inner_name is not None:
            return tree.text(inner_name)
        declarator = declarator.child_by_field_name("declarator")

    # JS: const handler = () => {}
    if _binds_function(node):
        for child in node.named_children:
            inner_name = child.child_by_field_name("name")
            if inner_name is not None:
                return tree.text(inner_name)
    return None


def reference_for(tree: SyntaxTree, node: Node) -> ScopeReference | None:
    """The scope reference a node declares, or None if it is not a named scope."""
    if not is_named_scope(node):
        return None
    symbol = symbol_of(tree, node)
    if not symbol:
        return None
    return ScopeReference(kind=node.type, symbol=symbol)


def from_position(tree: SyntaxTree, line: int, column: int = 0) -> list[ScopeReference]:
    """Scope chain enclosing a 0-indexed position, innermost first.

    An empty chain means the position is file-scoped.
    """
    chain: list[ScopeReference] = []
    for node in tree.ancestors(tree.node_at(line, column)):
        ref = reference_for(tree, node)
        if ref is not None and ref not in chain:
            chain.append(ref)
    return chain


def innermost_scope(tree: SyntaxTree, line: int) -> ScopeReference | None:
    """Innermost named scope covering any part of a 0-indexed line."""
    best: tuple[Node, ScopeReference] | None = None
    for node in tree.walk():
        if not (node.start_point[0] <= line <= node.end_point[0]):
            continue
        ref = reference_for(tree, node)
        if ref is None:
            continue
        # walk() is pre-order, so a later enclosing match is deeper
        best = (node, ref)
    return best[1] if best else None


def from_range(tree: SyntaxTree, start_line: int, end_line: int) -> list[ScopeReference]:
    """Innermost scope of every line in a selection, deduplicated in first-seen order."""
    refs: list[ScopeReference] = []
    for line in range(start_line, end_line + 1):
        ref = innermost_scope(tree, line)
        if ref is not None and ref not in refs:
            refs.append(ref)
    return refs


def find_nodes(tree: SyntaxTree, reference: ScopeReference) -> list[Node]:
    """All nodes of the reference's kind whose symbol matches exactly."""
    return [
        node
        for node in tree.walk()
        if node.type == reference.kind and symbol_of(tree, node) == reference.symbol
    ]


def resolve(tree: SyntaxTree, chain: list[ScopeReference]) -> ChainResolution:
    """Resolve each reference standalone against the tree.

    References are not treated as a nested path, so a function moved to a
    different enclosing scope still resolves as long as its own kind and name
    match. With several matches the first in document order wins.
    """
    resolution = ChainResolution()
    for reference in chain:
        matches = find_nodes(tree, reference)
        if not matches:
            resolution.results[reference] = Resolution(status=ResolutionStatus.NOT_FOUND)
            continue
        if len(matches) > 1:
            logger.debug("%s matches %d nodes, using the first", reference, len(matches))
        node = matches[0]
        resolution.results[reference] = Resolution(
            status=ResolutionStatus.FOUND,
            node=node,
            position=(node.start_point[0], node.start_point[1]),
            matches=len(matches),
        )
    return resolution


def anchor(resolution: ChainResolution) -> tuple[int, int]:
    """Position to navigate to: the first found reference, else the top of the file."""
    for res in resolution.results.values():
        if res.found and res.position is not None:
            return res.position
    return FILE_TOP


def all_scope_references(tree: SyntaxTree) -> list[ScopeReference]:
    """Every named scope in the file, deduplicated, in document order."""
    refs: list[ScopeReference] = []
    for node in tree.walk():
        ref = reference_for(tree, node)
        if ref is not None and ref not in refs:
            refs.append(ref)
    return refs


def is_relevant(issue: Issue, cursor_refs: set[ScopeReference]) -> bool:
    """File-scoped issues always apply; scoped ones apply if any reference is under the cursor."""
    if issue.location.is_file_scoped:
        return True
    return any(ref in cursor_refs for ref in issue.location.reference)
