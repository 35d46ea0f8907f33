"""
AIDB Dependency Graph

Directed graph of entity types built from forward relations, used to order
cascade generation.

- Hard edges: required forward-exact relations (the target must be
  generatable before the source)
- Soft edges: fuzzy relations and optional forward-exact relations
- Backward-exact relations add no dependency
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

import structlog

from aidb.schema.errors import SchemaCycleError
from aidb.schema.types import ParsedSchema, RelationOperator

logger = structlog.get_logger(__name__)


@dataclass
class DependencyEdge:
    """One relation between entity types."""
    from_type: str
    to_type: str
    field_name: str
    operator: RelationOperator
    is_array: bool = False
    is_optional: bool = False

    @property
    def is_hard(self) -> bool:
        return self.operator == RelationOperator.FORWARD_EXACT and not self.is_optional

    def to_dict(self) -> dict:
        return {
            "from": self.from_type,
            "to": self.to_type,
            "field_name": self.field_name,
            "operator": self.operator.value,
            "is_array": self.is_array,
        }


@dataclass
class DependencyNode:
    """An entity type and what it depends on."""
    name: str
    depends_on: Set[str] = field(default_factory=set)
    soft_depends_on: Set[str] = field(default_factory=set)
    optional_depends_on: Set[str] = field(default_factory=set)


class SchemaDependencyGraph:
    """
    Dependency graph over the entity types of a parsed schema.

    Features:
    - Hard/soft dependency tracking per type
    - Topological generation order from a root type
    - Cycle detection among hard edges
    - Parallel generation groups
    """

    def __init__(self):
        self.nodes: Dict[str, DependencyNode] = {}
        self.edges: List[DependencyEdge] = []
        self._dependents: Dict[str, Set[str]] = defaultdict(set)

    def add_node(self, name: str) -> DependencyNode:
        if name not in self.nodes:
            self.nodes[name] = DependencyNode(name=name)
        return self.nodes[name]

    def add_edge(self, edge: DependencyEdge) -> None:
        source = self.add_node(edge.from_type)
        self.add_node(edge.to_type)
        self.edges.append(edge)

        if edge.is_hard:
            source.depends_on.add(edge.to_type)
            self._dependents[edge.to_type].add(edge.from_type)
        else:
            source.soft_depends_on.add(edge.to_type)
            if edge.operator == RelationOperator.FORWARD_EXACT:
                source.optional_depends_on.add(edge.to_type)

    def dependencies(self, name: str, ignore_optional: bool = True) -> List[str]:
        """Ordering dependencies of a type, excluding self-references."""
        node = self.nodes.get(name)
        if node is None:
            return []
        deps = set(node.depends_on)
        if not ignore_optional:
            deps |= node.optional_depends_on
        deps.discard(name)
        return sorted(deps)

    def __contains__(self, name: object) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    # === Serialization ===

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": {
                name: {
                    "depends_on": sorted(node.depends_on),
                    "soft_depends_on": sorted(node.soft_depends_on),
                }
                for name, node in self.nodes.items()
            },
            "edges": [edge.to_dict() for edge in self.edges],
        }

    def to_mermaid(self) -> str:
        """Generate Mermaid format for visualization."""
        lines = ["graph LR"]
        for edge in self.edges:
            arrow = "-->" if edge.is_hard else "-.->"
            lines.append(f"  {edge.from_type} {arrow}|{edge.field_name}| {edge.to_type}")
        for name, node in self.nodes.items():
            if not node.depends_on and not node.soft_depends_on and not self._dependents.get(name):
                lines.append(f"  {name}")
        return "\n".join(lines)


def build_dependency_graph(schema: ParsedSchema) -> SchemaDependencyGraph:
    """Build the type dependency graph from a parsed schema."""
    graph = SchemaDependencyGraph()

    for entity in schema.entities.values():
        graph.add_node(entity.name)

        for parsed in entity.fields.values():
            if not parsed.is_relation or parsed.derived:
                continue
            if parsed.operator == RelationOperator.BACKWARD_EXACT:
                continue

            for target in parsed.target_types:
                graph.add_edge(DependencyEdge(
                    from_type=entity.name,
                    to_type=target,
                    field_name=f"{parsed.name}?" if parsed.is_optional else parsed.name,
                    operator=parsed.operator,
                    is_array=parsed.is_array,
                    is_optional=parsed.is_optional,
                ))

    return graph


# === Topological Sort ===

def topological_sort(
    graph: SchemaDependencyGraph,
    root: str,
    ignore_optional: bool = True,
) -> List[str]:
    """
    Generation order for `root`: dependencies first, root last.

    Only types reachable from the root through ordering edges are included.
    Self-references are exempt; they are filled in by deferred patching
    and bounded by cascade depth.

    Raises:
        SchemaCycleError: If the ordering edges form a cycle
    """
    if root not in graph:
        return []

    order: List[str] = []
    visited: Set[str] = set()
    rec_stack: List[str] = []

    def visit(node: str) -> None:
        if node in visited:
            return
        if node in rec_stack:
            cycle_start = rec_stack.index(node)
            raise SchemaCycleError(rec_stack[cycle_start:] + [node])

        rec_stack.append(node)
        for dep in graph.dependencies(node, ignore_optional=ignore_optional):
            visit(dep)
        rec_stack.pop()

        visited.add(node)
        order.append(node)

    visit(root)
    return order


# === Cycle Detection ===

def detect_cycles(graph: SchemaDependencyGraph, ignore_optional: bool = True) -> List[List[str]]:
    """
    Find cycles among ordering edges.

    Returns:
        List of cycles; each path starts and ends with the same type
    """
    cycles: List[List[str]] = []
    visited: Set[str] = set()
    rec_stack: Set[str] = set()
    path: List[str] = []

    def dfs(node: str) -> None:
        visited.add(node)
        rec_stack.add(node)
        path.append(node)

        for neighbor in graph.dependencies(node, ignore_optional=ignore_optional):
            if neighbor not in visited:
                dfs(neighbor)
            elif neighbor in rec_stack:
                cycle_start = path.index(neighbor)
                cycles.append(path[cycle_start:] + [neighbor])

        path.pop()
        rec_stack.remove(node)

    for node in graph.nodes:
        if node not in visited:
            dfs(node)

    return cycles


# === Parallel Groups ===

def get_parallel_groups(graph: SchemaDependencyGraph, root: str) -> List[List[str]]:
    """
    Group the types reachable from `root` by dependency level.

    Types in the same group have no ordering dependency between them and
    may be generated concurrently.
    """
    order = topological_sort(graph, root)
    level: Dict[str, int] = {}

    for name in order:
        deps = graph.dependencies(name)
        level[name] = max((level[d] + 1 for d in deps if d in level), default=0)

    groups: List[List[str]] = []
    for name in order:
        while len(groups) <= level[name]:
            groups.append([])
        groups[level[name]].append(name)

    return groups

