"""Dependency graph construction from resource declarations.

This module turns a flat list of descriptors into a DAG:
1. Expansion of count / for_each declarations into independent instances
2. Reference resolution (attribute references, splats, explicit depends_on)
3. Cycle detection with the full cycle reported
4. Topological ordering for downstream consumers

Edges point from a resource to what it depends on: A -> B means B must
exist before A is created and must outlive A on destroy.

EXAMPLE:
```yaml
- type: subnet
  name: public_a
  attributes:
    vpc_id: ${vpc.main.id}       # subnet.public_a -> vpc.main
- type: instance
  name: web
  count: 3                       # instance.web[0], [1], [2]
  attributes:
    subnet_id: ${subnet.public_a.id}
```

Building is pure: no provider is contacted and nothing is persisted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import MAX_EXPANDED_INSTANCES, PlacementPolicy
from .resources import ResourceDescriptor, ResourceID
from .values import (
    ExpressionError,
    Reference,
    Splat,
    has_expansion_vars,
    iter_expressions,
    substitute_expansion,
)

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when declarations cannot form a valid graph. Never retried."""

    pass


class DuplicateResourceError(ConfigError):
    """Raised when two descriptors share the same (type, name)."""

    pass


class UnknownReferenceError(ConfigError):
    """Raised when a reference names a resource absent from the graph."""

    def __init__(self, source: ResourceID, target: ResourceID, hint: str = "") -> None:
        message = f"{source} references unknown resource {target}"
        if hint:
            message = f"{message} ({hint})"
        super().__init__(message)
        self.source = source
        self.target = target


class CyclicDependencyError(ConfigError):
    """Raised when a dependency cycle is detected.

    ``cycle`` lists the nodes in path order, first node repeated at the end.
    """

    def __init__(self, cycle: list[ResourceID]) -> None:
        path = " -> ".join(str(node) for node in cycle)
        super().__init__(f"Circular dependency detected: {path}")
        self.cycle = cycle


@dataclass
class GraphNode:
    """A node in the dependency graph."""

    descriptor: ResourceDescriptor
    dependencies: set[ResourceID] = field(default_factory=set)

    @property
    def id(self) -> ResourceID:
        return self.descriptor.id


@dataclass
class Graph:
    """Directed acyclic graph of resources.

    Attributes:
        nodes: Resource id -> node.
        instances: Declaring template id -> its expanded instance ids in order.
        data: Data lookup id -> looked-up attributes (read-only).
    """

    nodes: dict[ResourceID, GraphNode] = field(default_factory=dict)
    instances: dict[ResourceID, list[ResourceID]] = field(default_factory=dict)
    data: dict[ResourceID, dict[str, Any]] = field(default_factory=dict)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceID]:
        return iter(sorted(self.nodes, key=str))

    def descriptor(self, resource_id: ResourceID) -> ResourceDescriptor:
        return self.nodes[resource_id].descriptor

    def dependencies(self, resource_id: ResourceID) -> set[ResourceID]:
        """Direct dependencies of a node."""
        return set(self.nodes[resource_id].dependencies)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Depth-first search so the exact cycle path can be reported. The walk
        keeps its own stack, so long dependency chains are not limited by
        Python's recursion depth.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        white, grey, black = 0, 1, 2
        color: dict[ResourceID, int] = {node_id: white for node_id in self.nodes}

        for root in sorted(self.nodes, key=str):
            if color[root] != white:
                continue
            color[root] = grey
            path: list[ResourceID] = [root]
            pending: list[Iterator[ResourceID]] = [
                iter(sorted(self.nodes[root].dependencies, key=str))
            ]

            while pending:
                for dep in pending[-1]:
                    if color[dep] == grey:
                        start = path.index(dep)
                        raise CyclicDependencyError([*path[start:], dep])
                    if color[dep] == white:
                        color[dep] = grey
                        path.append(dep)
                        pending.append(iter(sorted(self.nodes[dep].dependencies, key=str)))
                        break
                else:
                    # Every dependency explored
                    color[path.pop()] = black
                    pending.pop()

    def topological_order(self) -> list[ResourceID]:
        """Return resource ids in dependency order (dependencies first).

        Ties are broken by address so the order is stable across runs.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[ResourceID, list[ResourceID]] = {node: [] for node in self.nodes}
        in_degree: dict[ResourceID, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.dependencies:
                dependents[dep].append(node.id)
                in_degree[node.id] += 1

        # Kahn's algorithm
        result: list[ResourceID] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort(key=str)
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result


# =============================================================================
# Expansion
# =============================================================================


def _expansion_keys(descriptor: ResourceDescriptor) -> list[tuple[int | str, dict[str, Any]]]:
    """(instance key, expansion bindings) pairs for a template."""
    if descriptor.count is not None:
        count = descriptor.count
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ConfigError(f"{descriptor.id}: count must be a non-negative integer, got {count!r}")
        if count > MAX_EXPANDED_INSTANCES:
            raise ConfigError(
                f"{descriptor.id}: count {count} exceeds limit of {MAX_EXPANDED_INSTANCES}"
            )
        return [(i, {"count.index": i}) for i in range(count)]

    for_each = descriptor.for_each
    if isinstance(for_each, dict):
        items = [(str(k), v) for k, v in for_each.items()]
    elif isinstance(for_each, list):
        if len(set(map(str, for_each))) != len(for_each):
            raise ConfigError(f"{descriptor.id}: for_each keys must be unique")
        items = [(str(k), k) for k in for_each]
    else:
        raise ConfigError(f"{descriptor.id}: for_each must be a list or mapping, got {for_each!r}")

    if len(items) > MAX_EXPANDED_INSTANCES:
        raise ConfigError(
            f"{descriptor.id}: for_each size {len(items)} exceeds limit of {MAX_EXPANDED_INSTANCES}"
        )
    return [(key, {"each.key": key, "each.value": value}) for key, value in items]


def expand(
    descriptors: Iterable[ResourceDescriptor],
    placement_policy: PlacementPolicy = PlacementPolicy.SPREAD,
) -> tuple[list[ResourceDescriptor], dict[ResourceID, list[ResourceID]]]:
    """Expand count / for_each declarations into independent descriptors.

    Every instance shares the template's attributes and dependency shape,
    has a distinct indexed name, and records the template id.

    Args:
        descriptors: Declared descriptors.
        placement_policy: How ``placement`` entries are assigned to instances.

    Returns:
        Tuple of (expanded descriptors, template id -> instance ids).

    Raises:
        ConfigError: On invalid repetition or misplaced expansion variables.
    """
    expanded: list[ResourceDescriptor] = []
    instances: dict[ResourceID, list[ResourceID]] = {}

    for descriptor in descriptors:
        if not descriptor.expands:
            if has_expansion_vars(descriptor.attributes):
                raise ConfigError(
                    f"{descriptor.id}: count.index / each.* used without count or for_each"
                )
            expanded.append(descriptor)
            continue

        template_id = descriptor.id
        if template_id in instances:
            raise DuplicateResourceError(f"Duplicate resource {template_id}")
        instances[template_id] = []

        if descriptor.placement and descriptor.placement_attribute in descriptor.attributes:
            raise ConfigError(
                f"{template_id}: placement conflicts with explicit "
                f"'{descriptor.placement_attribute}' attribute"
            )

        for position, (key, bindings) in enumerate(_expansion_keys(descriptor)):
            instance_id = template_id.instance(key)
            try:
                attributes = substitute_expansion(descriptor.attributes, bindings)
                if descriptor.placement:
                    if placement_policy == PlacementPolicy.SINGLE:
                        target = descriptor.placement[0]
                    else:
                        target = descriptor.placement[position % len(descriptor.placement)]
                    attributes[descriptor.placement_attribute] = substitute_expansion(
                        target, bindings
                    )
            except ExpressionError as e:
                raise ConfigError(f"{instance_id}: {e}") from e

            expanded.append(
                ResourceDescriptor(
                    type=instance_id.type,
                    name=instance_id.name,
                    attributes=attributes,
                    depends_on=list(descriptor.depends_on),
                    template=template_id,
                    index=key,
                )
            )
            instances[template_id].append(instance_id)

        logger.debug(
            "Expanded declaration",
            extra={"template": str(template_id), "instances": len(instances[template_id])},
        )

    return expanded, instances


# =============================================================================
# Building
# =============================================================================


def _resolve_dependencies(
    descriptor: ResourceDescriptor,
    nodes: Mapping[ResourceID, GraphNode],
    instances: Mapping[ResourceID, list[ResourceID]],
    data: Mapping[ResourceID, Any],
) -> set[ResourceID]:
    source = descriptor.id
    deps: set[ResourceID] = set()

    expressions = list(iter_expressions(descriptor.attributes))
    for expr in expressions:
        if isinstance(expr, Splat):
            if expr.template.data:
                raise UnknownReferenceError(source, expr.template, "data lookups cannot be splatted")
            if expr.template not in instances:
                hint = "splat requires a count or for_each declaration"
                raise UnknownReferenceError(source, expr.template, hint)
            deps.update(instances[expr.template])
            continue

        target = expr.target
        if target.data:
            if target not in data:
                raise UnknownReferenceError(source, target, "no such data lookup")
            continue
        if target in nodes:
            deps.add(target)
        elif target in instances:
            raise UnknownReferenceError(
                source, target, "expanded declaration must be indexed with [n] or [*]"
            )
        else:
            raise UnknownReferenceError(source, target)

    for explicit in descriptor.depends_on:
        if explicit in nodes:
            deps.add(explicit)
        elif explicit in instances:
            deps.update(instances[explicit])
        else:
            raise UnknownReferenceError(source, explicit, "in depends_on")

    return deps


def build(
    descriptors: Iterable[ResourceDescriptor],
    data: Mapping[ResourceID, Mapping[str, Any]] | None = None,
    placement_policy: PlacementPolicy = PlacementPolicy.SPREAD,
) -> Graph:
    """Build a validated dependency graph.

    Args:
        descriptors: Declared descriptors (expansion happens here).
        data: Results of read-only data lookups, keyed by ``data.*`` ids.
        placement_policy: Placement distribution for expanded declarations.

    Returns:
        Acyclic graph with every reference resolved to a node or data lookup.

    Raises:
        DuplicateResourceError: If two descriptors share an address.
        UnknownReferenceError: If a reference cannot be resolved.
        CyclicDependencyError: If the graph contains a cycle.
    """
    data_map = {rid: dict(attrs) for rid, attrs in (data or {}).items()}
    expanded, instances = expand(descriptors, placement_policy)

    nodes: dict[ResourceID, GraphNode] = {}
    for descriptor in expanded:
        clashes_with_template = descriptor.template is None and descriptor.id in instances
        if descriptor.id in nodes or clashes_with_template:
            raise DuplicateResourceError(f"Duplicate resource {descriptor.id}")
        nodes[descriptor.id] = GraphNode(descriptor=descriptor)

    for node in nodes.values():
        node.dependencies = _resolve_dependencies(node.descriptor, nodes, instances, data_map)

    graph = Graph(nodes=nodes, instances=instances, data=data_map)
    graph.validate()

    logger.info(
        "Built dependency graph",
        extra={
            "node_count": len(nodes),
            "edge_count": sum(len(n.dependencies) for n in nodes.values()),
            "expanded_templates": len(instances),
        },
    )
    return graph
