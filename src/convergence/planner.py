"""Change planning: desired graph vs last-applied state.

For every node the planner resolves attributes against what is already
known, hashes them and compares with the stored hash:

- not in state               -> Create
- same hash                  -> NoOp
- changed, mutable fields    -> Update
- changed, an immutable field -> Replace (Delete, then Create)
- in state, not in graph     -> Delete

Outputs of dependencies that are themselves being created or replaced are
not known yet; references to them stay Unresolved ("known after apply") and
count as changed fields. A dependency being updated in place keeps its
provider id, so only ``id`` stays known for it when hashing. Deciding
between Update and Replace assumes such a dependency keeps its other outputs
too; a dependent is replaced only if an immutable field differs under that
assumption.

ORDERING:
Steps are sorted topologically. Creates and updates follow dependency order,
deletes follow reverse dependency order using the dependencies recorded in
state (the desired graph no longer knows about removed resources). Ties are
broken by address so identical inputs always produce identical plans.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .graph import ConfigError, Graph
from .providers import ProviderRegistry
from .resources import ResourceID, default_immutable_fields
from .state import AppliedResource, AppliedState
from .values import changed_fields, content_hash, resolve_partial

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Planned action for a resource."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    REPLACE = "Replace"
    NOOP = "NoOp"


# Order among steps that are otherwise unconstrained on the same address
_ACTION_RANK = {Action.DELETE: 0, Action.CREATE: 1, Action.UPDATE: 2, Action.NOOP: 3}


class PlanningError(ConfigError):
    """Raised when the desired graph and state cannot be ordered consistently."""

    pass


def step_key(action: Action, resource_id: ResourceID) -> str:
    """Identifier of a plan step, unique within a plan."""
    return f"{action.value.lower()}:{resource_id}"


@dataclass(frozen=True)
class PlanStep:
    """One executable step.

    A Replace appears as two steps for the same resource: a Delete and a
    Create that depends on it. Both have ``replace=True``.
    """

    resource_id: ResourceID
    resource_type: str
    action: Action
    depends_on: tuple[str, ...] = ()
    changed_fields: tuple[str, ...] = ()
    replace: bool = False

    @property
    def key(self) -> str:
        return step_key(self.action, self.resource_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_id": str(self.resource_id),
            "resource_type": self.resource_type,
            "action": self.action.value,
            "depends_on": list(self.depends_on),
            "changed_fields": list(self.changed_fields),
            "replace": self.replace,
        }


@dataclass
class Plan:
    """Ordered change-set. Ephemeral; saved only for audit."""

    steps: list[PlanStep] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __iter__(self) -> Iterator[PlanStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def step(self, key: str) -> PlanStep:
        for candidate in self.steps:
            if candidate.key == key:
                return candidate
        raise KeyError(key)

    def resource_action(self, resource_id: ResourceID) -> Action | None:
        """Logical action for a resource (Replace for a delete/create pair)."""
        steps = [s for s in self.steps if s.resource_id == resource_id]
        if not steps:
            return None
        if any(s.replace for s in steps):
            return Action.REPLACE
        return steps[0].action

    @property
    def has_changes(self) -> bool:
        return any(s.action != Action.NOOP for s in self.steps)

    def summary(self) -> dict[str, int]:
        """Counts per logical action (a replace counts once)."""
        counts = {a.value: 0 for a in Action}
        for s in self.steps:
            if s.replace:
                if s.action == Action.CREATE:
                    counts[Action.REPLACE.value] += 1
                continue
            counts[s.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at.isoformat(),
            "summary": self.summary(),
            "steps": [s.to_dict() for s in self.steps],
        }

    def save(self, path: Path) -> None:
        """Persist the plan as JSON for audit."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")


class Planner:
    """Computes plans. Pure; never contacts providers."""

    def __init__(self, registry: ProviderRegistry | None = None) -> None:
        """Initialize planner.

        Args:
            registry: Source of per-type immutable fields. Without one the
                resource catalog defaults are used.
        """
        self._registry = registry

    def _immutable_fields(self, resource_type: str) -> frozenset[str]:
        if self._registry is not None:
            return self._registry.immutable_fields(resource_type)
        return default_immutable_fields(resource_type)

    def plan(self, graph: Graph, applied: AppliedState) -> Plan:
        """Diff the desired graph against applied state.

        Args:
            graph: Validated desired graph.
            applied: Last-applied state snapshot.

        Returns:
            Topologically ordered plan.

        Raises:
            PlanningError: If steps cannot be ordered.
        """
        actions: dict[ResourceID, Action] = {}
        changes: dict[ResourceID, tuple[str, ...]] = {}
        known: dict[ResourceID, Mapping[str, Any]] = dict(graph.data)
        # Like ``known``, but updated resources keep their last outputs
        assumed: dict[ResourceID, Mapping[str, Any]] = dict(graph.data)

        for node_id in graph.topological_order():
            descriptor = graph.descriptor(node_id)
            desired = resolve_partial(descriptor.attributes, known, graph.instances)
            record = applied.get(node_id)

            if record is None:
                action = Action.CREATE
            elif content_hash(desired) == record.last_applied_hash:
                action = Action.NOOP
            else:
                fields = changed_fields(desired, record.attributes)
                changes[node_id] = tuple(sorted(fields))
                action = self._change_action(
                    descriptor.type, descriptor.attributes, record, assumed, graph
                )

            actions[node_id] = action
            if action == Action.NOOP and record is not None:
                known[node_id] = record.known_outputs
                assumed[node_id] = record.known_outputs
            elif action == Action.UPDATE and record is not None:
                known[node_id] = {"id": record.provider_id}
                assumed[node_id] = record.known_outputs

        for resource_id in applied:
            if resource_id not in graph:
                actions[resource_id] = Action.DELETE

        steps = self._build_steps(graph, applied, actions, changes)
        ordered = self._order(steps)

        plan = Plan(steps=ordered)
        logger.info("Computed plan", extra={"summary": plan.summary()})
        return plan

    def _change_action(
        self,
        resource_type: str,
        attributes: Mapping[str, Any],
        record: AppliedResource,
        assumed: Mapping[ResourceID, Mapping[str, Any]],
        graph: Graph,
    ) -> Action:
        """Update or Replace for a resource whose hash changed.

        Only immutable fields that differ once in-place updates of
        dependencies are assumed to keep their outputs force a replace.
        Outputs that do change are caught again at apply time.
        """
        expected = resolve_partial(attributes, assumed, graph.instances)
        if changed_fields(expected, record.attributes) & self._immutable_fields(resource_type):
            return Action.REPLACE
        return Action.UPDATE

    def _forward_key(self, resource_id: ResourceID, actions: Mapping[ResourceID, Action]) -> str:
        action = actions[resource_id]
        if action == Action.REPLACE:
            return step_key(Action.CREATE, resource_id)
        return step_key(action, resource_id)

    def _delete_prerequisites(
        self,
        resource_id: ResourceID,
        graph: Graph,
        applied: AppliedState,
        actions: Mapping[ResourceID, Action],
    ) -> list[str]:
        """Steps that must finish before ``resource_id`` may be deleted."""
        address = str(resource_id)
        prerequisites: list[str] = []
        for other_id, record in applied.items():
            if other_id == resource_id or address not in record.dependencies:
                continue
            other_action = actions.get(other_id)
            if other_action in (Action.DELETE, Action.REPLACE):
                prerequisites.append(step_key(Action.DELETE, other_id))
            elif other_action == Action.UPDATE and resource_id not in graph.dependencies(other_id):
                # The dependent is moving off this resource; let it move first
                prerequisites.append(step_key(Action.UPDATE, other_id))
        return prerequisites

    def _build_steps(
        self,
        graph: Graph,
        applied: AppliedState,
        actions: Mapping[ResourceID, Action],
        changes: Mapping[ResourceID, tuple[str, ...]],
    ) -> list[PlanStep]:
        steps: list[PlanStep] = []

        for resource_id, action in actions.items():
            if action == Action.DELETE:
                steps.append(
                    PlanStep(
                        resource_id=resource_id,
                        resource_type=applied[resource_id].resource_type,
                        action=Action.DELETE,
                        depends_on=tuple(
                            sorted(self._delete_prerequisites(resource_id, graph, applied, actions))
                        ),
                    )
                )
                continue

            resource_type = graph.descriptor(resource_id).type
            forward = sorted(
                self._forward_key(dep, actions) for dep in graph.dependencies(resource_id)
            )
            changed = changes.get(resource_id, ())

            if action == Action.REPLACE:
                delete_step = PlanStep(
                    resource_id=resource_id,
                    resource_type=resource_type,
                    action=Action.DELETE,
                    depends_on=tuple(
                        sorted(self._delete_prerequisites(resource_id, graph, applied, actions))
                    ),
                    changed_fields=changed,
                    replace=True,
                )
                steps.append(delete_step)
                steps.append(
                    PlanStep(
                        resource_id=resource_id,
                        resource_type=resource_type,
                        action=Action.CREATE,
                        depends_on=tuple(sorted([*forward, delete_step.key])),
                        changed_fields=changed,
                        replace=True,
                    )
                )
                continue

            steps.append(
                PlanStep(
                    resource_id=resource_id,
                    resource_type=resource_type,
                    action=action,
                    depends_on=tuple(forward),
                    changed_fields=changed,
                )
            )

        return steps

    def _order(self, steps: list[PlanStep]) -> list[PlanStep]:
        """Kahn's algorithm over steps with address tie-breaks."""
        by_key = {s.key: s for s in steps}
        dependents: dict[str, list[str]] = {key: [] for key in by_key}
        in_degree: dict[str, int] = {key: 0 for key in by_key}

        for s in steps:
            for dep in s.depends_on:
                if dep not in by_key:
                    raise PlanningError(f"Step {s.key} depends on unknown step {dep}")
                dependents[dep].append(s.key)
                in_degree[s.key] += 1

        def sort_key(key: str) -> tuple[bool, str, int]:
            s = by_key[key]
            # NoOps first: they unblock others without doing anything
            return (s.action != Action.NOOP, str(s.resource_id), _ACTION_RANK[s.action])

        result: list[PlanStep] = []
        queue = [key for key, degree in in_degree.items() if degree == 0]

        while queue:
            queue.sort(key=sort_key)
            current = queue.pop(0)
            step = by_key[current]
            result.append(step)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

            # Keep a replace pair adjacent whenever the create is ready
            if step.replace and step.action == Action.DELETE:
                partner = step_key(Action.CREATE, step.resource_id)
                if partner in queue:
                    queue.remove(partner)
                    result.append(by_key[partner])
                    for dependent in dependents[partner]:
                        in_degree[dependent] -= 1
                        if in_degree[dependent] == 0:
                            queue.append(dependent)

        if len(result) != len(steps):
            stuck = sorted(key for key, degree in in_degree.items() if degree > 0)
            raise PlanningError(f"Plan steps cannot be ordered, circular step dependencies: {stuck}")

        return result


def plan(graph: Graph, applied: AppliedState, registry: ProviderRegistry | None = None) -> Plan:
    """Compute a plan for ``graph`` against ``applied`` state."""
    return Planner(registry).plan(graph, applied)
