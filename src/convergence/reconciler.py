"""Reconciliation orchestration.

One reconcile run:
1. Loads the topology file (variables substituted)
2. Performs read-only data lookups
3. Builds and validates the dependency graph
4. Plans against the State Store (optionally saving the plan for audit)
5. Applies the plan through the executor
6. Resolves declared outputs against the updated state

Configuration errors (steps 1-4) are fatal and nothing is applied. Apply
failures are isolated per node and reported in the ApplyResult.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import EngineConfig
from .executor import ApplyResult, ApplyStatus, Executor
from .graph import Graph, build
from .planner import Plan, Planner
from .providers import ProviderError, ProviderRegistry, classify_provider_error
from .resources import ResourceID
from .spec_loader import SpecLoadError, Topology, load_topology
from .state import AppliedState, StateStore
from .values import canonicalize, resolve_partial

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of a single reconcile run."""

    source: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    plan: Plan | None = None
    apply: ApplyResult | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    plan_path: Path | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if every step converged."""
        return self.error is None and (self.apply is None or self.apply.success)


def lookup_data(topology: Topology, registry: ProviderRegistry) -> dict[ResourceID, dict[str, Any]]:
    """Run the topology's read-only data lookups.

    Inline ``values`` are used as-is; otherwise the registered data source
    is queried with the declared filters.

    Raises:
        ProviderError: If a data source is missing or its lookup fails.
    """
    results: dict[ResourceID, dict[str, Any]] = {}
    for lookup in topology.data:
        data_id = ResourceID(lookup.type, lookup.name, data=True)
        if lookup.inline is not None:
            results[data_id] = dict(lookup.inline)
            continue

        source = registry.get_data_source(lookup.type)
        try:
            results[data_id] = dict(source.lookup(lookup.filters))
        except ProviderError:
            raise
        except Exception as e:
            raise classify_provider_error(e, lookup.type) from e
        logger.debug("Data lookup complete", extra={"data_id": str(data_id)})
    return results


def compute_outputs(
    expressions: Mapping[str, Any],
    applied: AppliedState,
    graph: Graph,
) -> dict[str, Any]:
    """Resolve output expressions against applied state.

    Values that are not known yet render as ``<known after apply: ...>``.
    """
    known: dict[ResourceID, Mapping[str, Any]] = {
        rid: record.known_outputs for rid, record in applied.items()
    }
    known.update(graph.data)
    return {
        name: canonicalize(resolve_partial(expr, known, graph.instances))
        for name, expr in sorted(expressions.items())
    }


class Reconciler:
    """Drives load -> plan -> apply for one topology.

    Usage:
        reconciler = Reconciler(EngineConfig.from_env(), registry)
        result = await reconciler.reconcile(Path("topology.yaml"))
    """

    def __init__(
        self,
        config: EngineConfig,
        registry: ProviderRegistry,
        store: StateStore | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated engine configuration.
            registry: Providers and data sources by type.
            store: State store; opened from ``config.state_path`` if omitted.

        Raises:
            StateError: If the state file cannot be loaded.
        """
        self._config = config
        self._registry = registry
        self._store = store if store is not None else StateStore(config.state_path)
        self._planner = Planner(registry)
        self._executor: Executor | None = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    def prepare(self, topology: Topology) -> tuple[Graph, Plan]:
        """Look up data, build the graph and plan it against current state.

        Raises:
            ConfigError: On invalid declarations.
            ProviderError: If a data lookup fails.
        """
        data = lookup_data(topology, self._registry)
        graph = build(topology.descriptors, data, self._config.placement_policy)
        plan = self._planner.plan(graph, self._store.snapshot())
        return graph, plan

    def _save_plan(self, plan: Plan) -> Path | None:
        if self._config.plan_audit_dir is None:
            return None
        stamp = plan.created_at.strftime("%Y%m%dT%H%M%S%fZ")
        path = self._config.plan_audit_dir / f"plan-{stamp}.json"
        plan.save(path)
        logger.info("Saved plan for audit", extra={"plan_path": str(path)})
        return path

    def cancel(self) -> None:
        """Cooperatively cancel the apply in progress, if any."""
        if self._executor is not None:
            self._executor.cancel()

    async def reconcile(
        self,
        path: Path,
        overrides: Mapping[str, Any] | None = None,
    ) -> ReconcileResult:
        """Converge the cloud onto the topology in ``path``."""
        try:
            topology = load_topology(path, overrides)
        except SpecLoadError as e:
            result = ReconcileResult(source=str(path), error=e)
            result.end_time = datetime.now(UTC)
            self._log_result(result)
            return result

        return await self.reconcile_topology(topology, source=str(path))

    async def reconcile_topology(self, topology: Topology, source: str = "<memory>") -> ReconcileResult:
        """Converge onto an already loaded topology."""
        result = ReconcileResult(source=source)
        try:
            await self._reconcile_topology(topology, result)
        except Exception as e:
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
            self._executor = None

        self._log_result(result)
        return result

    async def _reconcile_topology(self, topology: Topology, result: ReconcileResult) -> None:
        graph, plan = self.prepare(topology)
        result.plan = plan
        result.plan_path = self._save_plan(plan)

        self._executor = Executor(self._registry, self._store, self._config)
        result.apply = await self._executor.apply(plan, graph)

        result.outputs = compute_outputs(topology.outputs, self._store.snapshot(), graph)

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconcile result with structured data."""
        extra: dict[str, Any] = {
            "source": result.source,
            "duration_seconds": result.duration_seconds,
        }
        if result.plan is not None:
            extra["plan"] = result.plan.summary()
        if result.apply is not None:
            extra["apply_status"] = result.apply.status.value
            extra["steps"] = result.apply.counts()
            if result.apply.conflicts:
                extra["conflicts"] = [str(r.resource_id) for r in result.apply.conflicts]

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconcile failed", extra=extra)
        elif result.apply is not None and result.apply.status == ApplyStatus.CANCELLED:
            logger.warning("Reconcile cancelled", extra=extra)
        elif result.apply is not None and not result.apply.success:
            logger.warning("Reconcile finished with failed steps", extra=extra)
        else:
            logger.info("Reconcile result", extra=extra)
