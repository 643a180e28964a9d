"""Concurrent plan execution.

The executor walks a plan as a DAG of steps. A step becomes ready once every
step it depends on has Succeeded (or was a NoOp); ready steps run
concurrently, bounded by ``max_workers``. Provider calls are blocking SDK
calls, so they run in a thread pool while the event loop only schedules.

FAILURE HANDLING:
- Transient provider errors are retried with exponential backoff and jitter
- Permanent errors fail the step immediately
- Every transitive dependent of a failed step is Blocked and never started
- Independent branches keep running

STATE:
A step's state record is written (and flushed) only after its provider call
succeeded, so a crash mid-apply leaves state describing exactly what exists.

CANCELLATION:
cancel() stops new steps from starting. Steps already in flight finish and
record their state; everything not started is reported Cancelled.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import EngineConfig
from .graph import Graph
from .planner import Action, Plan, PlanStep
from .providers import (
    NotFoundError,
    Provider,
    ProviderError,
    ProviderRegistry,
    TransientProviderError,
    classify_provider_error,
)
from .resources import ResourceID
from .state import AppliedResource, StateConflict, StateError, StateStore, check_drift
from .values import ExpressionError, Unresolved, changed_fields, content_hash, resolve_value

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NodeStatus(str, Enum):
    """Final status of one plan step."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    BLOCKED = "Blocked"
    NOOP = "NoOp"
    CANCELLED = "Cancelled"


class ApplyStatus(str, Enum):
    """Overall outcome of an apply."""

    SUCCESS = "Success"
    PARTIAL_FAILURE = "PartialFailure"
    CANCELLED = "Cancelled"


@dataclass
class NodeResult:
    """Outcome of one plan step."""

    key: str
    resource_id: ResourceID
    action: Action
    status: NodeStatus
    reason: str | None = None
    attempts: int = 0
    conflict: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "resource_id": str(self.resource_id),
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        if self.conflict:
            data["conflict"] = True
        return data


@dataclass
class ApplyResult:
    """Per-step report of an apply."""

    status: ApplyStatus = ApplyStatus.SUCCESS
    results: dict[str, NodeResult] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == ApplyStatus.SUCCESS

    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in NodeStatus}
        for result in self.results.values():
            counts[result.status.value] += 1
        return counts

    @property
    def conflicts(self) -> list[NodeResult]:
        return [r for r in self.results.values() if r.conflict]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "counts": self.counts(),
            "steps": [r.to_dict() for r in self.results.values()],
        }


class _StepFailed(Exception):
    """Internal signal carrying a failed step's reason."""

    def __init__(self, reason: str, *, attempts: int = 0) -> None:
        super().__init__(reason)
        self.reason = reason
        self.attempts = attempts


class Executor:
    """Executes plans against registered providers.

    Usage:
        executor = Executor(registry, store, config)
        result = await executor.apply(plan, graph)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        config: EngineConfig | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._config = config or EngineConfig()
        self._cancel_event = asyncio.Event()
        self._pool: ThreadPoolExecutor | None = None

    def cancel(self) -> None:
        """Stop starting new steps. In-flight steps run to completion."""
        logger.info("Apply cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def apply(self, plan: Plan, graph: Graph) -> ApplyResult:
        """Execute every step of ``plan``.

        Args:
            plan: Plan computed for ``graph`` against this executor's store.
            graph: Desired graph (source of attributes to resolve).

        Returns:
            Report with a final status for every step.
        """
        result = ApplyResult()
        steps = {s.key: s for s in plan}
        order = [s.key for s in plan]

        # Outputs visible to references: applied state first, then data lookups
        outputs: dict[ResourceID, dict[str, Any]] = {
            rid: record.known_outputs for rid, record in self._store.snapshot().items()
        }
        outputs.update({rid: dict(attrs) for rid, attrs in graph.data.items()})

        logger.info(
            "Starting apply",
            extra={"step_count": len(order), "max_workers": self._config.max_workers},
        )

        in_flight: dict[asyncio.Task[NodeResult], str] = {}
        self._pool = ThreadPoolExecutor(
            max_workers=self._config.max_workers, thread_name_prefix="convergence-apply"
        )
        try:
            while True:
                self._block_dependents(order, steps, result.results)

                if not self._cancel_event.is_set():
                    running = set(in_flight.values())
                    for key in order:
                        if len(in_flight) >= self._config.max_workers:
                            break
                        if key in result.results or key in running:
                            continue
                        step = steps[key]
                        if not self._is_ready(step, result.results):
                            continue
                        if step.action == Action.NOOP:
                            result.results[key] = NodeResult(
                                key, step.resource_id, step.action, NodeStatus.NOOP
                            )
                            continue
                        task = asyncio.create_task(self._run_step(step, graph, outputs))
                        in_flight[task] = key
                        running.add(key)

                if not in_flight:
                    if self._cancel_event.is_set() or not self._has_ready(order, steps, result):
                        break
                    continue

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    key = in_flight.pop(task)
                    result.results[key] = task.result()
        finally:
            self._pool.shutdown(wait=True)
            self._pool = None

        for key in order:
            if key not in result.results:
                step = steps[key]
                result.results[key] = NodeResult(
                    key, step.resource_id, step.action, NodeStatus.CANCELLED
                )

        # Keep report order identical to plan order
        result.results = {key: result.results[key] for key in order}
        result.status = self._overall_status(result)
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    # =========================================================================
    # Scheduling
    # =========================================================================

    @staticmethod
    def _is_ready(step: PlanStep, results: dict[str, NodeResult]) -> bool:
        for dep in step.depends_on:
            dep_result = results.get(dep)
            if dep_result is None or dep_result.status not in (NodeStatus.SUCCEEDED, NodeStatus.NOOP):
                return False
        return True

    def _has_ready(self, order: list[str], steps: dict[str, PlanStep], result: ApplyResult) -> bool:
        return any(
            key not in result.results and self._is_ready(steps[key], result.results)
            for key in order
        )

    @staticmethod
    def _block_dependents(
        order: list[str], steps: dict[str, PlanStep], results: dict[str, NodeResult]
    ) -> None:
        """Mark Blocked every step with a failed, blocked or cancelled prerequisite.

        ``order`` is topological, so one pass propagates transitively.
        """
        for key in order:
            if key in results:
                continue
            step = steps[key]
            for dep in step.depends_on:
                dep_result = results.get(dep)
                if dep_result is not None and dep_result.status in (
                    NodeStatus.FAILED,
                    NodeStatus.BLOCKED,
                ):
                    results[key] = NodeResult(
                        key,
                        step.resource_id,
                        step.action,
                        NodeStatus.BLOCKED,
                        reason=f"blocked by {dep}",
                    )
                    logger.info(
                        "Step blocked by failed prerequisite",
                        extra={"step": key, "prerequisite": dep},
                    )
                    break

    def _overall_status(self, result: ApplyResult) -> ApplyStatus:
        statuses = {r.status for r in result.results.values()}
        if self._cancel_event.is_set() and NodeStatus.CANCELLED in statuses:
            return ApplyStatus.CANCELLED
        if statuses & {NodeStatus.FAILED, NodeStatus.BLOCKED}:
            return ApplyStatus.PARTIAL_FAILURE
        return ApplyStatus.SUCCESS

    # =========================================================================
    # Step execution
    # =========================================================================

    async def _run_step(
        self, step: PlanStep, graph: Graph, outputs: dict[ResourceID, dict[str, Any]]
    ) -> NodeResult:
        logger.info(
            "Applying step",
            extra={"step": step.key, "resource_type": step.resource_type},
        )
        try:
            if step.action == Action.DELETE:
                status, attempts = await self._delete(step, outputs)
            elif step.action == Action.CREATE:
                status, attempts = await self._create(step, graph, outputs)
            elif step.action == Action.UPDATE:
                status, attempts = await self._update(step, graph, outputs)
            else:
                return NodeResult(step.key, step.resource_id, step.action, NodeStatus.NOOP)
        except StateConflict as e:
            logger.error(
                "State conflict, manual reconciliation required",
                extra={"step": step.key, "error": str(e)},
            )
            return NodeResult(
                step.key,
                step.resource_id,
                step.action,
                NodeStatus.FAILED,
                reason=str(e),
                conflict=True,
            )
        except _StepFailed as e:
            logger.error(
                "Step failed",
                extra={
                    "step": step.key,
                    "error": e.reason,
                    "attempts": e.attempts,
                },
            )
            return NodeResult(
                step.key,
                step.resource_id,
                step.action,
                NodeStatus.FAILED,
                reason=e.reason,
                attempts=e.attempts,
            )
        except Exception as e:
            logger.exception("Unexpected error applying step", extra={"step": step.key})
            return NodeResult(
                step.key,
                step.resource_id,
                step.action,
                NodeStatus.FAILED,
                reason=f"{type(e).__name__}: {e}",
            )

        logger.info(
            "Step finished",
            extra={"step": step.key, "status": status.value, "attempts": attempts},
        )
        return NodeResult(step.key, step.resource_id, step.action, status, attempts=attempts)

    def _resolve(
        self, step: PlanStep, graph: Graph, outputs: dict[ResourceID, dict[str, Any]]
    ) -> dict[str, Any]:
        try:
            resolved = resolve_value(
                graph.descriptor(step.resource_id).attributes, outputs, graph.instances
            )
        except ExpressionError as e:
            raise _StepFailed(str(e)) from e
        if isinstance(resolved, Unresolved):
            raise _StepFailed(f"unresolved reference {resolved.target}.{resolved.field}")
        return resolved.value

    def _provider(self, step: PlanStep) -> Provider:
        try:
            return self._registry.get(step.resource_type)
        except ProviderError as e:
            raise _StepFailed(str(e)) from e

    async def _create(
        self, step: PlanStep, graph: Graph, outputs: dict[ResourceID, dict[str, Any]]
    ) -> tuple[NodeStatus, int]:
        provider = self._provider(step)
        attributes = self._resolve(step, graph, outputs)

        (provider_id, provider_outputs), attempts = await self._call_with_retry(
            step, provider.create, attributes
        )

        record = AppliedResource(
            resource_type=step.resource_type,
            provider_id=provider_id,
            attributes=attributes,
            outputs=dict(provider_outputs or {}),
            last_applied_hash=content_hash(attributes),
            dependencies=sorted(str(dep) for dep in graph.dependencies(step.resource_id)),
        )
        await self._write_state(step, record)
        outputs[step.resource_id] = record.known_outputs
        return NodeStatus.SUCCEEDED, attempts

    async def _update(
        self, step: PlanStep, graph: Graph, outputs: dict[ResourceID, dict[str, Any]]
    ) -> tuple[NodeStatus, int]:
        provider = self._provider(step)
        attributes = self._resolve(step, graph, outputs)

        record = self._store.get(step.resource_id)
        if record is None:
            raise StateConflict(step.resource_id, "no applied state to update")

        desired_hash = content_hash(attributes)
        if desired_hash == record.last_applied_hash:
            # Dependencies changed only in fields this resource does not use
            return NodeStatus.NOOP, 0

        immutable = changed_fields(attributes, record.attributes) & self._registry.immutable_fields(
            step.resource_type
        )
        if immutable:
            # A dependency's update changed an output this resource pins
            raise _StepFailed(
                f"immutable fields changed during apply: {', '.join(sorted(immutable))}; "
                "reconcile again to replace"
            )

        await self._verify_live(step, provider, record)

        provider_outputs, attempts = await self._call_with_retry(
            step, provider.update, record.provider_id, attributes
        )

        updated = AppliedResource(
            resource_type=step.resource_type,
            provider_id=record.provider_id,
            attributes=attributes,
            outputs=dict(provider_outputs or {}),
            last_applied_hash=desired_hash,
            dependencies=sorted(str(dep) for dep in graph.dependencies(step.resource_id)),
        )
        await self._write_state(step, updated)
        outputs[step.resource_id] = updated.known_outputs
        return NodeStatus.SUCCEEDED, attempts

    async def _delete(
        self, step: PlanStep, outputs: dict[ResourceID, dict[str, Any]]
    ) -> tuple[NodeStatus, int]:
        provider = self._provider(step)
        record = self._store.get(step.resource_id)
        if record is None:
            raise StateConflict(step.resource_id, "no applied state to delete")

        await self._verify_live(step, provider, record)

        _, attempts = await self._call_with_retry(step, provider.delete, record.provider_id)

        try:
            await self._in_thread(self._store.remove, step.resource_id)
        except StateError as e:
            raise _StepFailed(f"resource deleted but state write failed: {e}", attempts=attempts) from e
        outputs.pop(step.resource_id, None)
        return NodeStatus.SUCCEEDED, attempts

    async def _verify_live(self, step: PlanStep, provider: Provider, record: AppliedResource) -> None:
        """Refuse to mutate a resource whose live state diverged from ours."""
        if not self._config.verify_before_mutate:
            return
        try:
            live, _ = await self._call_with_retry(step, provider.read, record.provider_id)
        except _StepFailed as e:
            if isinstance(e.__cause__, NotFoundError):
                raise StateConflict(
                    step.resource_id,
                    f"provider has no object {record.provider_id}; it was removed outside the engine",
                ) from e.__cause__
            raise
        check_drift(step.resource_id, record, live or {})

    async def _write_state(self, step: PlanStep, record: AppliedResource) -> None:
        try:
            await self._in_thread(self._store.put, step.resource_id, record)
        except StateError as e:
            raise _StepFailed(f"provider call succeeded but state write failed: {e}") from e

    async def _in_thread(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, functools.partial(func, *args))

    async def _call_with_retry(
        self, step: PlanStep, operation: Callable[..., T], *args: Any
    ) -> tuple[T, int]:
        """Run a provider operation with exponential backoff on transient errors.

        Returns:
            Tuple of (operation result, attempts used).

        Raises:
            _StepFailed: On a permanent error or when attempts are exhausted.
                The classified ProviderError is chained as ``__cause__``.
        """
        max_attempts = self._config.max_apply_attempts
        last_error: ProviderError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await self._in_thread(operation, *args), attempt
            except Exception as e:
                error = classify_provider_error(e, step.resource_type)
                last_error = error

                if not isinstance(error, TransientProviderError):
                    raise _StepFailed(str(error), attempts=attempt) from error

                if attempt < max_attempts:
                    # Exponential backoff with jitter
                    backoff = min(
                        self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                        self._config.retry_backoff_max_seconds,
                    )
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Provider call failed, retrying",
                        extra={
                            "step": step.key,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(error),
                        },
                    )

                    await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise _StepFailed(
            f"{last_error} (gave up after {max_attempts} attempts)", attempts=max_attempts
        ) from last_error

    def _log_result(self, result: ApplyResult) -> None:
        """Log apply result with structured data."""
        extra: dict[str, Any] = {
            "status": result.status.value,
            "duration_seconds": result.duration_seconds,
            **{f"steps_{k.lower()}": v for k, v in result.counts().items()},
        }
        if result.conflicts:
            extra["conflicts"] = [str(r.resource_id) for r in result.conflicts]

        if result.status == ApplyStatus.SUCCESS:
            logger.info("Apply finished", extra=extra)
        else:
            logger.warning("Apply finished with failures", extra=extra)
