"""Health-gated target group attachment.

Keeps a load balancer target group's membership consistent with the compute
pool behind it and with each member's observed health. Runs as its own
periodic loop, independent of plan/apply.

TARGET LIFECYCLE:
```
            N passes                M failures
  Initial ------------> Healthy ------------> Unhealthy
     |                     ^                      |
     | M failures          +------ N passes ------+
     +--------------------------------------------^

  any state --(left pool)--> Draining --(delay elapsed)--> removed
```

Only Healthy targets receive traffic. Initial and Unhealthy targets stay
registered while they are pool members, so a flapping target never causes
register/deregister churn.

MEMBERSHIP:
- Static pools: set_members() with the full instance set
- Autoscaling pools: notify_membership() pushes join/leave events; the loop
  wakes immediately instead of waiting for the next interval

A failing health check is state-machine input, not an error. Only failures
to reach the target group itself raise HealthProbeInfrastructureError; those
are logged and retried on the next interval.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

from .config import EngineConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TargetState(str, Enum):
    """Attachment state of one target."""

    INITIAL = "Initial"
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    DRAINING = "Draining"


class HealthProbeInfrastructureError(Exception):
    """The target group's registration or health API could not be reached."""

    pass


class MembershipChange(str, Enum):
    JOINED = "joined"
    LEFT = "left"


@dataclass(frozen=True)
class MembershipEvent:
    """Pool membership change pushed by an autoscaling group."""

    target_id: str
    change: MembershipChange


@runtime_checkable
class TargetGroupClient(Protocol):
    """Load balancer target group operations used by the controller.

    Every method may raise HealthProbeInfrastructureError.
    """

    def register(self, target_id: str) -> None: ...

    def deregister(self, target_id: str) -> None: ...

    def check_health(self, target_ids: list[str]) -> dict[str, bool]: ...

    def update_routing(self, target_ids: list[str]) -> None: ...


@dataclass
class HealthStatus:
    """Per-target health record.

    Created when a target is first registered, destroyed once it has
    drained after leaving the pool.
    """

    target_id: str
    state: TargetState = TargetState.INITIAL
    consecutive_checks: int = 0
    last_check_passed: bool | None = None
    draining_since: float | None = None

    @property
    def routable(self) -> bool:
        return self.state == TargetState.HEALTHY

    def record_check(self, passed: bool, healthy_threshold: int, unhealthy_threshold: int) -> bool:
        """Feed one health-check result into the state machine.

        Returns:
            True if the state changed.
        """
        if self.state == TargetState.DRAINING:
            return False

        if passed == self.last_check_passed:
            self.consecutive_checks += 1
        else:
            self.consecutive_checks = 1
        self.last_check_passed = passed

        previous = self.state
        if passed:
            if self.state != TargetState.HEALTHY and self.consecutive_checks >= healthy_threshold:
                self.state = TargetState.HEALTHY
        elif self.state != TargetState.UNHEALTHY and self.consecutive_checks >= unhealthy_threshold:
            self.state = TargetState.UNHEALTHY

        if self.state != previous:
            # A new streak starts in the new state
            self.consecutive_checks = 0
            self.last_check_passed = None
            return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "state": self.state.value,
            "consecutive_checks": self.consecutive_checks,
        }


@dataclass
class TickResult:
    """What one reconciliation pass changed."""

    registered: list[str] = field(default_factory=list)
    draining: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    transitions: list[tuple[str, TargetState, TargetState]] = field(default_factory=list)
    routable: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class AttachmentController:
    """Reconciles target group attachments against pool membership and health.

    Usage:
        controller = AttachmentController(client, config)
        controller.set_members(["i-1", "i-2"])
        task = asyncio.create_task(controller.run())
        ...
        controller.shutdown()
        await task
    """

    def __init__(
        self,
        client: TargetGroupClient,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize controller.

        Args:
            client: Target group the pool is attached to.
            config: Thresholds, interval and deregistration delay.
            clock: Monotonic clock used to time draining and health probes.
        """
        self._client = client
        self._config = config or EngineConfig()
        self._clock = clock

        self._members: set[str] = set()
        self._statuses: dict[str, HealthStatus] = {}
        self._events: asyncio.Queue[MembershipEvent] = asyncio.Queue()
        self._routed: list[str] | None = None
        self._next_probe: float | None = None

        self._shutdown_event = asyncio.Event()
        self._wake_event = asyncio.Event()

    @property
    def members(self) -> set[str]:
        return set(self._members)

    def status(self, target_id: str) -> HealthStatus | None:
        return self._statuses.get(target_id)

    def statuses(self) -> dict[str, HealthStatus]:
        return dict(self._statuses)

    def routable_targets(self) -> list[str]:
        """Targets currently eligible for traffic."""
        return sorted(t for t, s in self._statuses.items() if s.routable)

    def set_members(self, target_ids: Iterable[str]) -> None:
        """Replace the pool membership (static pools)."""
        self._members = set(target_ids)
        self._wake_event.set()

    def notify_membership(self, event: MembershipEvent) -> None:
        """Queue a membership change pushed by an autoscaling group."""
        self._events.put_nowait(event)
        self._wake_event.set()

    def _drain_events(self) -> None:
        while not self._events.empty():
            event = self._events.get_nowait()
            if event.change == MembershipChange.JOINED:
                self._members.add(event.target_id)
            else:
                self._members.discard(event.target_id)
            logger.info(
                "Membership event",
                extra={"target_id": event.target_id, "change": event.change.value},
            )

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def tick(self, probe_health: bool = True) -> TickResult:
        """Run one reconciliation pass.

        Membership is reconciled first (register joiners, start draining
        leavers, remove drained targets), then health is probed and routing
        updated. Infrastructure errors are captured in the result; work that
        failed is retried on the next pass.

        Args:
            probe_health: Whether this pass counts as a health check. Passes
                woken early by membership changes skip the probe.
        """
        result = TickResult()
        self._drain_events()

        try:
            await self._reconcile_membership(result)
            if probe_health:
                await self._probe_health(result)
            await self._update_routing(result)
        except HealthProbeInfrastructureError as e:
            result.error = e
            logger.error(
                "Target group unreachable, retrying next interval",
                extra={"error": str(e)},
            )

        result.routable = self.routable_targets()
        return result

    async def _reconcile_membership(self, result: TickResult) -> None:
        for target_id in sorted(self._members):
            status = self._statuses.get(target_id)
            if status is not None and status.state != TargetState.DRAINING:
                continue
            await self._call(self._client.register, target_id)
            self._statuses[target_id] = HealthStatus(target_id)
            result.registered.append(target_id)
            logger.info("Registered target", extra={"target_id": target_id})

        for target_id, status in sorted(self._statuses.items()):
            if target_id in self._members or status.state == TargetState.DRAINING:
                continue
            await self._call(self._client.deregister, target_id)
            status.state = TargetState.DRAINING
            status.draining_since = self._clock()
            result.draining.append(target_id)
            logger.info(
                "Deregistered target, draining",
                extra={
                    "target_id": target_id,
                    "delay_seconds": self._config.deregistration_delay_seconds,
                },
            )

        now = self._clock()
        for target_id, status in sorted(self._statuses.items()):
            if status.state != TargetState.DRAINING or status.draining_since is None:
                continue
            if now - status.draining_since >= self._config.deregistration_delay_seconds:
                del self._statuses[target_id]
                result.removed.append(target_id)
                logger.info("Target drained and removed", extra={"target_id": target_id})

    async def _probe_health(self, result: TickResult) -> None:
        probed = sorted(
            t for t, s in self._statuses.items() if s.state != TargetState.DRAINING
        )
        if not probed:
            return

        checks = await self._call(self._client.check_health, probed)

        for target_id in probed:
            if target_id not in checks:
                logger.warning("No health result for target", extra={"target_id": target_id})
                continue
            status = self._statuses[target_id]
            previous = status.state
            if status.record_check(
                bool(checks[target_id]),
                self._config.healthy_threshold,
                self._config.unhealthy_threshold,
            ):
                result.transitions.append((target_id, previous, status.state))
                logger.info(
                    "Target health changed",
                    extra={
                        "target_id": target_id,
                        "from_state": previous.value,
                        "to_state": status.state.value,
                    },
                )

    async def _update_routing(self, result: TickResult) -> None:
        routable = self.routable_targets()
        if routable == self._routed:
            return
        await self._call(self._client.update_routing, routable)
        self._routed = routable
        logger.info("Routing updated", extra={"routable_count": len(routable)})

    async def run(self) -> None:
        """Run reconciliation passes until shutdown.

        Passes run every ``health_check_interval_seconds``, or sooner when a
        membership change arrives. Health is probed at most once per interval
        so early passes never advance threshold streaks.
        """
        interval = self._config.health_check_interval_seconds
        logger.info(
            "Starting attachment controller",
            extra={
                "interval_seconds": self._config.health_check_interval_seconds,
                "healthy_threshold": self._config.healthy_threshold,
                "unhealthy_threshold": self._config.unhealthy_threshold,
            },
        )

        while not self._shutdown_event.is_set():
            self._wake_event.clear()
            now = self._clock()
            probe = self._next_probe is None or now >= self._next_probe
            await self.tick(probe_health=probe)
            if probe:
                self._next_probe = now + interval

            # Wait for next probe deadline, a membership change, or shutdown
            assert self._next_probe is not None
            timeout = max(0.0, self._next_probe - self._clock())
            waiters = [
                asyncio.ensure_future(self._shutdown_event.wait()),
                asyncio.ensure_future(self._wake_event.wait()),
            ]
            try:
                await asyncio.wait(
                    waiters,
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                for waiter in waiters:
                    waiter.cancel()

        logger.info("Attachment controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Attachment controller shutdown requested")
        self._shutdown_event.set()
