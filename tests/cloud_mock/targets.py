"""Mock load balancer target group for attachment controller tests."""

from __future__ import annotations

from convergence.attachment import HealthProbeInfrastructureError


class MockTargetGroup:
    """Target group with scriptable health and infrastructure failures.

    Usage:
        group = MockTargetGroup()
        group.set_health("i-1", True)
        group.unreachable = True   # next calls raise HealthProbeInfrastructureError
    """

    def __init__(self) -> None:
        self.registered: set[str] = set()
        self.routable: list[str] = []
        self.health: dict[str, bool] = {}
        self.unreachable = False
        self.fail_register: set[str] = set()

        self.register_calls: list[str] = []
        self.deregister_calls: list[str] = []
        self.health_checks = 0
        self.routing_updates: list[list[str]] = []

    def set_health(self, target_id: str, passing: bool) -> None:
        self.health[target_id] = passing

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise HealthProbeInfrastructureError("target group status API unreachable")

    def register(self, target_id: str) -> None:
        self._check_reachable()
        if target_id in self.fail_register:
            raise HealthProbeInfrastructureError(f"register {target_id} rejected")
        self.register_calls.append(target_id)
        self.registered.add(target_id)

    def deregister(self, target_id: str) -> None:
        self._check_reachable()
        self.deregister_calls.append(target_id)
        self.registered.discard(target_id)

    def check_health(self, target_ids: list[str]) -> dict[str, bool]:
        self._check_reachable()
        self.health_checks += 1
        return {t: self.health.get(t, False) for t in target_ids if t in self.registered}

    def update_routing(self, target_ids: list[str]) -> None:
        self._check_reachable()
        self.routable = list(target_ids)
        self.routing_updates.append(list(target_ids))
