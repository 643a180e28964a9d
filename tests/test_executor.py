"""Tests for concurrent plan execution against the mock cloud."""

import asyncio
import dataclasses
from typing import Any

import pytest

from convergence.config import EngineConfig
from convergence.executor import ApplyResult, ApplyStatus, Executor, NodeStatus
from convergence.graph import build
from convergence.planner import Action, Planner
from convergence.providers import PermanentProviderError, ProviderRegistry, TransientProviderError
from convergence.resources import ResourceDescriptor, ResourceID
from convergence.state import StateStore
from convergence.values import parse_value

from cloud_mock import MockCloud

VPC = ResourceID("vpc", "main")
SUBNET = ResourceID("subnet", "a")
INSTANCE = ResourceID("instance", "web")
SG = ResourceID("security_group", "x")


def descriptor(address: str, attributes: dict[str, Any] | None = None) -> ResourceDescriptor:
    rid = ResourceID.parse(address)
    return ResourceDescriptor(type=rid.type, name=rid.name, attributes=parse_value(attributes or {}))


def chain() -> list[ResourceDescriptor]:
    """vpc <- subnet <- instance, plus an independent security group."""
    return [
        descriptor("vpc.main", {"cidr_block": "10.0.0.0/16"}),
        descriptor(
            "subnet.a",
            {"vpc_id": "${vpc.main.id}", "cidr_block": "10.0.1.0/24"},
        ),
        descriptor("instance.web", {"ami": "ami-1", "subnet_id": "${subnet.a.id}"}),
        descriptor("security_group.x", {"name": "x"}),
    ]


def load_balancing(tg_tags: dict[str, str]) -> list[ResourceDescriptor]:
    return [
        descriptor("load_balancer.web", {"name": "demo-lb", "tags": {"tier": "web"}}),
        descriptor("target_group.web", {"name": "demo-tg", "port": 80, "tags": tg_tags}),
        descriptor(
            "listener.http",
            {
                "load_balancer_arn": "${load_balancer.web.arn}",
                "default_target_group_arn": "${target_group.web.arn}",
            },
        ),
    ]


async def converge(
    cloud: MockCloud,
    store: StateStore,
    config: EngineConfig,
    descriptors: list[ResourceDescriptor],
    registry: ProviderRegistry | None = None,
) -> ApplyResult:
    registry = registry or cloud.registry()
    graph = build(descriptors)
    plan = Planner(registry).plan(graph, store.snapshot())
    return await Executor(registry, store, config).apply(plan, graph)


class TestApply:
    """Tests for successful applies."""

    @pytest.mark.asyncio
    async def test_creates_in_dependency_order(self, fast_config: EngineConfig) -> None:
        """Test that every resource is created after its dependencies."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)

        result = await converge(cloud, store, fast_config, chain())

        assert result.status == ApplyStatus.SUCCESS
        assert result.counts()["Succeeded"] == 4
        created = [c[1] for c in cloud.calls_for("create")]
        assert created.index("vpc") < created.index("subnet") < created.index("instance")

        subnet = store.get(SUBNET)
        assert subnet is not None
        vpc_id = store.get(VPC).provider_id  # type: ignore[union-attr]
        assert cloud.get(subnet.provider_id).attributes["vpc_id"] == vpc_id
        assert subnet.dependencies == ["vpc.main"]

    @pytest.mark.asyncio
    async def test_state_written_per_resource(self, fast_config: EngineConfig) -> None:
        """Test that each successful step is flushed to disk."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)

        await converge(cloud, store, fast_config, chain())

        assert store.serial == 4
        assert len(StateStore(fast_config.state_path)) == 4

    @pytest.mark.asyncio
    async def test_second_apply_is_noop(self, fast_config: EngineConfig) -> None:
        """Test that reapplying unchanged declarations makes no provider calls."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, chain())
        calls_before = len(cloud.calls)

        result = await converge(cloud, store, fast_config, chain())

        assert result.status == ApplyStatus.SUCCESS
        assert result.counts()["NoOp"] == 4
        assert len(cloud.calls) == calls_before

    @pytest.mark.asyncio
    async def test_replace_recreates_resource(self, fast_config: EngineConfig) -> None:
        """Test that an immutable change deletes the old object and creates a new one."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, chain())
        old_id = store.get(SUBNET).provider_id  # type: ignore[union-attr]

        changed = chain()
        changed[1] = descriptor(
            "subnet.a", {"vpc_id": "${vpc.main.id}", "cidr_block": "10.0.9.0/24"}
        )
        result = await converge(cloud, store, fast_config, changed)

        assert result.status == ApplyStatus.SUCCESS
        assert cloud.get(old_id) is None
        subnets = cloud.objects_of_type("subnet")
        assert len(subnets) == 1
        assert subnets[0].attributes["cidr_block"] == "10.0.9.0/24"
        assert store.get(SUBNET).provider_id == subnets[0].provider_id  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_removed_resources_are_deleted(self, fast_config: EngineConfig) -> None:
        """Test that converging to an empty topology deletes everything."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, chain())

        result = await converge(cloud, store, fast_config, [])

        assert result.status == ApplyStatus.SUCCESS
        assert cloud.object_count == 0
        assert len(store) == 0
        deleted = [c[1] for c in cloud.calls_for("delete")]
        assert deleted.index("instance") < deleted.index("subnet") < deleted.index("vpc")

    @pytest.mark.asyncio
    async def test_update_resolving_to_same_value_is_noop(self, fast_config: EngineConfig) -> None:
        """Test that an update whose unknown inputs turn out unchanged skips the call."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, load_balancing({"v": "1"}))

        result = await converge(cloud, store, fast_config, load_balancing({"v": "2"}))

        assert result.results["update:target_group.web"].status == NodeStatus.SUCCEEDED
        assert result.results["update:listener.http"].action == Action.UPDATE
        assert result.results["update:listener.http"].status == NodeStatus.NOOP
        assert [c[1] for c in cloud.calls_for("update")] == ["target_group"]

    @pytest.mark.asyncio
    async def test_updated_dependency_does_not_replace_pinned_dependent(
        self, fast_config: EngineConfig
    ) -> None:
        """Test that a listener pinned to an updated load balancer is left in place."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, load_balancing({"v": "1"}))
        listener_id = store.get(ResourceID("listener", "http")).provider_id  # type: ignore[union-attr]

        changed = load_balancing({"v": "1"})
        changed[0] = descriptor("load_balancer.web", {"name": "demo-lb", "tags": {"tier": "api"}})
        result = await converge(cloud, store, fast_config, changed)

        assert result.status == ApplyStatus.SUCCESS
        assert result.results["update:load_balancer.web"].status == NodeStatus.SUCCEEDED
        assert result.results["update:listener.http"].status == NodeStatus.NOOP
        assert cloud.calls_for("delete") == []
        assert cloud.get(listener_id) is not None

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, fast_config: EngineConfig) -> None:
        """Test that no more than max_workers provider calls overlap."""
        cloud = MockCloud(call_delay_seconds=0.05)
        store = StateStore(fast_config.state_path)
        config = dataclasses.replace(fast_config, max_workers=2)
        descriptors = [descriptor(f"vpc.v{i}", {"cidr_block": f"10.{i}.0.0/16"}) for i in range(6)]

        result = await converge(cloud, store, config, descriptors)

        assert result.status == ApplyStatus.SUCCESS
        assert 1 <= cloud.max_concurrent <= 2

    @pytest.mark.asyncio
    async def test_independent_steps_run_concurrently(self, fast_config: EngineConfig) -> None:
        """Test that independent resources overlap in time."""
        cloud = MockCloud(call_delay_seconds=0.1)
        store = StateStore(fast_config.state_path)
        descriptors = [descriptor(f"vpc.v{i}", {"cidr_block": f"10.{i}.0.0/16"}) for i in range(4)]

        await converge(cloud, store, fast_config, descriptors)

        assert cloud.max_concurrent > 1


class TestFailures:
    """Tests for failure isolation and retries."""

    @pytest.mark.asyncio
    async def test_permanent_failure_blocks_dependents(self, fast_config: EngineConfig) -> None:
        """Test that a failed step blocks dependents while other branches proceed."""
        cloud = MockCloud()
        cloud.fail("create", "subnet", PermanentProviderError("invalid CIDR"))
        store = StateStore(fast_config.state_path)

        result = await converge(cloud, store, fast_config, chain())

        assert result.status == ApplyStatus.PARTIAL_FAILURE
        assert result.results["create:vpc.main"].status == NodeStatus.SUCCEEDED
        assert result.results["create:subnet.a"].status == NodeStatus.FAILED
        assert "invalid CIDR" in (result.results["create:subnet.a"].reason or "")
        assert result.results["create:instance.web"].status == NodeStatus.BLOCKED
        assert result.results["create:security_group.x"].status == NodeStatus.SUCCEEDED
        assert len(cloud.calls_for("create")) == 3
        assert VPC in store and SG in store
        assert SUBNET not in store and INSTANCE not in store

    @pytest.mark.asyncio
    async def test_failed_apply_converges_on_rerun(self, fast_config: EngineConfig) -> None:
        """Test that a rerun creates only what failed or was blocked."""
        cloud = MockCloud()
        cloud.fail("create", "subnet", PermanentProviderError("quota exceeded"))
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, chain())

        result = await converge(cloud, store, fast_config, chain())

        assert result.status == ApplyStatus.SUCCESS
        assert result.counts() == {
            "Succeeded": 2,
            "Failed": 0,
            "Blocked": 0,
            "NoOp": 2,
            "Cancelled": 0,
        }

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, fast_config: EngineConfig) -> None:
        """Test that throttling is retried until it succeeds."""
        cloud = MockCloud()
        cloud.fail("create", "vpc", TransientProviderError("throttled"), times=2)
        store = StateStore(fast_config.state_path)

        result = await converge(cloud, store, fast_config, chain()[:1])

        vpc_result = result.results["create:vpc.main"]
        assert vpc_result.status == NodeStatus.SUCCEEDED
        assert vpc_result.attempts == 3
        assert len(cloud.calls_for("create")) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, fast_config: EngineConfig) -> None:
        """Test that persistent throttling fails after max attempts."""
        cloud = MockCloud()
        cloud.fail("create", "vpc", TransientProviderError("throttled"), times=None)
        store = StateStore(fast_config.state_path)

        result = await converge(cloud, store, fast_config, chain())

        vpc_result = result.results["create:vpc.main"]
        assert vpc_result.status == NodeStatus.FAILED
        assert vpc_result.attempts == fast_config.max_apply_attempts
        assert "gave up after 3 attempts" in (vpc_result.reason or "")
        assert result.results["create:instance.web"].status == NodeStatus.BLOCKED

    @pytest.mark.asyncio
    async def test_missing_provider(self, fast_config: EngineConfig) -> None:
        """Test that a type without a provider fails its step."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)

        result = await converge(cloud, store, fast_config, chain()[:1], registry=ProviderRegistry())

        vpc_result = result.results["create:vpc.main"]
        assert vpc_result.status == NodeStatus.FAILED
        assert "No provider registered" in (vpc_result.reason or "")


class TestStateConflicts:
    """Tests for live state verification before mutation."""

    @pytest.mark.asyncio
    async def test_drift_is_a_conflict(self, fast_config: EngineConfig) -> None:
        """Test that an update refuses to touch a drifted resource."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, load_balancing({"v": "1"}))
        tg = store.get(ResourceID("target_group", "web"))
        assert tg is not None
        cloud.drift(tg.provider_id, arn="arn:mock:tg/someone-else")

        result = await converge(cloud, store, fast_config, load_balancing({"v": "2"}))

        tg_result = result.results["update:target_group.web"]
        assert tg_result.status == NodeStatus.FAILED
        assert tg_result.conflict
        assert result.conflicts == [tg_result]
        assert cloud.calls_for("update") == []
        assert store.get(ResourceID("target_group", "web")).last_applied_hash == tg.last_applied_hash  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_drift_ignored_without_verification(self, fast_config: EngineConfig) -> None:
        """Test that verification can be switched off."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        config = dataclasses.replace(fast_config, verify_before_mutate=False)
        await converge(cloud, store, config, load_balancing({"v": "1"}))
        tg = store.get(ResourceID("target_group", "web"))
        cloud.drift(tg.provider_id, arn="arn:mock:tg/someone-else")  # type: ignore[union-attr]

        result = await converge(cloud, store, config, load_balancing({"v": "2"}))

        assert result.results["update:target_group.web"].status == NodeStatus.SUCCEEDED
        assert cloud.calls_for("read") == []

    @pytest.mark.asyncio
    async def test_external_delete_is_a_conflict(self, fast_config: EngineConfig) -> None:
        """Test that deleting an object already gone is surfaced, not ignored."""
        cloud = MockCloud()
        store = StateStore(fast_config.state_path)
        await converge(cloud, store, fast_config, chain()[3:])
        record = store.get(SG)
        assert record is not None
        cloud.remove_externally(record.provider_id)

        result = await converge(cloud, store, fast_config, [])

        sg_result = result.results["delete:security_group.x"]
        assert sg_result.status == NodeStatus.FAILED
        assert sg_result.conflict
        assert "removed outside the engine" in (sg_result.reason or "")
        assert SG in store


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_stops_new_steps(self, fast_config: EngineConfig) -> None:
        """Test that in-flight steps finish and the rest are cancelled."""
        cloud = MockCloud(call_delay_seconds=0.2)
        store = StateStore(fast_config.state_path)
        registry = cloud.registry()
        graph = build(chain()[:3])
        plan = Planner(registry).plan(graph, store.snapshot())
        executor = Executor(registry, store, fast_config)

        task = asyncio.create_task(executor.apply(plan, graph))
        await asyncio.sleep(0.05)
        executor.cancel()
        result = await task

        assert executor.cancelled
        assert result.status == ApplyStatus.CANCELLED
        assert result.results["create:vpc.main"].status == NodeStatus.SUCCEEDED
        assert result.results["create:subnet.a"].status == NodeStatus.CANCELLED
        assert result.results["create:instance.web"].status == NodeStatus.CANCELLED
        assert VPC in store
        assert len(cloud.calls_for("create")) == 1
