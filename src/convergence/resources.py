"""Resource model: identifiers, descriptors and the resource type catalog.

A resource is addressed Terraform-style as ``<type>.<name>``. Declarations
that expand (``count`` / ``for_each``) produce instances addressed as
``<type>.<name>[0]`` or ``<type>.<name>["key"]``; every instance keeps the
declaring descriptor's id as its ``template``.

Read-only data lookups are addressed as ``data.<type>.<name>``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DATA_PREFIX = "data"

# type.name, type.name[0], type.name["key"], data.type.name
_ADDRESS_PATTERN = re.compile(
    r"^(?:(?P<data>data)\.)?(?P<type>[a-z][a-z0-9_]*)\.(?P<name>[A-Za-z0-9_\-]+)"
    r"(?P<index>\[(?:\d+|\"[^\"]+\")\])?$"
)


@dataclass(frozen=True, order=True)
class ResourceID:
    """Unique address of a resource or data lookup within a graph."""

    type: str
    name: str
    data: bool = False

    def __str__(self) -> str:
        if self.data:
            return f"{DATA_PREFIX}.{self.type}.{self.name}"
        return f"{self.type}.{self.name}"

    @classmethod
    def parse(cls, address: str) -> ResourceID:
        """Parse an address such as ``subnet.public_a`` or ``instance.web[2]``.

        Raises:
            ValueError: If the address is malformed.
        """
        match = _ADDRESS_PATTERN.match(address.strip())
        if match is None:
            raise ValueError(f"Invalid resource address: {address!r}")
        name = match.group("name") + (match.group("index") or "")
        return cls(type=match.group("type"), name=name, data=bool(match.group("data")))

    def instance(self, key: int | str) -> ResourceID:
        """Address of one expanded instance of this declaration."""
        suffix = f"[{key}]" if isinstance(key, int) else f'["{key}"]'
        return ResourceID(type=self.type, name=f"{self.name}{suffix}", data=self.data)


class ResourceKind(str, Enum):
    """Resource types understood by the engine."""

    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet_gateway"
    ROUTE_TABLE = "route_table"
    ROUTE_TABLE_ASSOCIATION = "route_table_association"
    SECURITY_GROUP = "security_group"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    LISTENER = "listener"
    LAUNCH_TEMPLATE = "launch_template"
    AUTOSCALING_GROUP = "autoscaling_group"
    INSTANCE = "instance"
    TARGET_GROUP_ATTACHMENT = "target_group_attachment"


@dataclass(frozen=True)
class ResourceTypeInfo:
    """Static facts about a resource type.

    Attributes:
        kind: The resource type.
        immutable_fields: Attributes that cannot change after creation. A change
            to any of them forces a replace. Providers may declare their own set.
        description: Human-readable summary.
    """

    kind: ResourceKind
    immutable_fields: frozenset[str] = frozenset()
    description: str = ""


RESOURCE_TYPES: dict[str, ResourceTypeInfo] = {
    info.kind.value: info
    for info in (
        ResourceTypeInfo(
            ResourceKind.VPC,
            frozenset({"cidr_block"}),
            "Isolated virtual network",
        ),
        ResourceTypeInfo(
            ResourceKind.SUBNET,
            frozenset({"vpc_id", "cidr_block", "availability_zone"}),
            "Address range pinned to one availability zone",
        ),
        ResourceTypeInfo(
            ResourceKind.INTERNET_GATEWAY,
            frozenset(),
            "Gateway attached to a VPC",
        ),
        ResourceTypeInfo(
            ResourceKind.ROUTE_TABLE,
            frozenset({"vpc_id"}),
            "Routing rules for a VPC",
        ),
        ResourceTypeInfo(
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            frozenset({"subnet_id", "route_table_id"}),
            "Binds a subnet to a route table",
        ),
        ResourceTypeInfo(
            ResourceKind.SECURITY_GROUP,
            frozenset({"name", "vpc_id"}),
            "Opaque network policy returning a group handle",
        ),
        ResourceTypeInfo(
            ResourceKind.LOAD_BALANCER,
            frozenset({"name", "internal", "load_balancer_type"}),
            "Load balancer spanning one or more subnets",
        ),
        ResourceTypeInfo(
            ResourceKind.TARGET_GROUP,
            frozenset({"name", "port", "protocol", "vpc_id", "target_type"}),
            "Set of targets receiving load-balanced traffic",
        ),
        ResourceTypeInfo(
            ResourceKind.LISTENER,
            frozenset({"load_balancer_arn"}),
            "Load balancer listener forwarding to a target group",
        ),
        ResourceTypeInfo(
            ResourceKind.LAUNCH_TEMPLATE,
            frozenset({"name"}),
            "Instance template for an autoscaling group",
        ),
        ResourceTypeInfo(
            ResourceKind.AUTOSCALING_GROUP,
            frozenset({"name"}),
            "Autoscaling-managed compute pool",
        ),
        ResourceTypeInfo(
            ResourceKind.INSTANCE,
            frozenset({"ami", "subnet_id", "availability_zone"}),
            "Single compute instance",
        ),
        ResourceTypeInfo(
            ResourceKind.TARGET_GROUP_ATTACHMENT,
            frozenset({"target_group_arn", "target_id", "port"}),
            "Registration of one target in a target group",
        ),
    )
}


def default_immutable_fields(resource_type: str) -> frozenset[str]:
    """Catalog immutable fields for a type (empty for unknown types)."""
    info = RESOURCE_TYPES.get(resource_type)
    return info.immutable_fields if info else frozenset()


@dataclass
class ResourceDescriptor:
    """A declared resource.

    ``attributes`` hold value trees (see ``convergence.values``). ``count``,
    ``for_each`` and ``placement`` are only meaningful on declarations; the
    graph builder expands them into independent descriptors that carry
    ``template`` and ``index`` instead.
    """

    type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[ResourceID] = field(default_factory=list)

    # Expansion
    count: int | None = None
    for_each: list[str] | dict[str, Any] | None = None
    placement: list[Any] = field(default_factory=list)
    placement_attribute: str = "subnet_id"

    # Set on expanded instances
    template: ResourceID | None = None
    index: int | str | None = None

    @property
    def id(self) -> ResourceID:
        """Address of this descriptor."""
        return ResourceID(self.type, self.name)

    @property
    def expands(self) -> bool:
        """Whether this declaration is a count/for_each template."""
        return self.count is not None or self.for_each is not None

    @property
    def references(self) -> set[ResourceID]:
        """Every resource this descriptor refers to, explicit or via attributes.

        Splat references name the declaring template; the graph builder maps
        them to the template's expanded instances.
        """
        from .values import collect_references

        refs = set(self.depends_on)
        refs.update(collect_references(self.attributes))
        refs.update(collect_references(self.placement))
        return refs
