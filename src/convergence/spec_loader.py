"""Topology file loading with validation.

All file operations enforce size limits. Variables are substituted here,
before graph building, so the graph only ever sees concrete counts and
resource references.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_EXPANDED_INSTANCES, MAX_TOPOLOGY_FILE_SIZE_BYTES
from .graph import ConfigError
from .models import DataDeclaration, ResourceDeclaration, TopologySpec
from .resources import ResourceDescriptor, ResourceID
from .values import ExpressionError, collect_references, parse_value

logger = logging.getLogger(__name__)


class SpecLoadError(ConfigError):
    """Raised when a topology file cannot be loaded or fails validation."""

    pass


@dataclass
class Topology:
    """A loaded topology, ready for graph building.

    Attributes:
        descriptors: Resource descriptors with variables substituted.
        data: Data lookup declarations.
        outputs: Output name -> parsed value tree.
        variables: Effective variables (file defaults merged with overrides).
    """

    descriptors: list[ResourceDescriptor] = field(default_factory=list)
    data: list[DataDeclaration] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)


def _coerce_count(address: str, value: Any) -> int:
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise SpecLoadError(f"{address}: count must resolve to a non-negative integer, got {value!r}")
    if value > MAX_EXPANDED_INSTANCES:
        raise SpecLoadError(f"{address}: count {value} exceeds limit of {MAX_EXPANDED_INSTANCES}")
    return value


def _to_descriptor(
    declaration: ResourceDeclaration, variables: Mapping[str, Any]
) -> ResourceDescriptor:
    address = declaration.address
    try:
        attributes = parse_value(declaration.attributes, variables)
        placement = parse_value(declaration.placement, variables)
        count = parse_value(declaration.count, variables)
        for_each = parse_value(declaration.for_each, variables)
    except ExpressionError as e:
        raise SpecLoadError(f"{address}: {e}") from e

    if count is not None:
        count = _coerce_count(address, count)

    if for_each is not None:
        if not isinstance(for_each, (list, dict)):
            raise SpecLoadError(f"{address}: forEach must resolve to a list or mapping")
        if collect_references(for_each):
            raise SpecLoadError(
                f"{address}: forEach cannot depend on resource attributes; "
                "it must be known before the graph is built"
            )

    try:
        depends_on = [ResourceID.parse(dep) for dep in declaration.depends_on]
    except ValueError as e:
        raise SpecLoadError(f"{address}: invalid dependsOn entry: {e}") from e

    return ResourceDescriptor(
        type=declaration.type,
        name=declaration.name,
        attributes=attributes,
        depends_on=depends_on,
        count=count,
        for_each=for_each,
        placement=placement,
        placement_attribute=declaration.placement_attribute,
    )


def parse_topology(
    raw_data: Mapping[str, Any],
    overrides: Mapping[str, Any] | None = None,
    source: str = "<memory>",
) -> Topology:
    """Validate a raw mapping and convert it to a Topology.

    Args:
        raw_data: Parsed YAML content.
        overrides: Variable values taking precedence over file defaults.
        source: Name used in error messages.

    Raises:
        SpecLoadError: On validation or substitution errors.
    """
    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = dict(raw_data)

    try:
        spec = TopologySpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e

    variables = {**spec.variables, **(overrides or {})}
    unknown = sorted(set(overrides or {}) - set(spec.variables))
    if unknown:
        logger.warning(
            "Variable overrides not declared in topology",
            extra={"source": source, "variables": unknown},
        )

    descriptors = [_to_descriptor(d, variables) for d in spec.resources]

    data: list[DataDeclaration] = []
    for lookup in spec.data:
        try:
            data.append(
                lookup.model_copy(
                    update={
                        "filters": parse_value(lookup.filters, variables),
                        "inline": parse_value(lookup.inline, variables),
                    }
                )
            )
        except ExpressionError as e:
            raise SpecLoadError(f"data.{lookup.type}.{lookup.name}: {e}") from e

    try:
        outputs = {name: parse_value(expr, variables) for name, expr in spec.outputs.items()}
    except ExpressionError as e:
        raise SpecLoadError(f"outputs: {e}") from e

    return Topology(descriptors=descriptors, data=data, outputs=outputs, variables=variables)


def load_topology(path: Path, overrides: Mapping[str, Any] | None = None) -> Topology:
    """Load and validate a topology file from YAML.

    Args:
        path: Topology YAML file.
        overrides: Variable values taking precedence over file defaults.

    Returns:
        Validated topology.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    path = Path(path)

    if not path.exists():
        raise SpecLoadError(f"Topology file not found: {path}")

    # Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat topology file {path}: {e}") from e

    if file_size > MAX_TOPOLOGY_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Topology file exceeds maximum size of {MAX_TOPOLOGY_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read topology file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Topology file must contain a YAML mapping: {path}")

    topology = parse_topology(raw_data, overrides, source=str(path))
    logger.info(
        "Loaded topology from %s",
        path,
        extra={
            "resource_count": len(topology.descriptors),
            "data_count": len(topology.data),
            "output_count": len(topology.outputs),
        },
    )
    return topology
