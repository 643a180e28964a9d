"""Pydantic models for topology declaration files.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Raw values that the spec loader turns into resource descriptors
"""

from __future__ import annotations

import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .resources import RESOURCE_TYPES

NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_\-]{0,62}$"
VARIABLE_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


class ResourceDeclaration(BaseModel):
    """One ``resources:`` entry.

    Example:
        - type: instance
          name: web
          count: ${var.instance_count}
          placement: ["${subnet.public_a.id}", "${subnet.public_b.id}"]
          attributes:
            ami: ${data.ami.ubuntu.id}
            instance_type: t3.micro
            vpc_security_group_ids: ["${security_group.web.id}"]
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(pattern=NAME_PATTERN)]
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # Repetition. Either may hold a ${var.*} placeholder until substitution.
    count: int | str | None = None
    for_each: list[Any] | dict[str, Any] | str | None = Field(None, alias="forEach")

    # Placement targets distributed over expanded instances
    placement: list[Any] = Field(default_factory=list)
    placement_attribute: str = Field("subnet_id", alias="placementAttribute")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in RESOURCE_TYPES:
            raise ValueError(f"unknown resource type '{v}', expected one of {sorted(RESOURCE_TYPES)}")
        return v

    @model_validator(mode="after")
    def validate_repetition(self) -> ResourceDeclaration:
        if self.count is not None and self.for_each is not None:
            raise ValueError("count and forEach are mutually exclusive")
        if self.placement and self.count is None and self.for_each is None:
            raise ValueError("placement requires count or forEach")
        return self

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"


class DataDeclaration(BaseModel):
    """A read-only data lookup (``data:`` entry).

    Either ``values`` are given inline or the lookup is delegated to a
    registered data source with ``filters``.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(pattern=r"^[a-z][a-z0-9_]*$")]
    name: Annotated[str, Field(pattern=NAME_PATTERN)]
    filters: dict[str, Any] = Field(default_factory=dict)
    inline: dict[str, Any] | None = Field(None, alias="values")


class TopologySpec(BaseModel):
    """Root of a topology declaration file."""

    model_config = {"extra": "ignore"}

    variables: dict[str, Any] = Field(default_factory=dict)
    data: list[DataDeclaration] = Field(default_factory=list)
    resources: list[ResourceDeclaration] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("variables")
    @classmethod
    def validate_variable_names(cls, v: dict[str, Any]) -> dict[str, Any]:
        for name in v:
            if not re.match(VARIABLE_NAME_PATTERN, name):
                raise ValueError(f"invalid variable name '{name}'")
        return v

    @model_validator(mode="after")
    def validate_unique_addresses(self) -> TopologySpec:
        seen: set[str] = set()
        for declaration in self.resources:
            if declaration.address in seen:
                raise ValueError(f"duplicate resource '{declaration.address}'")
            seen.add(declaration.address)
        data_seen: set[str] = set()
        for lookup in self.data:
            key = f"data.{lookup.type}.{lookup.name}"
            if key in data_seen:
                raise ValueError(f"duplicate data lookup '{key}'")
            data_seen.add(key)
        return self
