"""Two-phase attribute value model.

Attribute values are plain Python literals (str, int, float, bool, None,
lists and dicts) mixed with expression nodes parsed from ``${...}``
placeholders:

- ``Reference``: another resource's output field (``${subnet.a.id}``)
- ``Splat``: a field across every instance of an expanded declaration
  (``${instance.web[*].private_ip}``)
- ``Interpolation``: a string mixing literal text and expressions
- ``ExpansionVar``: ``count.index`` / ``each.key`` / ``each.value``, replaced
  during graph expansion

Variables (``${var.name}``) are substituted while parsing, so they never
reach the graph.

Resolution is explicit: a value resolves to ``Resolved(value)`` or to
``Unresolved(target, field)`` when the referenced resource has not been
applied yet. Nothing is looked up from global state; callers pass the
outputs they know about.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from .resources import ResourceID

EXPANSION_VARS = frozenset({"count.index", "each.key", "each.value"})

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")

_REFERENCE = re.compile(
    r"^(?P<data>data\.)?(?P<type>[a-z][a-z0-9_]*)\.(?P<name>[A-Za-z0-9_\-]+)"
    r"(?:\[(?P<index>\*|\d+|\"[^\"]+\"|count\.index|each\.key)\])?"
    r"\.(?P<field>[A-Za-z0-9_.]+)$"
)


class ExpressionError(ValueError):
    """Raised when a ``${...}`` expression cannot be parsed or substituted."""

    pass


# =============================================================================
# Expression nodes
# =============================================================================


@dataclass(frozen=True)
class Reference:
    """Reference to one output field of another resource.

    ``index_var`` is set when the index is an expansion variable
    (``instance.web[count.index].id``); ``target`` is then the declaring
    template until expansion substitutes the concrete instance.
    """

    target: ResourceID
    field: str
    index_var: str | None = None

    def __str__(self) -> str:
        if self.index_var:
            return f"${{{self.target}[{self.index_var}].{self.field}}}"
        return f"${{{self.target}.{self.field}}}"


@dataclass(frozen=True)
class Splat:
    """A field collected over every expanded instance of ``template``."""

    template: ResourceID
    field: str

    def __str__(self) -> str:
        return f"${{{self.template}[*].{self.field}}}"


@dataclass(frozen=True)
class ExpansionVar:
    """``count.index``, ``each.key`` or ``each.value``."""

    name: str

    def __str__(self) -> str:
        return f"${{{self.name}}}"


@dataclass(frozen=True)
class Interpolation:
    """String template; parts are literal strings or expression nodes."""

    parts: tuple[Any, ...]

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)


# =============================================================================
# Resolution results
# =============================================================================


@dataclass(frozen=True)
class Resolved:
    """A fully concrete value."""

    value: Any


@dataclass(frozen=True)
class Unresolved:
    """Placeholder for a value only known after ``target`` is applied."""

    target: ResourceID
    field: str

    def marker(self) -> str:
        """Stable textual form used for hashing and display."""
        return f"<known after apply: {self.target}.{self.field}>"


# =============================================================================
# Parsing
# =============================================================================


def _parse_expression(expr: str, variables: Mapping[str, Any] | None) -> Any:
    expr = expr.strip()

    if expr.startswith("var."):
        var_name = expr[4:]
        if variables is None or var_name not in variables:
            raise ExpressionError(f"Undefined variable: {var_name}")
        return variables[var_name]

    if expr in EXPANSION_VARS:
        return ExpansionVar(expr)

    match = _REFERENCE.match(expr)
    if match is None:
        raise ExpressionError(f"Unsupported expression: ${{{expr}}}")

    base = ResourceID(
        type=match.group("type"),
        name=match.group("name"),
        data=bool(match.group("data")),
    )
    index = match.group("index")
    field = match.group("field")

    if index is None:
        return Reference(base, field)
    if index == "*":
        return Splat(base, field)
    if index in ("count.index", "each.key"):
        return Reference(base, field, index_var=index)
    if index.startswith('"'):
        return Reference(base.instance(index.strip('"')), field)
    return Reference(base.instance(int(index)), field)


def parse_value(raw: Any, variables: Mapping[str, Any] | None = None) -> Any:
    """Parse a raw declaration value into a value tree.

    A string consisting of exactly one placeholder becomes the expression
    itself (so ``${var.instance_count}`` keeps its integer type); strings
    with surrounding text become an ``Interpolation``.

    Raises:
        ExpressionError: On malformed expressions or undefined variables.
    """
    if isinstance(raw, str):
        return _parse_string(raw, variables)
    if isinstance(raw, list):
        return [parse_value(item, variables) for item in raw]
    if isinstance(raw, dict):
        return {str(k): parse_value(v, variables) for k, v in raw.items()}
    return raw


def _parse_string(raw: str, variables: Mapping[str, Any] | None) -> Any:
    matches = list(_PLACEHOLDER.finditer(raw))
    if not matches:
        return raw

    if len(matches) == 1 and matches[0].span() == (0, len(raw)):
        return _parse_expression(matches[0].group(1), variables)

    parts: list[Any] = []
    cursor = 0
    for match in matches:
        if match.start() > cursor:
            parts.append(raw[cursor : match.start()])
        parts.append(_parse_expression(match.group(1), variables))
        cursor = match.end()
    if cursor < len(raw):
        parts.append(raw[cursor:])
    return _collapse(parts)


def _collapse(parts: list[Any]) -> Any:
    """Merge adjacent literals; a fully literal template becomes a string."""
    merged: list[Any] = []
    for part in parts:
        if not isinstance(part, (Reference, Splat, ExpansionVar)):
            part = "" if part is None else str(part)
            if merged and isinstance(merged[-1], str):
                merged[-1] += part
                continue
        merged.append(part)
    if all(isinstance(p, str) for p in merged):
        return "".join(merged)
    return Interpolation(tuple(merged))


# =============================================================================
# Walking
# =============================================================================


def iter_expressions(value: Any) -> Iterator[Reference | Splat]:
    """Yield every Reference and Splat in a value tree."""
    if isinstance(value, (Reference, Splat)):
        yield value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            yield from iter_expressions(part)
    elif isinstance(value, list):
        for item in value:
            yield from iter_expressions(item)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)


def collect_references(value: Any) -> set[ResourceID]:
    """All resource ids a value tree refers to (splats yield their template)."""
    return {
        expr.target if isinstance(expr, Reference) else expr.template
        for expr in iter_expressions(value)
    }


def has_expansion_vars(value: Any) -> bool:
    """Whether a value tree still contains count/each placeholders."""
    if isinstance(value, ExpansionVar):
        return True
    if isinstance(value, Reference):
        return value.index_var is not None
    if isinstance(value, Interpolation):
        return any(has_expansion_vars(p) for p in value.parts)
    if isinstance(value, list):
        return any(has_expansion_vars(v) for v in value)
    if isinstance(value, dict):
        return any(has_expansion_vars(v) for v in value.values())
    return False


def substitute_expansion(value: Any, bindings: Mapping[str, Any]) -> Any:
    """Replace expansion variables for one expanded instance.

    Args:
        value: Value tree from the declaring template.
        bindings: ``{"count.index": 2}`` or ``{"each.key": ..., "each.value": ...}``.

    Raises:
        ExpressionError: If a variable is used that the expansion does not bind.
    """
    if isinstance(value, ExpansionVar):
        if value.name not in bindings:
            raise ExpressionError(f"${{{value.name}}} used outside a matching expansion")
        return bindings[value.name]
    if isinstance(value, Reference) and value.index_var is not None:
        if value.index_var not in bindings:
            raise ExpressionError(
                f"{value} uses {value.index_var} outside a matching expansion"
            )
        return Reference(value.target.instance(bindings[value.index_var]), value.field)
    if isinstance(value, Interpolation):
        return _collapse([substitute_expansion(p, bindings) for p in value.parts])
    if isinstance(value, list):
        return [substitute_expansion(v, bindings) for v in value]
    if isinstance(value, dict):
        return {k: substitute_expansion(v, bindings) for k, v in value.items()}
    return value


# =============================================================================
# Resolution
# =============================================================================


def _lookup_field(attributes: Mapping[str, Any], field: str) -> tuple[bool, Any]:
    current: Any = attributes
    for segment in field.split("."):
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        else:
            return False, None
    return True, current


def resolve_partial(
    value: Any,
    outputs: Mapping[ResourceID, Mapping[str, Any]],
    instances: Mapping[ResourceID, list[ResourceID]] | None = None,
) -> Any:
    """Substitute every reference whose target output is known.

    References to unknown targets or fields become ``Unresolved`` markers in
    place, so the result can be hashed and diffed before apply.

    Args:
        value: Value tree.
        outputs: Known outputs per resource id (including ``id``).
        instances: Template id → expanded instance ids, for splats.
    """
    if isinstance(value, Reference):
        known = outputs.get(value.target)
        if known is None:
            return Unresolved(value.target, value.field)
        found, resolved = _lookup_field(known, value.field)
        return resolved if found else Unresolved(value.target, value.field)

    if isinstance(value, Splat):
        members = (instances or {}).get(value.template, [])
        return [
            resolve_partial(Reference(member, value.field), outputs, instances)
            for member in members
        ]

    if isinstance(value, Interpolation):
        parts = [resolve_partial(p, outputs, instances) for p in value.parts]
        for part in parts:
            # Splats resolve to lists that may hold markers
            missing = find_unresolved(part)
            if missing:
                return missing[0]
        return "".join("" if p is None else _stringify(p) for p in parts)

    if isinstance(value, ExpansionVar):
        raise ExpressionError(f"{value} was not substituted during expansion")

    if isinstance(value, list):
        return [resolve_partial(v, outputs, instances) for v in value]
    if isinstance(value, dict):
        return {k: resolve_partial(v, outputs, instances) for k, v in value.items()}
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def find_unresolved(value: Any) -> list[Unresolved]:
    """All ``Unresolved`` markers left in a partially resolved tree."""
    if isinstance(value, Unresolved):
        return [value]
    if isinstance(value, list):
        return [u for v in value for u in find_unresolved(v)]
    if isinstance(value, dict):
        return [u for v in value.values() for u in find_unresolved(v)]
    return []


def resolve_value(
    value: Any,
    outputs: Mapping[ResourceID, Mapping[str, Any]],
    instances: Mapping[ResourceID, list[ResourceID]] | None = None,
) -> Resolved | Unresolved:
    """Resolve a value tree completely, or report the first missing reference."""
    partial = resolve_partial(value, outputs, instances)
    missing = find_unresolved(partial)
    if missing:
        return missing[0]
    return Resolved(partial)


# =============================================================================
# Hashing
# =============================================================================


def canonicalize(value: Any) -> Any:
    """JSON-compatible form of a partially resolved tree."""
    if isinstance(value, Unresolved):
        return value.marker()
    if isinstance(value, (Reference, Splat, Interpolation, ExpansionVar)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, dict):
        return {str(k): canonicalize(v) for k, v in value.items()}
    return value


def content_hash(attributes: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of resolved attributes."""
    payload = json.dumps(canonicalize(dict(attributes)), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def changed_fields(desired: Mapping[str, Any], applied: Mapping[str, Any]) -> set[str]:
    """Top-level attribute names whose values differ.

    A field still holding an ``Unresolved`` marker always counts as changed.
    """
    changed: set[str] = set()
    for key in set(desired) | set(applied):
        if key not in desired or key not in applied:
            changed.add(key)
            continue
        if find_unresolved(desired[key]):
            changed.add(key)
            continue
        if canonicalize(desired[key]) != canonicalize(applied[key]):
            changed.add(key)
    return changed
