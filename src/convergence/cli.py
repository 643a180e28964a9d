"""Convergence CLI.

Offline inspection of topologies and state. Applying needs provider
bindings and is done through the Reconciler API.

Usage:
    convergence validate topology.yaml
    convergence plan topology.yaml --var instance_count=3 --out plan.json
    convergence state show
    convergence outputs topology.yaml
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from .config import DEFAULT_STATE_PATH, PlacementPolicy
from .graph import ConfigError, Graph, build
from .logging_config import setup_logging
from .planner import Action, Plan, Planner
from .providers import ProviderError, ProviderRegistry
from .reconciler import compute_outputs, lookup_data
from .spec_loader import Topology, load_topology
from .state import StateError, StateStore

# Plan rendering
ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
}
ACTION_COLORS = {
    Action.CREATE: "green",
    Action.UPDATE: "yellow",
    Action.DELETE: "red",
}


def parse_vars(values: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``--var key=value`` options.

    Values are parsed as YAML scalars so ``count=3`` yields an integer.

    Raises:
        click.BadParameter: If an entry has no ``=``.
    """
    overrides: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--var")
        try:
            overrides[key] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            overrides[key] = raw
    return overrides


def open_state(state_path: Path) -> StateStore:
    try:
        return StateStore(state_path)
    except StateError as e:
        raise click.ClickException(str(e)) from e


def load_graph(
    path: Path,
    overrides: dict[str, Any],
    placement: str,
) -> tuple[Topology, Graph]:
    """Load a topology and build its graph without contacting providers.

    Raises:
        click.ClickException: On configuration or data lookup errors.
    """
    try:
        topology = load_topology(path, overrides)
        data = lookup_data(topology, ProviderRegistry())
        graph = build(topology.descriptors, data, PlacementPolicy(placement))
    except (ConfigError, ProviderError) as e:
        raise click.ClickException(str(e)) from e
    return topology, graph


def render_plan(plan: Plan) -> None:
    for step in plan:
        if step.action == Action.NOOP:
            continue
        label = f"{step.action.value} (replace)" if step.replace else step.action.value
        line = f"  {ACTION_SYMBOLS[step.action]} {step.resource_id}  [{label}]"
        if step.changed_fields:
            line += f"  changed: {', '.join(step.changed_fields)}"
        click.secho(line, fg=ACTION_COLORS.get(step.action))

    summary = plan.summary()
    click.echo(
        f"\nPlan: {summary['Create']} to create, {summary['Update']} to update, "
        f"{summary['Replace']} to replace, {summary['Delete']} to delete, "
        f"{summary['NoOp']} unchanged."
    )


# Shared options
state_option = click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_STATE_PATH,
    envvar="STATE_PATH",
    show_default=True,
    help="State file",
)
var_option = click.option(
    "--var",
    "variables",
    multiple=True,
    metavar="KEY=VALUE",
    help="Variable override (repeatable)",
)
placement_option = click.option(
    "--placement",
    type=click.Choice([p.value for p in PlacementPolicy]),
    default=PlacementPolicy.SPREAD.value,
    envvar="PLACEMENT_POLICY",
    show_default=True,
    help="Placement policy for expanded resources",
)
topology_argument = click.argument(
    "topology_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="convergence")
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr")
def cli(verbose: bool) -> None:
    """Convergence: declarative network topology reconciliation.

    \b
    Quick Start:
        convergence validate topology.yaml   # Check a topology file
        convergence plan topology.yaml       # Preview changes
    """
    if verbose:
        setup_logging(logging.INFO, stream=sys.stderr)


@cli.command()
@topology_argument
@var_option
@placement_option
def validate(topology_file: Path, variables: tuple[str, ...], placement: str) -> None:
    """Validate a topology file and its dependency graph."""
    _, graph = load_graph(topology_file, parse_vars(variables), placement)
    click.secho(
        f"✓ {topology_file} is valid: {len(graph)} resources "
        f"({len(graph.instances)} expanded declarations)",
        fg="green",
    )


@cli.command()
@topology_argument
@state_option
@var_option
@placement_option
@click.option(
    "--out",
    "out_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Save the plan as JSON",
)
def plan(
    topology_file: Path,
    state_path: Path,
    variables: tuple[str, ...],
    placement: str,
    out_path: Path | None,
) -> None:
    """Show the changes needed to converge state onto a topology."""
    _, graph = load_graph(topology_file, parse_vars(variables), placement)
    store = open_state(state_path)

    try:
        result = Planner().plan(graph, store.snapshot())
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    if result.has_changes:
        render_plan(result)
    else:
        click.secho("No changes. Infrastructure matches the topology.", fg="green")

    if out_path is not None:
        result.save(out_path)
        click.echo(f"Plan saved to {out_path}")


@cli.group()
def state() -> None:
    """Inspect the state file."""
    pass


@state.command("show")
@state_option
def state_show(state_path: Path) -> None:
    """List applied resources."""
    store = open_state(state_path)
    records = store.snapshot()
    if not records:
        click.echo(f"No resources in {state_path}")
        return

    for rid, record in sorted(records.items(), key=lambda item: str(item[0])):
        click.echo(f"{rid}  id={record.provider_id}  updated={record.updated_at.isoformat()}")
        if record.dependencies:
            click.echo(f"    depends on: {', '.join(record.dependencies)}")
    click.echo(f"\n{len(records)} resources (serial {store.serial})")


@cli.command()
@topology_argument
@state_option
@var_option
@placement_option
@click.option("--json", "as_json", is_flag=True, help="Print outputs as JSON")
def outputs(
    topology_file: Path,
    state_path: Path,
    variables: tuple[str, ...],
    placement: str,
    as_json: bool,
) -> None:
    """Show topology outputs resolved against applied state."""
    topology, graph = load_graph(topology_file, parse_vars(variables), placement)
    store = open_state(state_path)
    values = compute_outputs(topology.outputs, store.snapshot(), graph)

    if as_json:
        click.echo(json.dumps(values, indent=2, sort_keys=True))
        return
    if not values:
        click.echo("No outputs declared.")
        return
    for name, value in values.items():
        rendered = value if isinstance(value, str) else json.dumps(value)
        click.echo(f"{name} = {rendered}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
