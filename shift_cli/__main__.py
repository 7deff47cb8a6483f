"""CLI entrypoint: python -m shift_cli <command>."""

from __future__ import annotations

import json
import sys

import click

from trafficshift.core.config import get_settings
from trafficshift.core.logging import setup_logging
from trafficshift.db.session import init_db


def _controller():
    from trafficshift.scheduler.controller import ShiftController

    return ShiftController.build()


def _fail(message: str) -> None:
    click.echo(f"ERROR: {message}", err=True)
    sys.exit(1)


def _parse_weights(pairs: tuple[str, ...]) -> dict[str, float]:
    weights: dict[str, float] = {}
    for pair in pairs:
        version_id, sep, raw = pair.partition("=")
        if not sep:
            raise click.BadParameter(f"expected VERSION=FRACTION, got '{pair}'")
        try:
            weights[version_id] = float(raw)
        except ValueError:
            raise click.BadParameter(f"'{raw}' is not a number") from None
    return weights


def _parse_steps(values: tuple[str, ...]) -> list[tuple[float, float]]:
    steps: list[tuple[float, float]] = []
    for value in values:
        fraction, _, hold = value.partition(":")
        try:
            steps.append((float(fraction), float(hold or 0)))
        except ValueError:
            raise click.BadParameter(f"expected FRACTION:HOLD_SECONDS, got '{value}'") from None
    return steps


def _echo_weights(weights: dict[str, float]) -> None:
    for version_id, weight in sorted(weights.items(), key=lambda kv: -kv[1]):
        click.echo(f"  {version_id}  {weight * 100:6.2f}%")


@click.group()
def cli() -> None:
    """Deployment traffic-shifting controller CLI."""
    setup_logging(get_settings().log_level)
    init_db()


# -------------------------------------------------------------------
# Versions
# -------------------------------------------------------------------

@cli.command()
@click.option("--artifact_ref", required=True, help="Immutable artifact reference")
@click.option("--description", default=None)
@click.option("--tags", default=None, help="JSON string of tags")
def register(artifact_ref: str, description: str | None, tags: str | None) -> None:
    """Register a deployable version."""
    from trafficshift.core.errors import DuplicateArtifactError
    from trafficshift.registry.manager import VersionRegistry

    parsed_tags = json.loads(tags) if tags else None
    try:
        v = VersionRegistry().register(
            artifact_ref, description=description, tags=parsed_tags
        )
    except DuplicateArtifactError as exc:
        _fail(str(exc))
        return
    click.echo(f"Registered {v.id} -> {v.artifact_ref}")


@cli.command()
def versions() -> None:
    """List registered versions."""
    from trafficshift.registry.manager import VersionRegistry

    items = VersionRegistry().list_versions()
    if not items:
        click.echo("No versions registered.")
        return
    for v in items:
        click.echo(f"  {v.id}  {v.artifact_ref}  created={v.created_at}")


@cli.command()
@click.option("--version_id", required=True)
def prune(version_id: str) -> None:
    """Delete a version nothing references."""
    from trafficshift.core.errors import TrafficShiftError
    from trafficshift.registry.manager import VersionRegistry

    try:
        VersionRegistry().prune(version_id)
    except TrafficShiftError as exc:
        _fail(str(exc))
        return
    click.echo(f"Pruned {version_id}")


# -------------------------------------------------------------------
# Aliases
# -------------------------------------------------------------------

@cli.group()
def alias() -> None:
    """Inspect and override aliases."""


@alias.command("show")
@click.argument("name")
def alias_show(name: str) -> None:
    from trafficshift.core.errors import NotFoundError

    controller = _controller()
    try:
        state = controller.get_alias_state(name)
    except NotFoundError as exc:
        _fail(str(exc))
        return
    click.echo(f"Alias {state.name}:")
    _echo_weights(state.weights)
    for shift in controller.list_shifts(alias=name, limit=1):
        if not controller.is_terminal(shift):
            click.echo(f"  in-flight shift {shift['id']} status={shift['status']}")


@alias.command("list")
def alias_list() -> None:
    controller = _controller()
    states = controller.list_aliases()
    if not states:
        click.echo("No aliases.")
        return
    for state in states:
        click.echo(f"Alias {state.name}:")
        _echo_weights(state.weights)


@alias.command("set-weights")
@click.argument("name")
@click.option("--weight", "weights", multiple=True, required=True, help="VERSION=FRACTION")
def alias_set_weights(name: str, weights: tuple[str, ...]) -> None:
    """Operator override of an alias's traffic split."""
    from trafficshift.core.errors import TrafficShiftError

    try:
        state = _controller().set_weights(name, _parse_weights(weights))
    except TrafficShiftError as exc:
        _fail(str(exc))
        return
    click.echo(f"Alias {state.name}:")
    _echo_weights(state.weights)


@alias.command("commit")
@click.argument("name")
@click.argument("version_id")
def alias_commit(name: str, version_id: str) -> None:
    """Route 100% of NAME to VERSION_ID."""
    from trafficshift.core.errors import TrafficShiftError

    try:
        _controller().commit(name, version_id)
    except TrafficShiftError as exc:
        _fail(str(exc))
        return
    click.echo(f"Committed {name} -> {version_id}")


@cli.command()
@click.argument("name")
@click.option("--fingerprint", default=None, help="Sticky routing key")
def route(name: str, fingerprint: str | None) -> None:
    """Show which version a request on NAME would hit."""
    from trafficshift.core.errors import NotFoundError

    try:
        click.echo(_controller().route(name, fingerprint))
    except NotFoundError as exc:
        _fail(str(exc))


# -------------------------------------------------------------------
# Shifts
# -------------------------------------------------------------------

@cli.command()
@click.option("--alias", "alias_name", required=True)
@click.option("--from_version", required=True)
@click.option("--to_version", required=True)
@click.option("--preset", default=None, help="e.g. Canary10Percent5Minutes")
@click.option("--step", "steps", multiple=True, help="FRACTION:HOLD_SECONDS")
@click.option("--alarm", "alarms", multiple=True, help="HealthSignal as JSON")
@click.option("--pre_hook", default=None, help="Pre-traffic hook URL")
@click.option("--post_hook", default=None, help="Post-traffic hook URL")
def deploy(
    alias_name: str,
    from_version: str,
    to_version: str,
    preset: str | None,
    steps: tuple[str, ...],
    alarms: tuple[str, ...],
    pre_hook: str | None,
    post_hook: str | None,
) -> None:
    """Run a traffic shift in the foreground.  Ctrl-C aborts and rolls back."""
    from trafficshift.core.errors import TrafficShiftError
    from trafficshift.health.signals import HealthSignal
    from trafficshift.scheduler.plan import PlanHooks, ShiftPlan, steps_from_preset

    if bool(preset) == bool(steps):
        _fail("give exactly one of --preset or --step")
        return

    controller = _controller()
    try:
        plan = ShiftPlan(
            alias=alias_name,
            from_version=from_version,
            to_version=to_version,
            steps=steps_from_preset(preset) if preset else _parse_steps(steps),
            alarms=[HealthSignal.from_dict(json.loads(a)) for a in alarms],
            hooks=PlanHooks(pre=pre_hook, post=post_hook),
        )
        controller.start_shift(plan)
    except (TrafficShiftError, ValueError, KeyError) as exc:
        _fail(str(exc))
        return

    click.echo(
        f"Shift {plan.id} started: {alias_name} {from_version} -> {to_version} "
        f"({len(plan.steps)} steps, {plan.total_hold_seconds:g}s of holds)"
    )
    try:
        result = controller.wait_for_shift(plan.id)
    except KeyboardInterrupt:
        click.echo("Aborting...", err=True)
        controller.abort_shift(plan.id)
        result = controller.wait_for_shift(plan.id)

    click.echo(f"Shift {plan.id}: {result['status']} ({result['reason']})")
    if result["status"] != "succeeded":
        sys.exit(1)


@cli.command()
@click.option("--alias", "alias_name", default=None, help="Filter by alias")
@click.option("--limit", default=20, show_default=True)
def history(alias_name: str | None, limit: int) -> None:
    """List recent shifts."""
    shifts = _controller().list_shifts(alias=alias_name, limit=limit)
    if not shifts:
        click.echo("No shifts recorded.")
        return
    for s in shifts:
        click.echo(
            f"  {s['id']}  {s['alias']}  {s['from_version'][:8]} -> "
            f"{s['to_version'][:8]}  status={s['status']}  reason={s['reason'] or '-'}"
        )


@cli.command()
def recover() -> None:
    """Roll back shifts left in-flight by a crashed process."""
    recovered = _controller().recover_interrupted()
    if not recovered:
        click.echo("Nothing to recover.")
        return
    for plan_id in recovered:
        click.echo(f"Rolled back interrupted shift {plan_id}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Run the HTTP API."""
    import uvicorn

    from trafficshift.api.main import create_app

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    cli()
