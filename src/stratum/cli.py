"""Command-line interface for stratum."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import signal
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

import click

from .engine import Engine
from .exceptions import StratumError
from .executor import ApplyReport
from .formatting import format_value, render_plan, render_report
from .planner import Plan
from .settings import RunOptions
from .state_cli import state

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CHANGES = 2

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@click.group()
@click.version_option(package_name="stratum")
@click.option(
    "--chdir",
    "-C",
    type=click.Path(exists=True, file_okay=False),
    default=".",
    help="Configuration directory (default: current directory)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    envvar="STRATUM_LOG_LEVEL",
    show_default=True,
    help="Log level for diagnostic output on stderr",
)
@click.pass_context
def cli(ctx: click.Context, chdir: str, log_level: str) -> None:
    """stratum: declarative infrastructure provisioning."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    ctx.obj = {"chdir": Path(chdir)}


cli.add_command(state)


def _parse_vars(values: tuple[str, ...]) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--var")
        result[key.strip()] = value
    return result


def config_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command that loads the configuration."""
    func = click.option(
        "--var-file",
        "var_files",
        multiple=True,
        type=click.Path(exists=True, dir_okay=False),
        help="YAML file of variable values (repeatable)",
    )(func)
    func = click.option(
        "--var",
        "variables",
        multiple=True,
        metavar="NAME=VALUE",
        help="Set a variable (repeatable)",
    )(func)
    return func


def run_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by plan, apply and destroy."""
    func = config_options(func)
    func = click.option(
        "--target",
        "targets",
        multiple=True,
        metavar="ADDRESS",
        help="Limit the run to this resource (repeatable)",
    )(func)
    func = click.option(
        "--refresh/--no-refresh",
        default=None,
        help="Read remote objects before planning (default: on)",
    )(func)
    func = click.option(
        "--parallelism",
        type=click.IntRange(min=1),
        default=None,
        help="Max concurrent provider operations (default: 10)",
    )(func)
    return func


def make_engine(
    ctx: click.Context,
    variables: tuple[str, ...] = (),
    var_files: tuple[str, ...] = (),
    **overrides: Any,
) -> Engine:
    options = RunOptions.from_env(**overrides)
    return Engine.from_directory(
        ctx.obj["chdir"],
        cli_vars=_parse_vars(variables),
        var_files=list(var_files),
        options=options,
    )


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Print StratumError as 'Error: ...' and exit 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except StratumError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_ERROR)

    return wrapper


def run_with_signals(factory: Callable[[asyncio.Event], Coroutine[Any, Any, Any]]) -> Any:
    """
    Run a coroutine with SIGINT/SIGTERM wired to a cancellation event.

    The first signal stops scheduling; in-flight provider calls finish and
    are committed to state.
    """

    async def _main() -> Any:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()

        def handle_signal(signum: int, frame: object) -> None:
            logger.warning("Received signal %d, stopping after in-flight operations...", signum)
            loop.call_soon_threadsafe(cancel.set)

        previous = {
            sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            return await factory(cancel)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    return asyncio.run(_main())


def _exit_code_for(plan: Plan, report: ApplyReport | None) -> int:
    if report is None:
        return EXIT_CHANGES if plan.has_changes else EXIT_OK
    if report.failed:
        return EXIT_ERROR
    if not report.succeeded:
        return EXIT_CHANGES
    return EXIT_OK


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@cli.command()
@run_options
@click.option("--destroy", is_flag=True, help="Plan destruction of all managed resources")
@click.pass_context
@handle_errors
def plan(
    ctx: click.Context,
    targets: tuple[str, ...],
    refresh: bool | None,
    parallelism: int | None,
    variables: tuple[str, ...],
    var_files: tuple[str, ...],
    destroy: bool,
) -> None:
    """Show the changes an apply would make.

    Exit codes: 0 no changes, 2 changes pending, 1 error.
    """
    engine = make_engine(ctx, variables, var_files, refresh=refresh, parallelism=parallelism)
    result = asyncio.run(engine.plan(destroy=destroy, targets=list(targets)))
    click.echo(render_plan(result))
    sys.exit(EXIT_CHANGES if result.has_changes else EXIT_OK)


def _apply(
    ctx: click.Context,
    destroy: bool,
    targets: tuple[str, ...],
    refresh: bool | None,
    parallelism: int | None,
    variables: tuple[str, ...],
    var_files: tuple[str, ...],
    auto_approve: bool,
) -> None:
    engine = make_engine(ctx, variables, var_files, refresh=refresh, parallelism=parallelism)

    def confirm(result: Plan) -> bool:
        click.echo(render_plan(result))
        click.echo()
        if auto_approve:
            return True
        verb = "destroy these resources" if destroy else "perform these actions"
        return click.confirm(f"Do you want to {verb}?", default=False)

    result, report = run_with_signals(
        lambda cancel: engine.apply(
            destroy=destroy, targets=list(targets), cancel=cancel, confirm=confirm
        )
    )
    if not result.has_changes:
        click.echo(render_plan(result))
    if report is None:
        if result.has_changes:
            click.echo("Apply cancelled.")
        sys.exit(_exit_code_for(result, None))

    if report.results:
        click.echo(render_report(report))
    if report.failed:
        for failed in report.failed:
            click.echo(f"Error: {failed.address}: {failed.error}", err=True)
    if report.outputs and not destroy:
        click.echo()
        click.echo("Outputs:")
        for name, value in sorted(report.outputs.items()):
            click.echo(f"  {name} = {format_value(value)}")
    sys.exit(_exit_code_for(result, report))


@cli.command()
@run_options
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.pass_context
@handle_errors
def apply(
    ctx: click.Context,
    targets: tuple[str, ...],
    refresh: bool | None,
    parallelism: int | None,
    variables: tuple[str, ...],
    var_files: tuple[str, ...],
    auto_approve: bool,
) -> None:
    """Plan and apply changes.

    Exit codes: 0 converged, 2 cancelled with changes pending,
    1 error or failed resources.
    """
    _apply(ctx, False, targets, refresh, parallelism, variables, var_files, auto_approve)


@cli.command()
@run_options
@click.option("--auto-approve", is_flag=True, help="Skip interactive approval")
@click.pass_context
@handle_errors
def destroy(
    ctx: click.Context,
    targets: tuple[str, ...],
    refresh: bool | None,
    parallelism: int | None,
    variables: tuple[str, ...],
    var_files: tuple[str, ...],
    auto_approve: bool,
) -> None:
    """Destroy managed resources in reverse dependency order."""
    _apply(ctx, True, targets, refresh, parallelism, variables, var_files, auto_approve)


@cli.command()
@config_options
@click.pass_context
@handle_errors
def validate(ctx: click.Context, variables: tuple[str, ...], var_files: tuple[str, ...]) -> None:
    """Check the configuration and build the resource graph."""
    engine = make_engine(ctx, variables, var_files)
    graph = engine.graph
    click.echo(f"Configuration is valid ({len(graph)} resource(s)).")


@cli.command()
@config_options
@click.pass_context
@handle_errors
def graph(ctx: click.Context, variables: tuple[str, ...], var_files: tuple[str, ...]) -> None:
    """Print the resource graph in DOT format."""
    engine = make_engine(ctx, variables, var_files)
    click.echo(engine.graph.to_dot())


@cli.command()
@click.argument("name", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print values as JSON")
@click.pass_context
@handle_errors
def output(ctx: click.Context, name: str | None, as_json: bool) -> None:
    """Show root outputs from the last apply."""
    engine = Engine.for_state(ctx.obj["chdir"], RunOptions.from_env())
    outputs = engine.outputs()
    if name is not None:
        if name not in outputs:
            raise StratumError(f"Output '{name}' not found")
        value = outputs[name]
        if as_json:
            click.echo(json.dumps(value, sort_keys=True))
        elif isinstance(value, str):
            click.echo(value)
        else:
            click.echo(format_value(value))
        return
    if as_json:
        click.echo(json.dumps(outputs, indent=2, sort_keys=True))
        return
    for key, value in sorted(outputs.items()):
        click.echo(f"{key} = {format_value(value)}")


@cli.command("force-unlock")
@click.argument("lock_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
@handle_errors
def force_unlock(ctx: click.Context, lock_id: str, yes: bool) -> None:
    """Remove a stale state lock left by a crashed run."""
    if not yes:
        click.confirm(f"Force-unlock lock {lock_id}?", abort=True)
    engine = Engine.for_state(ctx.obj["chdir"], RunOptions.from_env())
    engine.force_unlock(lock_id)
    click.echo(f"✓ Lock {lock_id} released")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
