# cli.py
from __future__ import annotations

import logging
import sys
from typing import Callable

import click

from batchrun.config import CONFIG_ENV_VAR, load_config
from batchrun.engine import Engine
from batchrun.errors import BatchRunError, PreconditionViolation
from batchrun.model import RunOutcome
from batchrun.ui.console import Console, get_console, set_console

_LOG_HANDLER_NAME = "batchrun-cli"


def setup_logging(debug: bool) -> None:
    """Send batchrun's own log records (and echoed run log lines) to stderr."""
    root = logging.getLogger("batchrun")
    for h in list(root.handlers):
        if h.get_name() == _LOG_HANDLER_NAME:
            root.removeHandler(h)
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_LOG_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    level = logging.DEBUG if debug else logging.WARNING
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def _load_engine(config_file: str | None) -> Engine:
    settings, steps = load_config(config_file)
    return Engine(settings, steps)


def _run_guarded(ctx: click.Context, fn: Callable[[], int]) -> None:
    """Run `fn`, translating batchrun errors into a message and an exit code."""
    console = get_console()
    try:
        code = fn()
    except BatchRunError as e:
        details = [f"{k}: {v}" for k, v in e.details.items()]
        console.print_error(e.kind, e.message, details=details or None)
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    sys.exit(code)


def _start(ctx: click.Context, config_file: str | None, action: str, go: Callable[[Engine], RunOutcome]) -> None:
    def body() -> int:
        console = get_console()
        engine = _load_engine(config_file)
        engine.layout.copy_config(engine.settings.config_path)
        console.print_debug(f"config file copied to {engine.layout.config_copy_path}")
        console.print_run_started(engine.settings.name, action, engine.total_steps)
        outcome = go(engine)
        console.print_outcome(outcome)
        return 0 if outcome.ok else 1

    _run_guarded(ctx, body)


config_option = click.option(
    "-f",
    "--file",
    "config_file",
    default=None,
    help=f"Job run config file (defaults to ${CONFIG_ENV_VAR})",
)
override_option = click.option(
    "-w",
    "--override-warnings",
    "override",
    is_flag=True,
    default=False,
    help="Run even if the previous job run looks unfinished (be sure it is no longer running)",
)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show debug info and stack traces)",
)
@click.pass_context
def cli(ctx, debug):
    """batchrun: run a sequence of dependent batch programs, resumably."""
    console = Console(debug=debug)
    set_console(console)
    setup_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@config_option
@override_option
@click.pass_context
def new(ctx, config_file, override):
    """Start a new job run."""
    _start(ctx, config_file, "started", lambda engine: engine.start_new_run(override=override))


@cli.command()
@config_option
@override_option
@click.pass_context
def restart(ctx, config_file, override):
    """Restart the last job run and complete the remaining steps."""
    _start(ctx, config_file, "restarted", lambda engine: engine.restart_run(override=override))


@cli.command()
@click.argument("step", type=int)
@config_option
@override_option
@click.pass_context
def execute(ctx, step, config_file, override):
    """Re-execute STEP of the last job run."""
    _start(
        ctx,
        config_file,
        f"re-executing step #{step}",
        lambda engine: engine.reexecute_step(step, override=override),
    )


@cli.command()
@click.argument("step", required=False, default="")
@config_option
@click.pass_context
def status(ctx, step, config_file):
    """Display status of the last / current job run.

    Give STEP (a step number, or '*' for all) to also print that step's output.
    """
    def body() -> int:
        console = get_console()
        engine = _load_engine(config_file)
        if step not in ("", "*") and not (step.isdigit() and 1 <= int(step) <= engine.total_steps):
            raise PreconditionViolation(
                f"invalid step number for this job run (must be 1 to {engine.total_steps})",
                {"step": step},
            )
        report = engine.report()
        console.print_status(report)
        for s in report.steps:
            if step == "*" or (step and int(step) == s.index):
                console.print_file(f"output file for step #{s.index} [{s.name}] ({s.status.value})", s.output_path)
        return 0

    _run_guarded(ctx, body)


@cli.command()
@config_option
@click.pass_context
def log(ctx, config_file):
    """Display the log file of the last / current job run."""
    def body() -> int:
        console = get_console()
        report = _load_engine(config_file).report()
        console.print_info("")
        console.print_text_file(report.log_path)
        return 0

    _run_guarded(ctx, body)


if __name__ == "__main__":
    cli()
