"""Typer-powered command line interface for ``oversshctl``.

``install`` deploys the OverSSH proxy and moves the host's SSH daemon to the
alternate port; ``uninstall`` reverses it. Both print a status line before and
after every step, and a fatal abort always ends with the remediation line.
"""
from __future__ import annotations

import json
import signal
import textwrap
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .deployment import DeploymentContext
from .errors import ConfirmationDeclined, OversshError, PrivilegeError, UsageError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .orchestrator import (
    ConsoleReporter,
    Orchestrator,
    UninstallPlan,
    WorkflowAborted,
    WorkflowReport,
)
from .templates import TemplateEngine

console = Console()
reporter = ConsoleReporter(console)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to oversshctl's YAML config file.",
)

GRACE_SECONDS_OPTION = typer.Option(
    None,
    "--grace-seconds",
    min=0,
    help="Seconds to wait before restarting SSH (defaults from config).",
)

USAGE_LINES = (
    "Usage: oversshctl install <domain>",
    "Example: oversshctl install example.com",
    "Example: oversshctl install overssh.mydomain.com",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        OverSSH deployment CLI.

        Installs the OverSSH proxy on port 22 after relocating the host's SSH
        daemon to port 2222, and removes it again while restoring SSH.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    orchestrator: Orchestrator


def _build_orchestrator(config: AppConfig, templates: TemplateEngine) -> Orchestrator:
    return Orchestrator.from_config(config, reporter=reporter, templates=templates)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        orchestrator=_build_orchestrator(config, templates),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the oversshctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"oversshctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _raise_interrupt(signum: int, frame: object) -> None:
    raise KeyboardInterrupt


@contextmanager
def _interrupt_guard(op: OperationScope, message: str) -> Iterator[None]:
    """Treat SIGINT/SIGTERM as a fatal interruption; no rollback is attempted."""
    previous = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        yield
    except KeyboardInterrupt:
        reporter.error(message)
        op.error(message, errors=["interrupted"], rc=ExitCode.FAILURE)
        raise typer.Exit(code=ExitCode.FAILURE) from None
    finally:
        signal.signal(signal.SIGTERM, signal.SIG_DFL if previous is None else previous)


def _fail(op: OperationScope, exc: OversshError) -> NoReturn:
    """Print *exc* and its remediation, log it, and exit non-zero."""
    message = str(exc)
    reporter.error(message)
    if exc.remediation:
        reporter.error(exc.remediation)
    op.error(message, rc=ExitCode.FAILURE)
    raise typer.Exit(code=ExitCode.FAILURE)


def _aborted(op: OperationScope, exc: WorkflowAborted) -> NoReturn:
    op.error(
        f"{exc.step.name}: {exc}",
        errors=[str(exc)],
        rc=ExitCode.FAILURE,
        context={"report": exc.report.to_dict(), "remediation": exc.remediation},
    )
    raise typer.Exit(code=ExitCode.FAILURE)


def _record_report(op: OperationScope, report: WorkflowReport, message: str) -> None:
    context = {"report": report.to_dict()}
    changed = sum(1 for _, result in report.results if result.status.value == "ok")
    if report.warnings:
        op.warning(
            f"{message} (with warnings)",
            warnings=report.warnings,
            changed=changed,
            context=context,
        )
    else:
        op.success(message, changed=changed, context=context)


@app.command("install")
def install(
    ctx: typer.Context,
    domain: str | None = typer.Argument(
        None,
        help="Public domain served by the proxy, e.g. example.com.",
        show_default=False,
    ),
    grace_seconds: float | None = GRACE_SECONDS_OPTION,
) -> None:
    """Deploy OverSSH and move the host SSH daemon to the alternate port."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={"domain": domain, "grace_seconds": grace_seconds},
        target={"kind": "host", "working_dir": str(runtime.config.working_dir)},
    ) as op:
        try:
            context = DeploymentContext.create(domain, runtime.config.working_dir)
        except UsageError as exc:
            reporter.error(str(exc))
            for line in USAGE_LINES:
                console.print(escape(line))
            op.error(str(exc), rc=ExitCode.FAILURE)
            raise typer.Exit(code=ExitCode.FAILURE) from exc

        with _interrupt_guard(op, "Deployment interrupted"):
            try:
                report = runtime.orchestrator.install(
                    context,
                    grace_seconds=grace_seconds,
                    op=op,
                )
            except WorkflowAborted as exc:
                _aborted(op, exc)

        reporter.success("OverSSH deployment completed successfully!")
        _record_report(op, report, "OverSSH deployment completed.")


def _render_plan(plan: UninstallPlan) -> None:
    reporter.warn("This will:")
    for index, line in enumerate(plan.actions(), start=1):
        reporter.warn(f"{index}. {line}")


def _confirm_uninstall() -> bool:
    try:
        return typer.confirm("Are you sure you want to proceed?", default=False)
    except typer.Abort:
        # No input available (EOF): treat as "no".
        console.print()
        return False


@app.command("uninstall")
def uninstall(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the interactive confirmation.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show the uninstall plan without changing anything.",
    ),
    grace_seconds: float | None = GRACE_SECONDS_OPTION,
) -> None:
    """Remove OverSSH and restore the host SSH daemon to the default port."""
    runtime = _get_runtime(ctx)
    orchestrator = runtime.orchestrator
    with runtime.logger.operation(
        "uninstall",
        args={"yes": yes, "dry_run": dry_run, "grace_seconds": grace_seconds},
        target={"kind": "host", "working_dir": str(runtime.config.working_dir)},
    ) as op:
        if not dry_run:
            try:
                orchestrator.check_privileges()
            except PrivilegeError as exc:
                _fail(op, exc)

        plan = orchestrator.plan_uninstall(grace_seconds=grace_seconds)
        _render_plan(plan)

        if dry_run:
            console.print("[yellow]Dry run[/yellow]: no changes were made.")
            op.success(
                "Dry run complete.",
                changed=0,
                context={"plan": plan.to_dict()},
            )
            return

        confirmed = yes or _confirm_uninstall()
        with _interrupt_guard(op, "Uninstallation interrupted"):
            try:
                report = orchestrator.execute_uninstall(plan, confirmed, op=op)
            except ConfirmationDeclined as exc:
                reporter.log("UNINSTALL", "Uninstall cancelled")
                op.error(str(exc), errors=["user-cancelled"], rc=ExitCode.FAILURE)
                raise typer.Exit(code=ExitCode.FAILURE) from exc
            except WorkflowAborted as exc:
                _aborted(op, exc)

        reporter.success("OverSSH has been completely uninstalled!")
        _record_report(op, report, "OverSSH uninstallation completed.")


@app.command("status")
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the status report as JSON.",
    ),
) -> None:
    """Show SSH, OverSSH unit and container state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "host"},
    ) as op:
        report = runtime.orchestrator.status()
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            reporter.status(report)
        if report.errors:
            op.warning("Status collected with errors.", warnings=list(report.errors))
        else:
            op.success("Status collected.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
