"""Deployment State Orchestrator for install, uninstall and status.

Both workflows are declared as step tables. Every step returns a typed
:class:`StepResult`; the table decides, per step, which statuses halt the run.
Install halts on any fatal result. Uninstall halts only when privileges are
missing, when the SSH configuration cannot be restored, or when SSH cannot be
restarted, because its overriding goal is to give the operator a reachable
SSH daemon on the default port.
"""
from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .artifacts import ArtifactFetcher
from .backups import BackupStore
from .config import AppConfig
from .deployment import ENV_FILE_NAME, DeploymentContext, write_environment_file
from .errors import (
    BestEffortFailure,
    ConfirmationDeclined,
    OversshError,
    PrivilegeError,
)
from .firewall import FirewallManager, FirewallReport
from .hostkeys import HostKeyManager
from .logging import OperationScope
from .ports import SshPortMigrator
from .providers.docker import ContainerError, ContainerInfo, DockerProvider, ImageInfo
from .providers.runtime_installer import DockerRuntimeInstaller
from .providers.sshd import SshdProvider
from .providers.systemd import ServiceUnit, SystemdError, SystemdProvider
from .providers.ufw import UfwProvider
from .templates import TemplateEngine

INSTALL = "install"
UNINSTALL = "uninstall"
_TAGS = {INSTALL: "DEPLOY", UNINSTALL: "UNINSTALL"}


class StepStatus(str, Enum):
    """Outcome category of a workflow step."""

    OK = "ok"
    WARNING = "warning"
    SKIPPED = "skipped"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class StepResult:
    """Typed result returned by every step action."""

    status: StepStatus
    message: str
    remediation: str | None = None
    notes: tuple[str, ...] = ()

    @classmethod
    def ok(cls, message: str, *, notes: Iterable[str] = ()) -> StepResult:
        """Build a successful result."""
        return cls(StepStatus.OK, message, notes=tuple(notes))

    @classmethod
    def warning(cls, message: str, *, notes: Iterable[str] = ()) -> StepResult:
        """Build a degraded result."""
        return cls(StepStatus.WARNING, message, notes=tuple(notes))

    @classmethod
    def skipped(cls, message: str) -> StepResult:
        """Build a result for a step with nothing to do."""
        return cls(StepStatus.SKIPPED, message)

    @classmethod
    def fatal(cls, message: str, *, remediation: str | None = None) -> StepResult:
        """Build a failed result."""
        return cls(StepStatus.FATAL, message, remediation=remediation)


HALT_ON_FATAL = frozenset({StepStatus.FATAL})
NEVER_HALT: frozenset[StepStatus] = frozenset()


@dataclass(frozen=True, slots=True)
class Step:
    """One entry of a workflow table."""

    name: str
    description: str
    action: Callable[[], StepResult]
    halts_on: frozenset[StepStatus] = HALT_ON_FATAL


@dataclass(slots=True)
class WorkflowReport:
    """Ordered record of the steps a workflow ran."""

    workflow: str
    results: list[tuple[str, StepResult]] = field(default_factory=list)
    aborted_at: str | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the workflow ran to completion."""
        return self.aborted_at is None

    @property
    def warnings(self) -> list[str]:
        """Return ``step: message`` for every degraded step."""
        return [
            f"{name}: {result.message}"
            for name, result in self.results
            if result.status is StepStatus.WARNING
        ]

    def result_for(self, name: str) -> StepResult | None:
        """Return the result recorded for step *name*, if it ran."""
        for step_name, result in self.results:
            if step_name == name:
                return result
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "workflow": self.workflow,
            "aborted_at": self.aborted_at,
            "steps": [
                {"name": name, "status": result.status.value, "message": result.message}
                for name, result in self.results
            ],
        }


class WorkflowAborted(OversshError):
    """Raised when a step result halts the running workflow."""

    def __init__(self, step: Step, result: StepResult, report: WorkflowReport) -> None:
        """Capture the halting *step*, its *result* and the partial *report*."""
        super().__init__(result.message, remediation=result.remediation)
        self.step = step
        self.result = result
        self.report = report


@dataclass(frozen=True, slots=True)
class UninstallPlan:
    """Side-effect free description of what :meth:`Orchestrator.execute_uninstall` will do."""

    unit_path: Path
    unit_present: bool
    sshd_config: Path
    restore_source: str
    restore_backup: Path | None
    backups: tuple[Path, ...]
    backups_to_prune: tuple[Path, ...]
    firewall_available: bool
    docker_available: bool
    artifacts: tuple[Path, ...]
    grace_seconds: float
    default_port: int = 22

    def actions(self) -> list[str]:
        """Return the operator-facing list of changes."""
        if self.restore_backup is not None:
            restore = f"Restore SSH to port {self.default_port} from backup {self.restore_backup}"
        else:
            restore = (
                f"Restore SSH to port {self.default_port} by rewriting the Port "
                "directive (no backup found)"
            )
        lines = [
            "Stop and remove OverSSH service"
            + ("" if self.unit_present else " (unit file not present)"),
            restore,
            "Clean up Docker containers and images"
            + ("" if self.docker_available else " (docker not found, skipped)"),
            "Remove firewall rules"
            + ("" if self.firewall_available else " (ufw not found, skipped)"),
        ]
        if self.artifacts:
            lines.append(
                "Remove deployment files: " + ", ".join(path.name for path in self.artifacts)
            )
        if self.backups_to_prune:
            lines.append(f"Prune {len(self.backups_to_prune)} older sshd_config backup(s)")
        lines.append("You will be disconnected during SSH restart")
        return lines

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_path": str(self.unit_path),
            "unit_present": self.unit_present,
            "sshd_config": str(self.sshd_config),
            "restore_source": self.restore_source,
            "restore_backup": str(self.restore_backup) if self.restore_backup else None,
            "backups": [str(path) for path in self.backups],
            "backups_to_prune": [str(path) for path in self.backups_to_prune],
            "firewall_available": self.firewall_available,
            "docker_available": self.docker_available,
            "artifacts": [str(path) for path in self.artifacts],
            "grace_seconds": self.grace_seconds,
            "actions": self.actions(),
        }


@dataclass(frozen=True, slots=True)
class StatusReport:
    """Live view of the SSH daemon, the OverSSH unit and the container engine."""

    ssh_service: str
    ssh_active: bool
    ssh_ports: tuple[int, ...]
    port_state: str | None
    unit_name: str
    unit_present: bool
    unit_active: bool
    unit_enabled: bool
    docker_available: bool
    containers: tuple[ContainerInfo, ...] = ()
    images: tuple[ImageInfo, ...] = ()
    ssh_detail: str = ""
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssh": {
                "service": self.ssh_service,
                "active": self.ssh_active,
                "ports": list(self.ssh_ports),
                "state": self.port_state,
                "detail": self.ssh_detail,
            },
            "overssh": {
                "unit": self.unit_name,
                "present": self.unit_present,
                "active": self.unit_active,
                "enabled": self.unit_enabled,
            },
            "docker": {
                "available": self.docker_available,
                "containers": [container.to_dict() for container in self.containers],
                "images": [image.to_dict() for image in self.images],
            },
            "errors": list(self.errors),
        }


class Reporter:
    """Receives progress events from the orchestrator; the base class is silent."""

    def log(self, tag: str, message: str) -> None:
        """Report a status line."""

    def success(self, message: str) -> None:
        """Report a success line."""

    def warn(self, message: str) -> None:
        """Report a warning line."""

    def error(self, message: str) -> None:
        """Report an error line."""

    def status(self, report: StatusReport) -> None:
        """Render a status report."""


class ConsoleReporter(Reporter):
    """Print tagged progress lines with rich."""

    def __init__(self, console: Console | None = None) -> None:
        """Write to *console* (a fresh :class:`Console` by default)."""
        self.console = console or Console()

    def log(self, tag: str, message: str) -> None:
        """Print ``[TAG] message``."""
        self.console.print(f"[blue]{escape(f'[{tag}]')}[/blue] {escape(message)}")

    def success(self, message: str) -> None:
        """Print ``[SUCCESS] message``."""
        self.console.print(f"[green]{escape('[SUCCESS]')}[/green] {escape(message)}")

    def warn(self, message: str) -> None:
        """Print ``[WARNING] message``."""
        self.console.print(f"[yellow]{escape('[WARNING]')}[/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        """Print ``[ERROR] message``."""
        self.console.print(f"[red]{escape('[ERROR]')}[/red] {escape(message)}")

    def status(self, report: StatusReport) -> None:
        """Render services, ports and containers."""
        ports = ", ".join(str(port) for port in report.ssh_ports) or "default (22)"
        table = Table(title="Deployment status", show_header=True)
        table.add_column("Component")
        table.add_column("State")
        table.add_column("Detail")
        table.add_row(
            f"SSH ({report.ssh_service})",
            _state_label(report.ssh_active),
            f"ports: {ports}",
        )
        unit_detail = "enabled" if report.unit_enabled else "disabled"
        if not report.unit_present:
            unit_detail = "unit file not present"
        table.add_row(
            f"OverSSH ({report.unit_name})",
            _state_label(report.unit_active),
            unit_detail,
        )
        if not report.docker_available:
            table.add_row("Docker", "[yellow]missing[/yellow]", "docker not found")
        elif not report.containers:
            table.add_row("Docker", "-", "no containers")
        for container in report.containers:
            table.add_row(
                f"container {escape(container.name)}",
                escape(container.status),
                escape(container.image),
            )
        for image in report.images:
            table.add_row(f"image {escape(image.reference)}", "-", escape(image.id))
        self.console.print(table)
        if report.ssh_detail:
            self.console.print(escape(report.ssh_detail), style="dim")
        for problem in report.errors:
            self.warn(problem)


def _state_label(active: bool) -> str:
    return "[green]active[/green]" if active else "[red]inactive[/red]"


@dataclass(slots=True)
class Orchestrator:
    """Sequence the host components into install and uninstall workflows."""

    config: AppConfig
    backups: BackupStore
    migrator: SshPortMigrator
    firewall: FirewallManager
    systemd: SystemdProvider
    docker: DockerProvider
    runtime_installer: DockerRuntimeInstaller
    fetcher: ArtifactFetcher
    reporter: Reporter = field(default_factory=Reporter)
    sleep: Callable[[float], None] = time.sleep
    geteuid: Callable[[], int] = os.geteuid

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        reporter: Reporter | None = None,
        templates: TemplateEngine | None = None,
    ) -> Orchestrator:
        """Wire real providers from *config*."""
        engine = templates or TemplateEngine.with_overrides(config.templates_dir)
        backups = BackupStore()
        return cls(
            config=config,
            backups=backups,
            migrator=SshPortMigrator(
                config_path=config.sshd.config_path,
                validator=SshdProvider(sshd_bin=config.sshd.sshd_bin),
                backups=backups,
                default_port=config.sshd.default_port,
                alternate_port=config.sshd.alternate_port,
            ),
            firewall=FirewallManager(UfwProvider(ufw_bin=config.firewall.ufw_bin)),
            systemd=SystemdProvider(
                templates=engine,
                systemd_dir=config.systemd.unit_dir,
                systemctl_bin=config.systemd.systemctl_bin,
            ),
            docker=DockerProvider(docker_bin=config.docker.docker_bin),
            runtime_installer=DockerRuntimeInstaller(
                docker_bin=config.docker.docker_bin,
                timeout=config.remote.timeout,
            ),
            fetcher=ArtifactFetcher(config.remote),
            reporter=reporter or Reporter(),
        )

    # ------------------------------------------------------------------
    # Shared helpers
    @property
    def compose_path(self) -> Path:
        """Return the compose spec location inside the working directory."""
        return self.config.working_dir / self.config.docker.compose_file

    def service_unit(self) -> ServiceUnit:
        """Return the descriptor of the unit supervising the proxy stack."""
        compose = self.config.docker.compose_file
        return ServiceUnit(
            name=self.config.systemd.unit_name,
            working_directory=self.config.working_dir,
            start_command=self.docker.compose_command(compose, "up", "-d"),
            stop_command=self.docker.compose_command(compose, "down"),
        )

    def artifact_paths(self) -> list[Path]:
        """Return every file install downloads or writes into the working directory."""
        names = [
            ENV_FILE_NAME,
            self.config.remote.caddyfile,
            self.config.remote.compose_file,
            self.config.docker.compose_file,
        ]
        return [self.config.working_dir / name for name in dict.fromkeys(names)]

    def check_privileges(self) -> None:
        """Raise :class:`PrivilegeError` unless running as root."""
        if self.geteuid() != 0:
            raise PrivilegeError("This command must be run as root.")

    # ------------------------------------------------------------------
    # Install
    def install(
        self,
        context: DeploymentContext,
        *,
        grace_seconds: float | None = None,
        op: OperationScope | None = None,
    ) -> WorkflowReport:
        """Deploy OverSSH for *context* and move SSH to the alternate port."""
        grace = self.config.restart.install_grace_seconds if grace_seconds is None else grace_seconds
        self.reporter.log(_TAGS[INSTALL], "Starting OverSSH deployment...")
        self.reporter.success(f"Domain validated: {context.domain}")
        steps = self._install_steps(context, grace)
        report = self._run(INSTALL, steps, op)
        alternate = self.config.sshd.alternate_port
        default = self.config.sshd.default_port
        self.reporter.success("Deployment completed!")
        self.reporter.warn(f"System SSH is now on port {alternate}")
        self.reporter.warn(f"OverSSH is now running on port {default}")
        self.reporter.success(f"Web interface available at: {context.url}")
        self.reporter.warn("SSL certificate will be automatically obtained by Caddy")
        self._summarise(report)
        return report

    def _install_steps(self, context: DeploymentContext, grace: float) -> list[Step]:
        unit = self.service_unit()
        return [
            Step("privileges", "Checking privileges", self._step_privileges),
            Step("sshd.backup", "Backing up SSH configuration", self._step_backup),
            Step("docker.runtime", "Installing Docker", self._step_docker_runtime),
            Step("sshd.migrate", self._migrate_description(), self._step_migrate),
            Step(
                "firewall.install",
                "Configuring firewall",
                self._step_firewall_install,
                halts_on=NEVER_HALT,
            ),
            Step(
                "service.define",
                "Creating OverSSH systemd service",
                lambda: self._step_define_service(unit),
            ),
            Step(
                "artifacts.fetch",
                "Downloading deployment files",
                lambda: self._step_fetch_artifacts(context),
            ),
            Step("hostkeys", "Generating SSH host keys for OverSSH", self._step_host_keys),
            Step(
                "environment",
                "Writing environment file",
                lambda: self._step_environment(context),
            ),
            Step("images.pull", "Pulling OverSSH images", self._step_pull_images),
            Step(
                "service.start",
                "Starting OverSSH service",
                lambda: self._step_start_before_restart(unit),
                halts_on=NEVER_HALT,
            ),
            Step(
                "ssh.restart",
                "Restarting services",
                lambda: self._step_restart_ssh(INSTALL, grace),
            ),
            Step(
                "service.ensure",
                "Ensuring OverSSH service is running",
                lambda: self._step_ensure_started(unit),
            ),
            Step(
                "status",
                "Deployment status",
                self._step_status,
                halts_on=NEVER_HALT,
            ),
        ]

    def _migrate_description(self) -> str:
        sshd = self.config.sshd
        return (
            f"Remapping system SSH from port {sshd.default_port} to {sshd.alternate_port}"
        )

    def _step_privileges(self) -> StepResult:
        self.check_privileges()
        return StepResult.ok("Running as root")

    def _step_backup(self) -> StepResult:
        backup = self.backups.snapshot(self.config.sshd.config_path)
        if backup is None:
            return StepResult.skipped(
                f"{self.config.sshd.config_path} not found; nothing to back up"
            )
        return StepResult.ok(f"SSH config backed up to {backup.path}")

    def _step_docker_runtime(self) -> StepResult:
        result = self.runtime_installer.ensure_installed()
        if not result.installed:
            return StepResult.skipped("Docker already installed")
        self.systemd.enable("docker")
        self.systemd.start("docker")
        return StepResult.ok("Docker installed successfully")

    def _step_migrate(self) -> StepResult:
        sshd = self.config.sshd
        alternate = sshd.alternate_port
        result = self.migrator.migrate_to_alternate()
        others = sorted({port for port in self.migrator.active_ports() if port != alternate})
        if sshd.default_port in others:
            # sshd would keep listening on the port the proxy has to bind.
            return StepResult.fatal(
                f"Port {sshd.default_port} is still active in {sshd.config_path} "
                f"alongside Port {alternate}",
                remediation=(
                    "Manual intervention required: remove or comment out the remaining "
                    f"`Port {sshd.default_port}` line in {sshd.config_path}, then re-run install."
                ),
            )
        if not result.changed:
            return StepResult.skipped(f"SSH already configured on port {alternate}")
        notes = [
            f"SSH will be moved to port {alternate} after restart. "
            "Make sure you can connect on the new port!",
            f"To connect after deployment: ssh -p {alternate} user@server",
        ]
        if others:
            joined = ", ".join(str(port) for port in others)
            return StepResult.warning(
                f"SSH configuration is valid ({result.describe()}) but other active "
                f"Port directives remain: {joined}",
                notes=notes,
            )
        return StepResult.ok(
            f"SSH configuration is valid ({result.describe()})",
            notes=notes,
        )

    def _step_firewall_install(self) -> StepResult:
        report = self.firewall.apply_install_policy(
            ssh_port=self.config.sshd.alternate_port,
            proxy_port=self.config.sshd.default_port,
        )
        return _firewall_result(report, skipped="ufw not found, skipping firewall configuration")

    def _step_define_service(self, unit: ServiceUnit) -> StepResult:
        self.config.working_dir.mkdir(parents=True, exist_ok=True)
        changed = self.systemd.define(unit)
        self.systemd.enable(unit)
        if changed:
            return StepResult.ok("OverSSH service created and enabled")
        return StepResult.ok("OverSSH service unchanged and enabled")

    def _step_fetch_artifacts(self, context: DeploymentContext) -> StepResult:
        fetched = self.fetcher.fetch_all(context)
        names = ", ".join(artifact.name for artifact in fetched)
        return StepResult.ok(
            f"Downloaded {names} to {context.working_dir} "
            f"(configured for domain {context.domain})"
        )

    def _step_host_keys(self) -> StepResult:
        manager = HostKeyManager(
            directory=self.config.working_dir,
            bits=self.config.host_key_bits,
        )
        result = manager.ensure()
        if result.generated:
            return StepResult.ok(f"SSH host key generated at {result.private_key}")
        return StepResult.skipped("SSH host key already exists; permissions re-applied")

    def _step_environment(self, context: DeploymentContext) -> StepResult:
        changed = write_environment_file(context)
        if changed:
            return StepResult.ok(f"Environment file written to {context.env_path}")
        return StepResult.skipped(f"Environment file {context.env_path} already up to date")

    def _step_pull_images(self) -> StepResult:
        self.docker.pull(self.compose_path)
        return StepResult.ok("OverSSH images pulled")

    def _step_start_before_restart(self, unit: ServiceUnit) -> StepResult:
        # The proxy cannot bind the default port until sshd has released it.
        try:
            started = self.systemd.start(unit)
        except SystemdError as exc:
            return StepResult.warning(
                f"OverSSH service did not start yet ({exc}); retrying after SSH restart"
            )
        if started:
            return StepResult.ok("OverSSH application deployed and started")
        return StepResult.skipped("OverSSH service already running")

    def _step_restart_ssh(self, workflow: str, grace: float) -> StepResult:
        sshd = self.config.sshd
        if workflow == INSTALL:
            self.reporter.warn("Restarting SSH service - you may be disconnected!")
            port = sshd.alternate_port
        else:
            self.reporter.warn("Restarting SSH service - you will be disconnected!")
            self.reporter.warn(f"After restart, connect on port {sshd.default_port}: ssh user@server")
            port = sshd.default_port
        if grace > 0:
            self.sleep(grace)
        try:
            self.systemd.restart_service(sshd.service)
        except SystemdError as exc:
            return StepResult.fatal(
                f"Failed to restart {sshd.service}: {exc}",
                remediation=(
                    f"Manual intervention required: run `systemctl restart {sshd.service}` "
                    f"from the console and confirm SSH listens on port {port}."
                ),
            )
        return StepResult.ok(f"SSH service restarted on port {port}")

    def _step_ensure_started(self, unit: ServiceUnit) -> StepResult:
        started = self.systemd.start(unit)
        if started:
            return StepResult.ok("OverSSH service started")
        return StepResult.ok("OverSSH service running")

    def _step_status(self) -> StepResult:
        report = self.status()
        self.reporter.status(report)
        if report.errors:
            return StepResult.warning("; ".join(report.errors))
        return StepResult.ok("Status collected")

    # ------------------------------------------------------------------
    # Uninstall
    def plan_uninstall(self, *, grace_seconds: float | None = None) -> UninstallPlan:
        """Observe the host and describe the uninstall without changing anything."""
        grace = (
            self.config.restart.uninstall_grace_seconds
            if grace_seconds is None
            else grace_seconds
        )
        sshd_config = self.config.sshd.config_path
        backups = self.backups.list_backups(sshd_config)
        latest = backups[-1].path if backups else None
        unit = self.service_unit()
        return UninstallPlan(
            unit_path=self.systemd.unit_path(unit),
            unit_present=self.systemd.exists(unit),
            sshd_config=sshd_config,
            restore_source="backup" if latest is not None else "rewrite",
            restore_backup=latest,
            backups=tuple(backup.path for backup in backups),
            backups_to_prune=tuple(backup.path for backup in backups[:-1]),
            firewall_available=self.firewall.available(),
            docker_available=self.docker.available(),
            artifacts=tuple(path for path in self.artifact_paths() if path.exists()),
            grace_seconds=grace,
            default_port=self.config.sshd.default_port,
        )

    def execute_uninstall(
        self,
        plan: UninstallPlan,
        confirmed: bool,
        *,
        op: OperationScope | None = None,
    ) -> WorkflowReport:
        """Run the uninstall described by *plan* once the operator has confirmed it."""
        if not confirmed:
            raise ConfirmationDeclined("Uninstall was not confirmed.")
        self.reporter.log(_TAGS[UNINSTALL], "Starting OverSSH uninstallation...")
        report = self._run(UNINSTALL, self._uninstall_steps(plan), op)
        self.reporter.success("OverSSH uninstallation completed!")
        self.reporter.success(f"SSH is now back on port {self.config.sshd.default_port}")
        self._summarise(report)
        return report

    def _uninstall_steps(self, plan: UninstallPlan) -> list[Step]:
        unit = self.service_unit()
        return [
            Step("privileges", "Checking privileges", self._step_privileges),
            Step(
                "service.stop",
                "Stopping OverSSH service",
                lambda: self._step_stop_service(unit),
                halts_on=NEVER_HALT,
            ),
            Step(
                "docker.teardown",
                "Cleaning up Docker containers and images",
                self._step_docker_teardown,
                halts_on=NEVER_HALT,
            ),
            Step(
                "service.remove",
                "Removing OverSSH systemd service",
                lambda: self._step_remove_service(unit),
                halts_on=NEVER_HALT,
            ),
            Step(
                "sshd.restore",
                f"Restoring SSH to port {self.config.sshd.default_port}",
                self._step_restore,
            ),
            Step(
                "firewall.revert",
                "Cleaning up firewall rules",
                self._step_firewall_uninstall,
                halts_on=NEVER_HALT,
            ),
            Step(
                "artifacts.remove",
                "Cleaning up deployment files",
                self._step_remove_artifacts,
                halts_on=NEVER_HALT,
            ),
            Step(
                "backups.prune",
                "Cleaning up old SSH backups (keeping the most recent)",
                self._step_prune_backups,
                halts_on=NEVER_HALT,
            ),
            Step(
                "ssh.restart",
                "Restarting SSH service",
                lambda: self._step_restart_ssh(UNINSTALL, plan.grace_seconds),
            ),
            Step(
                "status",
                "Uninstallation status",
                self._step_status,
                halts_on=NEVER_HALT,
            ),
        ]

    def _step_stop_service(self, unit: ServiceUnit) -> StepResult:
        messages: list[str] = []
        if self.systemd.stop(unit):
            messages.append("OverSSH service stopped")
        else:
            messages.append("OverSSH service already stopped")
        if self.systemd.is_enabled(unit):
            self.systemd.disable(unit)
            messages.append("OverSSH service disabled")
        return StepResult.ok("; ".join(messages))

    def _step_docker_teardown(self) -> StepResult:
        if not self.docker.available():
            return StepResult.warning("docker not found, skipping container cleanup")
        docker = self.config.docker
        failures: list[str] = []
        removed = {"containers": 0, "images": 0, "volumes": 0}

        if self.compose_path.exists():
            try:
                self.docker.down(
                    self.compose_path,
                    remove_images=True,
                    remove_volumes=True,
                    remove_orphans=True,
                )
            except ContainerError as exc:
                failures.append(str(exc))

        cleanups: Sequence[tuple[str, Callable[[str], list[str]], tuple[str, ...]]] = (
            ("containers", self.docker.force_remove_containers, docker.container_patterns),
            ("images", self.docker.force_remove_images, docker.image_references),
            ("volumes", self.docker.remove_volumes, docker.volume_patterns),
        )
        for kind, remove, patterns in cleanups:
            for pattern in patterns:
                try:
                    removed[kind] += len(remove(pattern))
                except ContainerError as exc:
                    failures.append(str(exc))

        summary = (
            f"removed {removed['containers']} container(s), {removed['images']} image(s), "
            f"{removed['volumes']} volume(s)"
        )
        if failures:
            return StepResult.warning(
                f"Docker cleanup incomplete ({summary})",
                notes=failures,
            )
        return StepResult.ok(f"Docker cleanup completed ({summary})")

    def _step_remove_service(self, unit: ServiceUnit) -> StepResult:
        if self.systemd.remove(unit):
            return StepResult.ok("OverSSH systemd service removed")
        return StepResult.skipped("OverSSH systemd service file not found")

    def _step_restore(self) -> StepResult:
        default = self.config.sshd.default_port
        result = self.migrator.restore_to_default()
        if result.source == "backup":
            return StepResult.ok(f"SSH configuration {result.describe()}")
        return StepResult.ok(
            f"SSH manually restored to port {default} ({result.describe()})",
            notes=[f"No SSH backup found, manually restoring SSH to port {default}"],
        )

    def _step_firewall_uninstall(self) -> StepResult:
        report = self.firewall.apply_uninstall_policy(
            default_port=self.config.sshd.default_port,
            alternate_port=self.config.sshd.alternate_port,
        )
        return _firewall_result(report, skipped="ufw not found, skipping firewall cleanup")

    def _step_remove_artifacts(self) -> StepResult:
        removed: list[str] = []
        for path in self.artifact_paths():
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BestEffortFailure(f"Failed to remove {path}: {exc}") from exc
            removed.append(path.name)
        if not removed:
            return StepResult.skipped("No deployment files to remove")
        return StepResult.ok("Removed " + ", ".join(removed))

    def _step_prune_backups(self) -> StepResult:
        removed = self.backups.prune_all_but_most_recent(self.config.sshd.config_path)
        if not removed:
            return StepResult.skipped("No old SSH backups to remove")
        return StepResult.ok(f"Removed {len(removed)} old backup(s)")

    # ------------------------------------------------------------------
    # Status
    def status(self) -> StatusReport:
        """Query live service, port and container state."""
        errors: list[str] = []
        sshd = self.config.sshd
        unit = self.service_unit()

        ports: tuple[int, ...] = ()
        state: str | None = None
        try:
            ports = tuple(self.migrator.active_ports())
            state = self.migrator.state().value
        except OversshError as exc:
            errors.append(str(exc))

        containers: tuple[ContainerInfo, ...] = ()
        images: tuple[ImageInfo, ...] = ()
        docker_available = self.docker.available()
        if docker_available:
            try:
                containers = tuple(self.docker.list_containers())
                images = tuple(self.docker.list_images())
            except ContainerError as exc:
                errors.append(str(exc))

        return StatusReport(
            ssh_service=sshd.service,
            ssh_active=self.systemd.is_active(sshd.service),
            ssh_ports=ports,
            port_state=state,
            unit_name=unit.unit_name,
            unit_present=self.systemd.exists(unit),
            unit_active=self.systemd.is_active(unit),
            unit_enabled=self.systemd.is_enabled(unit),
            docker_available=docker_available,
            containers=containers,
            images=images,
            ssh_detail=self.systemd.status_text(sshd.service),
            errors=tuple(errors),
        )

    # ------------------------------------------------------------------
    # Runner
    def _run(
        self,
        workflow: str,
        steps: Sequence[Step],
        op: OperationScope | None,
    ) -> WorkflowReport:
        tag = _TAGS[workflow]
        report = WorkflowReport(workflow=workflow)
        for step in steps:
            self.reporter.log(tag, f"{step.description}...")
            result = self._execute(step)
            if result.status is StepStatus.FATAL and StepStatus.FATAL not in step.halts_on:
                result = StepResult.warning(result.message, notes=result.notes)
            elif result.status in step.halts_on and not result.remediation:
                result = replace(result, remediation=_manual_remediation(step))
            report.results.append((step.name, result))
            if op is not None:
                op.add_step(
                    f"{workflow}.{step.name}",
                    status=result.status.value,
                    detail=result.message,
                )
            self._report_result(tag, result)
            if result.status in step.halts_on:
                report.aborted_at = step.name
                self.reporter.error(result.remediation or _manual_remediation(step))
                raise WorkflowAborted(step, result, report)
        return report

    def _execute(self, step: Step) -> StepResult:
        try:
            return step.action()
        except BestEffortFailure as exc:
            return StepResult.warning(str(exc))
        except OversshError as exc:
            return StepResult.fatal(str(exc), remediation=exc.remediation)
        except OSError as exc:
            return StepResult.fatal(
                f"{step.description} failed: {exc}",
                remediation="Manual intervention required: resolve the filesystem error and re-run.",
            )

    def _report_result(self, tag: str, result: StepResult) -> None:
        if result.status is StepStatus.OK:
            self.reporter.success(result.message)
        elif result.status is StepStatus.SKIPPED:
            self.reporter.log(tag, result.message)
        elif result.status is StepStatus.WARNING:
            self.reporter.warn(result.message)
        else:
            self.reporter.error(result.message)
        for note in result.notes:
            self.reporter.warn(note)

    def _summarise(self, report: WorkflowReport) -> None:
        warnings = report.warnings
        if not warnings:
            return
        self.reporter.warn(
            f"{report.workflow.capitalize()} finished with {len(warnings)} degraded step(s):"
        )
        for line in warnings:
            self.reporter.warn(f"  {line}")


def _manual_remediation(step: Step) -> str:
    return (
        f"Manual intervention required: {step.description.lower()} did not complete; "
        "resolve the error above and re-run."
    )


def _firewall_result(report: FirewallReport, *, skipped: str) -> StepResult:
    if not report.tool_available:
        return StepResult.warning(skipped)
    if report.failures:
        return StepResult.warning(
            f"Firewall rules partially updated ({len(report.failures)} failure(s))",
            notes=report.failures,
        )
    return StepResult.ok("Firewall rules updated")


__all__ = [
    "ConsoleReporter",
    "Orchestrator",
    "Reporter",
    "StatusReport",
    "Step",
    "StepResult",
    "StepStatus",
    "UninstallPlan",
    "WorkflowAborted",
    "WorkflowReport",
]
