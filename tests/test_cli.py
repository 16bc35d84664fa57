"""CLI tests for oversshctl."""
from __future__ import annotations

import json
import signal
from collections.abc import Iterator
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from oversshctl import __version__, cli
from oversshctl.config import AppConfig
from oversshctl.deployment import DeploymentContext
from oversshctl.errors import ConfirmationDeclined, PrivilegeError, RemoteFetchError
from oversshctl.orchestrator import (
    StatusReport,
    Step,
    StepResult,
    UninstallPlan,
    WorkflowAborted,
    WorkflowReport,
)
from oversshctl.providers.docker import ContainerInfo
from oversshctl.templates import TemplateEngine

runner = CliRunner()


class StubOrchestrator:
    """Records what the CLI asks for and returns canned reports."""

    def __init__(self, config: AppConfig, *, root: bool = True) -> None:
        """Create the stub for *config*."""
        self.config = config
        self.root = root
        self.abort: BaseException | None = None
        self.sigterm_handlers: list[object] = []
        self.installs: list[tuple[str, float | None]] = []
        self.executed: list[bool] = []
        self.privilege_checks = 0

    def check_privileges(self) -> None:
        self.privilege_checks += 1
        if not self.root:
            raise PrivilegeError("This command must be run as root.")

    def install(
        self,
        context: DeploymentContext,
        *,
        grace_seconds: float | None = None,
        op: object = None,
    ) -> WorkflowReport:
        self.installs.append((context.domain, grace_seconds))
        self.sigterm_handlers.append(signal.getsignal(signal.SIGTERM))
        if self.abort is not None:
            raise self.abort
        return WorkflowReport(
            workflow="install",
            results=[("privileges", StepResult.ok("Running as root"))],
        )

    def plan_uninstall(self, *, grace_seconds: float | None = None) -> UninstallPlan:
        return UninstallPlan(
            unit_path=self.config.systemd.unit_dir / "overssh.service",
            unit_present=True,
            sshd_config=self.config.sshd.config_path,
            restore_source="rewrite",
            restore_backup=None,
            backups=(),
            backups_to_prune=(),
            firewall_available=True,
            docker_available=True,
            artifacts=(),
            grace_seconds=3.0 if grace_seconds is None else grace_seconds,
        )

    def execute_uninstall(
        self,
        plan: UninstallPlan,
        confirmed: bool,
        *,
        op: object = None,
    ) -> WorkflowReport:
        self.executed.append(confirmed)
        if not confirmed:
            raise ConfirmationDeclined("Uninstall was not confirmed.")
        self.sigterm_handlers.append(signal.getsignal(signal.SIGTERM))
        if self.abort is not None:
            raise self.abort
        return WorkflowReport(
            workflow="uninstall",
            results=[("firewall.revert", StepResult.warning("ufw not found"))],
        )

    def status(self) -> StatusReport:
        return StatusReport(
            ssh_service="ssh",
            ssh_active=True,
            ssh_ports=(2222,),
            port_state="at-alternate-port",
            unit_name="overssh.service",
            unit_present=True,
            unit_active=True,
            unit_enabled=True,
            docker_available=True,
            containers=(ContainerInfo("c1", "app", "overssh", "Up"),),
        )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a config file pointing every host path into *tmp_path*."""
    path = tmp_path / "config.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "working_dir": str(tmp_path / "overssh"),
                "logs_dir": str(tmp_path / "logs"),
                "templates_dir": str(tmp_path / "templates"),
                "sshd": {"config_path": str(tmp_path / "sshd_config")},
                "systemd": {"unit_dir": str(tmp_path / "systemd")},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def stubs(monkeypatch: pytest.MonkeyPatch) -> list[StubOrchestrator]:
    """Replace orchestrator construction; every built stub is appended to the list."""
    built: list[StubOrchestrator] = []

    def build(config: AppConfig, templates: TemplateEngine) -> StubOrchestrator:
        stub = StubOrchestrator(config)
        built.append(stub)
        return stub

    monkeypatch.setattr(cli, "_build_orchestrator", build)
    return built


def _invoke(config_file: Path, *args: str, input: str | None = None):  # noqa: A002
    return runner.invoke(cli.app, ["--config-file", str(config_file), *args], input=input)


def _log_records(tmp_path: Path) -> list[dict[str, object]]:
    log_path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in log_path.read_text().splitlines()]


def test_version_flag(config_file: Path, stubs: list[StubOrchestrator]) -> None:
    """``--version`` prints the package version and exits cleanly."""
    result = _invoke(config_file, "--version")

    assert result.exit_code == 0
    assert f"oversshctl {__version__}" in result.output


def test_install_requires_domain(
    config_file: Path,
    stubs: list[StubOrchestrator],
    tmp_path: Path,
) -> None:
    """A missing domain prints usage and exits 1 without touching the host."""
    result = _invoke(config_file, "install")

    assert result.exit_code == 1
    assert "[ERROR] Domain is required." in result.output
    assert "Usage: oversshctl install <domain>" in result.output
    assert stubs[0].installs == []
    assert _log_records(tmp_path)[-1]["result"]["status"] == "error"  # type: ignore[index]


def test_install_rejects_malformed_domain(config_file: Path, stubs: list[StubOrchestrator]) -> None:
    """Invalid domains are refused before the workflow starts."""
    result = _invoke(config_file, "install", "under_score.com")

    assert result.exit_code == 1
    assert "Invalid domain format: under_score.com" in result.output
    assert stubs[0].installs == []


def test_install_success(
    config_file: Path,
    stubs: list[StubOrchestrator],
    tmp_path: Path,
) -> None:
    """A completed workflow exits 0 and is logged."""
    result = _invoke(config_file, "install", "example.com", "--grace-seconds", "0")

    assert result.exit_code == 0, result.output
    assert stubs[0].installs == [("example.com", 0.0)]
    assert "OverSSH deployment completed successfully!" in result.output
    record = _log_records(tmp_path)[-1]
    assert record["command"] == "install"
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_install_abort_exits_non_zero(
    config_file: Path,
    stubs: list[StubOrchestrator],
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """A halted workflow exits 1 and logs the failing step."""
    failure = StepResult.fatal("Failed to download Caddyfile", remediation="Check network access.")
    step = Step("artifacts.fetch", "Downloading deployment files", lambda: failure)
    report = WorkflowReport(workflow="install", aborted_at="artifacts.fetch")

    def aborting_build(config: AppConfig, templates: TemplateEngine) -> StubOrchestrator:
        stub = StubOrchestrator(config)
        stub.abort = WorkflowAborted(step, failure, report)
        stubs.append(stub)
        return stub

    monkeypatch.setattr(cli, "_build_orchestrator", aborting_build)

    result = _invoke(config_file, "install", "example.com")

    assert result.exit_code == 1
    record = _log_records(tmp_path)[-1]
    assert record["result"]["message"] == "artifacts.fetch: Failed to download Caddyfile"  # type: ignore[index]
    assert record["result"]["context"]["remediation"] == "Check network access."  # type: ignore[index]


def test_install_unexpected_error_propagates(
    config_file: Path,
    stubs: list[StubOrchestrator],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Errors outside the step table are not swallowed."""

    def failing_build(config: AppConfig, templates: TemplateEngine) -> StubOrchestrator:
        stub = StubOrchestrator(config)
        stub.abort = RemoteFetchError("boom")
        return stub

    monkeypatch.setattr(cli, "_build_orchestrator", failing_build)

    result = _invoke(config_file, "install", "example.com")

    assert result.exit_code == 1
    assert isinstance(result.exception, RemoteFetchError)


def test_uninstall_dry_run_changes_nothing(config_file: Path, stubs: list[StubOrchestrator]) -> None:
    """``--dry-run`` renders the plan, skips the root check and exits 0."""
    result = _invoke(config_file, "uninstall", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "[WARNING] This will:" in result.output
    assert "Stop and remove OverSSH service" in result.output
    assert "Dry run" in result.output
    assert stubs[0].executed == []
    assert stubs[0].privilege_checks == 0


def test_uninstall_declined(
    config_file: Path,
    stubs: list[StubOrchestrator],
    tmp_path: Path,
) -> None:
    """Answering no cancels with exit 1."""
    result = _invoke(config_file, "uninstall", input="n\n")

    assert result.exit_code == 1
    assert "[UNINSTALL] Uninstall cancelled" in result.output
    assert stubs[0].executed == [False]
    assert _log_records(tmp_path)[-1]["result"]["errors"] == ["user-cancelled"]  # type: ignore[index]


def test_uninstall_without_input_is_declined(
    config_file: Path,
    stubs: list[StubOrchestrator],
) -> None:
    """End of input is treated as a refusal."""
    result = _invoke(config_file, "uninstall", input="")

    assert result.exit_code == 1
    assert stubs[0].executed == [False]


def test_uninstall_confirmed(config_file: Path, stubs: list[StubOrchestrator], tmp_path: Path) -> None:
    """Confirming runs the workflow; degraded steps are logged as warnings."""
    result = _invoke(config_file, "uninstall", input="y\n")

    assert result.exit_code == 0, result.output
    assert stubs[0].executed == [True]
    assert "OverSSH has been completely uninstalled!" in result.output
    record = _log_records(tmp_path)[-1]
    assert record["result"]["status"] == "warning"  # type: ignore[index]


def test_uninstall_yes_skips_prompt(config_file: Path, stubs: list[StubOrchestrator]) -> None:
    """``--yes`` confirms without reading input."""
    result = _invoke(config_file, "uninstall", "--yes")

    assert result.exit_code == 0, result.output
    assert stubs[0].executed == [True]
    assert "Are you sure" not in result.output


def test_uninstall_requires_root(
    config_file: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The privilege check runs before the plan is shown."""

    def build(config: AppConfig, templates: TemplateEngine) -> StubOrchestrator:
        return StubOrchestrator(config, root=False)

    monkeypatch.setattr(cli, "_build_orchestrator", build)

    result = _invoke(config_file, "uninstall", "--yes")

    assert result.exit_code == 1
    assert "must be run as root" in result.output
    assert "This will:" not in result.output


def _keep_running(signum: int, frame: object) -> None:
    """Stand-in SIGTERM handler that the CLI must put back."""


@pytest.fixture
def sigterm_handler() -> Iterator[object]:
    """Install a recognisable SIGTERM handler for the duration of a test."""
    previous = signal.signal(signal.SIGTERM, _keep_running)
    yield _keep_running
    signal.signal(signal.SIGTERM, signal.SIG_DFL if previous is None else previous)


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (("install", "example.com"), "Deployment interrupted"),
        (("uninstall", "--yes"), "Uninstallation interrupted"),
    ],
)
def test_interrupt_exits_non_zero_and_restores_sigterm(
    config_file: Path,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    sigterm_handler: object,
    args: tuple[str, ...],
    message: str,
) -> None:
    """An interrupt mid-workflow is logged as an error, exits 1 and is not rolled back."""
    built: list[StubOrchestrator] = []

    def interrupting_build(config: AppConfig, templates: TemplateEngine) -> StubOrchestrator:
        stub = StubOrchestrator(config)
        stub.abort = KeyboardInterrupt()
        built.append(stub)
        return stub

    monkeypatch.setattr(cli, "_build_orchestrator", interrupting_build)

    result = _invoke(config_file, *args)

    assert result.exit_code == 1
    assert f"[ERROR] {message}" in result.output
    assert "completed" not in result.output
    assert built[0].sigterm_handlers == [cli._raise_interrupt]
    assert signal.getsignal(signal.SIGTERM) is sigterm_handler
    record = _log_records(tmp_path)[-1]
    assert record["result"]["status"] == "error"  # type: ignore[index]
    assert record["result"]["errors"] == ["interrupted"]  # type: ignore[index]


def test_sigterm_raises_keyboard_interrupt() -> None:
    """The installed SIGTERM handler turns the signal into an interrupt."""
    with pytest.raises(KeyboardInterrupt):
        cli._raise_interrupt(signal.SIGTERM, None)


def test_status_json(config_file: Path, stubs: list[StubOrchestrator]) -> None:
    """``status --json`` emits the report as JSON."""
    result = _invoke(config_file, "status", "--json")

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["ssh"]["ports"] == [2222]
    assert data["overssh"]["active"] is True
    assert data["docker"]["containers"][0]["name"] == "app"


def test_status_table(config_file: Path, stubs: list[StubOrchestrator]) -> None:
    """The default status output is a table."""
    result = _invoke(config_file, "status")

    assert result.exit_code == 0, result.output
    assert "Deployment status" in result.output
    assert "2222" in result.output


def test_config_show_json(
    config_file: Path,
    stubs: list[StubOrchestrator],
    tmp_path: Path,
) -> None:
    """``config show --json`` reflects the merged configuration."""
    result = _invoke(config_file, "config", "show", "--json")

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["working_dir"] == str(tmp_path / "overssh")
    assert data["sshd"]["alternate_port"] == 2222
    assert data["restart"]["uninstall_grace_seconds"] == 3.0


def test_invalid_config_file_exits_non_zero(tmp_path: Path, stubs: list[StubOrchestrator]) -> None:
    """A malformed config file is reported and exits 1."""
    bad = tmp_path / "bad.yml"
    bad.write_text("- not\n- a mapping\n", encoding="utf-8")

    result = _invoke(bad, "status")

    assert result.exit_code == 1
    assert stubs == []
