"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from oversshctl.providers.systemd import ServiceUnit, SystemdError, SystemdProvider
from oversshctl.templates import TemplateEngine


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider whose unit directory lives under *tmp_path*."""
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=tmp_path / "systemd",
        systemctl_bin="systemctl",  # Not invoked; monkeypatched in tests.
    )


@pytest.fixture
def unit(tmp_path: Path) -> ServiceUnit:
    """Return the proxy unit descriptor."""
    return ServiceUnit(
        name="overssh",
        working_directory=tmp_path / "overssh",
        start_command=["/usr/bin/docker", "compose", "-f", "docker-compose.prod.yml", "up", "-d"],
        stop_command=["/usr/bin/docker", "compose", "-f", "docker-compose.prod.yml", "down"],
    )


def _record_commands(
    monkeypatch: pytest.MonkeyPatch,
    active: set[str] | None = None,
    enabled: set[str] | None = None,
) -> list[list[str]]:
    calls: list[list[str]] = []
    active = active if active is not None else set()
    enabled = enabled if enabled is not None else set()

    def fake_run(
        self: SystemdProvider,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> DummyResult:
        calls.append(list(args))
        command, *rest = args[1:]
        if command == "is-active":
            return DummyResult(returncode=0 if rest[0] in active else 3)
        if command == "is-enabled":
            return DummyResult(returncode=0 if rest[0] in enabled else 1)
        return DummyResult()

    monkeypatch.setattr(SystemdProvider, "_run_command", fake_run)
    return calls


def test_define_writes_unit_and_reloads_once(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    unit: ServiceUnit,
) -> None:
    """Rendering writes the unit file and reloads only when content changed."""
    calls = _record_commands(monkeypatch)

    assert provider.define(unit) is True
    assert provider.define(unit) is False

    path = provider.unit_path(unit)
    assert path.name == "overssh.service"
    content = path.read_text()
    assert "Requires=docker.service" in content
    assert f"WorkingDirectory={unit.working_directory}" in content
    assert "ExecStart=/usr/bin/docker compose -f docker-compose.prod.yml up -d" in content
    assert "ExecStop=/usr/bin/docker compose -f docker-compose.prod.yml down" in content
    assert calls == [["systemctl", "daemon-reload"]]


def test_start_skips_active_unit(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    unit: ServiceUnit,
) -> None:
    """Starting an already-active unit is observed, not re-executed."""
    calls = _record_commands(monkeypatch, active={"overssh.service"})

    assert provider.start(unit) is False
    assert calls == [["systemctl", "is-active", "overssh.service"]]


def test_start_and_stop_inactive_unit(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    unit: ServiceUnit,
) -> None:
    """Inactive units are started; stop is a no-op for them."""
    calls = _record_commands(monkeypatch)

    assert provider.start(unit) is True
    assert provider.stop(unit) is False
    assert ["systemctl", "start", "overssh.service"] in calls
    assert ["systemctl", "stop", "overssh.service"] not in calls


def test_enable_disable_and_restart(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    unit: ServiceUnit,
) -> None:
    """Lifecycle helpers map onto systemctl verbs with .service suffixes."""
    calls = _record_commands(monkeypatch, enabled={"overssh.service"})

    provider.enable(unit)
    assert provider.is_enabled(unit) is True
    provider.disable("overssh")
    provider.restart_service("ssh")

    assert calls == [
        ["systemctl", "enable", "overssh.service"],
        ["systemctl", "is-enabled", "overssh.service"],
        ["systemctl", "disable", "overssh.service"],
        ["systemctl", "restart", "ssh.service"],
    ]


def test_remove_deletes_descriptor_and_reloads(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    unit: ServiceUnit,
) -> None:
    """Removal unlinks the file once; a second call reports nothing removed."""
    calls = _record_commands(monkeypatch)
    provider.define(unit)
    calls.clear()

    assert provider.remove(unit) is True
    assert provider.exists(unit) is False
    assert provider.remove(unit) is False
    assert calls == [["systemctl", "daemon-reload"]]


def test_systemctl_failure_raises(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """A failing restart surfaces as :class:`SystemdError`."""

    def fake_subprocess(args: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args, 5, stdout="", stderr="Unit ssh.service not found.")

    monkeypatch.setattr("oversshctl.providers.systemd.subprocess.run", fake_subprocess)

    with pytest.raises(SystemdError, match="not found"):
        provider.restart_service("ssh")


def test_quiet_queries_tolerate_missing_systemctl(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Status queries report inactive when systemctl itself is missing."""

    def missing(args: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("oversshctl.providers.systemd.subprocess.run", missing)

    assert provider.is_active("ssh") is False
    assert provider.is_enabled("overssh") is False
    assert provider.status_text("ssh") == ""


def test_unit_template_context_quotes_arguments(tmp_path: Path) -> None:
    """Commands are shell-joined for ExecStart/ExecStop."""
    unit = ServiceUnit(
        name="overssh.service",
        working_directory=tmp_path,
        start_command=["/usr/bin/docker", "compose", "-f", "my compose.yml", "up", "-d"],
        stop_command=["/usr/bin/docker", "compose", "down"],
    )

    context = unit.template_context()

    assert unit.unit_name == "overssh.service"
    assert context["exec_start"] == "/usr/bin/docker compose -f 'my compose.yml' up -d"
    assert context["dependency"] == "docker.service"
