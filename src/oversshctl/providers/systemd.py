"""Systemd provider for the OverSSH service unit and host services."""
from __future__ import annotations

import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import OversshError
from ..templates import TemplateEngine


class SystemdError(OversshError):
    """Raised when systemd operations fail."""

    default_remediation = (
        "Manual intervention required: inspect `systemctl status` and `journalctl -xe` "
        "for the failing unit, then re-run."
    )


@dataclass(frozen=True, slots=True)
class ServiceUnit:
    """Declarative descriptor of the unit that supervises the proxy stack."""

    name: str
    working_directory: Path
    start_command: Sequence[str]
    stop_command: Sequence[str]
    dependency: str = "docker.service"
    description: str = "OverSSH Docker Service"

    @property
    def unit_name(self) -> str:
        """Return the systemd unit file name."""
        if self.name.endswith(".service"):
            return self.name
        return f"{self.name}.service"

    def template_context(self) -> dict[str, object]:
        """Return the context consumed by ``systemd/service.j2``."""
        return {
            "description": self.description,
            "dependency": self.dependency,
            "working_directory": str(self.working_directory),
            "exec_start": shlex.join(self.start_command),
            "exec_stop": shlex.join(self.stop_command),
        }


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage the OverSSH unit, and control other host services."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def unit_path(self, unit: ServiceUnit | str) -> Path:
        """Return the full path for *unit*'s descriptor file."""
        return self.systemd_dir / _unit_name(unit)

    def exists(self, unit: ServiceUnit | str) -> bool:
        """Return ``True`` when the unit descriptor is present on disk."""
        return self.unit_path(unit).exists()

    def define(self, unit: ServiceUnit) -> bool:
        """Write the descriptor for *unit*; reload systemd only when it changed."""
        path = self.unit_path(unit)
        changed = self.templates.render_to_path(
            "systemd/service.j2",
            path,
            unit.template_context(),
            mode=0o644,
        )
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, unit: ServiceUnit | str) -> subprocess.CompletedProcess[str]:
        """Enable *unit*."""
        return self._systemctl("enable", _unit_name(unit))

    def disable(self, unit: ServiceUnit | str) -> subprocess.CompletedProcess[str]:
        """Disable *unit*."""
        return self._systemctl("disable", _unit_name(unit))

    def start(self, unit: ServiceUnit | str) -> bool:
        """Start *unit* unless it is already active; return ``True`` if started."""
        if self.is_active(unit):
            return False
        self._systemctl("start", _unit_name(unit))
        return True

    def stop(self, unit: ServiceUnit | str) -> bool:
        """Stop *unit* when it is active; return ``True`` if it was stopped."""
        if not self.is_active(unit):
            return False
        self._systemctl("stop", _unit_name(unit))
        return True

    def restart_service(self, name: str) -> subprocess.CompletedProcess[str]:
        """Restart an arbitrary host service such as ``ssh``."""
        return self._systemctl("restart", _unit_name(name))

    def is_active(self, unit: ServiceUnit | str) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the unit active."""
        result = self._systemctl("is-active", _unit_name(unit), check=False, quiet=True)
        return result.returncode == 0

    def is_enabled(self, unit: ServiceUnit | str) -> bool:
        """Return ``True`` when ``systemctl is-enabled`` reports the unit enabled."""
        result = self._systemctl("is-enabled", _unit_name(unit), check=False, quiet=True)
        return result.returncode == 0

    def status_text(self, unit: ServiceUnit | str) -> str:
        """Return ``systemctl status`` output for reporting."""
        result = self._systemctl(
            "status",
            _unit_name(unit),
            "--no-pager",
            "-l",
            check=False,
            quiet=True,
        )
        return (result.stdout or result.stderr or "").strip()

    def remove(self, unit: ServiceUnit | str) -> bool:
        """Delete the unit descriptor if present; return ``True`` when removed."""
        path = self.unit_path(unit)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._reload_daemon()
        return True

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
        quiet: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        command_args: list[str] = [self.systemctl_bin, command, *args]
        try:
            return self._run_command(
                command_args,
                check=check,
                error_prefix=f"{self.systemctl_bin} {command}",
            )
        except SystemdError:
            if quiet:
                return subprocess.CompletedProcess(command_args, returncode=1, stdout="", stderr="")
            raise

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def _unit_name(unit: ServiceUnit | str) -> str:
    if isinstance(unit, ServiceUnit):
        return unit.unit_name
    if unit.endswith((".service", ".socket", ".target", ".timer")):
        return unit
    return f"{unit}.service"


__all__ = ["ServiceUnit", "SystemdError", "SystemdProvider"]
