"""SSH daemon provider: configuration syntax validation."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import InvalidConfigurationError


class SshdError(InvalidConfigurationError):
    """Raised when ``sshd -t`` rejects a configuration or cannot run."""


@dataclass(slots=True)
class SshdProvider:
    """Validate sshd configuration files with the daemon's own checker."""

    sshd_bin: str = "sshd"
    fallback_paths: tuple[str, ...] = ("/usr/sbin/sshd", "/usr/local/sbin/sshd")

    def executable(self) -> str | None:
        """Return the resolved sshd binary, or ``None`` when it is missing."""
        found = shutil.which(self.sshd_bin)
        if found:
            return found
        for candidate in self.fallback_paths:
            if Path(candidate).is_file():
                return candidate
        return None

    def available(self) -> bool:
        """Return ``True`` when the validator can run on this host."""
        return self.executable() is not None

    def test_config(self, config_path: Path) -> subprocess.CompletedProcess[str]:
        """Run ``sshd -t -f config_path`` and raise :class:`SshdError` on failure."""
        binary = self.executable()
        if binary is None:
            raise SshdError(
                f"{self.sshd_bin} not found; cannot validate {config_path}.",
            )
        self._ensure_runtime_dir()
        return self._run_sshd([binary, "-t", "-f", str(config_path)])

    # ------------------------------------------------------------------
    def _ensure_runtime_dir(self) -> None:
        # sshd refuses to test configs without its privilege separation dir.
        try:
            Path("/run/sshd").mkdir(parents=True, exist_ok=True)
        except OSError:
            return

    def _run_sshd(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SshdError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise SshdError(
                f"{' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["SshdError", "SshdProvider"]
