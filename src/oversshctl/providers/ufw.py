"""ufw provider for packet-filter allow/deny rules."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import BestEffortFailure


class FirewallError(BestEffortFailure):
    """Raised when a ufw command fails."""


@dataclass(slots=True)
class UfwProvider:
    """Thin wrapper over the ``ufw`` CLI."""

    ufw_bin: str = "ufw"

    def available(self) -> bool:
        """Return ``True`` when ufw is installed on the host."""
        return shutil.which(self.ufw_bin) is not None

    def add(
        self,
        action: str,
        port_spec: str,
        label: str,
    ) -> subprocess.CompletedProcess[str]:
        """Add an ``allow``/``deny`` rule; ufw itself skips identical rules."""
        return self._run_ufw([action, port_spec, "comment", label])

    def delete(
        self,
        action: str,
        port_spec: str,
        label: str,
    ) -> subprocess.CompletedProcess[str]:
        """Delete the rule matching *action*, *port_spec* and *label*."""
        return self._run_ufw(["delete", action, port_spec, "comment", label])

    # ------------------------------------------------------------------
    def _run_ufw(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.ufw_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise FirewallError(f"{self.ufw_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise FirewallError(
                f"{self.ufw_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["FirewallError", "UfwProvider"]
