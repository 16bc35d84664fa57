"""SSH daemon port migration between the default and alternate ports.

The migrator edits ``sshd_config`` in place, always validating the result
with ``sshd -t`` before reporting success. Validation failures are fatal and
leave the edited file on disk: automated repair of a security-sensitive
config is riskier than stopping and asking the operator to intervene.
"""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .backups import BackupStore, ConfigBackup
from .errors import InvalidConfigurationError
from .providers.sshd import SshdProvider

_PORT_LINE = re.compile(r"^[ \t]*Port[ \t]+(\d+)[ \t]*(?:#.*)?$", re.IGNORECASE | re.MULTILINE)


class PortState(str, Enum):
    """Which of the two managed ports the daemon is configured for."""

    DEFAULT = "at-default-port"
    ALTERNATE = "at-alternate-port"


@dataclass(frozen=True, slots=True)
class MigrationResult:
    """Outcome of a migrate/restore call."""

    state: PortState
    changed: bool
    source: str
    backup: ConfigBackup | None = None

    def describe(self) -> str:
        """Return a short human-readable summary."""
        if self.source == "backup" and self.backup is not None:
            return f"restored from backup {self.backup.path}"
        return {
            "already-configured": "already configured",
            "uncommented": "uncommented the default Port directive",
            "rewritten": "rewrote the active Port directive",
            "appended": "appended a Port directive",
            "rewrite": "rewrote the alternate Port directive",
            "unchanged": "no alternate Port directive found",
        }.get(self.source, self.source)


def active_ports(text: str) -> list[int]:
    """Return every active (uncommented) ``Port`` value in *text*."""
    return [int(match.group(1)) for match in _PORT_LINE.finditer(text)]


def _directive(port: int, *, commented: bool = False) -> re.Pattern[str]:
    comment = r"#[ \t]*" if commented else ""
    return re.compile(
        rf"^[ \t]*{comment}Port[ \t]+{port}(?!\d)[^\n]*$",
        re.IGNORECASE | re.MULTILINE,
    )


@dataclass(slots=True)
class SshPortMigrator:
    """Move the SSH daemon between *default_port* and *alternate_port*."""

    config_path: Path
    validator: SshdProvider
    backups: BackupStore
    default_port: int = 22
    alternate_port: int = 2222

    def read_text(self) -> str:
        """Return the current configuration text."""
        try:
            return self.config_path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise InvalidConfigurationError(
                f"SSH daemon configuration not found at {self.config_path}."
            ) from exc

    def active_ports(self) -> list[int]:
        """Return the active ``Port`` directives of the on-disk configuration."""
        return active_ports(self.read_text())

    def state(self) -> PortState:
        """Return :attr:`PortState.ALTERNATE` when an active alternate directive exists."""
        if _directive(self.alternate_port).search(self.read_text()):
            return PortState.ALTERNATE
        return PortState.DEFAULT

    def migrate_to_alternate(self) -> MigrationResult:
        """Point the daemon at the alternate port and validate the result."""
        text = self.read_text()
        alternate = f"Port {self.alternate_port}"
        if _directive(self.alternate_port).search(text):
            return MigrationResult(
                state=PortState.ALTERNATE,
                changed=False,
                source="already-configured",
            )

        commented = _directive(self.default_port, commented=True)
        active = _directive(self.default_port)
        if commented.search(text):
            updated = commented.sub(alternate, text, count=1)
            source = "uncommented"
        elif active.search(text):
            updated = active.sub(alternate, text, count=1)
            source = "rewritten"
        else:
            separator = "" if not text or text.endswith("\n") else "\n"
            updated = f"{text}{separator}{alternate}\n"
            source = "appended"

        self._write(updated)
        self._validate()
        return MigrationResult(state=PortState.ALTERNATE, changed=True, source=source)

    def restore_to_default(self) -> MigrationResult:
        """Restore the default port, preferring the most recent backup."""
        backup = self.backups.most_recent(self.config_path)
        if backup is not None:
            text = backup.read_text()
            # A backup taken after an earlier migration still carries the alternate port.
            text = self._rewrite_alternate(text)
            self._write(text)
            self._validate()
            return MigrationResult(
                state=PortState.DEFAULT,
                changed=True,
                source="backup",
                backup=backup,
            )

        text = self.read_text()
        updated = self._rewrite_alternate(text)
        changed = updated != text
        if changed:
            self._write(updated)
        self._validate()
        return MigrationResult(
            state=PortState.DEFAULT,
            changed=changed,
            source="rewrite" if changed else "unchanged",
        )

    # ------------------------------------------------------------------
    def _rewrite_alternate(self, text: str) -> str:
        return _directive(self.alternate_port).sub(f"Port {self.default_port}", text)

    def _validate(self) -> None:
        try:
            self.validator.test_config(self.config_path)
        except InvalidConfigurationError as exc:
            raise InvalidConfigurationError(
                f"SSH configuration is invalid: {exc}",
            ) from exc

    def _write(self, text: str) -> None:
        mode = 0o644
        if self.config_path.exists():
            mode = self.config_path.stat().st_mode & 0o777
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.config_path.parent),
            prefix=f".{self.config_path.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self.config_path)
        except OSError as exc:
            raise InvalidConfigurationError(
                f"Failed to write {self.config_path}: {exc}",
            ) from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["MigrationResult", "PortState", "SshPortMigrator", "active_ports"]
