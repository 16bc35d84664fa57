"""Timestamped snapshots of host configuration files.

Backups live next to the file they protect, named
``<file>.backup.<YYYYmmdd_HHMMSS>``. That is the layout the earlier shell
deployment script wrote, so snapshots it left behind are picked up
on uninstall. When two snapshots land in the same second, the later one gets a
``_<microseconds>`` suffix instead of overwriting the first.
"""
from __future__ import annotations

import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path

from .errors import OversshError

_TIMESTAMP_RE = re.compile(r"^(?P<stamp>\d{8}_\d{6})(?:_(?P<micro>\d{6}))?$")
_STAMP_FORMAT = "%Y%m%d_%H%M%S"


class BackupError(OversshError):
    """Raised when a snapshot cannot be written or pruned."""

    default_remediation = (
        "Manual intervention required: make sure the SSH configuration directory is "
        "writable and has free space, then re-run."
    )


@dataclass(frozen=True, slots=True)
class ConfigBackup:
    """An immutable snapshot of *source* stored at *path*."""

    path: Path
    source: Path
    timestamp: datetime

    def read_text(self) -> str:
        """Return the snapshot content."""
        return self.path.read_text(encoding="utf-8")


def _now() -> datetime:
    return datetime.now()


def parse_backup_timestamp(suffix: str) -> datetime | None:
    """Return the timestamp encoded in a backup suffix, or ``None``."""
    match = _TIMESTAMP_RE.match(suffix)
    if match is None:
        return None
    try:
        moment = datetime.strptime(match.group("stamp"), _STAMP_FORMAT)
    except ValueError:
        return None
    micro = match.group("micro")
    if micro:
        moment = moment.replace(microsecond=int(micro))
    return moment


@dataclass(slots=True)
class BackupStore:
    """Create, list and prune snapshots of configuration files."""

    clock: Callable[[], datetime] = field(default=_now)

    def prefix(self, source: Path) -> str:
        """Return the file name prefix shared by every backup of *source*."""
        return f"{source.name}.backup."

    def snapshot(self, source: Path) -> ConfigBackup | None:
        """Copy *source* to a new timestamped backup; skip when it is missing."""
        if not source.exists():
            return None
        moment = self.clock().replace(microsecond=0)
        destination = source.with_name(f"{self.prefix(source)}{moment:{_STAMP_FORMAT}}")
        while destination.exists():
            moment += timedelta(microseconds=1)
            destination = source.with_name(
                f"{self.prefix(source)}{moment:{_STAMP_FORMAT}}_{moment:%f}"
            )
        try:
            shutil.copy2(source, destination)
        except OSError as exc:
            raise BackupError(f"Failed to back up {source} to {destination}: {exc}") from exc
        return ConfigBackup(path=destination, source=source, timestamp=moment)

    def list_backups(self, source: Path) -> list[ConfigBackup]:
        """Return backups of *source* ordered oldest first."""
        directory = source.parent
        if not directory.is_dir():
            return []
        prefix = self.prefix(source)
        backups: list[ConfigBackup] = []
        for candidate in directory.iterdir():
            if not candidate.name.startswith(prefix) or not candidate.is_file():
                continue
            moment = parse_backup_timestamp(candidate.name[len(prefix) :])
            if moment is None:
                continue
            backups.append(ConfigBackup(path=candidate, source=source, timestamp=moment))
        backups.sort(key=lambda backup: (backup.timestamp, backup.path.name))
        return backups

    def most_recent(self, source: Path) -> ConfigBackup | None:
        """Return the newest backup of *source*, if any."""
        backups = self.list_backups(source)
        return backups[-1] if backups else None

    def prune_all_but_most_recent(self, source: Path) -> list[Path]:
        """Delete every backup of *source* except the newest; return removed paths."""
        backups = self.list_backups(source)
        removed: list[Path] = []
        for backup in backups[:-1]:
            try:
                backup.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BackupError(f"Failed to remove old backup {backup.path}: {exc}") from exc
            removed.append(backup.path)
        return removed


__all__ = [
    "BackupError",
    "BackupStore",
    "ConfigBackup",
    "parse_backup_timestamp",
]
