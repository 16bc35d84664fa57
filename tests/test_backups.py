"""Tests for timestamped sshd_config snapshots."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from oversshctl.backups import BackupError, BackupStore, parse_backup_timestamp


class Clock:
    """Deterministic clock returning queued moments."""

    def __init__(self, *moments: datetime) -> None:
        """Queue *moments*; the last one repeats once the queue is drained."""
        self.moments = list(moments)

    def __call__(self) -> datetime:
        """Return the next moment."""
        if len(self.moments) > 1:
            return self.moments.pop(0)
        return self.moments[0]


def test_snapshot_copies_file_with_timestamp(sshd_config: Path) -> None:
    """Snapshots land beside the source using the legacy naming scheme."""
    store = BackupStore(clock=Clock(datetime(2024, 5, 1, 12, 30, 45)))

    backup = store.snapshot(sshd_config)

    assert backup is not None
    assert backup.path.name == "sshd_config.backup.20240501_123045"
    assert backup.read_text() == sshd_config.read_text()
    assert backup.timestamp == datetime(2024, 5, 1, 12, 30, 45)


def test_snapshot_skips_missing_source(tmp_path: Path) -> None:
    """A missing source is a no-op, not an error."""
    store = BackupStore()

    assert store.snapshot(tmp_path / "sshd_config") is None
    assert list(tmp_path.iterdir()) == []


def test_snapshot_within_same_second_does_not_overwrite(sshd_config: Path) -> None:
    """Two snapshots in the same second keep both files."""
    store = BackupStore(clock=Clock(datetime(2024, 5, 1, 12, 30, 45)))

    first = store.snapshot(sshd_config)
    sshd_config.write_text("Port 2222\n")
    second = store.snapshot(sshd_config)

    assert first is not None and second is not None
    assert first.path != second.path
    assert second.path.name == "sshd_config.backup.20240501_123045_000001"
    assert first.read_text() != second.read_text()
    assert store.most_recent(sshd_config) == second


def test_list_backups_orders_by_timestamp_and_ignores_noise(sshd_config: Path) -> None:
    """Only well-formed backup names are listed, oldest first."""
    directory = sshd_config.parent
    (directory / "sshd_config.backup.20240102_000000").write_text("b")
    (directory / "sshd_config.backup.20231231_235959").write_text("a")
    (directory / "sshd_config.backup.not-a-date").write_text("x")
    (directory / "other.backup.20250101_000000").write_text("y")

    store = BackupStore()
    names = [backup.path.name for backup in store.list_backups(sshd_config)]

    assert names == [
        "sshd_config.backup.20231231_235959",
        "sshd_config.backup.20240102_000000",
    ]
    latest = store.most_recent(sshd_config)
    assert latest is not None
    assert latest.read_text() == "b"


def test_most_recent_returns_none_without_backups(sshd_config: Path) -> None:
    """No backups means no restore source."""
    assert BackupStore().most_recent(sshd_config) is None


def test_prune_keeps_only_most_recent(sshd_config: Path) -> None:
    """After N snapshots, pruning leaves exactly the newest one."""
    moments = [datetime(2024, 1, day, 8, 0, 0) for day in range(1, 6)]
    store = BackupStore(clock=Clock(*moments))
    for _ in moments:
        store.snapshot(sshd_config)

    removed = store.prune_all_but_most_recent(sshd_config)

    remaining = store.list_backups(sshd_config)
    assert len(removed) == 4
    assert [backup.path.name for backup in remaining] == [
        "sshd_config.backup.20240105_080000"
    ]


def test_prune_without_backups_is_noop(sshd_config: Path) -> None:
    """Pruning with zero or one backup removes nothing."""
    store = BackupStore(clock=Clock(datetime(2024, 1, 1)))
    assert store.prune_all_but_most_recent(sshd_config) == []
    store.snapshot(sshd_config)
    assert store.prune_all_but_most_recent(sshd_config) == []
    assert len(store.list_backups(sshd_config)) == 1


def test_snapshot_copy_failure_raises(
    sshd_config: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Copy errors are wrapped in :class:`BackupError`."""

    def fail_copy(*_args: object, **_kwargs: object) -> None:
        raise PermissionError("read-only file system")

    monkeypatch.setattr("oversshctl.backups.shutil.copy2", fail_copy)

    with pytest.raises(BackupError, match="read-only"):
        BackupStore().snapshot(sshd_config)


@pytest.mark.parametrize(
    ("suffix", "expected"),
    [
        ("20240501_123045", datetime(2024, 5, 1, 12, 30, 45)),
        ("20240501_123045_000042", datetime(2024, 5, 1, 12, 30, 45, 42)),
        ("20241301_000000", None),
        ("latest", None),
    ],
)
def test_parse_backup_timestamp(suffix: str, expected: datetime | None) -> None:
    """Both timestamp forms parse; anything else is ignored."""
    assert parse_backup_timestamp(suffix) == expected
