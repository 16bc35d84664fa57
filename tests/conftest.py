"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from oversshctl.config import AppConfig, load_config
from oversshctl.providers.sshd import SshdError

DEFAULT_SSHD_CONFIG = """\
Include /etc/ssh/sshd_config.d/*.conf

#Port 22
#AddressFamily any
#ListenAddress 0.0.0.0

PermitRootLogin prohibit-password
PasswordAuthentication no
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeValidator:
    """Stand-in for :class:`SshdProvider` that records validated files."""

    def __init__(self, reject: Callable[[str], bool] | None = None) -> None:
        """Reject any configuration text for which *reject* returns ``True``."""
        self.reject = reject
        self.calls: list[Path] = []

    def test_config(self, config_path: Path) -> None:
        """Validate *config_path*, raising :class:`SshdError` when rejected."""
        self.calls.append(config_path)
        text = config_path.read_text(encoding="utf-8")
        if self.reject is not None and self.reject(text):
            raise SshdError(f"{config_path}: line 3: Bad configuration option")


@pytest.fixture
def validator() -> FakeValidator:
    """Return a validator that accepts every configuration."""
    return FakeValidator()


@pytest.fixture
def make_validator() -> type[FakeValidator]:
    """Return the validator class so tests can configure rejections."""
    return FakeValidator


@pytest.fixture
def sshd_config(tmp_path: Path) -> Path:
    """Write a stock Debian-style sshd_config and return its path."""
    ssh_dir = tmp_path / "ssh"
    ssh_dir.mkdir()
    path = ssh_dir / "sshd_config"
    path.write_text(DEFAULT_SSHD_CONFIG, encoding="utf-8")
    path.chmod(0o644)
    return path


@pytest.fixture
def app_config(tmp_path: Path, sshd_config: Path) -> AppConfig:
    """Return an :class:`AppConfig` whose host paths all live under *tmp_path*."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "working_dir": str(tmp_path / "overssh"),
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(tmp_path / "templates"),
            "host_key_bits": 2048,
            "sshd": {"config_path": str(sshd_config)},
            "systemd": {"unit_dir": str(tmp_path / "systemd")},
            "remote": {"base_url": "https://artifacts.test/overssh"},
        },
    )
