"""Installer for Docker Engine and the compose plugin on apt-based hosts."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

from ..errors import OversshError

DOCKER_APT_BASE = "https://download.docker.com/linux/ubuntu"
PREREQUISITE_PACKAGES = ("ca-certificates", "curl", "gnupg", "lsb-release")
RUNTIME_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-compose-plugin",
)


class RuntimeInstallError(OversshError):
    """Raised when the container runtime cannot be installed."""

    default_remediation = (
        "Install Docker Engine with the compose plugin manually, then re-run install."
    )


@dataclass(frozen=True, slots=True)
class RuntimeInstallResult:
    """Outcome of :meth:`DockerRuntimeInstaller.ensure_installed`."""

    installed: bool
    docker_path: str | None
    packages: tuple[str, ...] = ()


class DockerRuntimeInstaller:
    """Install Docker from Docker's apt repository when it is missing."""

    def __init__(
        self,
        *,
        docker_bin: str = "docker",
        apt_get_bin: str = "apt-get",
        keyrings_dir: Path = Path("/etc/apt/keyrings"),
        sources_dir: Path = Path("/etc/apt/sources.list.d"),
        repository_base: str = DOCKER_APT_BASE,
        timeout: float = 30.0,
    ) -> None:
        """Initialise the installer with binary names and apt locations."""
        self.docker_bin = docker_bin
        self.apt_get_bin = apt_get_bin
        self.keyrings_dir = keyrings_dir
        self.sources_dir = sources_dir
        self.repository_base = repository_base.rstrip("/")
        self.timeout = timeout

    @property
    def keyring_path(self) -> Path:
        """Return where the dearmored Docker GPG key is written."""
        return self.keyrings_dir / "docker.gpg"

    @property
    def source_list_path(self) -> Path:
        """Return the apt source list file for the Docker repository."""
        return self.sources_dir / "docker.list"

    def is_installed(self) -> bool:
        """Return ``True`` when the docker CLI is already on PATH."""
        return shutil.which(self.docker_bin) is not None

    def ensure_installed(self) -> RuntimeInstallResult:
        """Install Docker Engine unless it is already present."""
        if self.is_installed():
            return RuntimeInstallResult(installed=False, docker_path=shutil.which(self.docker_bin))

        env = {"DEBIAN_FRONTEND": "noninteractive"}
        self._run([self.apt_get_bin, "update"], env=env)
        self._run([self.apt_get_bin, "install", "-y", *PREREQUISITE_PACKAGES], env=env)

        self.keyrings_dir.mkdir(parents=True, exist_ok=True)
        armored = self._download_key(f"{self.repository_base}/gpg")
        self._run(
            ["gpg", "--batch", "--yes", "--dearmor", "-o", str(self.keyring_path)],
            input_bytes=armored,
        )
        self.keyring_path.chmod(0o644)

        architecture = self._capture(["dpkg", "--print-architecture"])
        codename = self._capture(["lsb_release", "-cs"])
        self.sources_dir.mkdir(parents=True, exist_ok=True)
        self.source_list_path.write_text(
            f"deb [arch={architecture} signed-by={self.keyring_path}] "
            f"{self.repository_base} {codename} stable\n",
            encoding="utf-8",
        )

        self._run([self.apt_get_bin, "update"], env=env)
        self._run([self.apt_get_bin, "install", "-y", *RUNTIME_PACKAGES], env=env)

        if not self.is_installed():
            raise RuntimeInstallError(
                "Docker packages installed but the docker CLI is still not on PATH."
            )
        return RuntimeInstallResult(
            installed=True,
            docker_path=shutil.which(self.docker_bin),
            packages=RUNTIME_PACKAGES,
        )

    # ------------------------------------------------------------------
    def _download_key(self, url: str) -> bytes:
        try:
            response = httpx.get(url, timeout=self.timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RuntimeInstallError(f"Failed to download Docker GPG key from {url}: {exc}") from exc
        return response.content

    def _capture(self, cmd: Sequence[str]) -> str:
        result = self._run(cmd)
        value = result.stdout.decode("utf-8", errors="replace").strip()
        if not value:
            raise RuntimeInstallError(f"{' '.join(cmd)} produced no output.")
        return value

    def _run(
        self,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        input_bytes: bytes | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        env_vars = os.environ.copy()
        if env:
            env_vars.update(env)
        try:
            result = self._run_install_command(cmd, env=env_vars, input_bytes=input_bytes)
        except FileNotFoundError as exc:
            raise RuntimeInstallError(f"{cmd[0]} not found: {exc}") from exc
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip() if result.stderr else ""
            raise RuntimeInstallError(
                f"{' '.join(cmd)} failed (exit {result.returncode}): {stderr or 'no output'}"
            )
        return result

    def _run_install_command(
        self,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str],
        input_bytes: bytes | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        """Execute an installation command (isolated for testing)."""
        return subprocess.run(  # noqa: S603,S607
            list(cmd),
            check=False,
            capture_output=True,
            input=input_bytes,
            env=dict(env),
        )


__all__ = [
    "DockerRuntimeInstaller",
    "RuntimeInstallError",
    "RuntimeInstallResult",
]
