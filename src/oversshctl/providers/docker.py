"""Docker provider for the proxy's compose stack."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import OversshError


class ContainerError(OversshError):
    """Raised when docker or docker compose commands fail."""

    default_remediation = (
        "Manual intervention required: check `docker info` and the compose stack in "
        "the OverSSH working directory, then re-run install."
    )


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """A single row of ``docker ps -a`` output."""

    id: str
    name: str
    image: str
    status: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"id": self.id, "name": self.name, "image": self.image, "status": self.status}


@dataclass(frozen=True, slots=True)
class ImageInfo:
    """A single row of ``docker images`` output."""

    id: str
    repository: str
    tag: str

    @property
    def reference(self) -> str:
        """Return ``repository:tag``."""
        return f"{self.repository}:{self.tag}"

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"id": self.id, "repository": self.repository, "tag": self.tag}


@dataclass(slots=True)
class DockerProvider:
    """Run docker compose against the proxy stack and clean up leftovers."""

    docker_bin: str = "docker"

    def executable(self) -> str | None:
        """Return the resolved docker binary, or ``None`` when it is missing."""
        return shutil.which(self.docker_bin)

    def available(self) -> bool:
        """Return ``True`` when the docker CLI is installed."""
        return self.executable() is not None

    def compose_command(self, compose_file: Path | str, *args: str) -> list[str]:
        """Return the full ``docker compose -f <file> ...`` argument list."""
        binary = self.executable() or "/usr/bin/docker"
        return [binary, "compose", "-f", str(compose_file), *args]

    def pull(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Pull every image referenced by *compose_file*."""
        return self._run_docker(
            self.compose_command(compose_file.name, "pull"),
            cwd=compose_file.parent,
        )

    def up(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Start the stack detached."""
        return self._run_docker(
            self.compose_command(compose_file.name, "up", "-d"),
            cwd=compose_file.parent,
        )

    def down(
        self,
        compose_file: Path,
        *,
        remove_images: bool = False,
        remove_volumes: bool = False,
        remove_orphans: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Stop and remove the stack, optionally with its images and volumes."""
        args = ["down"]
        if remove_images:
            args.extend(["--rmi", "all"])
        if remove_volumes:
            args.append("--volumes")
        if remove_orphans:
            args.append("--remove-orphans")
        return self._run_docker(
            self.compose_command(compose_file.name, *args),
            cwd=compose_file.parent,
        )

    def force_remove_containers(self, name_pattern: str) -> list[str]:
        """Force-remove containers whose name matches *name_pattern*."""
        ids = self._list_ids(
            ["ps", "-a", "--filter", f"name={name_pattern}", "--format", "{{.ID}}"]
        )
        if ids:
            self._run_docker([self._binary(), "rm", "-f", *ids])
        return ids

    def force_remove_images(self, reference: str) -> list[str]:
        """Force-remove images matching the *reference* filter."""
        ids = self._list_ids(
            ["images", "--filter", f"reference={reference}", "--format", "{{.ID}}"]
        )
        unique = list(dict.fromkeys(ids))
        if unique:
            self._run_docker([self._binary(), "rmi", "-f", *unique])
        return unique

    def remove_volumes(self, name_pattern: str) -> list[str]:
        """Remove volumes whose name matches *name_pattern*."""
        names = self._list_ids(
            ["volume", "ls", "--filter", f"name={name_pattern}", "--format", "{{.Name}}"]
        )
        if names:
            self._run_docker([self._binary(), "volume", "rm", *names])
        return names

    def list_containers(self) -> list[ContainerInfo]:
        """Return every container known to the engine, running or not."""
        result = self._run_docker(
            [
                self._binary(),
                "ps",
                "-a",
                "--format",
                "{{.ID}}\t{{.Names}}\t{{.Image}}\t{{.Status}}",
            ]
        )
        containers: list[ContainerInfo] = []
        for line in (result.stdout or "").splitlines():
            parts = line.split("\t")
            if len(parts) != 4:
                continue
            containers.append(
                ContainerInfo(id=parts[0], name=parts[1], image=parts[2], status=parts[3])
            )
        return containers

    def list_images(self) -> list[ImageInfo]:
        """Return every image stored by the engine."""
        result = self._run_docker(
            [
                self._binary(),
                "images",
                "--format",
                "{{.ID}}\t{{.Repository}}\t{{.Tag}}",
            ]
        )
        images: list[ImageInfo] = []
        for line in (result.stdout or "").splitlines():
            parts = line.split("\t")
            if len(parts) != 3:
                continue
            images.append(ImageInfo(id=parts[0], repository=parts[1], tag=parts[2]))
        return images

    # ------------------------------------------------------------------
    def _binary(self) -> str:
        binary = self.executable()
        if binary is None:
            raise ContainerError(f"{self.docker_bin} not found on PATH.")
        return binary

    def _list_ids(self, args: Sequence[str]) -> list[str]:
        result = self._run_docker([self._binary(), *args])
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def _run_docker(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError as exc:
            raise ContainerError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            joined = " ".join(args[1:])
            raise ContainerError(f"docker {joined} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["ContainerError", "ContainerInfo", "DockerProvider", "ImageInfo"]
