"""SSH host key material for the proxy container."""
from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PublicKeyTypes

from .errors import OversshError

PRIVATE_KEY_MODE = 0o600
PUBLIC_KEY_MODE = 0o644


class HostKeyError(OversshError):
    """Raised when the proxy host key cannot be written or secured."""

    default_remediation = (
        "Manual intervention required: check permissions on the OverSSH working "
        "directory and remove any unreadable ssh_host_rsa_key before re-running install."
    )


@dataclass(frozen=True, slots=True)
class HostKeyResult:
    """Outcome of :meth:`HostKeyManager.ensure`."""

    private_key: Path
    public_key: Path
    generated: bool


@dataclass(slots=True)
class HostKeyManager:
    """Generate the proxy's RSA host key once and keep its permissions tight."""

    directory: Path
    bits: int = 4096
    name: str = "ssh_host_rsa_key"

    @property
    def private_key_path(self) -> Path:
        """Return the private key location."""
        return self.directory / self.name

    @property
    def public_key_path(self) -> Path:
        """Return the public key location."""
        return self.directory / f"{self.name}.pub"

    def exists(self) -> bool:
        """Return ``True`` when a private key is already present."""
        return self.private_key_path.exists()

    def ensure(self) -> HostKeyResult:
        """Generate the key pair when missing, then re-apply file modes."""
        generated = False
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if not self.exists():
                self._generate()
                generated = True
            elif not self.public_key_path.exists():
                self._write_public_from_private()
            os.chmod(self.private_key_path, PRIVATE_KEY_MODE)
            os.chmod(self.public_key_path, PUBLIC_KEY_MODE)
        except OSError as exc:
            raise HostKeyError(f"Failed to prepare host key in {self.directory}: {exc}") from exc
        return HostKeyResult(
            private_key=self.private_key_path,
            public_key=self.public_key_path,
            generated=generated,
        )

    # ------------------------------------------------------------------
    def _generate(self) -> None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.bits)
        private_bytes = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        _write_private(self.private_key_path, private_bytes)
        self._write_public(key.public_key())

    def _write_public_from_private(self) -> None:
        try:
            key = serialization.load_ssh_private_key(
                self.private_key_path.read_bytes(),
                password=None,
            )
        except ValueError as exc:
            raise HostKeyError(
                f"Cannot derive public key from {self.private_key_path}: {exc}"
            ) from exc
        self._write_public(key.public_key())

    def _write_public(self, public_key: PublicKeyTypes) -> None:
        public_bytes = public_key.public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
        comment = f" root@{socket.gethostname()}".encode()
        self.public_key_path.write_bytes(public_bytes + comment + b"\n")


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, PRIVATE_KEY_MODE)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


__all__ = ["HostKeyError", "HostKeyManager", "HostKeyResult"]
