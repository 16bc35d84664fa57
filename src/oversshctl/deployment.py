"""Per-invocation deployment input: the validated domain and working directory."""
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .errors import UsageError

_LABEL = r"[a-zA-Z0-9](?:[a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?"
DOMAIN_RE = re.compile(rf"^{_LABEL}(?:\.{_LABEL})*$")
MAX_DOMAIN_LENGTH = 253
ENV_FILE_NAME = ".env"


def validate_domain(value: str | None) -> str:
    """Return *value* when it is a well-formed DNS name, else raise :class:`UsageError`."""
    if value is None or not value.strip():
        raise UsageError("Domain is required.")
    if len(value) > MAX_DOMAIN_LENGTH or not DOMAIN_RE.fullmatch(value):
        raise UsageError(f"Invalid domain format: {value}")
    return value


@dataclass(frozen=True, slots=True)
class DeploymentContext:
    """Validated inputs shared by every install step."""

    domain: str
    working_dir: Path

    @classmethod
    def create(cls, domain: str | None, working_dir: Path) -> DeploymentContext:
        """Validate *domain* and build a context rooted at *working_dir*."""
        return cls(domain=validate_domain(domain), working_dir=Path(working_dir))

    @property
    def url(self) -> str:
        """Return the public URL served by the reverse proxy."""
        return f"https://{self.domain}"

    @property
    def env_path(self) -> Path:
        """Return the location of the environment file."""
        return self.working_dir / ENV_FILE_NAME

    def environment(self) -> dict[str, str]:
        """Return the values consumed by the container stack."""
        return {"DOMAIN": self.domain, "URL": self.url}


def write_environment_file(context: DeploymentContext) -> bool:
    """Write ``DOMAIN``/``URL`` to the environment file; return ``True`` on change."""
    path = context.env_path
    content = "".join(f"{key}={value}\n" for key, value in context.environment().items())
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = [
    "DOMAIN_RE",
    "DeploymentContext",
    "validate_domain",
    "write_environment_file",
]
