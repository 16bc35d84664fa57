"""Download the reverse-proxy config and compose spec for a deployment."""
from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .config import RemoteConfig
from .deployment import DeploymentContext
from .errors import RemoteFetchError

DOMAIN_PLACEHOLDER = "{$DOMAIN:localhost}"


@dataclass(frozen=True, slots=True)
class FetchedArtifact:
    """A remote file written into the working directory."""

    name: str
    url: str
    path: Path
    changed: bool


@dataclass(slots=True)
class ArtifactFetcher:
    """Fetch deployment artifacts; any failure is a :class:`RemoteFetchError`."""

    remote: RemoteConfig
    transport: httpx.BaseTransport | None = field(default=None)

    def url_for(self, name: str) -> str:
        """Return the download URL for artifact *name*."""
        return f"{self.remote.base_url.rstrip('/')}/{name}"

    def artifact_names(self) -> tuple[str, str]:
        """Return the (proxy config, compose spec) names, in fetch order."""
        return (self.remote.caddyfile, self.remote.compose_file)

    def fetch_all(self, context: DeploymentContext) -> list[FetchedArtifact]:
        """Fetch the proxy config (domain substituted) then the compose spec."""
        caddyfile, compose_file = self.artifact_names()
        return [
            self.fetch(caddyfile, context.working_dir, domain=context.domain),
            self.fetch(compose_file, context.working_dir),
        ]

    def fetch(
        self,
        name: str,
        working_dir: Path,
        *,
        domain: str | None = None,
    ) -> FetchedArtifact:
        """Download *name* into *working_dir*, substituting *domain* when given."""
        url = self.url_for(name)
        text = self._download(url)
        if domain is not None:
            text = text.replace(DOMAIN_PLACEHOLDER, domain)
        destination = working_dir / name
        changed = _write_atomic(destination, text)
        return FetchedArtifact(name=name, url=url, path=destination, changed=changed)

    # ------------------------------------------------------------------
    def _download(self, url: str) -> str:
        try:
            with httpx.Client(
                timeout=self.remote.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = client.get(url)
        except httpx.RequestError as exc:
            raise RemoteFetchError(f"Failed to download {url}: {exc}") from exc
        if response.status_code >= 400:
            raise RemoteFetchError(
                f"Failed to download {url}: HTTP {response.status_code}",
            )
        if not response.text.strip():
            raise RemoteFetchError(f"Downloaded {url} is empty.")
        return response.text


def _write_atomic(destination: Path, text: str) -> bool:
    if destination.exists() and destination.read_text(encoding="utf-8") == text:
        return False
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
        )
    except OSError as exc:
        raise RemoteFetchError(f"Cannot write {destination}: {exc}") from exc
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["ArtifactFetcher", "DOMAIN_PLACEHOLDER", "FetchedArtifact"]
