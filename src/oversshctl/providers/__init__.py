"""Provider interfaces for oversshctl."""
from __future__ import annotations

from .docker import ContainerError, ContainerInfo, DockerProvider, ImageInfo
from .runtime_installer import DockerRuntimeInstaller, RuntimeInstallError, RuntimeInstallResult
from .sshd import SshdError, SshdProvider
from .systemd import ServiceUnit, SystemdError, SystemdProvider
from .ufw import FirewallError, UfwProvider

__all__ = [
    "ContainerError",
    "ContainerInfo",
    "DockerProvider",
    "DockerRuntimeInstaller",
    "FirewallError",
    "ImageInfo",
    "RuntimeInstallError",
    "RuntimeInstallResult",
    "ServiceUnit",
    "SshdError",
    "SshdProvider",
    "SystemdError",
    "SystemdProvider",
    "UfwProvider",
]
