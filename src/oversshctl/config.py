"""Configuration loader for oversshctl.

Configuration values are merged from the following sources, lowest
precedence first:

1. Built-in defaults.
2. ``/etc/oversshctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``OVERSSHCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export OVERSSHCTL_SSHD__SERVICE=sshd
    export OVERSSHCTL_RESTART__UNINSTALL_GRACE_SECONDS=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load oversshctl configuration. Install with "
        "`pip install oversshctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "OVERSSHCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SshdConfig:
    """SSH daemon locations and the port pair being swapped."""

    config_path: Path = Path("/etc/ssh/sshd_config")
    sshd_bin: str = "sshd"
    service: str = "ssh"
    default_port: int = 22
    alternate_port: int = 2222

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_path": str(self.config_path),
            "sshd_bin": self.sshd_bin,
            "service": self.service,
            "default_port": self.default_port,
            "alternate_port": self.alternate_port,
        }


@dataclass(frozen=True)
class FirewallConfig:
    """Packet filter integration values."""

    ufw_bin: str = "ufw"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"ufw_bin": self.ufw_bin}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    unit_name: str = "overssh"
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "unit_name": self.unit_name,
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Container runtime values and the cleanup patterns used on uninstall."""

    docker_bin: str = "docker"
    compose_file: str = "docker-compose.prod.yml"
    container_patterns: tuple[str, ...] = ("overssh", "caddy")
    image_references: tuple[str, ...] = ("*overssh*", "caddy*")
    volume_patterns: tuple[str, ...] = ("caddy",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "compose_file": self.compose_file,
            "container_patterns": list(self.container_patterns),
            "image_references": list(self.image_references),
            "volume_patterns": list(self.volume_patterns),
        }


@dataclass(frozen=True)
class RemoteConfig:
    """Where the reverse-proxy config and compose spec are downloaded from."""

    base_url: str = "https://raw.githubusercontent.com/alexgaudon/overs.sh/main"
    caddyfile: str = "Caddyfile"
    compose_file: str = "docker-compose.prod.yml"
    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base_url": self.base_url,
            "caddyfile": self.caddyfile,
            "compose_file": self.compose_file,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class RestartConfig:
    """Grace delays applied before the SSH daemon is restarted."""

    install_grace_seconds: float = 2.0
    uninstall_grace_seconds: float = 3.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "install_grace_seconds": self.install_grace_seconds,
            "uninstall_grace_seconds": self.uninstall_grace_seconds,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for oversshctl."""

    config_file: Path
    working_dir: Path
    logs_dir: Path
    templates_dir: Path
    host_key_bits: int
    sshd: SshdConfig
    firewall: FirewallConfig
    systemd: SystemdConfig
    docker: DockerConfig
    remote: RemoteConfig
    restart: RestartConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "working_dir": str(self.working_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "host_key_bits": self.host_key_bits,
            "sshd": self.sshd.to_dict(),
            "firewall": self.firewall.to_dict(),
            "systemd": self.systemd.to_dict(),
            "docker": self.docker.to_dict(),
            "remote": self.remote.to_dict(),
            "restart": self.restart.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/oversshctl/config.yml",
    "working_dir": "/root/overssh",
    "logs_dir": "/var/log/oversshctl",
    "templates_dir": "/etc/oversshctl/templates",
    "host_key_bits": 4096,
    "sshd": {
        "config_path": "/etc/ssh/sshd_config",
        "sshd_bin": "sshd",
        "service": "ssh",
        "default_port": 22,
        "alternate_port": 2222,
    },
    "firewall": {
        "ufw_bin": "ufw",
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "unit_name": "overssh",
        "systemctl_bin": "systemctl",
    },
    "docker": {
        "docker_bin": "docker",
        "compose_file": "docker-compose.prod.yml",
        "container_patterns": ["overssh", "caddy"],
        "image_references": ["*overssh*", "caddy*"],
        "volume_patterns": ["caddy"],
    },
    "remote": {
        "base_url": "https://raw.githubusercontent.com/alexgaudon/overs.sh/main",
        "caddyfile": "Caddyfile",
        "compose_file": "docker-compose.prod.yml",
        "timeout": 30.0,
    },
    "restart": {
        "install_grace_seconds": 2.0,
        "uninstall_grace_seconds": 3.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    name: set(_value.keys())
    for name, _value in DEFAULTS.items()
    if isinstance(_value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    sshd = _as_dict(raw.get("sshd"), "sshd")
    default_port = _expect_port(sshd.get("default_port"), "sshd.default_port", default=22)
    alternate_port = _expect_port(
        sshd.get("alternate_port"), "sshd.alternate_port", default=2222
    )
    if default_port == alternate_port:
        raise ConfigError("sshd.default_port and sshd.alternate_port must differ.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    sshd_mapping = _as_dict(raw.get("sshd"), "sshd")
    sshd = SshdConfig(
        config_path=_to_path(sshd_mapping.get("config_path", "/etc/ssh/sshd_config")),
        sshd_bin=str(sshd_mapping.get("sshd_bin", "sshd")),
        service=str(sshd_mapping.get("service", "ssh")),
        default_port=_expect_port(
            sshd_mapping.get("default_port"), "sshd.default_port", default=22
        ),
        alternate_port=_expect_port(
            sshd_mapping.get("alternate_port"), "sshd.alternate_port", default=2222
        ),
    )

    firewall_mapping = _as_dict(raw.get("firewall"), "firewall")
    firewall = FirewallConfig(ufw_bin=str(firewall_mapping.get("ufw_bin", "ufw")))

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        unit_name=str(systemd_mapping.get("unit_name", "overssh")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        compose_file=str(docker_mapping.get("compose_file", "docker-compose.prod.yml")),
        container_patterns=_as_str_tuple(
            docker_mapping.get("container_patterns"),
            "docker.container_patterns",
            default=DockerConfig.container_patterns,
        ),
        image_references=_as_str_tuple(
            docker_mapping.get("image_references"),
            "docker.image_references",
            default=DockerConfig.image_references,
        ),
        volume_patterns=_as_str_tuple(
            docker_mapping.get("volume_patterns"),
            "docker.volume_patterns",
            default=DockerConfig.volume_patterns,
        ),
    )

    remote_mapping = _as_dict(raw.get("remote"), "remote")
    base_url = str(remote_mapping.get("base_url", RemoteConfig.base_url)).rstrip("/")
    if not base_url.startswith(("https://", "http://")):
        raise ConfigError(f"remote.base_url must be an http(s) URL. Got {base_url!r}.")
    remote = RemoteConfig(
        base_url=base_url,
        caddyfile=str(remote_mapping.get("caddyfile", "Caddyfile")),
        compose_file=str(remote_mapping.get("compose_file", "docker-compose.prod.yml")),
        timeout=_expect_positive_float(
            remote_mapping.get("timeout"), "remote.timeout", default=30.0
        ),
    )

    restart_mapping = _as_dict(raw.get("restart"), "restart")
    restart = RestartConfig(
        install_grace_seconds=_expect_non_negative_float(
            restart_mapping.get("install_grace_seconds"),
            "restart.install_grace_seconds",
            default=2.0,
        ),
        uninstall_grace_seconds=_expect_non_negative_float(
            restart_mapping.get("uninstall_grace_seconds"),
            "restart.uninstall_grace_seconds",
            default=3.0,
        ),
    )

    host_key_bits = _expect_int(raw.get("host_key_bits"), "host_key_bits", default=4096)
    if host_key_bits < 2048:
        raise ConfigError("host_key_bits must be at least 2048.")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        working_dir=_to_path(raw.get("working_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        host_key_bits=host_key_bits,
        sshd=sshd,
        firewall=firewall,
        systemd=systemd,
        docker=docker,
        remote=remote,
        restart=restart,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _as_str_tuple(
    value: object | None,
    label: str,
    *,
    default: tuple[str, ...],
) -> tuple[str, ...]:
    if value is None:
        return default
    items: list[str] = []
    for index, item in enumerate(_as_sequence(value, label)):
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{label}[{index}] must be a non-empty string.")
        items.append(item.strip())
    return tuple(items)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if port < 1 or port > 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero or greater. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DockerConfig",
    "FirewallConfig",
    "RemoteConfig",
    "RestartConfig",
    "SshdConfig",
    "SystemdConfig",
    "load_config",
]
