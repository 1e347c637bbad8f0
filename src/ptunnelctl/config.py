"""Configuration loader for ptunnelctl.

This module centralises the logic for reading configuration values from
multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/ptunnelctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PTUNNELCTL_``.
4. ``POWER_TUNNEL_GATEWAY`` for the remote gateway address.
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PTUNNELCTL_HEALTH__ATTEMPTS=5
    export PTUNNELCTL_REGISTRATION__TIMEOUT=10

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import ipaddress
import os
import re
import socket
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load ptunnelctl configuration. Install with "
        "`pip install ptunnelctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PTUNNELCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
GATEWAY_ENV_VAR = "POWER_TUNNEL_GATEWAY"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

_DOTTED_QUAD = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$")
_HOST_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


def is_valid_host(value: str) -> bool:
    """Return ``True`` when *value* is an IP literal or an RFC 1123 host name."""
    candidate = value.strip()
    if not candidate:
        return False
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        pass
    else:
        return True
    if len(candidate) > 253 or _DOTTED_QUAD.match(candidate):
        return False
    labels = candidate.rstrip(".").split(".")
    return all(_HOST_LABEL.match(label) for label in labels)


@dataclass(frozen=True)
class RegistrationConfig:
    """Control-plane registration settings."""

    url: str
    timeout: float = 30.0
    verify_tls: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"url": self.url, "timeout": self.timeout, "verify_tls": self.verify_tls}


@dataclass(frozen=True)
class HealthConfig:
    """Bounded, fixed-interval health polling policy."""

    attempts: int = 3
    interval: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "interval": self.interval}


@dataclass(frozen=True)
class SSHConfig:
    """Tunnel client invocation settings."""

    user: str = "power_tunnel"
    ssh_bin: str = "/usr/bin/ssh"
    keyscan_bin: str = "/usr/bin/ssh-keyscan"
    server_alive_interval: int = 60
    server_alive_count_max: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "ssh_bin": self.ssh_bin,
            "keyscan_bin": self.keyscan_bin,
            "server_alive_interval": self.server_alive_interval,
            "server_alive_count_max": self.server_alive_count_max,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    restart_sec: int = 60

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
            "restart_sec": self.restart_sec,
        }


@dataclass(frozen=True)
class PackagesConfig:
    """Package manager settings used when required binaries are missing."""

    auto_install: bool = True
    manager_bin: str = "apt-get"
    names: tuple[str, ...] = ("openssh-client",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "auto_install": self.auto_install,
            "manager_bin": self.manager_bin,
            "names": list(self.names),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ptunnelctl."""

    config_file: Path
    config_dir: Path
    service_name: str
    gateway: str
    hostname: str
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    require_root: bool
    registration: RegistrationConfig
    health: HealthConfig
    ssh: SSHConfig
    systemd: SystemdConfig
    packages: PackagesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "config_dir": str(self.config_dir),
            "service_name": self.service_name,
            "gateway": self.gateway,
            "hostname": self.hostname,
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "require_root": self.require_root,
            "registration": self.registration.to_dict(),
            "health": self.health.to_dict(),
            "ssh": self.ssh.to_dict(),
            "systemd": self.systemd.to_dict(),
            "packages": self.packages.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/ptunnelctl/config.yml",
    "config_dir": "/etc/power-tunnel",
    "service_name": "power-tunnel",
    "gateway": "44.233.132.94",
    "hostname": None,  # resolved from socket.gethostname() when absent
    "logs_dir": "/var/log/ptunnelctl",
    "runtime_dir": "/run/ptunnelctl",
    "templates_dir": "/etc/ptunnelctl/templates",
    "lock_timeout": 30.0,
    "require_root": True,
    "registration": {
        "url": None,  # derived from gateway + path when absent
        "path": "/register-tunnel",
        "timeout": 30.0,
        "verify_tls": True,
    },
    "health": {
        "attempts": 3,
        "interval": 5.0,
    },
    "ssh": {
        "user": "power_tunnel",
        "ssh_bin": "/usr/bin/ssh",
        "keyscan_bin": "/usr/bin/ssh-keyscan",
        "server_alive_interval": 60,
        "server_alive_count_max": 3,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
        "restart_sec": 60,
    },
    "packages": {
        "auto_install": True,
        "manager_bin": "apt-get",
        "names": ["openssh-client"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "registration": {"url", "path", "timeout", "verify_tls"},
    "health": {"attempts", "interval"},
    "ssh": {"user", "ssh_bin", "keyscan_bin", "server_alive_interval", "server_alive_count_max"},
    "systemd": {"unit_dir", "systemctl_bin", "journalctl_bin", "restart_sec"},
    "packages": {"auto_install", "manager_bin", "names"},
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

    gateway_env = resolved_env.get(GATEWAY_ENV_VAR, "").strip()
    if gateway_env:
        merged["gateway"] = gateway_env

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

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    service_name = raw.get("service_name")
    if not isinstance(service_name, str) or not service_name.strip():
        raise ConfigError("service_name must be a non-empty string.")
    if "/" in service_name or service_name.endswith(".service"):
        raise ConfigError("service_name must be a bare unit name without '/' or '.service'.")

    gateway = raw.get("gateway")
    if not isinstance(gateway, str) or not gateway.strip():
        raise ConfigError("gateway must be a non-empty string.")
    if not is_valid_host(gateway):
        raise ConfigError(f"gateway must be an IP address or host name, got {gateway!r}.")

    health_map = _as_dict(raw.get("health"), "health")
    attempts = _expect_int(health_map.get("attempts"), "health.attempts", default=3)
    if attempts < 1:
        raise ConfigError("health.attempts must be at least 1.")
    interval = _expect_float(health_map.get("interval"), "health.interval", default=5.0)
    if interval < 0:
        raise ConfigError("health.interval must be non-negative.")

    registration_map = _as_dict(raw.get("registration"), "registration")
    _expect_positive_float(
        registration_map.get("timeout"),
        "registration.timeout",
        default=30.0,
    )

    packages_map = _as_dict(raw.get("packages"), "packages")
    names = packages_map.get("names")
    if names is not None:
        for index, item in enumerate(_as_sequence(names, "packages.names")):
            if not isinstance(item, str) or not item.strip():
                raise ConfigError(f"packages.names[{index}] must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    gateway = _expect_str(raw.get("gateway"), "gateway").strip()

    hostname_value = raw.get("hostname")
    if isinstance(hostname_value, str) and hostname_value.strip():
        hostname = hostname_value.strip()
    else:
        hostname = socket.gethostname()

    registration_map = _as_dict(raw.get("registration"), "registration")
    url_value = registration_map.get("url")
    if isinstance(url_value, str) and url_value.strip():
        url = url_value.strip()
    else:
        path = str(registration_map.get("path") or "/register-tunnel")
        if not path.startswith("/"):
            path = f"/{path}"
        url = f"http://{gateway}{path}"
    registration = RegistrationConfig(
        url=url,
        timeout=_expect_positive_float(
            registration_map.get("timeout"),
            "registration.timeout",
            default=30.0,
        ),
        verify_tls=_expect_bool(
            registration_map.get("verify_tls"),
            "registration.verify_tls",
            default=True,
        ),
    )

    health_map = _as_dict(raw.get("health"), "health")
    health = HealthConfig(
        attempts=_expect_int(health_map.get("attempts"), "health.attempts", default=3),
        interval=_expect_float(health_map.get("interval"), "health.interval", default=5.0),
    )

    ssh_map = _as_dict(raw.get("ssh"), "ssh")
    ssh = SSHConfig(
        user=str(ssh_map.get("user", "power_tunnel")),
        ssh_bin=str(ssh_map.get("ssh_bin", "/usr/bin/ssh")),
        keyscan_bin=str(ssh_map.get("keyscan_bin", "/usr/bin/ssh-keyscan")),
        server_alive_interval=_expect_int(
            ssh_map.get("server_alive_interval"),
            "ssh.server_alive_interval",
            default=60,
        ),
        server_alive_count_max=_expect_int(
            ssh_map.get("server_alive_count_max"),
            "ssh.server_alive_count_max",
            default=3,
        ),
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_map.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_map.get("journalctl_bin", "journalctl")),
        restart_sec=_expect_int(systemd_map.get("restart_sec"), "systemd.restart_sec", default=60),
    )

    packages_map = _as_dict(raw.get("packages"), "packages")
    names_raw = packages_map.get("names")
    names = (
        tuple(str(item).strip() for item in _as_sequence(names_raw, "packages.names"))
        if names_raw is not None
        else ("openssh-client",)
    )
    packages = PackagesConfig(
        auto_install=_expect_bool(
            packages_map.get("auto_install"),
            "packages.auto_install",
            default=True,
        ),
        manager_bin=str(packages_map.get("manager_bin", "apt-get")),
        names=names,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        config_dir=_to_path(raw.get("config_dir")),
        service_name=str(raw.get("service_name")).strip(),
        gateway=gateway,
        hostname=hostname,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        require_root=_expect_bool(raw.get("require_root"), "require_root", default=True),
        registration=registration,
        health=health,
        ssh=ssh,
        systemd=systemd,
        packages=packages,
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


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
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
    numeric = _expect_float(value, label, default=default)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
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
    "HealthConfig",
    "PackagesConfig",
    "RegistrationConfig",
    "SSHConfig",
    "SystemdConfig",
    "is_valid_host",
    "load_config",
]
