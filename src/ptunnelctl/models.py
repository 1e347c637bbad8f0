"""Data model for a provisioned reverse tunnel."""
from __future__ import annotations

import ipaddress
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .config import AppConfig, is_valid_host
from .errors import InvalidIP, InvalidPort, InvalidRegistrationResponse

_DOTTED_QUAD = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$")


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_ipv4(value: object) -> str:
    """Return *value* as a validated IPv4 dotted quad or raise :class:`InvalidIP`."""
    text = str(value).strip() if value is not None else ""
    if not _DOTTED_QUAD.match(text):
        raise InvalidIP(f"Invalid IP address format: {text!r}.")
    try:
        ipaddress.IPv4Address(text)
    except ValueError as exc:
        raise InvalidIP(f"Invalid IP address: {text!r} ({exc}).") from exc
    return text


def parse_port(value: object, *, label: str = "port") -> int:
    """Return *value* as an integer port in 1-65535 or raise :class:`InvalidPort`."""
    if isinstance(value, bool):
        raise InvalidPort(f"Invalid {label} number: {value!r}.")
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip() if value is not None else ""
        if not text.isascii() or not text.isdigit():
            raise InvalidPort(f"Invalid {label} number: {text!r}.")
        number = int(text)
    if number < 1 or number > 65535:
        raise InvalidPort(f"Invalid {label} number: {number} (expected 1-65535).")
    return number


@dataclass(frozen=True, slots=True)
class ForwardingTarget:
    """Local database endpoint the gateway reaches through the tunnel."""

    db_ip: str
    db_port: int

    @classmethod
    def parse(cls, db_ip: object, db_port: object) -> ForwardingTarget:
        """Validate raw values and build a target."""
        return cls(db_ip=parse_ipv4(db_ip), db_port=parse_port(db_port, label="database port"))

    def to_env(self) -> str:
        """Render the key-value form stored in ``database.conf``."""
        return f"DB_IP={self.db_ip}\nDB_PORT={self.db_port}\n"

    @classmethod
    def from_env(cls, text: str) -> ForwardingTarget:
        """Parse the ``database.conf`` key-value form."""
        values: dict[str, str] = {}
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or "=" not in stripped:
                continue
            key, _, raw = stripped.partition("=")
            values[key.strip()] = raw.strip().strip("'\"")
        return cls.parse(values.get("DB_IP"), values.get("DB_PORT"))

    def __str__(self) -> str:
        """Return ``ip:port``."""
        return f"{self.db_ip}:{self.db_port}"


@dataclass(frozen=True, slots=True)
class RegistrationRequest:
    """Payload submitted to the control-plane endpoint."""

    public_key: str
    hostname: str

    def to_payload(self) -> dict[str, str]:
        """Return the JSON body."""
        return {"public_key": self.public_key, "hostname": self.hostname}


@dataclass(frozen=True, slots=True)
class RegistrationResponse:
    """Tunnel assignment issued by the control plane."""

    port: int
    gateway_ip: str

    @classmethod
    def from_payload(cls, payload: object) -> RegistrationResponse:
        """Validate a decoded JSON body."""
        if not isinstance(payload, Mapping):
            raise InvalidRegistrationResponse("Registration response must be a JSON object.")
        if "port" not in payload or payload.get("port") is None:
            raise InvalidRegistrationResponse("Registration response is missing 'port'.")
        gateway_raw = payload.get("gateway_ip")
        if not isinstance(gateway_raw, str) or not gateway_raw.strip():
            raise InvalidRegistrationResponse("Registration response is missing 'gateway_ip'.")
        try:
            port = parse_port(payload["port"], label="tunnel port")
        except InvalidPort as exc:
            raise InvalidRegistrationResponse(str(exc)) from exc
        gateway_ip = gateway_raw.strip()
        if not is_valid_host(gateway_ip):
            raise InvalidRegistrationResponse(f"Invalid gateway address: {gateway_ip!r}.")
        return cls(port=port, gateway_ip=gateway_ip)


@dataclass(frozen=True, slots=True)
class KeyMaterial:
    """Paths and public half of the tunnel key pair."""

    private_key: Path
    public_key: Path
    public_openssh: str


@dataclass(frozen=True, slots=True)
class InstallationRecord:
    """A provisioned tunnel as persisted in the configuration directory."""

    keys: KeyMaterial
    registration: RegistrationResponse
    target: ForwardingTarget
    hostname: str
    registered_at: str
    updated_at: str

    @property
    def gateway_ip(self) -> str:
        """Return the assigned gateway address."""
        return self.registration.gateway_ip

    @property
    def tunnel_port(self) -> int:
        """Return the assigned remote port."""
        return self.registration.port

    def to_json_payload(self) -> dict[str, object]:
        """Return the ``config.json`` document."""
        return {
            "port": self.registration.port,
            "gateway_ip": self.registration.gateway_ip,
            "hostname": self.hostname,
            "private_key": str(self.keys.private_key),
            "public_key": str(self.keys.public_key),
            "registered_at": self.registered_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True, slots=True)
class ServiceUnitSpec:
    """Declarative description of the tunnel's systemd unit."""

    service_name: str
    description: str
    exec_pre: str
    exec_start: str
    restart: str = "always"
    restart_sec: int = 60
    start_limit_interval: int = 0

    @classmethod
    def from_record(cls, record: InstallationRecord, config: AppConfig) -> ServiceUnitSpec:
        """Derive the unit deterministically from *record* and *config*."""
        known_hosts = config.config_dir / "known_hosts"
        gateway = record.gateway_ip
        exec_pre = (
            f"/bin/sh -c '{config.ssh.keyscan_bin} -H {gateway} > {known_hosts}'"
        )
        forward = f"{record.tunnel_port}:{record.target.db_ip}:{record.target.db_port}"
        exec_start = " ".join(
            [
                config.ssh.ssh_bin,
                "-i",
                str(record.keys.private_key),
                "-N",
                "-R",
                forward,
                "-o",
                f"UserKnownHostsFile={known_hosts}",
                "-o",
                f"ServerAliveInterval={config.ssh.server_alive_interval}",
                "-o",
                f"ServerAliveCountMax={config.ssh.server_alive_count_max}",
                f"{config.ssh.user}@{gateway}",
            ]
        )
        return cls(
            service_name=config.service_name,
            description="SSH Reverse Tunnel Service",
            exec_pre=exec_pre,
            exec_start=exec_start,
            restart_sec=config.systemd.restart_sec,
        )

    def template_context(self) -> dict[str, object]:
        """Return the variables consumed by ``systemd/tunnel.service.j2``."""
        return {
            "description": self.description,
            "exec_pre": self.exec_pre,
            "exec_start": self.exec_start,
            "restart": self.restart,
            "restart_sec": self.restart_sec,
            "start_limit_interval": self.start_limit_interval,
        }


@dataclass(frozen=True, slots=True)
class UninstallAction:
    """One reversal step."""

    kind: str
    description: str
    command: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class UninstallPlan:
    """Ordered actions that fully remove a provisioned tunnel."""

    service_name: str
    unit_path: Path
    config_dir: Path
    actions: tuple[UninstallAction, ...]

    @classmethod
    def build(cls, config: AppConfig) -> UninstallPlan:
        """Return the plan for the configured installation."""
        unit = f"{config.service_name}.service"
        unit_path = config.systemd.unit_dir / unit
        systemctl = config.systemd.systemctl_bin
        actions = (
            UninstallAction("stop", f"Stop {unit}.", [systemctl, "stop", unit]),
            UninstallAction("disable", f"Disable {unit}.", [systemctl, "disable", unit]),
            UninstallAction("remove-unit", f"Remove {unit_path}.", ["rm", "-f", str(unit_path)]),
            UninstallAction("daemon-reload", "Reload systemd.", [systemctl, "daemon-reload"]),
            UninstallAction(
                "remove-config",
                f"Remove {config.config_dir}.",
                ["rm", "-rf", str(config.config_dir)],
            ),
        )
        return cls(
            service_name=config.service_name,
            unit_path=unit_path,
            config_dir=config.config_dir,
            actions=actions,
        )


__all__ = [
    "ForwardingTarget",
    "InstallationRecord",
    "KeyMaterial",
    "RegistrationRequest",
    "RegistrationResponse",
    "ServiceUnitSpec",
    "UninstallAction",
    "UninstallPlan",
    "is_valid_host",
    "parse_ipv4",
    "parse_port",
    "utc_now",
]
