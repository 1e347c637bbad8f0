"""Tests for the ptunnelctl command line interface."""
from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx
import pytest
import yaml
from typer.testing import CliRunner, Result

from ptunnelctl import __version__, cli, get_version
from ptunnelctl.cli import app
from ptunnelctl.providers.registration import HttpRegistrationClient

runner = CliRunner()

Handler = Callable[[httpx.Request], httpx.Response]


@dataclass
class Sandbox:
    """Paths and environment for one CLI test."""

    env: dict[str, str]
    config_dir: Path
    unit_dir: Path
    logs_dir: Path
    systemctl_log: Path
    journal_log: Path
    inactive_marker: Path

    @property
    def unit_path(self) -> Path:
        """Return the installed unit file location."""
        return self.unit_dir / "power-tunnel.service"

    def systemctl_calls(self) -> list[str]:
        """Return the recorded ``systemctl`` invocations."""
        if not self.systemctl_log.exists():
            return []
        return self.systemctl_log.read_text(encoding="utf-8").splitlines()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> Sandbox:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    systemctl_log = tmp_path / "systemctl.log"
    journal_log = tmp_path / "journalctl.log"
    inactive_marker = tmp_path / "inactive"

    def _write_stub(name: str, *, content: str = "#!/bin/sh\nexit 0\n") -> Path:
        path = bin_dir / name
        path.write_text(content, encoding="utf-8")
        path.chmod(0o755)
        return path

    _write_stub("ssh")
    _write_stub("ssh-keyscan")
    _write_stub(
        "systemctl",
        content=(
            "#!/bin/sh\n"
            f'echo "$@" >> "{systemctl_log}"\n'
            f'if [ "$1" = "is-active" ] && [ -f "{inactive_marker}" ]; then\n'
            "  exit 3\n"
            "fi\n"
            "exit 0\n"
        ),
    )
    _write_stub(
        "journalctl",
        content=f'#!/bin/sh\necho "$@" >> "{journal_log}"\necho "tunnel up"\nexit 0\n',
    )

    config_dir = tmp_path / "power-tunnel"
    unit_dir = tmp_path / "systemd"
    logs_dir = tmp_path / "logs"
    runtime_dir = tmp_path / "run"
    templates_dir = tmp_path / "templates"
    for directory in (unit_dir, logs_dir, runtime_dir, templates_dir):
        directory.mkdir(parents=True, exist_ok=True)

    config: dict[str, object] = {
        "config_dir": str(config_dir),
        "logs_dir": str(logs_dir),
        "runtime_dir": str(runtime_dir),
        "templates_dir": str(templates_dir),
        "hostname": "db-host-01",
        "require_root": False,
        "health": {"attempts": 2, "interval": 0},
        "ssh": {
            "ssh_bin": str(bin_dir / "ssh"),
            "keyscan_bin": str(bin_dir / "ssh-keyscan"),
        },
        "systemd": {
            "unit_dir": str(unit_dir),
            "systemctl_bin": str(bin_dir / "systemctl"),
            "journalctl_bin": str(bin_dir / "journalctl"),
        },
        "packages": {"auto_install": False},
    }
    if config_overrides:
        config.update(config_overrides)

    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")

    env = {
        "PTUNNELCTL_CONFIG_FILE": str(config_file),
        "PATH": f"{bin_dir}:{os.environ.get('PATH', '')}",
    }
    return Sandbox(
        env=env,
        config_dir=config_dir,
        unit_dir=unit_dir,
        logs_dir=logs_dir,
        systemctl_log=systemctl_log,
        journal_log=journal_log,
        inactive_marker=inactive_marker,
    )


def _assignment(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"port": 51000, "gateway_ip": "203.0.113.9"})


def _stub_registration(
    monkeypatch: pytest.MonkeyPatch,
    handler: Handler = _assignment,
) -> list[httpx.Request]:
    """Route registration traffic through an in-memory transport."""
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    def _factory(url: str, **_: object) -> HttpRegistrationClient:
        return HttpRegistrationClient(url, transport=httpx.MockTransport(_record))

    monkeypatch.setattr(cli, "HttpRegistrationClient", _factory)
    return requests


def _install(sandbox: Sandbox, *extra: str) -> Result:
    return runner.invoke(
        app,
        ["install", "--db-ip", "10.0.0.5", "--db-port", "5432", "--yes", *extra],
        env=sandbox.env,
    )


def _operations(sandbox: Sandbox) -> list[dict[str, object]]:
    path = sandbox.logs_dir / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


# Meta ---------------------------------------------------------------------------
def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    sandbox = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=sandbox.env)

    assert result.exit_code == 0
    assert __version__ in result.stdout
    assert get_version() == __version__


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    sandbox = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=sandbox.env)

    assert result.exit_code == 0
    assert "Power tunnel provisioning CLI" in result.stdout


def test_config_show_renders_table(tmp_path: Path) -> None:
    """`config show` prints the merged configuration in a table."""
    sandbox = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show"], env=sandbox.env)

    assert result.exit_code == 0
    assert "config_dir" in result.stdout
    assert "gateway" in result.stdout
    assert "lock_timeout" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits the resolved configuration."""
    sandbox = _prepare_environment(tmp_path, config_overrides={"gateway": "198.51.100.7"})

    result = runner.invoke(app, ["config", "show", "--json"], env=sandbox.env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["config_dir"] == str(sandbox.config_dir)
    assert payload["gateway"] == "198.51.100.7"
    registration = payload["registration"]
    assert isinstance(registration, dict)
    assert registration["url"] == "http://198.51.100.7/register-tunnel"


def test_invalid_config_reports_error(tmp_path: Path) -> None:
    """Configuration errors are reported without a traceback."""
    sandbox = _prepare_environment(tmp_path, config_overrides={"health": {"attempts": 0}})

    result = runner.invoke(app, ["status"], env=sandbox.env)

    assert result.exit_code == 1
    assert "Error [ConfigError]" in result.stdout


# Install ------------------------------------------------------------------------
def test_install_provisions_healthy_tunnel(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A flag-driven install registers, writes the unit and starts it."""
    sandbox = _prepare_environment(tmp_path)
    requests = _stub_registration(monkeypatch)

    result = _install(sandbox)

    assert result.exit_code == 0, result.stdout
    assert "Tunnel service installed and running." in result.stdout
    assert "Gateway: 203.0.113.9" in result.stdout
    assert "Remote Port: 51000" in result.stdout

    (request,) = requests
    body = json.loads(request.content)
    assert body["hostname"] == "db-host-01"
    assert body["public_key"].startswith("ssh-ed25519 ")
    assert request.url.host == "44.233.132.94"

    unit = sandbox.unit_path.read_text(encoding="utf-8")
    assert "-R 51000:10.0.0.5:5432" in unit
    assert "power_tunnel@203.0.113.9" in unit
    calls = sandbox.systemctl_calls()
    assert calls[:3] == [
        "daemon-reload",
        "enable power-tunnel.service",
        "start power-tunnel.service",
    ]
    assert (sandbox.config_dir / "config.txt").exists()
    assert (sandbox.config_dir / "uninstall.sh").exists()
    assert (sandbox.config_dir / "database.conf").read_text(encoding="utf-8") == (
        "DB_IP=10.0.0.5\nDB_PORT=5432\n"
    )


def test_install_prompts_for_target(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Without flags the target is read interactively."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch)

    result = runner.invoke(app, ["install"], input="10.0.0.8\n6432\n", env=sandbox.env)

    assert result.exit_code == 0, result.stdout
    assert "Local Database: 10.0.0.8:6432" in result.stdout


def test_install_degraded_exits_nonzero(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An inactive service after the health checks is reported as degraded."""
    sandbox = _prepare_environment(tmp_path)
    sandbox.inactive_marker.touch()
    _stub_registration(monkeypatch)

    result = _install(sandbox)

    assert result.exit_code == 1
    assert "not active after 2 check(s)" in result.stdout
    assert "Check the service logs with:" in result.stdout
    assert sandbox.systemctl_calls().count("is-active power-tunnel.service") == 2
    assert sandbox.unit_path.exists()
    assert not (sandbox.config_dir / "config.txt").exists()

    record = _operations(sandbox)[-1]
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "warning"
    assert result_block["rc"] == 1


def test_install_rejects_invalid_ip(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """An invalid address aborts before any side effect."""
    sandbox = _prepare_environment(tmp_path)
    requests = _stub_registration(monkeypatch)

    result = runner.invoke(
        app,
        ["install", "--db-ip", "999.999.1.1", "--db-port", "5432", "--yes"],
        env=sandbox.env,
    )

    assert result.exit_code == 1
    assert "Error [InvalidIP]" in result.stdout
    assert requests == []
    assert not sandbox.config_dir.exists()
    assert sandbox.systemctl_calls() == []


def test_install_rejects_invalid_port(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Out-of-range ports are rejected."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch)

    result = runner.invoke(
        app,
        ["install", "--db-ip", "10.0.0.5", "--db-port", "70000", "--yes"],
        env=sandbox.env,
    )

    assert result.exit_code == 1
    assert "Error [InvalidPort]" in result.stdout


def test_install_keep_and_replace_conflict(tmp_path: Path) -> None:
    """--keep and --replace are mutually exclusive."""
    sandbox = _prepare_environment(tmp_path)

    result = _install(sandbox, "--keep", "--replace")

    assert result.exit_code == 1
    assert "Cannot combine --keep and --replace." in result.stdout


def test_install_gateway_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """--gateway changes the registration endpoint."""
    sandbox = _prepare_environment(tmp_path)
    requests = _stub_registration(monkeypatch)

    result = _install(sandbox, "--gateway", "198.51.100.7")

    assert result.exit_code == 0, result.stdout
    assert requests[0].url.host == "198.51.100.7"


def test_install_rejects_invalid_gateway(tmp_path: Path) -> None:
    """A malformed --gateway value is refused."""
    sandbox = _prepare_environment(tmp_path)

    result = _install(sandbox, "--gateway", "not a host!")

    assert result.exit_code == 1
    assert "Invalid gateway address" in result.stdout


def test_install_registration_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Endpoint errors surface as RegistrationFailed without persisting."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch, lambda request: httpx.Response(500, text="overloaded"))

    result = _install(sandbox)

    assert result.exit_code == 1
    assert "Error [RegistrationFailed]" in result.stdout
    assert not (sandbox.config_dir / "config.json").exists()
    assert sandbox.systemctl_calls() == []


def test_install_existing_requires_decision(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Non-interactive reruns must choose keep or replace."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch)
    assert _install(sandbox).exit_code == 0

    result = runner.invoke(app, ["install", "--yes"], env=sandbox.env)

    assert result.exit_code == 1
    assert "Error [InputRequired]" in result.stdout


def test_install_keep_existing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """--keep leaves the installation untouched."""
    sandbox = _prepare_environment(tmp_path)
    requests = _stub_registration(monkeypatch)
    assert _install(sandbox).exit_code == 0
    unit_before = sandbox.unit_path.read_text(encoding="utf-8")

    result = runner.invoke(app, ["install", "--keep", "--yes"], env=sandbox.env)

    assert result.exit_code == 0, result.stdout
    assert "Keeping the existing installation." in result.stdout
    assert len(requests) == 1
    assert sandbox.unit_path.read_text(encoding="utf-8") == unit_before


def test_install_replace_creates_backup(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """--replace backs up the old directory and provisions afresh."""
    sandbox = _prepare_environment(tmp_path)
    requests = _stub_registration(monkeypatch)
    assert _install(sandbox).exit_code == 0

    result = runner.invoke(app, ["install", "--replace", "--yes"], env=sandbox.env)

    assert result.exit_code == 0, result.stdout
    assert "backed up" in result.stdout
    assert len(requests) == 2
    backups = list(tmp_path.glob("power-tunnel.backup.*"))
    assert len(backups) == 1
    assert (backups[0] / "config.json").exists()
    assert (backups[0] / "external" / "power-tunnel.service").exists()
    assert "stop power-tunnel.service" in sandbox.systemctl_calls()

    status = runner.invoke(app, ["status", "--json"], env=sandbox.env)
    assert status.exit_code == 0
    assert _extract_json(status.stdout)["backups"] == [str(backups[0])]


# Status -------------------------------------------------------------------------
def test_status_before_install(tmp_path: Path) -> None:
    """Status reports an absent installation."""
    sandbox = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["status", "--json"], env=sandbox.env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["phase"] == "absent"
    assert payload["active"] is False
    assert payload["record"] is None
    assert payload["backups"] == []


def test_status_after_install(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Status reports the record and service state after an install."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch)
    assert _install(sandbox).exit_code == 0

    result = runner.invoke(app, ["status", "--json"], env=sandbox.env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["phase"] == "installed"
    assert payload["active"] is True
    record = payload["record"]
    assert isinstance(record, dict)
    assert record["port"] == 51000
    assert record["db_ip"] == "10.0.0.5"

    table = runner.invoke(app, ["status"], env=sandbox.env)
    assert table.exit_code == 0
    assert "installed" in table.stdout


# Uninstall ----------------------------------------------------------------------
def test_uninstall_removes_installation(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Uninstall stops the service and removes unit and configuration."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch)
    assert _install(sandbox).exit_code == 0

    result = runner.invoke(app, ["uninstall", "--yes"], env=sandbox.env)

    assert result.exit_code == 0, result.stdout
    assert "Tunnel service has been uninstalled." in result.stdout
    assert not sandbox.unit_path.exists()
    assert not sandbox.config_dir.exists()
    calls = sandbox.systemctl_calls()
    assert "disable power-tunnel.service" in calls
    assert calls[-1] == "daemon-reload"


def test_uninstall_can_be_cancelled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Declining the confirmation leaves everything in place."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch)
    assert _install(sandbox).exit_code == 0

    result = runner.invoke(app, ["uninstall"], input="n\n", env=sandbox.env)

    assert result.exit_code == 0
    assert "Uninstall cancelled." in result.stdout
    assert sandbox.config_dir.exists()
    assert sandbox.unit_path.exists()


# Logs ---------------------------------------------------------------------------
def test_logs_reads_journal(tmp_path: Path) -> None:
    """`logs` forwards options to journalctl and prints its output."""
    sandbox = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["logs", "-n", "5", "--since", "1 hour ago"], env=sandbox.env)

    assert result.exit_code == 0, result.stdout
    assert "tunnel up" in result.stdout
    journal_args = sandbox.journal_log.read_text(encoding="utf-8")
    assert "--unit power-tunnel.service --no-pager --lines 5 --since 1 hour ago" in journal_args


# Operations log ----------------------------------------------------------------
def test_install_records_operation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Install appends a structured record with its steps."""
    sandbox = _prepare_environment(tmp_path)
    _stub_registration(monkeypatch)
    assert _install(sandbox).exit_code == 0

    record = _operations(sandbox)[-1]

    assert record["command"] == "install"
    result_block = record["result"]
    assert isinstance(result_block, dict)
    assert result_block["status"] == "success"
    steps = record["steps"]
    assert isinstance(steps, list)
    names = [step["name"] for step in steps]
    assert names[:2] == ["preflight", "keys"]
    assert "register" in names
    assert "lock_wait_ms" in record
