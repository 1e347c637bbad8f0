"""Typer-powered command line interface for ``ptunnelctl``.

``install`` runs the provisioning state machine end to end. ``status``,
``logs`` and ``config show`` are read-only helpers; ``uninstall`` reverses an
installation. Every command records its outcome in the structured
operations log.
"""
from __future__ import annotations

import json
import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import list_backups
from .config import AppConfig, ConfigError, load_config
from .errors import PermissionDenied, ProvisionError
from .exit_codes import ExitCode
from .keys import Ed25519KeyPairGenerator
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import ForwardingTarget, InstallationRecord, UninstallPlan, is_valid_host
from .provisioner import (
    ExistingAction,
    ProvisionOptions,
    ProvisionOutcome,
    Provisioner,
    ProvisionState,
    uninstall,
)
from .providers import AptPackageInstaller, HttpRegistrationClient, SystemdError, SystemdProvider
from .state import InstallationStore, InstallPhase, StoreError
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ptunnelctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Power tunnel provisioning CLI.

        Registers this host with the tunnel gateway and keeps a reverse SSH
        tunnel to the local database running under systemd.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    config_file: Path | None
    lock_timeout: float | None
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    store: InstallationStore
    systemd: SystemdProvider


class ConsolePrompter:
    """Ask interactive questions on the terminal."""

    def choose_existing(
        self, record: InstallationRecord | None, active: bool
    ) -> ExistingAction:
        """Return the operator's keep/replace decision (default keep)."""
        replace = typer.confirm(
            "Replace the existing installation? (a backup is taken first)",
            default=False,
        )
        return ExistingAction.REPLACE if replace else ExistingAction.KEEP

    def confirm_reuse_target(self, target: ForwardingTarget) -> bool:
        """Offer the previous database target (default yes)."""
        return typer.confirm(f"Reuse previous database target {target}?", default=True)

    def ask_target(self) -> tuple[str, str]:
        """Prompt for a fresh database target."""
        db_ip = typer.prompt("Database IP address")
        db_port = typer.prompt("Database port")
        return str(db_ip), str(db_port)


def _build_runtime(
    config_file: Path | None,
    lock_timeout_override: float | None = None,
    *,
    gateway: str | None = None,
) -> RuntimeContext:
    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    if gateway:
        overrides["gateway"] = gateway

    config = load_config(config_file=config_file, overrides=overrides)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    systemd = SystemdProvider(
        templates=templates,
        service_name=config.service_name,
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
        journalctl_bin=config.systemd.journalctl_bin,
    )
    return RuntimeContext(
        config=config,
        config_file=config_file,
        lock_timeout=lock_timeout_override,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        store=InstallationStore(config.config_dir),
        systemd=systemd,
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        runtime = _build_runtime(config_file, lock_timeout_override)
    except ConfigError as exc:
        console.print(f"[red]{escape(f'Error [ConfigError]: {exc}')}[/red]")
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ptunnelctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"ptunnelctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=rc)


def _provision_error(op: OperationScope, exc: ProvisionError) -> NoReturn:
    _command_error(op, f"Error [{exc.kind}]: {exc.message}", errors=[exc.kind])


def _journal_hint(config: AppConfig) -> str:
    return f"{config.systemd.journalctl_bin} -u {config.service_name} -f"


# Install --------------------------------------------------------------------
@app.command()
def install(
    ctx: typer.Context,
    db_ip: str | None = typer.Option(
        None,
        "--db-ip",
        help="IPv4 address of the local database the tunnel forwards to.",
    ),
    db_port: str | None = typer.Option(
        None,
        "--db-port",
        help="Port of the local database (1-65535).",
    ),
    keep: bool = typer.Option(
        False,
        "--keep",
        help="Keep an existing installation untouched.",
    ),
    replace: bool = typer.Option(
        False,
        "--replace",
        help="Back up and replace an existing installation.",
    ),
    reuse_target: bool | None = typer.Option(
        None,
        "--reuse-target/--new-target",
        help="Reuse (or refuse) the previous database target without prompting.",
    ),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        "--yes",
        help="Never prompt; fail when an answer is missing.",
    ),
    gateway: str | None = typer.Option(
        None,
        "--gateway",
        help="Override the tunnel gateway address.",
    ),
) -> None:
    """Provision (or resume) the reverse tunnel service."""
    runtime = _get_runtime(ctx)
    args = {
        "db_ip": db_ip,
        "db_port": db_port,
        "keep": keep,
        "replace": replace,
        "reuse_target": reuse_target,
        "non_interactive": non_interactive,
        "gateway": gateway,
    }
    with runtime.logger.operation(
        "install",
        args=args,
        target={"kind": "service", "scope": runtime.config.service_name},
    ) as op:
        if keep and replace:
            _command_error(op, "Cannot combine --keep and --replace.")
        if gateway is not None:
            if not is_valid_host(gateway):
                _command_error(op, f"Invalid gateway address: {gateway!r}.")
            try:
                runtime = _build_runtime(
                    runtime.config_file,
                    runtime.lock_timeout,
                    gateway=gateway,
                )
            except ConfigError as exc:
                _command_error(op, f"Error [ConfigError]: {exc}")
        on_existing = None
        if keep:
            on_existing = ExistingAction.KEEP
        elif replace:
            on_existing = ExistingAction.REPLACE
        options = ProvisionOptions(
            db_ip=db_ip,
            db_port=db_port,
            on_existing=on_existing,
            reuse_target=reuse_target,
            non_interactive=non_interactive,
        )

        config = runtime.config
        client = HttpRegistrationClient(
            config.registration.url,
            timeout=config.registration.timeout,
            verify=config.registration.verify_tls,
        )
        provisioner = Provisioner(
            config,
            store=runtime.store,
            keys=Ed25519KeyPairGenerator(),
            registration=client,
            supervisor=runtime.systemd,
            packages=AptPackageInstaller(manager_bin=config.packages.manager_bin),
            prompter=ConsolePrompter(),
            templates=runtime.templates,
            scope=op,
            progress=lambda message: console.print(f"[cyan]{escape(message)}[/cyan]"),
        )
        try:
            with runtime.locks.exclusive(timeout=config.lock_timeout) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                outcome = provisioner.run(options)
        except ProvisionError as exc:
            _provision_error(op, exc)
        except LockTimeoutError as exc:
            _command_error(op, f"Error [LockTimeout]: {exc}")
        finally:
            client.close()

        _report_install(runtime, op, outcome)


def _report_install(
    runtime: RuntimeContext,
    op: OperationScope,
    outcome: ProvisionOutcome,
) -> None:
    config = runtime.config
    context: dict[str, object] = {
        "state": outcome.state.value,
        "history": [state.value for state in outcome.history],
        "health_attempts": outcome.health_attempts,
        "resumed": outcome.resumed,
    }
    if outcome.backup_path is not None:
        context["backup"] = str(outcome.backup_path)
        console.print(f"Previous installation backed up to {outcome.backup_path}")

    if outcome.state is ProvisionState.KEPT_EXISTING:
        console.print("[green]Keeping the existing installation.[/green]")
        op.success("Kept existing installation.", changed=0, context=context)
        return

    if not outcome.healthy:
        hint = _journal_hint(config)
        message = (
            f"Service {config.service_name} is not active after "
            f"{outcome.health_attempts} check(s)."
        )
        console.print(f"[yellow]Warning: {escape(message)}[/yellow]")
        console.print(f"Check the service logs with: {hint}")
        op.warning(
            message,
            warnings=[message],
            changed=1,
            backups=[str(outcome.backup_path)] if outcome.backup_path else None,
            rc=outcome.exit_code,
            context=context,
        )
        raise typer.Exit(code=outcome.exit_code)

    record = outcome.record
    if record is None:
        _command_error(op, "Provisioning finished without an installation record.")
    console.print("[green]Tunnel service installed and running.[/green]")
    console.print(f"Gateway: {record.gateway_ip}")
    console.print(f"Local Database: {record.target}")
    console.print(f"Remote Port: {record.tunnel_port}")
    console.print(f"Configuration: {runtime.store.root}")
    console.print(f"Uninstall with: {runtime.store.uninstall_path}")
    for warning in outcome.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")
    op.success("Tunnel provisioned.", changed=1, context=context)


# Status ---------------------------------------------------------------------
@app.command()
def status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report the installation phase and service state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "service", "scope": runtime.config.service_name},
    ) as op:
        payload = _status_payload(runtime)
        if json_output:
            console.print_json(data=payload)
            op.success("Rendered status as JSON.", changed=0, context={"phase": payload["phase"]})
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("phase", str(payload["phase"]))
        table.add_row("config_dir", str(payload["config_dir"]))
        table.add_row("unit_path", str(payload["unit_path"]))
        table.add_row("active", "yes" if payload["active"] else "no")
        backups = payload["backups"]
        if isinstance(backups, list):
            table.add_row("backups", "\n".join(backups) or "none")
        record = payload.get("record")
        if isinstance(record, dict):
            for key, value in record.items():
                table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered status table.", changed=0, context={"phase": payload["phase"]})


def _status_payload(runtime: RuntimeContext) -> dict[str, object]:
    store = runtime.store
    phase = store.phase(runtime.systemd.unit_path)
    active = runtime.systemd.is_active() if phase is InstallPhase.INSTALLED else False
    payload: dict[str, object] = {
        "phase": phase.value,
        "config_dir": str(store.root),
        "unit_path": str(runtime.systemd.unit_path),
        "active": active,
        "record": None,
        "backups": [str(path) for path in list_backups(store.root)],
    }
    record = store.read_record()
    if record is not None:
        details = record.to_json_payload()
        details["db_ip"] = record.target.db_ip
        details["db_port"] = record.target.db_port
        payload["record"] = details
    return payload


# Uninstall ------------------------------------------------------------------
@app.command("uninstall")
def uninstall_command(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not ask for confirmation.",
    ),
) -> None:
    """Stop the tunnel and remove its unit and configuration."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    plan = UninstallPlan.build(config)
    with runtime.logger.operation(
        "uninstall",
        args={"yes": yes},
        target={"kind": "service", "scope": config.service_name},
    ) as op:
        if config.require_root and os.geteuid() != 0:
            _provision_error(op, PermissionDenied("This command must be run as root."))
        if not yes:
            confirmed = typer.confirm(
                f"Remove {plan.unit_path} and {plan.config_dir}?",
                default=False,
            )
            if not confirmed:
                console.print("Uninstall cancelled.")
                op.success("Uninstall cancelled by operator.", changed=0)
                return
        try:
            with runtime.locks.exclusive(timeout=config.lock_timeout) as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                changed = uninstall(
                    plan,
                    store=runtime.store,
                    supervisor=runtime.systemd,
                    scope=op,
                )
        except SystemdError as exc:
            _command_error(op, f"Error [SystemdError]: {exc}")
        except LockTimeoutError as exc:
            _command_error(op, f"Error [LockTimeout]: {exc}")
        except StoreError as exc:
            _command_error(op, f"Error [StoreError]: {exc}")

        if changed:
            console.print("[green]Tunnel service has been uninstalled.[/green]")
        else:
            console.print("Nothing to uninstall.")
        op.success("Uninstall complete.", changed=len(changed), context={"actions": changed})


# Logs -----------------------------------------------------------------------
@app.command()
def logs(
    ctx: typer.Context,
    lines: int | None = typer.Option(
        None,
        "--lines",
        "-n",
        min=1,
        help="Number of journal lines to show.",
    ),
    since: str | None = typer.Option(
        None,
        "--since",
        help="Only show entries newer than this journalctl timestamp.",
    ),
    follow: bool = typer.Option(
        False,
        "--follow",
        "-f",
        help="Stream new journal entries.",
    ),
) -> None:
    """Show journal output for the tunnel service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"lines": lines, "since": since, "follow": follow},
        target={"kind": "service", "scope": runtime.config.service_name},
    ) as op:
        try:
            result = runtime.systemd.logs(lines=lines, since=since, follow=follow)
        except SystemdError as exc:
            _command_error(op, f"Error [SystemdError]: {exc}")
        if result.stdout:
            console.print(result.stdout, end="", markup=False, highlight=False)
        op.success("Displayed service logs.", changed=0)


# Config ---------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
