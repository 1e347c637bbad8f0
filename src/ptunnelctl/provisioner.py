"""Provisioning state machine for the reverse tunnel agent.

The :class:`Provisioner` walks an installation through a fixed sequence of
states. Each transition either completes and records a step on the active
operation scope, or raises a :class:`~ptunnelctl.errors.ProvisionError`
subclass. Side effects go through small capability protocols so the whole
flow can be driven with fakes::

    FRESH -> KEY_RESOLVED -> REGISTERED -> TARGET_RESOLVED -> PERSISTED
          -> SERVICE_INSTALLED -> VERIFIED_HEALTHY | VERIFIED_DEGRADED

An existing installation can end the run early in ``KEPT_EXISTING``. A record
that was persisted without its service unit resumes at ``PERSISTED`` without
contacting the registration endpoint again.
"""
from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Protocol

from . import __version__
from .backups import BackupError, move_to_backup
from .config import AppConfig
from .errors import (
    DependencyMissing,
    InputRequired,
    KeyGenFailed,
    PermissionDenied,
    PersistFailed,
    ProvisionError,
    ServiceInstallFailed,
)
from .keys import KeyPairGenerator, KeyResolution, resolve_key_material
from .logging import OperationScope
from .models import (
    ForwardingTarget,
    InstallationRecord,
    RegistrationRequest,
    RegistrationResponse,
    ServiceUnitSpec,
    UninstallPlan,
    utc_now,
)
from .providers.packages import PackageInstallError
from .providers.systemd import SystemdError
from .state import InstallationStore, InstallPhase, StoreError
from .templates import TemplateEngine, TemplateRenderError

LOGGER = logging.getLogger(__name__)

SUMMARY_TEMPLATE = "artifacts/summary.txt.j2"
UNINSTALL_TEMPLATE = "artifacts/uninstall.sh.j2"


class ProvisionState(str, Enum):
    """States of a provisioning run."""

    FRESH = "fresh"
    KEY_RESOLVED = "key_resolved"
    REGISTERED = "registered"
    TARGET_RESOLVED = "target_resolved"
    PERSISTED = "persisted"
    SERVICE_INSTALLED = "service_installed"
    VERIFIED_HEALTHY = "verified_healthy"
    VERIFIED_DEGRADED = "verified_degraded"
    KEPT_EXISTING = "kept_existing"
    ABORTED = "aborted"


class ExistingAction(str, Enum):
    """What to do with an installation that is already in place."""

    KEEP = "keep"
    REPLACE = "replace"


class Prompter(Protocol):
    """Source of answers for interactive decisions."""

    def choose_existing(
        self, record: InstallationRecord | None, active: bool
    ) -> ExistingAction:
        """Return whether to keep or replace *record* (``None`` when it is invalid)."""

    def confirm_reuse_target(self, target: ForwardingTarget) -> bool:
        """Return ``True`` to reuse the previous forwarding *target*."""

    def ask_target(self) -> tuple[str, str]:
        """Return raw ``(db_ip, db_port)`` answers."""


class PackageInstaller(Protocol):
    """Capability that installs operating-system packages."""

    def install(self, names: Sequence[str]) -> None:
        """Install *names*."""


class RegistrationClient(Protocol):
    """Capability that registers a public key with the control plane."""

    def register(self, request: RegistrationRequest) -> RegistrationResponse:
        """Submit *request* and return the assignment."""


class ServiceSupervisor(Protocol):
    """Capability that installs and controls the tunnel service."""

    @property
    def unit_path(self) -> Path:
        """Return the unit file location."""

    def render_unit(self, spec: ServiceUnitSpec) -> bool:
        """Write the unit file."""

    def daemon_reload(self) -> object:
        """Reload unit definitions."""

    def enable(self) -> object:
        """Enable the unit."""

    def disable(self) -> object:
        """Disable the unit."""

    def start(self) -> object:
        """Start the unit."""

    def stop(self) -> object:
        """Stop the unit."""

    def is_active(self) -> bool:
        """Return whether the unit is running."""

    def remove(self) -> bool:
        """Delete the unit file."""


@dataclass(slots=True)
class ProvisionOptions:
    """Answers supplied up front (flags) for a provisioning run."""

    db_ip: str | None = None
    db_port: str | int | None = None
    on_existing: ExistingAction | None = None
    reuse_target: bool | None = None
    non_interactive: bool = False


@dataclass(slots=True)
class ProvisionOutcome:
    """Terminal state and artefacts of a provisioning run."""

    state: ProvisionState
    record: InstallationRecord | None = None
    backup_path: Path | None = None
    health_attempts: int = 0
    generated_key: bool = False
    resumed: bool = False
    service_was_active: bool | None = None
    history: list[ProvisionState] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        """Return ``True`` for a verified healthy installation."""
        return self.state is ProvisionState.VERIFIED_HEALTHY

    @property
    def exit_code(self) -> int:
        """Return the process exit code implied by the terminal state."""
        if self.state in (ProvisionState.VERIFIED_HEALTHY, ProvisionState.KEPT_EXISTING):
            return 0
        return 1


@dataclass(slots=True)
class _Plan:
    """Decisions taken during preflight."""

    phase: InstallPhase
    flag_target: ForwardingTarget | None


class Provisioner:
    """Drive the provisioning state machine against injected capabilities."""

    def __init__(
        self,
        config: AppConfig,
        *,
        store: InstallationStore,
        keys: KeyPairGenerator,
        registration: RegistrationClient,
        supervisor: ServiceSupervisor,
        packages: PackageInstaller,
        prompter: Prompter,
        templates: TemplateEngine,
        scope: OperationScope | None = None,
        progress: Callable[[str], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        which: Callable[[str], str | None] = shutil.which,
        geteuid: Callable[[], int] = os.geteuid,
    ) -> None:
        """Bind the provisioner to its configuration and capabilities."""
        self.config = config
        self.store = store
        self.keys = keys
        self.registration = registration
        self.supervisor = supervisor
        self.packages = packages
        self.prompter = prompter
        self.templates = templates
        self.scope = scope
        self._progress = progress
        self._sleep = sleep
        self._which = which
        self._geteuid = geteuid
        self.last_outcome: ProvisionOutcome | None = None

    # ------------------------------------------------------------------
    def run(self, options: ProvisionOptions) -> ProvisionOutcome:
        """Provision (or keep, or resume) the tunnel installation."""
        outcome = ProvisionOutcome(state=ProvisionState.FRESH)
        self.last_outcome = outcome
        try:
            plan = self._preflight(options)
            self._execute(plan, options, outcome)
        except ProvisionError as exc:
            outcome.history.append(ProvisionState.ABORTED)
            outcome.state = ProvisionState.ABORTED
            self._step("aborted", status="error", detail=f"{exc.kind}: {exc.message}")
            raise
        return outcome

    def _execute(
        self,
        plan: _Plan,
        options: ProvisionOptions,
        outcome: ProvisionOutcome,
    ) -> None:
        previous_target = self.store.read_target()
        record: InstallationRecord | None = None

        if plan.phase in (InstallPhase.INSTALLED, InstallPhase.DAMAGED):
            existing = self.store.read_record()
            active = self.supervisor.is_active()
            outcome.service_was_active = active
            service = "active" if active else "inactive"
            if existing is None:
                self._notify(
                    f"Existing configuration in {self.store.root} is invalid (service {service})."
                )
            else:
                self._notify(
                    f"Existing installation found (gateway {existing.gateway_ip}, "
                    f"port {existing.tunnel_port}, service {service})."
                )
            action = options.on_existing or self.prompter.choose_existing(existing, active)
            if action is ExistingAction.KEEP:
                outcome.record = existing
                self._transition(outcome, ProvisionState.KEPT_EXISTING)
                return
            outcome.backup_path = self._replace_existing(stop=active)
        elif plan.phase is InstallPhase.PERSISTED:
            if options.on_existing is ExistingAction.REPLACE:
                stop = self.supervisor.unit_path.exists()
                outcome.backup_path = self._replace_existing(stop=stop)
            else:
                record = self._resume(plan)
                outcome.resumed = True

        if record is None:
            self._transition(outcome, ProvisionState.FRESH)
            resolution = self._resolve_keys()
            outcome.generated_key = resolution.generated
            self._transition(outcome, ProvisionState.KEY_RESOLVED)

            assignment = self._register(resolution)
            self._transition(outcome, ProvisionState.REGISTERED)

            target = self._resolve_target(plan, options, previous_target)
            self._transition(outcome, ProvisionState.TARGET_RESOLVED)

            now = utc_now()
            record = InstallationRecord(
                keys=resolution.material,
                registration=assignment,
                target=target,
                hostname=self.config.hostname,
                registered_at=now,
                updated_at=now,
            )
            self._persist(record)
        self._transition(outcome, ProvisionState.PERSISTED)

        record = self._install_service()
        outcome.record = record
        self._transition(outcome, ProvisionState.SERVICE_INSTALLED)

        healthy, attempts = self._verify_health()
        outcome.health_attempts = attempts
        if not healthy:
            self._transition(outcome, ProvisionState.VERIFIED_DEGRADED)
            return
        self._transition(outcome, ProvisionState.VERIFIED_HEALTHY)
        outcome.warnings.extend(self._write_artifacts(record))

    # Preflight ----------------------------------------------------------
    def _preflight(self, options: ProvisionOptions) -> _Plan:
        if self.config.require_root and self._geteuid() != 0:
            raise PermissionDenied("This command must be run as root.")

        flag_target = self._flag_target(options)
        phase = self.store.phase(self.supervisor.unit_path)
        if options.non_interactive:
            self._check_non_interactive(phase, options, flag_target)
        self._ensure_dependencies()
        self._step("preflight", detail=f"phase={phase.value}")
        return _Plan(phase=phase, flag_target=flag_target)

    def _flag_target(self, options: ProvisionOptions) -> ForwardingTarget | None:
        has_ip = options.db_ip not in (None, "")
        has_port = options.db_port not in (None, "")
        if not has_ip and not has_port:
            return None
        if has_ip != has_port:
            raise InputRequired("--db-ip and --db-port must be supplied together.")
        return ForwardingTarget.parse(options.db_ip, options.db_port)

    def _check_non_interactive(
        self,
        phase: InstallPhase,
        options: ProvisionOptions,
        flag_target: ForwardingTarget | None,
    ) -> None:
        existing = phase in (InstallPhase.INSTALLED, InstallPhase.DAMAGED)
        if existing and options.on_existing is None:
            raise InputRequired(
                "An installation already exists; pass --keep or --replace."
            )
        if options.on_existing is ExistingAction.KEEP and existing:
            return
        resuming = (
            phase is InstallPhase.PERSISTED
            and options.on_existing is not ExistingAction.REPLACE
        )
        if resuming or flag_target is not None:
            return
        if options.reuse_target is False:
            raise InputRequired("--new-target requires --db-ip and --db-port.")
        if self.store.read_target() is None:
            raise InputRequired("No previous database target found; pass --db-ip and --db-port.")

    def _ensure_dependencies(self) -> None:
        required = (
            self.config.ssh.ssh_bin,
            self.config.ssh.keyscan_bin,
            self.config.systemd.systemctl_bin,
        )
        missing = [binary for binary in required if self._which(binary) is None]
        if not missing:
            return
        packages = self.config.packages
        if not packages.auto_install or not packages.names:
            raise DependencyMissing(f"Required commands not found: {', '.join(missing)}.")
        self._notify(f"Installing missing packages: {', '.join(packages.names)}")
        try:
            self.packages.install(packages.names)
        except PackageInstallError as exc:
            joined = ", ".join(packages.names)
            raise DependencyMissing(f"Failed to install {joined}: {exc}") from exc
        self._step("install-packages", detail=", ".join(packages.names))
        still_missing = [binary for binary in missing if self._which(binary) is None]
        if still_missing:
            raise DependencyMissing(
                f"Required commands still missing after install: {', '.join(still_missing)}."
            )

    # Step 1 -------------------------------------------------------------
    def _replace_existing(self, *, stop: bool) -> Path:
        if stop:
            try:
                self.supervisor.stop()
            except SystemdError as exc:
                LOGGER.warning(
                    "Failed to stop %s before replacing it: %s", self.config.service_name, exc
                )
        try:
            backup = move_to_backup(
                self.store.root,
                extra_files=[self.supervisor.unit_path],
            )
        except BackupError as exc:
            raise PersistFailed(str(exc)) from exc
        self._notify(f"Backed up existing configuration to {backup}")
        self._step("backup", detail=str(backup))
        return backup

    def _resume(self, plan: _Plan) -> InstallationRecord:
        record = self.store.read_record()
        if record is None:
            raise PersistFailed(f"Persisted record at {self.store.root} could not be read back.")
        self._notify("Resuming from the persisted record; skipping registration.")
        self._step("resume", detail=str(self.store.record_path))
        if plan.flag_target is None or plan.flag_target == record.target:
            return record
        record = replace(record, target=plan.flag_target, updated_at=utc_now())
        self._persist(record)
        self._notify(f"Database target changed to {record.target}")
        return record

    # Step 2 -------------------------------------------------------------
    def _resolve_keys(self) -> KeyResolution:
        try:
            self.store.ensure_root()
        except StoreError as exc:
            raise KeyGenFailed(str(exc)) from exc
        resolution = resolve_key_material(
            self.store.root,
            self.keys,
            comment=f"power-tunnel-{self.config.hostname}",
        )
        detail = "generated" if resolution.generated else "reused"
        if resolution.tightened:
            detail += ", permissions tightened"
        self._notify(f"SSH key pair {detail}: {resolution.material.private_key}")
        self._step("keys", detail=detail)
        return resolution

    # Step 3 -------------------------------------------------------------
    def _register(self, resolution: KeyResolution) -> RegistrationResponse:
        self._notify("Registering with the tunnel gateway...")
        request = RegistrationRequest(
            public_key=resolution.material.public_openssh,
            hostname=self.config.hostname,
        )
        assignment = self.registration.register(request)
        self._notify(f"Assigned port {assignment.port} on gateway {assignment.gateway_ip}")
        self._step("register", detail=f"{assignment.gateway_ip}:{assignment.port}")
        return assignment

    # Step 4 -------------------------------------------------------------
    def _resolve_target(
        self,
        plan: _Plan,
        options: ProvisionOptions,
        previous: ForwardingTarget | None,
    ) -> ForwardingTarget:
        if plan.flag_target is not None:
            target = plan.flag_target
            source = "flags"
        elif previous is not None and self._reuse_previous(previous, options):
            target = previous
            source = "previous"
        else:
            if options.non_interactive:
                raise InputRequired("A database target is required; pass --db-ip and --db-port.")
            db_ip, db_port = self.prompter.ask_target()
            target = ForwardingTarget.parse(db_ip, db_port)
            source = "prompt"
        self._step("target", detail=f"{target} ({source})")
        return target

    def _reuse_previous(self, previous: ForwardingTarget, options: ProvisionOptions) -> bool:
        if options.reuse_target is not None:
            return options.reuse_target
        if options.non_interactive:
            return True
        return self.prompter.confirm_reuse_target(previous)

    # Step 5 -------------------------------------------------------------
    def _persist(self, record: InstallationRecord) -> None:
        try:
            self.store.persist(record)
        except StoreError as exc:
            raise PersistFailed(str(exc)) from exc
        self._step("persist", detail=str(self.store.record_path))

    # Step 6 -------------------------------------------------------------
    def _install_service(self) -> InstallationRecord:
        record = self.store.read_record()
        if record is None:
            raise PersistFailed(f"Persisted record at {self.store.root} could not be read back.")
        spec = ServiceUnitSpec.from_record(record, self.config)
        self._notify(f"Installing service unit {self.supervisor.unit_path}")
        try:
            self.supervisor.render_unit(spec)
            self.supervisor.daemon_reload()
            self.supervisor.enable()
            self.supervisor.start()
        except (SystemdError, TemplateRenderError, OSError) as exc:
            raise ServiceInstallFailed(str(exc)) from exc
        self._step("service", detail=str(self.supervisor.unit_path))
        return record

    # Step 7 -------------------------------------------------------------
    def _verify_health(self) -> tuple[bool, int]:
        attempts = self.config.health.attempts
        interval = self.config.health.interval
        for attempt in range(1, attempts + 1):
            self._sleep(interval)
            if self.supervisor.is_active():
                self._step("health", detail=f"active after {attempt} check(s)")
                return True, attempt
            LOGGER.debug("Service not active (check %s/%s)", attempt, attempts)
        self._step("health", status="warning", detail=f"inactive after {attempts} check(s)")
        return False, attempts

    # Step 8 -------------------------------------------------------------
    def _write_artifacts(self, record: InstallationRecord) -> list[str]:
        warnings: list[str] = []
        plan = UninstallPlan.build(self.config)
        summary_context = {
            "gateway_ip": record.gateway_ip,
            "db_ip": record.target.db_ip,
            "db_port": record.target.db_port,
            "tunnel_port": record.tunnel_port,
            "hostname": record.hostname,
            "registered_at": record.registered_at,
            "updated_at": record.updated_at,
        }
        uninstall_context = {
            "version": __version__,
            "service_name": plan.service_name,
            "actions": plan.actions,
        }
        try:
            self.store.write_summary(
                self.templates.render_to_string(SUMMARY_TEMPLATE, summary_context)
            )
            self.store.write_uninstall_script(
                self.templates.render_to_string(UNINSTALL_TEMPLATE, uninstall_context)
            )
        except (StoreError, TemplateRenderError) as exc:
            message = f"Failed to write summary artefacts: {exc}"
            LOGGER.warning(message)
            self._step("artifacts", status="warning", detail=message)
            warnings.append(message)
            return warnings
        self._step("artifacts", detail=str(self.store.summary_path))
        return warnings

    # Helpers ------------------------------------------------------------
    def _transition(self, outcome: ProvisionOutcome, state: ProvisionState) -> None:
        LOGGER.debug("Provisioning state %s -> %s", outcome.state.value, state.value)
        outcome.state = state
        outcome.history.append(state)

    def _step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        if self.scope is not None:
            self.scope.add_step(name, status=status, detail=detail)

    def _notify(self, message: str) -> None:
        LOGGER.info(message)
        if self._progress is not None:
            self._progress(message)


def uninstall(
    plan: UninstallPlan,
    *,
    store: InstallationStore,
    supervisor: ServiceSupervisor,
    scope: OperationScope | None = None,
) -> list[str]:
    """Execute *plan*; return the actions that changed something."""
    changed: list[str] = []
    for action in plan.actions:
        if action.kind in ("stop", "disable"):
            try:
                getattr(supervisor, action.kind)()
            except SystemdError as exc:
                LOGGER.debug("Ignoring %s failure: %s", action.kind, exc)
                continue
        elif action.kind == "remove-unit":
            if not supervisor.remove():
                continue
        elif action.kind == "daemon-reload":
            supervisor.daemon_reload()
        elif action.kind == "remove-config":
            if not store.remove():
                continue
        changed.append(action.kind)
        if scope is not None:
            scope.add_step(action.kind, detail=action.description)
    return changed


__all__ = [
    "ExistingAction",
    "PackageInstaller",
    "Prompter",
    "ProvisionOptions",
    "ProvisionOutcome",
    "ProvisionState",
    "Provisioner",
    "RegistrationClient",
    "ServiceSupervisor",
    "uninstall",
]
