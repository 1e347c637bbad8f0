"""Systemd provider for the tunnel service unit."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..models import ServiceUnitSpec
from ..templates import TemplateEngine

UNIT_TEMPLATE = "systemd/tunnel.service.j2"


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage the systemd unit that keeps the tunnel alive."""

    templates: TemplateEngine
    service_name: str = "power-tunnel"
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    @property
    def unit_name(self) -> str:
        """Return the systemd unit name."""
        return f"{self.service_name}.service"

    @property
    def unit_path(self) -> Path:
        """Return the full path for the unit file."""
        return self.systemd_dir / self.unit_name

    def render_unit(self, spec: ServiceUnitSpec) -> bool:
        """Write the unit file for *spec*; return ``False`` when it was already current."""
        return self.templates.render_to_path(
            UNIT_TEMPLATE,
            self.unit_path,
            spec.template_context(),
            mode=0o644,
        )

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    def enable(self) -> subprocess.CompletedProcess[str]:
        """Enable the unit at boot."""
        return self._systemctl("enable", self.unit_name)

    def disable(self) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", self.unit_name)

    def start(self) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit_name)

    def stop(self) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit_name)

    def is_active(self) -> bool:
        """Return ``True`` when systemd reports the unit as active."""
        try:
            result = self._systemctl("is-active", self.unit_name, check=False)
        except SystemdError:
            return False
        return result.returncode == 0

    def logs(
        self,
        *,
        lines: int | None = None,
        since: str | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for the unit."""
        args: list[str] = ["--unit", self.unit_name, "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if since is not None:
            args.extend(["--since", since])
        if follow:
            args.append("--follow")
        return self._journalctl(args, capture_output=not follow)

    def remove(self) -> bool:
        """Remove the unit file; return ``True`` if one was deleted."""
        try:
            self.unit_path.unlink()
        except FileNotFoundError:
            return False
        return True

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit_or_path: str | Path | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit_or_path is not None:
            args.append(str(unit_or_path))
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            capture_output=True,
        )

    def _journalctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.journalctl_bin, *args]
        joined = " ".join(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.journalctl_bin} {joined}".rstrip(),
            capture_output=capture_output,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider", "UNIT_TEMPLATE"]
