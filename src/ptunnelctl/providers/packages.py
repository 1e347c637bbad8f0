"""Installation of missing OpenSSH client tools."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field

LOGGER = logging.getLogger(__name__)


class PackageInstallError(RuntimeError):
    """Raised when the package manager fails."""


@dataclass(slots=True)
class AptPackageInstaller:
    """Install Debian packages through ``apt-get``."""

    manager_bin: str = "apt-get"
    env: dict[str, str] = field(default_factory=lambda: {"DEBIAN_FRONTEND": "noninteractive"})

    def install(self, names: Sequence[str]) -> None:
        """Refresh the package index and install *names*."""
        if not names:
            return
        LOGGER.info("Installing packages: %s", ", ".join(names))
        self._run([self.manager_bin, "update", "-qq"])
        self._run([self.manager_bin, "install", "-y", "-qq", *names])

    def _run(self, args: list[str]) -> None:
        environment = {**os.environ, **self.env}
        try:
            result = subprocess.run(  # noqa: S603
                args,
                capture_output=True,
                text=True,
                check=False,
                env=environment,
            )
        except FileNotFoundError as exc:
            raise PackageInstallError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            joined = " ".join(args[:2])
            raise PackageInstallError(f"{joined} failed (exit {result.returncode}): {message}")


__all__ = ["AptPackageInstaller", "PackageInstallError"]
