"""Adapters for the host services ptunnelctl drives."""
from __future__ import annotations

from .packages import AptPackageInstaller, PackageInstallError
from .registration import HttpRegistrationClient
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "AptPackageInstaller",
    "HttpRegistrationClient",
    "PackageInstallError",
    "SystemdError",
    "SystemdProvider",
]
