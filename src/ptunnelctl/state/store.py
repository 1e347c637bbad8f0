"""Helpers for the tunnel configuration directory.

The directory (``/etc/power-tunnel`` by default) holds the key pair, the JSON
registration record, the ``database.conf`` forwarding target, the pinned
``known_hosts`` file and the generated summary and uninstall script. Writes go
through a temporary file, ``fsync`` and ``os.replace`` so a crash never leaves
a half-written record behind.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import ProvisionError
from ..keys import PRIVATE_KEY_NAME, PUBLIC_KEY_SUFFIX
from ..models import (
    ForwardingTarget,
    InstallationRecord,
    KeyMaterial,
    RegistrationResponse,
)

LOGGER = logging.getLogger(__name__)

RECORD_FILE = "config.json"
TARGET_FILE = "database.conf"
SUMMARY_FILE = "config.txt"
UNINSTALL_FILE = "uninstall.sh"


class StoreError(RuntimeError):
    """Raised when the configuration directory cannot be read or written."""


class InstallPhase(str, Enum):
    """How far a previous run got, as observed on disk."""

    ABSENT = "absent"
    PARTIAL = "partial"
    DAMAGED = "damaged"
    PERSISTED = "persisted"
    INSTALLED = "installed"


@dataclass(frozen=True)
class InstallationStore:
    """Read and write the files that make up an installation record."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    # Paths ------------------------------------------------------------
    @property
    def private_key_path(self) -> Path:
        """Return the private key location."""
        return self.root / PRIVATE_KEY_NAME

    @property
    def public_key_path(self) -> Path:
        """Return the public key location."""
        return self.root / f"{PRIVATE_KEY_NAME}{PUBLIC_KEY_SUFFIX}"

    @property
    def record_path(self) -> Path:
        """Return the JSON registration record location."""
        return self.root / RECORD_FILE

    @property
    def target_path(self) -> Path:
        """Return the forwarding target file location."""
        return self.root / TARGET_FILE

    @property
    def summary_path(self) -> Path:
        """Return the human-readable summary location."""
        return self.root / SUMMARY_FILE

    @property
    def uninstall_path(self) -> Path:
        """Return the generated uninstall script location."""
        return self.root / UNINSTALL_FILE

    # Basic helpers -------------------------------------------------
    def exists(self) -> bool:
        """Return ``True`` when the configuration directory exists."""
        return self.root.is_dir()

    def ensure_root(self) -> bool:
        """Create the directory with owner-only access; return ``True`` if created."""
        created = not self.root.exists()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:
            raise StoreError(f"Failed to create config directory {self.root}: {exc}") from exc
        return created

    def phase(self, unit_path: Path) -> InstallPhase:
        """Classify the on-disk state given the service unit location.

        An installation only counts as complete once the unit exists and the
        summary written after a healthy verification is present. Anything
        short of that with a valid record is resumable. A ``config.json`` that
        no longer validates marks a damaged installation.
        """
        if not self.exists():
            return InstallPhase.ABSENT
        if self.read_record() is None:
            if self.record_path.exists():
                return InstallPhase.DAMAGED
            return InstallPhase.PARTIAL
        if unit_path.exists() and self.summary_path.exists():
            return InstallPhase.INSTALLED
        return InstallPhase.PERSISTED

    # Readers ------------------------------------------------------------
    def read_target(self) -> ForwardingTarget | None:
        """Return the stored forwarding target, or ``None`` if absent or invalid."""
        return read_target_file(self.target_path)

    def read_record(self) -> InstallationRecord | None:
        """Return the persisted record when every part of it is present and valid."""
        if not self.record_path.exists():
            return None
        try:
            payload = json.loads(self.record_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable record %s: %s", self.record_path, exc)
            return None
        target = self.read_target()
        if target is None or not isinstance(payload, Mapping):
            return None
        try:
            registration = RegistrationResponse.from_payload(payload)
        except ProvisionError as exc:
            LOGGER.warning("Ignoring invalid record %s: %s", self.record_path, exc)
            return None
        try:
            public_text = self.public_key_path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if not self.private_key_path.exists() or not public_text:
            return None
        hostname = payload.get("hostname")
        registered_at = payload.get("registered_at")
        updated_at = payload.get("updated_at")
        return InstallationRecord(
            keys=KeyMaterial(self.private_key_path, self.public_key_path, public_text),
            registration=registration,
            target=target,
            hostname=str(hostname) if hostname else "",
            registered_at=str(registered_at) if registered_at else "",
            updated_at=str(updated_at) if updated_at else "",
        )

    # Writers ------------------------------------------------------------
    def persist(self, record: InstallationRecord) -> None:
        """Durably write the forwarding target and then the registration record.

        ``config.json`` is written last and acts as the commit marker: a record
        is only considered complete once it exists alongside ``database.conf``.
        """
        self.ensure_root()
        self._atomic_write(self.target_path, record.target.to_env(), mode=0o600)
        payload = json.dumps(record.to_json_payload(), indent=2) + "\n"
        self._atomic_write(self.record_path, payload, mode=0o600)

    def write_summary(self, content: str) -> None:
        """Write the human-readable configuration summary."""
        self._atomic_write(self.summary_path, content, mode=0o600)

    def write_uninstall_script(self, content: str) -> None:
        """Write the generated uninstall script."""
        self._atomic_write(self.uninstall_path, content, mode=0o700)

    def remove(self) -> bool:
        """Delete the configuration directory; return ``True`` if it existed."""
        if not self.root.exists():
            return False
        try:
            shutil.rmtree(self.root)
        except OSError as exc:
            raise StoreError(f"Failed to remove {self.root}: {exc}") from exc
        return True

    def _atomic_write(self, path: Path, content: str, *, mode: int) -> None:
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except OSError as exc:
            raise StoreError(f"Failed to write {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
            _fsync_directory(self.root)
        except OSError as exc:
            raise StoreError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def read_target_file(path: Path) -> ForwardingTarget | None:
    """Parse a ``database.conf`` file, returning ``None`` when absent or invalid."""
    if not path.exists():
        return None
    try:
        return ForwardingTarget.from_env(path.read_text(encoding="utf-8"))
    except OSError as exc:
        LOGGER.warning("Ignoring unreadable forwarding target %s: %s", path, exc)
    except ProvisionError as exc:
        LOGGER.warning("Ignoring invalid forwarding target %s: %s", path, exc)
    return None


def _fsync_directory(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


__all__ = ["InstallPhase", "InstallationStore", "StoreError", "read_target_file"]
