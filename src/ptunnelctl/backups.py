"""Helpers for moving a replaced installation aside."""
from __future__ import annotations

import os
import shutil
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

BACKUP_MARKER = ".backup."
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


def generate_backup_path(root: Path, *, now: datetime | None = None) -> Path:
    """Return an unused ``<root>.backup.<timestamp>`` path."""
    moment = now or datetime.now()
    base = root.with_name(f"{root.name}{BACKUP_MARKER}{moment.strftime(TIMESTAMP_FORMAT)}")
    candidate = base
    counter = 1
    while candidate.exists():
        candidate = base.with_name(f"{base.name}-{counter}")
        counter += 1
    return candidate


def move_to_backup(
    root: Path,
    *,
    extra_files: Iterable[Path] = (),
    now: datetime | None = None,
) -> Path:
    """Atomically rename *root* to a fresh backup path and return it.

    *extra_files* living outside *root* (the service unit) are copied into
    the backup afterwards so it holds the complete prior state.
    """
    destination = generate_backup_path(root, now=now)
    try:
        os.rename(root, destination)
    except OSError as exc:
        raise BackupError(f"Failed to move {root} to {destination}: {exc}") from exc
    for extra in extra_files:
        if not extra.exists():
            continue
        external = destination / "external"
        try:
            external.mkdir(parents=True, exist_ok=True)
            shutil.copy2(extra, external / extra.name)
        except OSError as exc:
            raise BackupError(f"Failed to copy {extra} into {destination}: {exc}") from exc
    return destination


def list_backups(root: Path) -> list[Path]:
    """Return existing backups of *root*, oldest first."""
    parent = root.parent
    if not parent.is_dir():
        return []
    prefix = f"{root.name}{BACKUP_MARKER}"
    return sorted(
        entry for entry in parent.iterdir() if entry.name.startswith(prefix) and entry.is_dir()
    )


__all__ = ["BackupError", "generate_backup_path", "list_backups", "move_to_backup"]
