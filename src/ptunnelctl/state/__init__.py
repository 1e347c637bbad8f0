"""On-disk installation state."""
from __future__ import annotations

from .store import InstallationStore, InstallPhase, StoreError, read_target_file

__all__ = ["InstallPhase", "InstallationStore", "StoreError", "read_target_file"]
