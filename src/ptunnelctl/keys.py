"""Tunnel key pair generation and reuse."""
from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import KeyGenFailed, MissingPublicKey
from .models import KeyMaterial

LOGGER = logging.getLogger(__name__)

PRIVATE_KEY_NAME = "tunnel.key"
PUBLIC_KEY_SUFFIX = ".pub"


class KeyPairGenerator(Protocol):
    """Capability that writes a new key pair to disk."""

    def generate(self, private_path: Path, comment: str) -> None:
        """Create ``private_path`` and ``private_path.pub``."""


class Ed25519KeyPairGenerator:
    """Generate passphrase-less Ed25519 keys in OpenSSH format."""

    def generate(self, private_path: Path, comment: str) -> None:
        """Write a fresh key pair tagged with *comment*."""
        private_key = ed25519.Ed25519PrivateKey.generate()
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_line = _openssh_public(private_key)
        if comment:
            public_line = f"{public_line} {comment}"

        fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(private_bytes)
        public_path = _public_path(private_path)
        public_path.write_text(public_line + "\n", encoding="utf-8")
        os.chmod(public_path, 0o644)


@dataclass(slots=True)
class KeyResolution:
    """Outcome of resolving key material."""

    material: KeyMaterial
    generated: bool
    tightened: bool = False


def resolve_key_material(
    config_dir: Path,
    generator: KeyPairGenerator,
    *,
    comment: str,
) -> KeyResolution:
    """Reuse the key pair in *config_dir* or generate a new one."""
    private_path = config_dir / PRIVATE_KEY_NAME
    public_path = _public_path(private_path)

    if private_path.exists():
        tightened = tighten_permissions(private_path)
        if not public_path.exists():
            raise MissingPublicKey(
                f"Found private key {private_path} but public key {public_path} is missing."
            )
        public_text = _read_public(public_path)
        expected = derive_public_key(private_path)
        if _key_body(public_text) != _key_body(expected):
            raise MissingPublicKey(
                f"Public key {public_path} does not match private key {private_path}."
            )
        LOGGER.debug("Reusing existing key pair at %s", private_path)
        return KeyResolution(
            material=KeyMaterial(private_path, public_path, public_text),
            generated=False,
            tightened=tightened,
        )

    if public_path.exists():
        # An orphaned public key is never trusted on its own.
        try:
            public_path.unlink()
        except OSError as exc:
            raise KeyGenFailed(
                f"Failed to remove orphaned public key {public_path}: {exc}"
            ) from exc
    try:
        generator.generate(private_path, comment)
    except (OSError, ValueError) as exc:
        _discard_partial(private_path, public_path)
        raise KeyGenFailed(f"Failed to generate SSH key pair: {exc}") from exc
    if not private_path.exists() or not public_path.exists():
        _discard_partial(private_path, public_path)
        raise KeyGenFailed(f"Key generation did not produce {private_path} and {public_path}.")
    tighten_permissions(private_path)
    LOGGER.debug("Generated key pair at %s", private_path)
    return KeyResolution(
        material=KeyMaterial(private_path, public_path, _read_public(public_path)),
        generated=True,
    )


def tighten_permissions(path: Path) -> bool:
    """Strip group/other and execute bits from *path*; return ``True`` if changed."""
    current = stat.S_IMODE(path.stat().st_mode)
    desired = current & 0o600
    if desired == current:
        return False
    os.chmod(path, desired)
    return True


def derive_public_key(private_path: Path) -> str:
    """Return the OpenSSH public key line for the private key at *private_path*."""
    try:
        private_key = serialization.load_ssh_private_key(private_path.read_bytes(), password=None)
    except (OSError, ValueError, TypeError) as exc:
        raise KeyGenFailed(f"Existing private key {private_path} is unusable: {exc}") from exc
    return _openssh_public(private_key)


def _openssh_public(private_key: object) -> str:
    public_key = private_key.public_key()  # type: ignore[attr-defined]
    return public_key.public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")


def _public_path(private_path: Path) -> Path:
    return private_path.with_name(private_path.name + PUBLIC_KEY_SUFFIX)


def _discard_partial(private_path: Path, public_path: Path) -> None:
    """Remove whatever half of a key pair a failed generation left behind."""
    for path in (public_path, private_path):
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Failed to remove partial key file %s: %s", path, exc)


def _read_public(path: Path) -> str:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise MissingPublicKey(f"Failed to read public key {path}: {exc}") from exc
    if not text:
        raise MissingPublicKey(f"Public key {path} is empty.")
    return text


def _key_body(line: str) -> tuple[str, ...]:
    """Return the algorithm and base64 fields, ignoring the comment."""
    return tuple(line.split()[:2])


__all__ = [
    "Ed25519KeyPairGenerator",
    "KeyPairGenerator",
    "KeyResolution",
    "derive_public_key",
    "resolve_key_material",
    "tighten_permissions",
]
