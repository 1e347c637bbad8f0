"""Error taxonomy for the provisioning workflow.

Adapters raise their own narrow exceptions (``SystemdError``, ``StoreError``
and friends). The provisioner translates those into the categories below at
each step boundary so the CLI can report a stable ``kind`` for every fatal
outcome.
"""
from __future__ import annotations


class ProvisionError(RuntimeError):
    """Base class for fatal provisioning failures."""

    kind = "ProvisionError"

    def __init__(self, message: str) -> None:
        """Store *message* for display alongside the error kind."""
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        """Return the bare message (the kind is rendered separately)."""
        return self.message


class PermissionDenied(ProvisionError):
    """The provisioner is not running with the required privilege."""

    kind = "PermissionDenied"


class DependencyMissing(ProvisionError):
    """A required external binary is unavailable."""

    kind = "DependencyMissing"


class InputRequired(ProvisionError):
    """A non-interactive run lacks an answer it needs."""

    kind = "InputRequired"


class KeyGenFailed(ProvisionError):
    """Generating or writing the key pair failed."""

    kind = "KeyGenFailed"


class MissingPublicKey(ProvisionError):
    """A private key exists without a matching public key."""

    kind = "MissingPublicKey"


class RegistrationFailed(ProvisionError):
    """The registration request could not be completed."""

    kind = "RegistrationFailed"


class InvalidRegistrationResponse(ProvisionError):
    """The registration endpoint answered with unusable data."""

    kind = "InvalidRegistrationResponse"


class InvalidIP(ProvisionError):
    """The forwarding target address is not an IPv4 dotted quad."""

    kind = "InvalidIP"


class InvalidPort(ProvisionError):
    """A port value is not an integer in the range 1-65535."""

    kind = "InvalidPort"


class PersistFailed(ProvisionError):
    """Writing the installation record failed."""

    kind = "PersistFailed"


class ServiceInstallFailed(ProvisionError):
    """Installing, enabling or starting the service unit failed."""

    kind = "ServiceInstallFailed"


__all__ = [
    "DependencyMissing",
    "InputRequired",
    "InvalidIP",
    "InvalidPort",
    "InvalidRegistrationResponse",
    "KeyGenFailed",
    "MissingPublicKey",
    "PermissionDenied",
    "PersistFailed",
    "ProvisionError",
    "RegistrationFailed",
    "ServiceInstallFailed",
]
