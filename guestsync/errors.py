"""Project-specific exception types."""

from __future__ import annotations


class GuestSyncError(RuntimeError):
    """Base error for domain-level guestsync failures."""


class ConfigValidationError(GuestSyncError):
    """Raised when a device or guest config is malformed, before any remote call."""


class RemoteAPIError(GuestSyncError):
    """Raised when a remote control-plane call fails."""

    def __init__(self, message: str, *, cmd=None, result=None):
        self.cmd = cmd
        self.result = result
        super().__init__(message)


class GuestLockedError(RemoteAPIError):
    """Raised when the guest is locked by another operation (transient)."""


class ReconcileIncompleteError(GuestSyncError):
    """Raised when mutations succeeded but remote volumes could not be confirmed."""
