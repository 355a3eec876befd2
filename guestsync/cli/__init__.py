"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import GuestSyncModalCLI, main

__all__ = ['GuestSyncModalCLI', 'main']
