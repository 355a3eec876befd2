"""Declarative reconciliation of guest storage and network devices."""

from __future__ import annotations

__version__ = '0.1.0'
