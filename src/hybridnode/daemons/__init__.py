"""Managed node services."""
from __future__ import annotations

from .base import Daemon, DaemonError, IdentityError

__all__ = ["Daemon", "DaemonError", "IdentityError"]
