"""Service-manager integrations."""
from __future__ import annotations

from .systemd import DaemonStatus, SystemdError, SystemdManager

__all__ = ["DaemonStatus", "SystemdError", "SystemdManager"]
