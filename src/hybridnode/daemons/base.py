"""Contract implemented by every managed node service."""
from __future__ import annotations

from typing import Protocol

from ..api import NodeConfig


class DaemonError(RuntimeError):
    """Raised when a daemon fails to configure, start or finish launching."""


class IdentityError(DaemonError):
    """Raised when a daemon never produces the node identity it owes."""


class Daemon(Protocol):
    """A managed service driven through configure, start and post-launch."""

    @property
    def name(self) -> str:
        """Stable identifier, unique within one run."""

    def configure(self, node_config: NodeConfig) -> None:
        """Write on-disk configuration; safe to repeat, overwrites in place."""

    def ensure_running(self) -> None:
        """Start the service or confirm it is healthy."""

    def post_launch(self, node_config: NodeConfig) -> None:
        """Run actions that need the service to be live."""


__all__ = ["Daemon", "DaemonError", "IdentityError"]
