"""Host-level setup steps that run before any credential or daemon work.

Aspects are independent of the cluster identity and are only used on cloud
instances; a hybrid node gets an empty list because host preparation there is
left to the operator.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .api import NodeConfig
from .commands import Runner, default_runner, run_checked
from .logging import OperationScope
from .templates import TemplateEngine

SYSCTL_CONF_PATH = Path("/etc/sysctl.d/99-hybridnode.conf")

SYSCTL_SETTINGS: tuple[tuple[str, str], ...] = (
    ("fs.inotify.max_user_watches", "524288"),
    ("fs.inotify.max_user_instances", "8192"),
    ("net.ipv4.ip_forward", "1"),
    ("net.ipv4.conf.all.forwarding", "1"),
    ("net.ipv6.conf.all.forwarding", "1"),
    ("net.bridge.bridge-nf-call-iptables", "1"),
    ("net.bridge.bridge-nf-call-ip6tables", "1"),
    ("vm.overcommit_memory", "1"),
    ("kernel.panic", "10"),
    ("kernel.panic_on_oops", "1"),
)


class AspectError(RuntimeError):
    """Raised when a system aspect fails to apply."""


class SystemAspect(Protocol):
    """A named, idempotent host preparation step."""

    @property
    def name(self) -> str:
        """Stable aspect name."""

    def setup(self) -> None:
        """Apply the step."""


@dataclass(slots=True)
class LocalDiskAspect:
    """Lay out instance-store disks with ``setup-local-disks``."""

    node_config: NodeConfig
    logger: OperationScope
    runner: Runner = default_runner

    @property
    def name(self) -> str:
        """Return ``local-disk``."""
        return "local-disk"

    def setup(self) -> None:
        """Run the disk setup script for the configured strategy, if any."""
        strategy = self.node_config.spec.instance.local_storage.strategy
        if strategy is None:
            self.logger.info("Not configuring local disks.")
            return
        run_checked(self.runner, ["setup-local-disks", strategy.value.lower()], AspectError)


@dataclass(slots=True)
class SysctlAspect:
    """Write the kernel parameter drop-in and reload sysctl."""

    templates: TemplateEngine
    logger: OperationScope
    path: Path = SYSCTL_CONF_PATH
    settings: tuple[tuple[str, str], ...] = field(default=SYSCTL_SETTINGS)
    runner: Runner = default_runner

    @property
    def name(self) -> str:
        """Return ``sysctl``."""
        return "sysctl"

    def setup(self) -> None:
        """Render the drop-in; reload only when it changed."""
        try:
            changed = self.templates.render_to_path(
                "sysctl/99-hybridnode.conf.j2",
                self.path,
                {"settings": self.settings},
                mode=0o644,
            )
        except OSError as exc:
            raise AspectError(f"Cannot write {self.path}: {exc}") from exc
        if not changed:
            self.logger.info("sysctl drop-in already current", path=self.path)
            return
        run_checked(self.runner, ["sysctl", "--system"], AspectError)


__all__ = [
    "AspectError",
    "LocalDiskAspect",
    "SYSCTL_CONF_PATH",
    "SYSCTL_SETTINGS",
    "SysctlAspect",
    "SystemAspect",
]
