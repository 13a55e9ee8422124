"""Credential provider contract shared by every identity strategy."""
from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from ..api import CredentialProviderKind, HybridOptions, NodeConfig
from ..commands import Runner, default_runner
from ..config import AppConfig
from ..logging import OperationScope
from ..osinfo import OsRelease
from ..providers.systemd import SystemdManager
from ..retry import NotReadyError, PollSettings, poll
from ..templates import TemplateEngine, write_if_changed

if TYPE_CHECKING:
    from ..daemons.base import Daemon
    from .aws import AwsClients


class CredentialError(RuntimeError):
    """Raised when credential material cannot be produced or configured."""


@dataclass(frozen=True, slots=True)
class NodeSpec:
    """Description of a node that credentials are prepared for."""

    name: str
    cluster_name: str
    region: str
    os_name: str
    role: str = "worker"
    provider: str = "hybrid"


@dataclass(frozen=True, slots=True)
class NodeFile:
    """A file to place on the node before daemons start."""

    path: Path
    content: bytes
    mode: int = 0o644


@dataclass(slots=True)
class CredentialContext:
    """Everything a strategy needs while the node is being bootstrapped."""

    node_config: NodeConfig
    settings: AppConfig
    manager: SystemdManager
    templates: TemplateEngine
    logger: OperationScope
    os_release: OsRelease = field(default_factory=OsRelease)
    runner: Runner = default_runner
    sleep: Callable[[float], None] = time.sleep
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    def host_path(self, path: str | Path) -> Path:
        """Return *path* re-rooted under the configured filesystem root."""
        return self.settings.host_path(path)


class CredentialProvider(Protocol):
    """A strategy yielding cluster authentication material."""

    def name(self) -> CredentialProviderKind:
        """Return the strategy kind."""

    def node_config(self, node_spec: NodeSpec) -> HybridOptions | None:
        """Return the authentication portion of a NodeConfig for *node_spec*."""

    def files_for_node(self, node_spec: NodeSpec) -> list[NodeFile]:
        """Return files to write before daemons start."""

    def verify_uninstall(self, instance_id: str) -> None:
        """Confirm the external registration of *instance_id* is retired."""

    def pre_process(self, context: CredentialContext) -> None:
        """Run lightweight checks before credentials are configured."""

    def identity_daemon(
        self,
        context: CredentialContext,
        on_identity: Callable[[str], None],
    ) -> Daemon | None:
        """Return the agent that produces the node identity, if the strategy has one."""

    def configure(self, context: CredentialContext) -> AwsClients:
        """Put credential configuration in place and return bound API clients."""


def write_node_files(files: Iterable[NodeFile], *, root: Path = Path("/")) -> list[Path]:
    """Write *files* under *root*; return the paths that changed."""
    changed: list[Path] = []
    for node_file in files:
        path = node_file.path
        destination = root / (path.relative_to("/") if path.is_absolute() else path)
        try:
            if write_if_changed(destination, node_file.content, mode=node_file.mode):
                changed.append(destination)
        except OSError as exc:
            raise CredentialError(f"Cannot write {destination}: {exc}") from exc
    return changed


def wait_for_file(
    path: Path,
    settings: PollSettings,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Block until *path* exists or raise :class:`CredentialError`."""

    def probe() -> None:
        if not path.exists():
            raise NotReadyError(str(path))

    try:
        poll(probe, settings, sleep=sleep)
    except NotReadyError as exc:
        raise CredentialError(
            f"{path} was not created within {settings.timeout:g}s"
        ) from exc


__all__ = [
    "CredentialContext",
    "CredentialError",
    "CredentialProvider",
    "NodeFile",
    "NodeSpec",
    "wait_for_file",
    "write_node_files",
]
