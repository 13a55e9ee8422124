"""Container runtime daemon."""
from __future__ import annotations

import base64
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from botocore.exceptions import BotoCoreError, ClientError

from ..api import NodeConfig
from ..commands import Runner, default_runner, failure_message
from ..config import TimeoutsConfig
from ..credentials.aws import AwsClients
from ..logging import OperationScope
from ..providers.systemd import DaemonStatus, SystemdManager
from ..templates import TemplateEngine, write_if_changed
from .base import DaemonError

CONTAINERD_CONFIG_PATH = Path("/etc/containerd/config.toml")
USER_CONFIG_PATH = Path("/etc/containerd/config.d/00-hybridnode.toml")
KERNEL_MODULES_PATH = Path("/etc/modules-load.d/containerd.conf")
KERNEL_MODULES = ("overlay", "br_netfilter")
KERNEL_MODULES_UNIT = "systemd-modules-load"
CRI_NAMESPACE = "k8s.io"


@dataclass(slots=True)
class ContainerdDaemon:
    """Render the containerd configuration and keep the runtime up."""

    manager: SystemdManager
    templates: TemplateEngine
    logger: OperationScope
    timeouts: TimeoutsConfig
    clients: Callable[[], AwsClients]
    root: Path = Path("/")
    runner: Runner = default_runner

    @property
    def name(self) -> str:
        """Return ``containerd``."""
        return "containerd"

    def configure(self, node_config: NodeConfig) -> None:
        """Write ``config.toml``, the user fragment and the kernel module list."""
        user_config = node_config.spec.containerd.config
        fragment = self._host(USER_CONFIG_PATH)
        try:
            if user_config:
                write_if_changed(fragment, user_config, mode=0o644)
            else:
                fragment.unlink(missing_ok=True)
            self.templates.render_to_path(
                "containerd/config.toml.j2",
                self._host(CONTAINERD_CONFIG_PATH),
                {
                    "sandbox_image": node_config.status.defaults.sandbox_image,
                    "user_config": bool(user_config),
                },
            )
            write_if_changed(
                self._host(KERNEL_MODULES_PATH),
                "".join(f"{module}\n" for module in KERNEL_MODULES),
            )
        except OSError as exc:
            raise DaemonError(f"Cannot write containerd configuration: {exc}") from exc

    def ensure_running(self) -> None:
        """Load kernel modules, then restart containerd and wait for it."""
        self.manager.restart(KERNEL_MODULES_UNIT)
        self.manager.enable(self.name)
        self.manager.restart(self.name)
        self.logger.info("Waiting for containerd to be running")
        self.manager.wait_for_status(
            self.name, DaemonStatus.RUNNING, self.timeouts.daemon_running_poll
        )

    def post_launch(self, node_config: NodeConfig) -> None:
        """Cache the sandbox image so the kubelet never pulls it on the critical path."""
        image = node_config.status.defaults.sandbox_image
        if not image:
            self.logger.info("No sandbox image configured, skipping pull")
            return
        self.logger.info("Pulling sandbox image", image=image)
        command = ["ctr", "--namespace", CRI_NAMESPACE, "images", "pull"]
        if ".dkr.ecr." in image:
            command += ["--user", self._ecr_credentials()]
        command.append(image)
        try:
            result = self.runner(command)
        except FileNotFoundError as exc:
            raise DaemonError(f"ctr not found: {exc}") from exc
        if result.returncode != 0:
            raise DaemonError(failure_message(f"ctr images pull {image}", result))

    # ------------------------------------------------------------------
    def _host(self, path: Path) -> Path:
        return self.root / path.relative_to("/")

    def _ecr_credentials(self) -> str:
        try:
            response = self.clients().client("ecr").get_authorization_token()
        except (BotoCoreError, ClientError) as exc:
            raise DaemonError(f"Cannot fetch ECR authorization token: {exc}") from exc
        data = response.get("authorizationData") or []
        if not data:
            raise DaemonError("ECR returned no authorization data.")
        return base64.b64decode(data[0]["authorizationToken"]).decode("utf-8")


__all__ = ["CONTAINERD_CONFIG_PATH", "ContainerdDaemon", "USER_CONFIG_PATH"]
