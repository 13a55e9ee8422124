"""Registration-based credentials through the Systems Manager agent.

The node exchanges a one-time activation for a managed-instance id. The
agent that performs the exchange is the strategy's own daemon and runs
first, because its id becomes the node name every later daemon uses.
"""
from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import boto3

from ..api import CredentialProviderKind, HybridOptions, NodeConfig, SsmOptions
from ..commands import Runner, default_runner, failure_message
from ..config import TimeoutsConfig
from ..daemons.base import DaemonError, IdentityError
from ..logging import OperationScope
from ..providers.systemd import DaemonStatus, SystemdManager
from ..retry import NotReadyError, PollSettings, poll
from .aws import AwsClients
from .base import CredentialContext, CredentialError, NodeFile, NodeSpec, wait_for_file

LOGGER = logging.getLogger(__name__)

AGENT_PATHS = (
    Path("/usr/bin/amazon-ssm-agent"),
    Path("/snap/amazon-ssm-agent/current/amazon-ssm-agent"),
)
REGISTRATION_FILE = Path("/var/lib/amazon/ssm/registration")
ROOT_AWS_DIR = Path("/root/.aws")
CREDENTIALS_FILE = ROOT_AWS_DIR / "credentials"
SYMLINKED_AWS_DIR = Path("/eks-hybrid/.aws")
CREDENTIALS_FILE_ENV = "AWS_SHARED_CREDENTIALS_FILE"

ACTIVATION_EXPIRED = "SSM activation expired. Please use a valid activation"
INVALID_ACTIVATION = "invalid SSM activation. Please verify your activation code and ID"


def agent_daemon_name(os_name: str) -> str:
    """Return the systemd unit name of the agent on *os_name*."""
    if os_name == "ubuntu":
        return "snap.amazon-ssm-agent.amazon-ssm-agent"
    return "amazon-ssm-agent"


@dataclass(frozen=True, slots=True)
class SsmRegistration:
    """Read the registration record the agent keeps on disk."""

    path: Path = REGISTRATION_FILE

    def _load(self) -> dict[str, object]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise DaemonError(f"Cannot read SSM registration file {self.path}: {exc}") from exc
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DaemonError(f"Malformed SSM registration file {self.path}: {exc}") from exc
        return document if isinstance(document, dict) else {}

    def managed_instance_id(self) -> str:
        """Return the managed-instance id, or an empty string when unregistered."""
        return str(self._load().get("ManagedInstanceID") or "")

    def region(self) -> str:
        """Return the region the node registered in, or an empty string."""
        return str(self._load().get("Region") or "")


@dataclass(slots=True)
class SsmDaemon:
    """The agent exchanging the activation and holding the node identity."""

    manager: SystemdManager
    logger: OperationScope
    timeouts: TimeoutsConfig
    on_identity: Callable[[str], None]
    os_name: str = ""
    root: Path = Path("/")
    credentials_file: Path = CREDENTIALS_FILE
    runner: Runner = default_runner
    sleep: Callable[[float], None] = time.sleep

    @property
    def name(self) -> str:
        """Return the agent's unit name."""
        return agent_daemon_name(self.os_name)

    @property
    def registration(self) -> SsmRegistration:
        """Return the on-disk registration record."""
        return SsmRegistration(self._host(REGISTRATION_FILE))

    def configure(self, node_config: NodeConfig) -> None:
        """Register unless already registered, then publish the managed-instance id."""
        if self.registration.managed_instance_id():
            self.logger.info("SSM agent already registered, skipping registration")
            registered = False
        else:
            self._register(node_config)
            registered = True
        instance_id = self._await_identity()
        self.logger.info("Assigning managed instance id as node name", instance_id=instance_id)
        self.on_identity(instance_id)
        if registered:
            self.manager.restart(self.name)
        else:
            self.manager.start(self.name)

    def ensure_running(self) -> None:
        """Enable the agent and wait until systemd reports it running."""
        self.manager.enable(self.name)
        if self.manager.status(self.name) is not DaemonStatus.RUNNING:
            self.manager.start(self.name)
        self.manager.wait_for_status(
            self.name, DaemonStatus.RUNNING, self.timeouts.daemon_running_poll
        )

    def post_launch(self, node_config: NodeConfig) -> None:
        """Re-publish the identity, link the credentials directory and await the file."""
        self.on_identity(self._await_identity())
        hybrid = node_config.spec.hybrid
        if hybrid is not None and hybrid.enable_credentials_file:
            self._link_credentials_dir()
        wait_for_file(self.credentials_file, self.timeouts.credentials_file_poll, sleep=self.sleep)

    def agent_binary(self) -> Path:
        """Return the first installed agent binary."""
        for candidate in AGENT_PATHS:
            path = self._host(candidate)
            if path.exists():
                return path
        searched = ", ".join(str(self._host(p)) for p in AGENT_PATHS)
        raise DaemonError(f"Can't register without the SSM agent installed (searched {searched})")

    # ------------------------------------------------------------------
    def _host(self, path: Path) -> Path:
        return self.root / path.relative_to("/")

    def _register(self, node_config: NodeConfig) -> None:
        hybrid = node_config.spec.hybrid
        if hybrid is None or hybrid.ssm is None:
            raise DaemonError("NodeConfig has no SSM activation.")
        command = [
            str(self.agent_binary()),
            "-register",
            "-y",
            "-region",
            node_config.spec.cluster.region,
            "-code",
            hybrid.ssm.activation_code,
            "-id",
            hybrid.ssm.activation_id,
        ]
        self.logger.info("Registering machine with SSM agent")

        def attempt() -> None:
            try:
                result = self.runner(command)
            except FileNotFoundError as exc:
                raise DaemonError(f"{command[0]} not found: {exc}") from exc
            if result.returncode == 0:
                return
            output = f"{result.stdout or ''}{result.stderr or ''}"
            if "ActivationExpired" in output:
                raise DaemonError(ACTIVATION_EXPIRED)
            if "InvalidActivation" in output:
                raise DaemonError(INVALID_ACTIVATION)
            message = failure_message("amazon-ssm-agent -register", result)
            LOGGER.warning("%s, retrying", message)
            raise NotReadyError(message)

        try:
            poll(attempt, self.timeouts.ssm_registration_poll, sleep=self.sleep)
        except NotReadyError as exc:
            raise DaemonError(
                f"Failed to register machine with SSM after multiple attempts: {exc}"
            ) from exc

    def _await_identity(self) -> str:
        registration = self.registration

        def probe() -> str:
            instance_id = registration.managed_instance_id()
            if not instance_id:
                raise NotReadyError("no managed instance id yet")
            return instance_id

        settings = self.timeouts.ssm_identity_poll
        try:
            return poll(probe, settings, sleep=self.sleep)
        except NotReadyError as exc:
            raise IdentityError(
                f"SSM registration produced no managed instance id within {settings.timeout:g}s"
            ) from exc

    def _link_credentials_dir(self) -> None:
        link = self._host(SYMLINKED_AWS_DIR)
        target = self._host(ROOT_AWS_DIR)
        self.logger.info("Creating symlink for AWS credentials", path=link)
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.is_file():
                link.unlink()
            elif link.is_dir():
                raise DaemonError(f"{link} is a directory, not a symlink")
            link.symlink_to(target)
        except OSError as exc:
            raise DaemonError(f"Cannot create symlink {link}: {exc}") from exc


@dataclass(slots=True)
class SsmCredentialProvider:
    """Strategy exchanging an SSM hybrid activation for a managed-instance id."""

    activation_id: str
    activation_code: str
    ssm_client: Any = None
    uninstall_poll: PollSettings = field(default_factory=lambda: TimeoutsConfig().uninstall_poll)
    sleep: Callable[[float], None] = time.sleep

    def name(self) -> CredentialProviderKind:
        """Return ``ssm``."""
        return CredentialProviderKind.SSM

    def node_config(self, node_spec: NodeSpec) -> HybridOptions | None:
        """Return the activation block for *node_spec*."""
        return HybridOptions(
            ssm=SsmOptions(
                activation_code=self.activation_code,
                activation_id=self.activation_id,
            )
        )

    def files_for_node(self, node_spec: NodeSpec) -> list[NodeFile]:
        """SSM needs no files ahead of time."""
        return []

    def verify_uninstall(self, instance_id: str) -> None:
        """Wait until Systems Manager no longer lists *instance_id*."""
        client = self.ssm_client or boto3.client("ssm")

        def probe() -> None:
            response = client.describe_instance_information(
                Filters=[{"Key": "InstanceIds", "Values": [instance_id]}]
            )
            if response.get("InstanceInformationList"):
                raise NotReadyError(instance_id)

        try:
            poll(probe, self.uninstall_poll, sleep=self.sleep)
        except NotReadyError as exc:
            raise CredentialError(
                f"Managed instance {instance_id} is still registered after "
                f"{self.uninstall_poll.timeout:g}s"
            ) from exc

    def pre_process(self, context: CredentialContext) -> None:
        """Check the agent is installed and any earlier registration matches the region."""
        daemon = self._daemon(context, lambda _instance_id: None)
        daemon.agent_binary()
        registered_region = daemon.registration.region()
        region = context.node_config.spec.cluster.region
        if registered_region and registered_region != region:
            raise CredentialError(
                f"Node is already registered with SSM in {registered_region}, "
                f"but the cluster is in {region}"
            )

    def identity_daemon(
        self,
        context: CredentialContext,
        on_identity: Callable[[str], None],
    ) -> SsmDaemon:
        """Return the agent daemon reporting ids to *on_identity*."""
        return self._daemon(context, on_identity)

    def configure(self, context: CredentialContext) -> AwsClients:
        """Return clients reading the agent-written shared credentials file."""
        credentials_file = self._credentials_file(context)
        settings = context.settings.timeouts.credentials_file_poll
        context.logger.info("Using SSM credentials file", path=credentials_file)
        return AwsClients(
            region=context.node_config.spec.cluster.region,
            credentials_file=credentials_file,
            wait_for=lambda: wait_for_file(credentials_file, settings, sleep=context.sleep),
        )

    # ------------------------------------------------------------------
    def _credentials_file(self, context: CredentialContext) -> Path:
        override = context.env.get(CREDENTIALS_FILE_ENV)
        if override:
            return Path(override)
        return context.host_path(CREDENTIALS_FILE)

    def _daemon(
        self,
        context: CredentialContext,
        on_identity: Callable[[str], None],
    ) -> SsmDaemon:
        return SsmDaemon(
            manager=context.manager,
            logger=context.logger,
            timeouts=context.settings.timeouts,
            on_identity=on_identity,
            os_name=context.os_release.id,
            root=context.settings.root_dir,
            credentials_file=self._credentials_file(context),
            runner=context.runner,
            sleep=context.sleep,
        )


__all__ = [
    "ACTIVATION_EXPIRED",
    "AGENT_PATHS",
    "INVALID_ACTIVATION",
    "REGISTRATION_FILE",
    "SsmCredentialProvider",
    "SsmDaemon",
    "SsmRegistration",
    "agent_daemon_name",
]
