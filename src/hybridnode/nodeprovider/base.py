"""Node provider contract and the wiring shared by hybrid and cloud nodes."""
from __future__ import annotations

import os
import time
from collections.abc import Callable, Collection, Mapping
from typing import Protocol

from ..api import ClusterDetails, CredentialProviderKind, NodeConfig
from ..aspects import SystemAspect
from ..commands import Runner, default_runner
from ..config import AppConfig, TimeoutsConfig
from ..credentials import (
    AwsClients,
    CredentialContext,
    CredentialError,
    CredentialProvider,
    InstanceProfileCredentialProvider,
    RolesAnywhereCredentialProvider,
    SsmCredentialProvider,
)
from ..daemons.base import Daemon
from ..daemons.containerd import ContainerdDaemon
from ..daemons.kubelet import KubeletDaemon
from ..imds import ImdsClient
from ..logging import OperationScope
from ..osinfo import OsRelease
from ..providers.systemd import SystemdManager
from ..templates import TemplateEngine

ECR_ACCOUNT = "602401143452"
SANDBOX_IMAGE_REPOSITORY = "eks/pause"
SANDBOX_IMAGE_TAG = "3.5"


class NodeProvider(Protocol):
    """Everything the orchestrator needs to bootstrap one node."""

    node_config: NodeConfig
    logger: OperationScope

    def aspects(self) -> list[SystemAspect]:
        """Return host preparation steps; empty for hybrid nodes."""

    def pre_process_daemon(self) -> None:
        """Run checks that precede credential configuration."""

    def configure_credentials(self) -> AwsClients:
        """Configure the credential strategy and return bound clients."""

    def daemons(self) -> list[Daemon]:
        """Return the daemons in the order they must run."""

    def cleanup(self) -> None:
        """Release handles acquired during construction."""


def sandbox_image(region: str) -> str:
    """Return the pause image reference served from *region*."""
    domain = "amazonaws.com.cn" if region.startswith("cn-") else "amazonaws.com"
    return (
        f"{ECR_ACCOUNT}.dkr.ecr.{region}.{domain}/"
        f"{SANDBOX_IMAGE_REPOSITORY}:{SANDBOX_IMAGE_TAG}"
    )


def credential_provider_for(
    node_config: NodeConfig, timeouts: TimeoutsConfig | None = None
) -> CredentialProvider:
    """Resolve the credential strategy *node_config* asks for."""
    timeouts = timeouts or TimeoutsConfig()
    kind = node_config.credential_kind()
    hybrid = node_config.spec.hybrid
    if kind is CredentialProviderKind.SSM and hybrid is not None and hybrid.ssm is not None:
        return SsmCredentialProvider(
            activation_id=hybrid.ssm.activation_id,
            activation_code=hybrid.ssm.activation_code,
            uninstall_poll=timeouts.uninstall_poll,
        )
    if (
        kind is CredentialProviderKind.IAM_ROLES_ANYWHERE
        and hybrid is not None
        and hybrid.iam_roles_anywhere is not None
    ):
        options = hybrid.iam_roles_anywhere
        return RolesAnywhereCredentialProvider(
            trust_anchor_arn=options.trust_anchor_arn,
            profile_arn=options.profile_arn,
            role_arn=options.role_arn,
        )
    return InstanceProfileCredentialProvider()


class BaseNodeProvider:
    """Wiring shared by every node kind.

    Subclasses supply validation, enrichment and the aspect list. The daemon
    list is built here: the credential strategy's identity daemon, when it
    has one, always comes first.
    """

    def __init__(
        self,
        node_config: NodeConfig,
        *,
        settings: AppConfig,
        logger: OperationScope,
        manager: SystemdManager,
        templates: TemplateEngine,
        credential_provider: CredentialProvider | None = None,
        os_release: OsRelease | None = None,
        daemon_filter: Collection[str] | None = None,
        runner: Runner = default_runner,
        sleep: Callable[[float], None] = time.sleep,
        env: Mapping[str, str] | None = None,
        imds: ImdsClient | None = None,
    ) -> None:
        """Bind the provider to *node_config* and the run's collaborators."""
        self.node_config = node_config
        self.settings = settings
        self.logger = logger
        self.manager = manager
        self.templates = templates
        self.credential_provider = credential_provider or credential_provider_for(
            node_config, settings.timeouts
        )
        self.os_release = os_release or OsRelease()
        self.daemon_filter = frozenset(daemon_filter) if daemon_filter is not None else None
        self.runner = runner
        self.sleep = sleep
        self.env = dict(os.environ if env is None else env)
        self.imds = imds or ImdsClient(
            endpoint=settings.imds.endpoint, timeout=settings.imds.timeout
        )
        self._clients: AwsClients | None = None
        self._context: CredentialContext | None = None
        self._closed = False

    @property
    def context(self) -> CredentialContext:
        """Return the context handed to the credential strategy."""
        if self._context is None:
            self._context = CredentialContext(
                node_config=self.node_config,
                settings=self.settings,
                manager=self.manager,
                templates=self.templates,
                logger=self.logger,
                os_release=self.os_release,
                runner=self.runner,
                sleep=self.sleep,
                env=self.env,
            )
        return self._context

    def validate_config(self) -> None:
        """Reject an inconsistent NodeConfig."""
        raise NotImplementedError

    def enrich(self) -> None:
        """Fill in derived NodeConfig fields."""
        raise NotImplementedError

    def aspects(self) -> list[SystemAspect]:
        """Return host preparation steps."""
        return []

    def pre_process_daemon(self) -> None:
        """Let the credential strategy check the host before configuration."""
        self.credential_provider.pre_process(self.context)

    def configure_credentials(self) -> AwsClients:
        """Configure the credential strategy and keep its clients for later daemons."""
        self._clients = self.credential_provider.configure(self.context)
        return self._clients

    def aws_clients(self) -> AwsClients:
        """Return the clients produced by :meth:`configure_credentials`."""
        if self._clients is None:
            raise CredentialError("Credentials have not been configured yet.")
        return self._clients

    def cluster_details(self) -> ClusterDetails:
        """Return the cluster details daemons render from."""
        return self.node_config.spec.cluster

    def daemons(self) -> list[Daemon]:
        """Return the identity daemon (if any), containerd and the kubelet."""
        identity = self.credential_provider.identity_daemon(
            self.context, self._propagate_identity
        )
        daemons: list[Daemon] = [] if identity is None else [identity]
        daemons.append(
            ContainerdDaemon(
                manager=self.manager,
                templates=self.templates,
                logger=self.logger,
                timeouts=self.settings.timeouts,
                clients=self.aws_clients,
                root=self.settings.root_dir,
                runner=self.runner,
            )
        )
        daemons.append(
            KubeletDaemon(
                manager=self.manager,
                templates=self.templates,
                logger=self.logger,
                timeouts=self.settings.timeouts,
                cluster_details=self.cluster_details,
                root=self.settings.root_dir,
            )
        )
        if self.daemon_filter is None:
            return daemons
        return [
            daemon
            for daemon in daemons
            if daemon is identity or daemon.name in self.daemon_filter
        ]

    def cleanup(self) -> None:
        """Close the daemon manager and the metadata client; later calls do nothing."""
        if self._closed:
            return
        self._closed = True
        self.manager.close()
        self.imds.close()

    # ------------------------------------------------------------------
    def _propagate_identity(self, node_name: str) -> None:
        raise CredentialError(
            f"{type(self).__name__} does not accept node identities (got {node_name!r})."
        )


__all__ = [
    "BaseNodeProvider",
    "NodeProvider",
    "credential_provider_for",
    "sandbox_image",
]
