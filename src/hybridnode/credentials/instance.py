"""Cloud instances authenticate with their instance profile."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from ..api import CredentialProviderKind, HybridOptions
from .aws import AwsClients
from .base import CredentialContext, NodeFile, NodeSpec


@dataclass(slots=True)
class InstanceProfileCredentialProvider:
    """Default credential chain; nothing to write and nothing to run."""

    def name(self) -> CredentialProviderKind:
        """Return ``instance-profile``."""
        return CredentialProviderKind.INSTANCE_PROFILE

    def node_config(self, node_spec: NodeSpec) -> HybridOptions | None:
        """Cloud nodes carry no ``spec.hybrid`` block."""
        return None

    def files_for_node(self, node_spec: NodeSpec) -> list[NodeFile]:
        """No files are needed."""
        return []

    def verify_uninstall(self, instance_id: str) -> None:
        """Nothing is registered externally."""

    def pre_process(self, context: CredentialContext) -> None:
        """No checks ahead of credential configuration."""

    def identity_daemon(
        self,
        context: CredentialContext,
        on_identity: Callable[[str], None],
    ) -> None:
        """Instance profiles run no agent."""
        return None

    def configure(self, context: CredentialContext) -> AwsClients:
        """Return clients using the default credential chain."""
        node_config = context.node_config
        region = node_config.status.instance.region or node_config.spec.cluster.region
        return AwsClients(region=region)


__all__ = ["InstanceProfileCredentialProvider"]
