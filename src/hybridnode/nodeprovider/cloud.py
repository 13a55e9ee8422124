"""Node provider for instances inside the cloud provider network."""
from __future__ import annotations

from ..api import NodeConfigError
from ..aspects import LocalDiskAspect, SysctlAspect, SystemAspect
from ..imds import ImdsError
from .base import BaseNodeProvider, sandbox_image


class CloudNodeProvider(BaseNodeProvider):
    """Bootstrap a cloud instance that authenticates with its instance profile."""

    def validate_config(self) -> None:
        """Cloud nodes need complete cluster details and no hybrid block."""
        cluster = self.node_config.spec.cluster
        if not cluster.name:
            raise NodeConfigError("Name is missing in cluster configuration")
        if not cluster.api_server_endpoint:
            raise NodeConfigError("Apiserver endpoint is missing in cluster configuration")
        if not cluster.certificate_authority:
            raise NodeConfigError("Certificate authority is missing in cluster configuration")
        if not cluster.cidr:
            raise NodeConfigError("CIDR is missing in cluster configuration")
        if self.node_config.spec.hybrid is not None:
            raise NodeConfigError("hybrid configuration is not supported on cloud instances")

    def enrich(self) -> None:
        """Read instance metadata into ``status.instance``."""
        instance = self.node_config.status.instance
        try:
            document = self.imds.identity_document()
            instance.id = str(document.get("instanceId") or "")
            instance.region = str(document.get("region") or "")
            instance.type = str(document.get("instanceType") or "")
            instance.availability_zone = str(document.get("availabilityZone") or "")
            instance.mac = self.imds.metadata("mac")
            instance.private_dns_name = self.imds.metadata("local-hostname")
        except ImdsError as exc:
            raise NodeConfigError(f"Cannot read instance metadata: {exc}") from exc
        region = instance.region or self.node_config.spec.cluster.region
        self.node_config.status.defaults.sandbox_image = sandbox_image(region)
        self.logger.info(
            "Instance details populated",
            instance_id=instance.id,
            private_dns_name=instance.private_dns_name,
        )

    def aspects(self) -> list[SystemAspect]:
        """Return the local-disk and sysctl aspects."""
        return [
            LocalDiskAspect(self.node_config, self.logger, runner=self.runner),
            SysctlAspect(
                self.templates,
                self.logger,
                path=self.settings.host_path("/etc/sysctl.d/99-hybridnode.conf"),
                runner=self.runner,
            ),
        ]


__all__ = ["CloudNodeProvider"]
