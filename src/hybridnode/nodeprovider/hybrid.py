"""Node provider for hybrid nodes running outside the cloud."""
from __future__ import annotations

import base64
import binascii
import re

from botocore.exceptions import BotoCoreError, ClientError

from ..api import ClusterDetails, NodeConfigError
from ..credentials import CredentialError
from ..credentials.rolesanywhere import AWS_CONFIG_PATH, CERTIFICATE_PATH, PRIVATE_KEY_PATH
from ..osinfo import OsRelease
from .base import BaseNodeProvider, sandbox_image

ACTIVATION_CODE_PATTERN = re.compile(r"^.{20,250}$")
ACTIVATION_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)
MAX_NODE_NAME_LENGTH = 64
# (os-release ID, version prefix) pairs the signing helper does not support.
ROLES_ANYWHERE_UNSUPPORTED_OS = (("rhel", "8"), ("ubuntu", "20.04"))


def _unsupported_for_roles_anywhere(release: OsRelease) -> bool:
    version = release.version_id
    return any(
        release.id == os_id and (version == prefix or version.startswith(f"{prefix}."))
        for os_id, prefix in ROLES_ANYWHERE_UNSUPPORTED_OS
    )


def _flag_value(flags: list[str], name: str) -> str | None:
    for index, flag in enumerate(flags):
        if flag == name:
            return flags[index + 1] if index + 1 < len(flags) else ""
        if flag.startswith(f"{name}="):
            return flag.split("=", 1)[1]
    return None


class HybridNodeProvider(BaseNodeProvider):
    """Bootstrap a node that authenticates with SSM or IAM Roles Anywhere.

    Host preparation is the operator's job, so :meth:`aspects` is always
    empty. Cluster details missing from the NodeConfig are fetched with
    ``DescribeCluster`` the first time a daemon asks for them, which is after
    credentials and the node identity exist.
    """

    def validate_config(self) -> None:
        """Reject configurations a hybrid node cannot run with."""
        spec = self.node_config.spec
        if not spec.cluster.name:
            raise NodeConfigError("Name is missing in cluster configuration")
        if not spec.cluster.region:
            raise NodeConfigError("Region is missing in cluster configuration")
        hostname_override = _flag_value(spec.kubelet.flags, "--hostname-override")
        if hostname_override is not None:
            raise NodeConfigError(
                "hostname-override kubelet flag is not supported for hybrid nodes "
                f"but found override: {hostname_override}"
            )
        if spec.instance.local_storage.strategy is not None:
            raise NodeConfigError(
                "instance.localStorage is not supported for hybrid nodes; "
                "prepare local disks before running init"
            )
        hybrid = spec.hybrid
        if hybrid is None or (hybrid.ssm is None and hybrid.iam_roles_anywhere is None):
            raise NodeConfigError(
                "Either IAMRolesAnywhere or SSM must be provided for hybrid node configuration"
            )
        if hybrid.ssm is not None and hybrid.iam_roles_anywhere is not None:
            raise NodeConfigError(
                "Only one of IAMRolesAnywhere or SSM must be provided for hybrid node configuration"
            )
        if hybrid.ssm is not None:
            self._validate_ssm()
        else:
            self._validate_roles_anywhere()

    def enrich(self) -> None:
        """Populate defaults and the sandbox image."""
        hybrid = self.node_config.spec.hybrid
        if hybrid is not None and hybrid.iam_roles_anywhere is not None:
            options = hybrid.iam_roles_anywhere
            self.node_config.status.hybrid.node_name = options.node_name
            options.aws_config_path = options.aws_config_path or str(AWS_CONFIG_PATH)
            options.certificate_path = options.certificate_path or str(CERTIFICATE_PATH)
            options.private_key_path = options.private_key_path or str(PRIVATE_KEY_PATH)
        region = self.node_config.spec.cluster.region
        self.node_config.status.defaults.sandbox_image = sandbox_image(region)
        self.logger.info(
            "Default options populated",
            sandbox_image=self.node_config.status.defaults.sandbox_image,
        )

    def cluster_details(self) -> ClusterDetails:
        """Return cluster details, completing them from ``DescribeCluster`` once."""
        cluster = self.node_config.spec.cluster
        if cluster.api_server_endpoint and cluster.certificate_authority and cluster.cidr:
            return cluster
        described = self._describe_cluster(cluster.name)
        if described.get("status") != "ACTIVE":
            raise NodeConfigError(f"EKS cluster {cluster.name} is not active")
        if not described.get("remoteNetworkConfig"):
            raise NodeConfigError(
                f"EKS cluster {cluster.name} does not have remoteNetworkConfig enabled, "
                "which is required for hybrid nodes"
            )
        if not cluster.api_server_endpoint:
            cluster.api_server_endpoint = str(described.get("endpoint") or "")
        if not cluster.certificate_authority:
            data = (described.get("certificateAuthority") or {}).get("data") or ""
            try:
                cluster.certificate_authority = base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise NodeConfigError(
                    f"EKS cluster {cluster.name} returned a malformed certificate authority"
                ) from exc
        if not cluster.cidr:
            network = described.get("kubernetesNetworkConfig") or {}
            cidr = network.get("serviceIpv4Cidr") or network.get("serviceIpv6Cidr")
            cluster.cidr = str(cidr or "")
        self.logger.info(
            "Cluster details populated",
            endpoint=cluster.api_server_endpoint,
            cidr=cluster.cidr,
        )
        return cluster

    # ------------------------------------------------------------------
    def _propagate_identity(self, node_name: str) -> None:
        status = self.node_config.status.hybrid
        if status.node_name != node_name:
            self.logger.info("Node name set from identity", node_name=node_name)
        status.node_name = node_name

    def _describe_cluster(self, name: str) -> dict[str, object]:
        try:
            response = self.aws_clients().eks().describe_cluster(name=name)
        except (BotoCoreError, ClientError) as exc:
            raise CredentialError(f"Describing EKS cluster {name}: {exc}") from exc
        return response.get("cluster") or {}

    def _validate_ssm(self) -> None:
        ssm = self.node_config.spec.hybrid.ssm
        if not ssm.activation_code:
            raise NodeConfigError("ActivationCode is missing in hybrid ssm configuration")
        if not ssm.activation_id:
            raise NodeConfigError("ActivationID is missing in hybrid ssm configuration")
        if not ACTIVATION_CODE_PATTERN.match(ssm.activation_code):
            raise NodeConfigError("invalid ActivationCode format. Must be 20-250 characters")
        if not ACTIVATION_ID_PATTERN.match(ssm.activation_id):
            raise NodeConfigError(
                f"invalid ActivationID format: {ssm.activation_id}. "
                f"Must be in format: {ACTIVATION_ID_PATTERN.pattern}"
            )

    def _validate_roles_anywhere(self) -> None:
        options = self.node_config.spec.hybrid.iam_roles_anywhere
        if not options.role_arn:
            raise NodeConfigError("RoleARN is missing in hybrid iam roles anywhere configuration")
        if not options.profile_arn:
            raise NodeConfigError(
                "ProfileARN is missing in hybrid iam roles anywhere configuration"
            )
        if not options.trust_anchor_arn:
            raise NodeConfigError(
                "TrustAnchorARN is missing in hybrid iam roles anywhere configuration"
            )
        if not options.node_name:
            raise NodeConfigError(
                "NodeName can't be empty in hybrid iam roles anywhere configuration"
            )
        if len(options.node_name) > MAX_NODE_NAME_LENGTH:
            raise NodeConfigError(
                f"NodeName can't be longer than {MAX_NODE_NAME_LENGTH} characters "
                "in hybrid iam roles anywhere configuration"
            )
        if _unsupported_for_roles_anywhere(self.os_release):
            raise NodeConfigError(
                f"IAM Roles Anywhere is not supported on {self.os_release.id} "
                f"{self.os_release.version_id}"
            )


__all__ = ["HybridNodeProvider"]
