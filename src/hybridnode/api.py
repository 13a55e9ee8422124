"""NodeConfig document model.

A ``NodeConfig`` is the YAML document an operator hands to ``hybridnode
init``. ``spec`` is read from the document; ``status`` is filled in during
enrichment (instance metadata, default images, the resolved node name) and is
never read from user input.

Decoding is strict: unknown keys, wrong types and an unexpected
``apiVersion``/``kind`` raise :class:`NodeConfigError`.
"""
from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

import yaml

API_VERSION = "node.eks.aws/v1alpha1"
KIND = "NodeConfig"


class NodeConfigError(RuntimeError):
    """Raised when a NodeConfig document is malformed or inconsistent."""


class CredentialProviderKind(str, Enum):
    """Closed set of credential strategies a node can use."""

    SSM = "ssm"
    IAM_ROLES_ANYWHERE = "iam-ra"
    INSTANCE_PROFILE = "instance-profile"


class NodeType(str, Enum):
    """Kind of node described by a NodeConfig."""

    SSM = "ssm"
    IAM_ROLES_ANYWHERE = "iam-ra"
    EC2 = "ec2"
    OUTPOST = "outpost"


class LocalStorageStrategy(str, Enum):
    """Instance-store layout applied by the local-disk aspect."""

    RAID0 = "RAID0"
    MOUNT = "Mount"


@dataclass(slots=True)
class ClusterDetails:
    """Identity and endpoint of the control plane the node joins."""

    name: str = ""
    region: str = ""
    api_server_endpoint: str = ""
    certificate_authority: bytes = b""
    cidr: str = ""
    enable_outpost: bool | None = None
    id: str = ""


@dataclass(slots=True)
class ContainerdOptions:
    """User additions to the container runtime configuration."""

    config: str = ""


@dataclass(slots=True)
class LocalStorageOptions:
    """Instance-store settings."""

    strategy: LocalStorageStrategy | None = None


@dataclass(slots=True)
class InstanceOptions:
    """Host-level options applied by system aspects."""

    local_storage: LocalStorageOptions = field(default_factory=LocalStorageOptions)


@dataclass(slots=True)
class KubeletOptions:
    """User overrides for the kubelet."""

    config: dict[str, object] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SsmOptions:
    """Activation pair exchanged for a managed-instance id."""

    activation_code: str = ""
    activation_id: str = ""


@dataclass(slots=True)
class RolesAnywhereOptions:
    """Certificate-based credential settings."""

    node_name: str = ""
    trust_anchor_arn: str = ""
    profile_arn: str = ""
    role_arn: str = ""
    aws_config_path: str = ""
    certificate_path: str = ""
    private_key_path: str = ""


@dataclass(slots=True)
class HybridOptions:
    """Settings for nodes running outside the cloud provider's network."""

    enable_credentials_file: bool = False
    ssm: SsmOptions | None = None
    iam_roles_anywhere: RolesAnywhereOptions | None = None


@dataclass(slots=True)
class NodeConfigSpec:
    """User-supplied part of a NodeConfig."""

    cluster: ClusterDetails = field(default_factory=ClusterDetails)
    containerd: ContainerdOptions = field(default_factory=ContainerdOptions)
    instance: InstanceOptions = field(default_factory=InstanceOptions)
    kubelet: KubeletOptions = field(default_factory=KubeletOptions)
    hybrid: HybridOptions | None = None


@dataclass(slots=True)
class InstanceDetails:
    """Instance metadata discovered during enrichment."""

    id: str = ""
    region: str = ""
    type: str = ""
    availability_zone: str = ""
    mac: str = ""
    private_dns_name: str = ""


@dataclass(slots=True)
class HybridDetails:
    """Hybrid identity resolved during the run."""

    node_name: str = ""


@dataclass(slots=True)
class DefaultOptions:
    """Defaults resolved during enrichment."""

    sandbox_image: str = ""


@dataclass(slots=True)
class NodeConfigStatus:
    """Machine-populated part of a NodeConfig."""

    instance: InstanceDetails = field(default_factory=InstanceDetails)
    hybrid: HybridDetails = field(default_factory=HybridDetails)
    defaults: DefaultOptions = field(default_factory=DefaultOptions)


@dataclass(slots=True)
class NodeConfig:
    """The validated, enriched description of the node being bootstrapped."""

    spec: NodeConfigSpec = field(default_factory=NodeConfigSpec)
    status: NodeConfigStatus = field(default_factory=NodeConfigStatus)

    def is_hybrid_node(self) -> bool:
        """Return ``True`` when the node lives outside the provider network."""
        return self.spec.hybrid is not None

    def is_ssm(self) -> bool:
        """Return ``True`` when the node registers through SSM activation."""
        return self.spec.hybrid is not None and self.spec.hybrid.ssm is not None

    def is_iam_roles_anywhere(self) -> bool:
        """Return ``True`` when the node authenticates with a certificate."""
        return (
            self.spec.hybrid is not None
            and self.spec.hybrid.iam_roles_anywhere is not None
        )

    def is_outpost_node(self) -> bool:
        """Return ``True`` when the cluster control plane runs on an Outpost."""
        return bool(self.spec.cluster.enable_outpost)

    def node_type(self) -> NodeType:
        """Classify the node."""
        if self.is_ssm():
            return NodeType.SSM
        if self.is_iam_roles_anywhere():
            return NodeType.IAM_ROLES_ANYWHERE
        if self.is_outpost_node():
            return NodeType.OUTPOST
        return NodeType.EC2

    def credential_kind(self) -> CredentialProviderKind:
        """Return the credential strategy this node requests."""
        if self.is_ssm():
            return CredentialProviderKind.SSM
        if self.is_iam_roles_anywhere():
            return CredentialProviderKind.IAM_ROLES_ANYWHERE
        return CredentialProviderKind.INSTANCE_PROFILE

    def resolved_node_name(self) -> str:
        """Return the node name the kubelet registers with."""
        if self.is_hybrid_node():
            return self.status.hybrid.node_name
        return self.status.instance.private_dns_name

    def to_dict(self) -> dict[str, object]:
        """Return the document form of the NodeConfig, status included."""
        spec = self.spec
        cluster = spec.cluster
        strategy = spec.instance.local_storage.strategy
        spec_doc: dict[str, object] = {
            "cluster": _prune(
                {
                    "name": cluster.name,
                    "region": cluster.region,
                    "apiServerEndpoint": cluster.api_server_endpoint,
                    "certificateAuthority": base64.b64encode(
                        cluster.certificate_authority
                    ).decode("ascii"),
                    "cidr": cluster.cidr,
                    "enableOutpost": cluster.enable_outpost,
                    "id": cluster.id,
                }
            ),
            "containerd": _prune({"config": spec.containerd.config}),
            "instance": _prune(
                {"localStorage": _prune({"strategy": strategy.value if strategy else None})}
            ),
            "kubelet": _prune(
                {"config": dict(spec.kubelet.config), "flags": list(spec.kubelet.flags)}
            ),
        }
        if spec.hybrid is not None:
            hybrid: dict[str, object] = {
                "enableCredentialsFile": spec.hybrid.enable_credentials_file,
            }
            if spec.hybrid.ssm is not None:
                hybrid["ssm"] = {
                    "activationCode": spec.hybrid.ssm.activation_code,
                    "activationId": spec.hybrid.ssm.activation_id,
                }
            if spec.hybrid.iam_roles_anywhere is not None:
                ra = spec.hybrid.iam_roles_anywhere
                hybrid["iamRolesAnywhere"] = _prune(
                    {
                        "nodeName": ra.node_name,
                        "trustAnchorArn": ra.trust_anchor_arn,
                        "profileArn": ra.profile_arn,
                        "roleArn": ra.role_arn,
                        "awsConfigPath": ra.aws_config_path,
                        "certificatePath": ra.certificate_path,
                        "privateKeyPath": ra.private_key_path,
                    }
                )
            spec_doc["hybrid"] = hybrid

        instance = self.status.instance
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "spec": spec_doc,
            "status": {
                "instance": _prune(
                    {
                        "id": instance.id,
                        "region": instance.region,
                        "type": instance.type,
                        "availabilityZone": instance.availability_zone,
                        "mac": instance.mac,
                        "privateDnsName": instance.private_dns_name,
                    }
                ),
                "hybrid": _prune({"nodeName": self.status.hybrid.node_name}),
                "defaults": _prune({"sandboxImage": self.status.defaults.sandbox_image}),
            },
        }


def parse_node_config_yaml(text: str, *, source: str = "<string>") -> NodeConfig:
    """Decode a YAML NodeConfig document."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise NodeConfigError(f"Failed to parse NodeConfig from {source}: {exc}") from exc
    if not isinstance(document, Mapping):
        raise NodeConfigError(f"NodeConfig from {source} must be a mapping at the top level.")
    return parse_node_config(document)


def parse_node_config(document: Mapping[str, object]) -> NodeConfig:
    """Decode a NodeConfig from an already-parsed mapping."""
    root = _mapping(document, "NodeConfig", {"apiVersion", "kind", "metadata", "spec"})
    if root.get("apiVersion") != API_VERSION:
        raise NodeConfigError(
            f"Unsupported apiVersion {root.get('apiVersion')!r}; expected {API_VERSION}."
        )
    if root.get("kind") != KIND:
        raise NodeConfigError(f"Unsupported kind {root.get('kind')!r}; expected {KIND}.")

    spec_map = _mapping(
        root.get("spec"), "spec", {"cluster", "containerd", "instance", "kubelet", "hybrid"}
    )
    spec = NodeConfigSpec(
        cluster=_parse_cluster(spec_map.get("cluster")),
        containerd=_parse_containerd(spec_map.get("containerd")),
        instance=_parse_instance(spec_map.get("instance")),
        kubelet=_parse_kubelet(spec_map.get("kubelet")),
        hybrid=_parse_hybrid(spec_map.get("hybrid")) if "hybrid" in spec_map else None,
    )
    return NodeConfig(spec=spec)


def _parse_cluster(value: object) -> ClusterDetails:
    mapping = _mapping(
        value,
        "spec.cluster",
        {
            "name",
            "region",
            "apiServerEndpoint",
            "certificateAuthority",
            "cidr",
            "enableOutpost",
            "id",
        },
    )
    raw_ca = _string(mapping.get("certificateAuthority"), "spec.cluster.certificateAuthority")
    try:
        certificate_authority = base64.b64decode(raw_ca, validate=True) if raw_ca else b""
    except (binascii.Error, ValueError) as exc:
        raise NodeConfigError("spec.cluster.certificateAuthority must be base64 encoded.") from exc
    enable_outpost = mapping.get("enableOutpost")
    if enable_outpost is not None and not isinstance(enable_outpost, bool):
        raise NodeConfigError("spec.cluster.enableOutpost must be a boolean.")
    return ClusterDetails(
        name=_string(mapping.get("name"), "spec.cluster.name"),
        region=_string(mapping.get("region"), "spec.cluster.region"),
        api_server_endpoint=_string(
            mapping.get("apiServerEndpoint"), "spec.cluster.apiServerEndpoint"
        ),
        certificate_authority=certificate_authority,
        cidr=_string(mapping.get("cidr"), "spec.cluster.cidr"),
        enable_outpost=enable_outpost,
        id=_string(mapping.get("id"), "spec.cluster.id"),
    )


def _parse_containerd(value: object) -> ContainerdOptions:
    mapping = _mapping(value, "spec.containerd", {"config"})
    return ContainerdOptions(config=_string(mapping.get("config"), "spec.containerd.config"))


def _parse_instance(value: object) -> InstanceOptions:
    mapping = _mapping(value, "spec.instance", {"localStorage"})
    storage = _mapping(mapping.get("localStorage"), "spec.instance.localStorage", {"strategy"})
    raw_strategy = _string(storage.get("strategy"), "spec.instance.localStorage.strategy")
    strategy: LocalStorageStrategy | None = None
    if raw_strategy:
        try:
            strategy = LocalStorageStrategy(raw_strategy)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in LocalStorageStrategy)
            raise NodeConfigError(
                f"Unsupported local storage strategy {raw_strategy!r}. Allowed: {allowed}."
            ) from exc
    return InstanceOptions(local_storage=LocalStorageOptions(strategy=strategy))


def _parse_kubelet(value: object) -> KubeletOptions:
    mapping = _mapping(value, "spec.kubelet", {"config", "flags"})
    config = _mapping(mapping.get("config"), "spec.kubelet.config", None)
    flags_raw = mapping.get("flags")
    flags: list[str] = []
    if flags_raw is not None:
        if isinstance(flags_raw, (str, bytes)) or not isinstance(flags_raw, Sequence):
            raise NodeConfigError("spec.kubelet.flags must be a list of strings.")
        for index, flag in enumerate(flags_raw):
            flags.append(_string(flag, f"spec.kubelet.flags[{index}]"))
    return KubeletOptions(config=dict(config), flags=flags)


def _parse_hybrid(value: object) -> HybridOptions:
    mapping = _mapping(value, "spec.hybrid", {"enableCredentialsFile", "ssm", "iamRolesAnywhere"})
    enable = mapping.get("enableCredentialsFile", False)
    if not isinstance(enable, bool):
        raise NodeConfigError("spec.hybrid.enableCredentialsFile must be a boolean.")

    ssm: SsmOptions | None = None
    if mapping.get("ssm") is not None:
        ssm_map = _mapping(mapping["ssm"], "spec.hybrid.ssm", {"activationCode", "activationId"})
        ssm = SsmOptions(
            activation_code=_string(
                ssm_map.get("activationCode"), "spec.hybrid.ssm.activationCode"
            ),
            activation_id=_string(ssm_map.get("activationId"), "spec.hybrid.ssm.activationId"),
        )

    roles_anywhere: RolesAnywhereOptions | None = None
    if mapping.get("iamRolesAnywhere") is not None:
        label = "spec.hybrid.iamRolesAnywhere"
        ra_map = _mapping(
            mapping["iamRolesAnywhere"],
            label,
            {
                "nodeName",
                "trustAnchorArn",
                "profileArn",
                "roleArn",
                "awsConfigPath",
                "certificatePath",
                "privateKeyPath",
            },
        )
        roles_anywhere = RolesAnywhereOptions(
            node_name=_string(ra_map.get("nodeName"), f"{label}.nodeName"),
            trust_anchor_arn=_string(ra_map.get("trustAnchorArn"), f"{label}.trustAnchorArn"),
            profile_arn=_string(ra_map.get("profileArn"), f"{label}.profileArn"),
            role_arn=_string(ra_map.get("roleArn"), f"{label}.roleArn"),
            aws_config_path=_string(ra_map.get("awsConfigPath"), f"{label}.awsConfigPath"),
            certificate_path=_string(ra_map.get("certificatePath"), f"{label}.certificatePath"),
            private_key_path=_string(ra_map.get("privateKeyPath"), f"{label}.privateKeyPath"),
        )

    return HybridOptions(
        enable_credentials_file=enable,
        ssm=ssm,
        iam_roles_anywhere=roles_anywhere,
    )


def _mapping(value: object, label: str, allowed: set[str] | None) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise NodeConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise NodeConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    if allowed is not None:
        unknown = set(result) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise NodeConfigError(f"Unknown keys in {label}: {joined}.")
    return result


def _string(value: object, label: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    raise NodeConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")


def _prune(mapping: Mapping[str, object]) -> dict[str, object]:
    return {key: value for key, value in mapping.items() if value not in (None, "", [], {})}


__all__ = [
    "API_VERSION",
    "KIND",
    "ClusterDetails",
    "ContainerdOptions",
    "CredentialProviderKind",
    "DefaultOptions",
    "HybridDetails",
    "HybridOptions",
    "InstanceDetails",
    "InstanceOptions",
    "KubeletOptions",
    "LocalStorageOptions",
    "LocalStorageStrategy",
    "NodeConfig",
    "NodeConfigError",
    "NodeConfigSpec",
    "NodeConfigStatus",
    "NodeType",
    "RolesAnywhereOptions",
    "SsmOptions",
    "parse_node_config",
    "parse_node_config_yaml",
]
