"""Tests for node providers and their construction."""
from __future__ import annotations

import base64
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from botocore.exceptions import ClientError
from support import (
    ACTIVATION_ID,
    CLUSTER_CA,
    cloud_document,
    roles_anywhere_document,
    ssm_document,
)

from hybridnode.api import NodeConfigError, parse_node_config_yaml
from hybridnode.aspects import LocalDiskAspect, SysctlAspect
from hybridnode.config import AppConfig
from hybridnode.credentials import (
    CredentialContext,
    CredentialError,
    InstanceProfileCredentialProvider,
    RolesAnywhereCredentialProvider,
    SsmCredentialProvider,
)
from hybridnode.imds import ImdsError
from hybridnode.logging import OperationScope
from hybridnode.nodeprovider import (
    CloudNodeProvider,
    HybridNodeProvider,
    credential_provider_for,
    new_node_provider,
    sandbox_image,
)
from hybridnode.osinfo import OsRelease
from hybridnode.providers.systemd import SystemdError, SystemdManager
from hybridnode.retry import PollSettings


class FakeImds:
    """Stand-in for :class:`ImdsClient`."""

    def __init__(self, *, fail: bool = False) -> None:
        """Raise ImdsError on every call when *fail* is set."""
        self.fail = fail
        self.closed = 0

    def identity_document(self) -> dict[str, object]:
        """Return a canned identity document."""
        if self.fail:
            raise ImdsError("GET identity document failed")
        return {
            "instanceId": "i-0abc",
            "region": "us-east-2",
            "instanceType": "m6i.large",
            "availabilityZone": "us-east-2b",
        }

    def metadata(self, name: str) -> str:
        """Return canned metadata properties."""
        return {"mac": "0a:1b:2c:3d:4e:5f", "local-hostname": "ip-10-0-0-1.internal"}[name]

    def user_data(self) -> str:
        """No user data is configured."""
        raise ImdsError("user-data not found")

    def close(self) -> None:
        """Count closes."""
        self.closed += 1


class FakeEks:
    """Answer ``describe_cluster`` with a canned or failing response."""

    def __init__(
        self, cluster: dict[str, object] | None = None, error: Exception | None = None
    ) -> None:
        """Serve *cluster* or raise *error*."""
        self.cluster = cluster or {}
        self.error = error
        self.calls: list[str] = []

    def describe_cluster(self, *, name: str) -> dict[str, object]:
        """Return the cluster document."""
        self.calls.append(name)
        if self.error is not None:
            raise self.error
        return {"cluster": self.cluster}


class FakeClients:
    """Stand-in for :class:`AwsClients` exposing only EKS."""

    def __init__(self, eks: FakeEks) -> None:
        """Serve *eks*."""
        self._eks = eks

    def eks(self) -> FakeEks:
        """Return the fake EKS client."""
        return self._eks


class StubCredentials(InstanceProfileCredentialProvider):
    """Instance-profile strategy returning fake clients."""

    def __init__(self, clients: FakeClients) -> None:
        """Return *clients* from :meth:`configure`."""
        self.clients = clients

    def configure(self, context: CredentialContext) -> FakeClients:  # type: ignore[override]
        """Return the fake clients."""
        return self.clients


def _active_cluster(**overrides: object) -> dict[str, object]:
    cluster: dict[str, object] = {
        "status": "ACTIVE",
        "endpoint": "https://demo.eks.amazonaws.com",
        "certificateAuthority": {"data": base64.b64encode(CLUSTER_CA).decode("ascii")},
        "kubernetesNetworkConfig": {"serviceIpv4Cidr": "172.16.0.0/16"},
        "remoteNetworkConfig": {"remoteNodeNetworks": [{"cidrs": ["10.80.0.0/16"]}]},
    }
    cluster.update(overrides)
    return cluster


@pytest.fixture
def build(
    tmp_path: Path,
    app_config: AppConfig,
    manager: SystemdManager,
    operation: OperationScope,
) -> Callable[..., Any]:
    """Return a factory writing *document* to disk and calling new_node_provider."""

    def factory(
        document: str,
        *,
        imds: FakeImds | None = None,
        os_release: OsRelease | None = None,
        daemon_filter: list[str] | None = None,
    ) -> Any:
        source = tmp_path / "nodeconfig.yaml"
        source.write_text(document, encoding="utf-8")
        return new_node_provider(
            f"file://{source}",
            config=app_config,
            scope=operation,
            daemon_filter=daemon_filter,
            manager=manager,
            imds=imds or FakeImds(),  # type: ignore[arg-type]
            os_release=os_release or OsRelease(id="ubuntu", version_id="22.04"),
            sleep=lambda _seconds: None,
            env={},
        )

    return factory


def test_sandbox_image_uses_partition_domain() -> None:
    """China regions use the ``.com.cn`` registry domain."""
    assert sandbox_image("us-west-2") == (
        "602401143452.dkr.ecr.us-west-2.amazonaws.com/eks/pause:3.5"
    )
    assert sandbox_image("cn-north-1") == (
        "602401143452.dkr.ecr.cn-north-1.amazonaws.com.cn/eks/pause:3.5"
    )


def test_credential_provider_selection() -> None:
    """Each node kind resolves its own strategy."""
    assert isinstance(
        credential_provider_for(parse_node_config_yaml(ssm_document())), SsmCredentialProvider
    )
    assert isinstance(
        credential_provider_for(parse_node_config_yaml(roles_anywhere_document())),
        RolesAnywhereCredentialProvider,
    )
    assert isinstance(
        credential_provider_for(parse_node_config_yaml(cloud_document())),
        InstanceProfileCredentialProvider,
    )


def test_ssm_uninstall_window_comes_from_settings(
    build: Callable[..., Any], app_config: AppConfig
) -> None:
    """The SSM deregistration wait uses the configured uninstall window."""
    provider = build(ssm_document())

    strategy = provider.credential_provider
    assert isinstance(strategy, SsmCredentialProvider)
    assert strategy.uninstall_poll == app_config.timeouts.uninstall_poll
    assert strategy.uninstall_poll == PollSettings(2, 1)
    default = credential_provider_for(parse_node_config_yaml(ssm_document()))
    assert isinstance(default, SsmCredentialProvider)
    assert default.uninstall_poll == PollSettings(300.0, 10.0)


def test_ssm_node_builds_hybrid_provider(build: Callable[..., Any]) -> None:
    """SSM nodes get the hybrid provider, the default image and no aspects."""
    provider = build(ssm_document())

    assert isinstance(provider, HybridNodeProvider)
    assert provider.aspects() == []
    assert provider.node_config.status.defaults.sandbox_image == sandbox_image("us-west-2")
    assert [daemon.name for daemon in provider.daemons()] == [
        "snap.amazon-ssm-agent.amazon-ssm-agent",
        "containerd",
        "kubelet",
    ]


def test_roles_anywhere_enrich_fills_defaults(build: Callable[..., Any]) -> None:
    """Roles Anywhere nodes take their name from the config and get default paths."""
    provider = build(roles_anywhere_document(node_name="rack-7"))

    assert isinstance(provider, HybridNodeProvider)
    assert provider.node_config.status.hybrid.node_name == "rack-7"
    hybrid = provider.node_config.spec.hybrid
    assert hybrid is not None and hybrid.iam_roles_anywhere is not None
    assert hybrid.iam_roles_anywhere.aws_config_path == "/etc/aws/hybrid/config"
    assert hybrid.iam_roles_anywhere.certificate_path == "/etc/iam/pki/server.pem"
    assert hybrid.iam_roles_anywhere.private_key_path == "/etc/iam/pki/server.key"
    assert [daemon.name for daemon in provider.daemons()] == ["containerd", "kubelet"]


@pytest.mark.parametrize(
    ("document", "message"),
    [
        (ssm_document(name="''"), "Name is missing in cluster configuration"),
        (ssm_document(region="''"), "Region is missing in cluster configuration"),
        (
            ssm_document() + "  kubelet:\n    flags:\n      - --hostname-override=custom\n",
            "hostname-override kubelet flag is not supported for hybrid nodes "
            "but found override: custom",
        ),
        (
            ssm_document() + "  instance:\n    localStorage:\n      strategy: RAID0\n",
            "instance.localStorage is not supported for hybrid nodes",
        ),
        (
            ssm_document().replace(ACTIVATION_ID, "not-a-uuid"),
            "invalid ActivationID format: not-a-uuid",
        ),
        (
            ssm_document().replace("activationCode: ", "activationCode: short #"),
            "invalid ActivationCode format. Must be 20-250 characters",
        ),
        (
            ssm_document() + roles_anywhere_document().split("  hybrid:\n")[1],
            "Only one of IAMRolesAnywhere or SSM must be provided",
        ),
        (
            "apiVersion: node.eks.aws/v1alpha1\nkind: NodeConfig\nspec:\n"
            "  cluster:\n    name: demo\n    region: us-west-2\n  hybrid: {}\n",
            "Either IAMRolesAnywhere or SSM must be provided",
        ),
        (
            roles_anywhere_document(node_name="n" * 65),
            "NodeName can't be longer than 64 characters",
        ),
        (
            roles_anywhere_document().replace(
                "      roleArn: arn:aws:iam::111122223333:role/hybrid-node\n", ""
            ),
            "RoleARN is missing in hybrid iam roles anywhere configuration",
        ),
    ],
)
def test_hybrid_validation_errors(
    build: Callable[..., Any], manager: SystemdManager, document: str, message: str
) -> None:
    """Invalid hybrid configurations are rejected and the manager is closed."""
    with pytest.raises(NodeConfigError, match=message):
        build(document)

    assert manager.closed is True


@pytest.mark.parametrize(
    "release",
    [OsRelease(id="rhel", version_id="8.9"), OsRelease(id="ubuntu", version_id="20.04")],
)
def test_roles_anywhere_unsupported_os(build: Callable[..., Any], release: OsRelease) -> None:
    """Roles Anywhere is refused on operating systems the signing helper lacks."""
    with pytest.raises(NodeConfigError, match="IAM Roles Anywhere is not supported"):
        build(roles_anywhere_document(), os_release=release)


def test_roles_anywhere_allows_newer_releases(build: Callable[..., Any]) -> None:
    """Version matching is by release, not by string prefix."""
    provider = build(roles_anywhere_document(), os_release=OsRelease(id="rhel", version_id="9.4"))

    assert isinstance(provider, HybridNodeProvider)


def test_cloud_node_enriches_from_instance_metadata(build: Callable[..., Any]) -> None:
    """Cloud nodes read the identity document and get the two aspects."""
    provider = build(cloud_document())

    assert isinstance(provider, CloudNodeProvider)
    instance = provider.node_config.status.instance
    assert instance.id == "i-0abc"
    assert instance.availability_zone == "us-east-2b"
    assert instance.private_dns_name == "ip-10-0-0-1.internal"
    assert provider.node_config.status.defaults.sandbox_image == sandbox_image("us-east-2")
    aspects = provider.aspects()
    assert [type(aspect) for aspect in aspects] == [LocalDiskAspect, SysctlAspect]
    assert [daemon.name for daemon in provider.daemons()] == ["containerd", "kubelet"]


def test_cloud_node_metadata_failure(build: Callable[..., Any]) -> None:
    """Unreachable metadata fails enrichment and closes the handles."""
    imds = FakeImds(fail=True)

    with pytest.raises(NodeConfigError, match="Cannot read instance metadata"):
        build(cloud_document(), imds=imds)

    assert imds.closed == 1


@pytest.mark.parametrize(
    ("document", "message"),
    [
        (cloud_document().replace("    cidr: 10.100.0.0/16\n", ""), "CIDR is missing"),
        (
            cloud_document().replace(
                "    apiServerEndpoint: https://example.eks.amazonaws.com\n", ""
            ),
            "Apiserver endpoint is missing",
        ),
    ],
)
def test_cloud_validation_errors(
    build: Callable[..., Any], document: str, message: str
) -> None:
    """Cloud nodes require full cluster details."""
    with pytest.raises(NodeConfigError, match=message):
        build(document)


def test_missing_source_closes_metadata_client(
    app_config: AppConfig, manager: SystemdManager, operation: OperationScope, tmp_path: Path
) -> None:
    """A missing configuration source still releases the metadata client."""
    imds = FakeImds()

    with pytest.raises(NodeConfigError, match="Cannot read configuration source"):
        new_node_provider(
            str(tmp_path / "absent.yaml"),
            config=app_config,
            scope=operation,
            manager=manager,
            imds=imds,  # type: ignore[arg-type]
        )

    assert imds.closed == 1


def test_daemon_filter_keeps_identity_daemon(build: Callable[..., Any]) -> None:
    """Filtering never drops the credential strategy's identity daemon."""
    provider = build(ssm_document(), daemon_filter=["kubelet"])

    assert [daemon.name for daemon in provider.daemons()] == [
        "snap.amazon-ssm-agent.amazon-ssm-agent",
        "kubelet",
    ]


def test_cleanup_is_idempotent(build: Callable[..., Any], manager: SystemdManager) -> None:
    """Cleanup closes handles once; later calls are no-ops."""
    imds = FakeImds()
    provider = build(ssm_document(), imds=imds)

    provider.cleanup()
    provider.cleanup()

    assert imds.closed == 1
    assert manager.closed is True
    with pytest.raises(SystemdError, match="closed"):
        manager.start("kubelet")


def _hybrid_with_clients(
    app_config: AppConfig,
    manager: SystemdManager,
    operation: OperationScope,
    eks: FakeEks,
) -> HybridNodeProvider:
    provider = HybridNodeProvider(
        parse_node_config_yaml(ssm_document()),
        settings=app_config,
        logger=operation,
        manager=manager,
        templates=None,  # type: ignore[arg-type]
        credential_provider=StubCredentials(FakeClients(eks)),
        imds=FakeImds(),  # type: ignore[arg-type]
        env={},
    )
    return provider


def test_cluster_details_need_credentials_first(
    app_config: AppConfig, manager: SystemdManager, operation: OperationScope
) -> None:
    """Cluster details cannot be described before credentials are configured."""
    provider = _hybrid_with_clients(app_config, manager, operation, FakeEks(_active_cluster()))

    with pytest.raises(CredentialError, match="Credentials have not been configured yet"):
        provider.cluster_details()


def test_cluster_details_described_once(
    app_config: AppConfig, manager: SystemdManager, operation: OperationScope
) -> None:
    """Missing details are filled from DescribeCluster on first use only."""
    eks = FakeEks(_active_cluster())
    provider = _hybrid_with_clients(app_config, manager, operation, eks)
    provider.configure_credentials()

    first = provider.cluster_details()
    second = provider.cluster_details()

    assert first is second
    assert first.api_server_endpoint == "https://demo.eks.amazonaws.com"
    assert first.certificate_authority == CLUSTER_CA
    assert first.cidr == "172.16.0.0/16"
    assert eks.calls == ["demo"]


@pytest.mark.parametrize(
    ("cluster", "message"),
    [
        (_active_cluster(status="CREATING"), "EKS cluster demo is not active"),
        (_active_cluster(remoteNetworkConfig=None), "does not have remoteNetworkConfig enabled"),
        (
            _active_cluster(certificateAuthority={"data": "%%%"}),
            "malformed certificate authority",
        ),
    ],
)
def test_cluster_details_rejects_unusable_cluster(
    app_config: AppConfig,
    manager: SystemdManager,
    operation: OperationScope,
    cluster: dict[str, object],
    message: str,
) -> None:
    """Inactive or non-hybrid clusters are configuration errors."""
    provider = _hybrid_with_clients(app_config, manager, operation, FakeEks(cluster))
    provider.configure_credentials()

    with pytest.raises(NodeConfigError, match=message):
        provider.cluster_details()


def test_cluster_details_api_error_is_credential_error(
    app_config: AppConfig, manager: SystemdManager, operation: OperationScope
) -> None:
    """API failures describing the cluster surface as CredentialError."""
    error = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "DescribeCluster")
    provider = _hybrid_with_clients(app_config, manager, operation, FakeEks(error=error))
    provider.configure_credentials()

    with pytest.raises(CredentialError, match="Describing EKS cluster demo"):
        provider.cluster_details()


def test_cloud_provider_refuses_identities(
    build: Callable[..., Any],
) -> None:
    """Only hybrid providers accept a node identity from a daemon."""
    provider = build(cloud_document())

    with pytest.raises(CredentialError, match="does not accept node identities"):
        provider._propagate_identity("mi-0123")  # type: ignore[attr-defined]
