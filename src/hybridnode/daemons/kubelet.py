"""Kubelet daemon.

Cluster details are requested through a callback on first use: on a hybrid
node they come from ``DescribeCluster`` and need the credentials and the
node identity established by the steps that run before the kubelet.
"""
from __future__ import annotations

import copy
import ipaddress
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..api import ClusterDetails, NodeConfig
from ..config import TimeoutsConfig
from ..logging import OperationScope
from ..providers.systemd import DaemonStatus, SystemdManager
from ..templates import TemplateEngine, write_if_changed
from .base import DaemonError

KUBECONFIG_PATH = Path("/var/lib/kubelet/kubeconfig")
KUBELET_CONFIG_PATH = Path("/etc/kubernetes/kubelet/config.json")
KUBELET_ENV_PATH = Path("/etc/eks/kubelet/environment")
CA_CERT_PATH = Path("/etc/kubernetes/pki/ca.crt")
CONTAINER_RUNTIME_ENDPOINT = "unix:///run/containerd/containerd.sock"

HYBRID_NODE_LABEL = "eks.amazonaws.com/compute-type=hybrid"
CREDENTIAL_PROVIDER_LABEL = "eks.amazonaws.com/hybrid-credential-provider"

ClusterDetailsSource = Callable[[], ClusterDetails]


def cluster_dns(cidr: str) -> str:
    """Return the cluster DNS address derived from the service CIDR."""
    try:
        network = ipaddress.ip_network(cidr, strict=False)
    except ValueError as exc:
        raise DaemonError(f"Invalid service CIDR {cidr!r}: {exc}") from exc
    return str(network.network_address + 10)


def default_kubelet_config() -> dict[str, object]:
    """Return the kubelet settings applied before user overrides."""
    return {
        "kind": "KubeletConfiguration",
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "address": "0.0.0.0",
        "authentication": {
            "anonymous": {"enabled": False},
            "webhook": {"enabled": True, "cacheTTL": "2m0s"},
            "x509": {"clientCAFile": str(CA_CERT_PATH)},
        },
        "authorization": {
            "mode": "Webhook",
            "webhook": {"cacheAuthorizedTTL": "5m0s", "cacheUnauthorizedTTL": "30s"},
        },
        "cgroupDriver": "systemd",
        "cgroupRoot": "/",
        "clusterDomain": "cluster.local",
        "containerRuntimeEndpoint": CONTAINER_RUNTIME_ENDPOINT,
        "evictionHard": {
            "memory.available": "100Mi",
            "nodefs.available": "10%",
            "nodefs.inodesFree": "5%",
        },
        "featureGates": {"RotateKubeletServerCertificate": True},
        "hairpinMode": "hairpin-veth",
        "protectKernelDefaults": True,
        "readOnlyPort": 0,
        "logging": {"verbosity": 2},
        "serializeImagePulls": False,
        "serverTLSBootstrap": True,
    }


@dataclass(slots=True)
class KubeletDaemon:
    """Render kubelet configuration and keep the kubelet running."""

    manager: SystemdManager
    templates: TemplateEngine
    logger: OperationScope
    timeouts: TimeoutsConfig
    cluster_details: ClusterDetailsSource
    root: Path = Path("/")

    @property
    def name(self) -> str:
        """Return ``kubelet``."""
        return "kubelet"

    def configure(self, node_config: NodeConfig) -> None:
        """Write the CA bundle, kubeconfig, kubelet config and environment file."""
        cluster = self.cluster_details()
        if not cluster.api_server_endpoint or not cluster.certificate_authority:
            raise DaemonError("Cluster API endpoint and certificate authority are required.")
        node_name = node_config.resolved_node_name()
        if not node_name:
            raise DaemonError("Node name is not known; cannot configure the kubelet.")
        try:
            write_if_changed(self._host(CA_CERT_PATH), cluster.certificate_authority, mode=0o644)
            self.templates.render_to_path(
                "kubelet/kubeconfig.j2",
                self._host(KUBECONFIG_PATH),
                {
                    "ca_cert_path": CA_CERT_PATH,
                    "api_server_endpoint": cluster.api_server_endpoint,
                    "cluster_name": cluster.name,
                    "region": cluster.region,
                    "role_arn": "",
                    "env": _exec_environment(node_config),
                },
                mode=0o600,
            )
            write_if_changed(
                self._host(KUBELET_CONFIG_PATH),
                json.dumps(self._kubelet_config(node_config, cluster), indent=2, sort_keys=True)
                + "\n",
                mode=0o644,
            )
            self.templates.render_to_path(
                "kubelet/kubelet.env.j2",
                self._host(KUBELET_ENV_PATH),
                {"environment": [], "args": self._flags(node_config, node_name)},
                mode=0o644,
            )
        except OSError as exc:
            raise DaemonError(f"Cannot write kubelet configuration: {exc}") from exc

    def ensure_running(self) -> None:
        """Reload units, restart the kubelet and wait for it."""
        self.manager.daemon_reload()
        self.manager.enable(self.name)
        self.manager.restart(self.name)
        self.logger.info("Waiting for kubelet to be running")
        self.manager.wait_for_status(
            self.name, DaemonStatus.RUNNING, self.timeouts.daemon_running_poll
        )

    def post_launch(self, node_config: NodeConfig) -> None:
        """Nothing to do once the kubelet is up."""

    # ------------------------------------------------------------------
    def _host(self, path: Path) -> Path:
        return self.root / path.relative_to("/")

    def _kubelet_config(
        self, node_config: NodeConfig, cluster: ClusterDetails
    ) -> dict[str, object]:
        config = default_kubelet_config()
        if cluster.cidr:
            config["clusterDNS"] = [cluster_dns(cluster.cidr)]
        if node_config.is_hybrid_node():
            config["providerID"] = (
                f"eks-hybrid:///{cluster.region}/{cluster.name}/"
                f"{node_config.resolved_node_name()}"
            )
        else:
            instance = node_config.status.instance
            config["providerID"] = f"aws:///{instance.availability_zone}/{instance.id}"
        _merge(config, node_config.spec.kubelet.config)
        return config

    def _flags(self, node_config: NodeConfig, node_name: str) -> list[str]:
        flags = [
            f"--config={KUBELET_CONFIG_PATH}",
            f"--kubeconfig={KUBECONFIG_PATH}",
            f"--hostname-override={node_name}",
        ]
        if node_config.is_hybrid_node():
            labels = [
                HYBRID_NODE_LABEL,
                f"{CREDENTIAL_PROVIDER_LABEL}={node_config.node_type().value}",
            ]
            flags += ["--cloud-provider=", f"--node-labels={','.join(labels)}"]
        else:
            flags.append("--cloud-provider=external")
        flags += node_config.spec.kubelet.flags
        return flags


def _exec_environment(node_config: NodeConfig) -> list[tuple[str, str]]:
    hybrid = node_config.spec.hybrid
    if hybrid is None or hybrid.iam_roles_anywhere is None:
        return []
    return [
        ("AWS_CONFIG_FILE", hybrid.iam_roles_anywhere.aws_config_path),
        ("AWS_PROFILE", "hybrid"),
    ]


def _merge(target: dict[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, Mapping):
            _merge(existing, value)
        else:
            target[key] = copy.deepcopy(value)


__all__ = [
    "CA_CERT_PATH",
    "KUBECONFIG_PATH",
    "KUBELET_CONFIG_PATH",
    "KUBELET_ENV_PATH",
    "KubeletDaemon",
    "cluster_dns",
    "default_kubelet_config",
]
