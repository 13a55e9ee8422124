"""Certificate-based credentials through IAM Roles Anywhere.

A short-lived node certificate is minted from a caller-supplied authority and
placed at fixed paths. The signing helper reads it through a
``credential_process`` profile, so there is no agent to run and no identity
flows back into the NodeConfig.
"""
from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..api import CredentialProviderKind, HybridOptions, RolesAnywhereOptions
from ..certificates import (
    CertificateAuthority,
    issue_certificate,
    validate_certificate_pair,
)
from .aws import AwsClients
from .base import CredentialContext, CredentialError, NodeFile, NodeSpec

AWS_CONFIG_PATH = Path("/etc/aws/hybrid/config")
PROFILE_NAME = "hybrid"
SIGNING_HELPER_PATH = Path("/usr/local/bin/aws_signing_helper")
CERTIFICATE_PATH = Path("/etc/iam/pki/server.pem")
PRIVATE_KEY_PATH = Path("/etc/iam/pki/server.key")
# Rendered profiles are a few hundred bytes; anything this large is not ours.
MAX_CONFIG_BYTES = 2048


def node_subject(node_spec: NodeSpec) -> x509.Name:
    """Return the certificate subject for *node_spec*; equal specs give equal names."""
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, node_spec.name),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, node_spec.role),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, node_spec.provider),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, node_spec.os_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, node_spec.cluster_name),
        ]
    )


@dataclass(slots=True)
class RolesAnywhereCredentialProvider:
    """Strategy authenticating with an X.509 certificate."""

    trust_anchor_arn: str
    profile_arn: str
    role_arn: str
    ca: CertificateAuthority | None = None
    signing_helper: Path = SIGNING_HELPER_PATH

    def name(self) -> CredentialProviderKind:
        """Return ``iam-ra``."""
        return CredentialProviderKind.IAM_ROLES_ANYWHERE

    def node_config(self, node_spec: NodeSpec) -> HybridOptions | None:
        """Return the Roles Anywhere block for *node_spec* with default paths."""
        return HybridOptions(
            iam_roles_anywhere=RolesAnywhereOptions(
                node_name=node_spec.name,
                trust_anchor_arn=self.trust_anchor_arn,
                profile_arn=self.profile_arn,
                role_arn=self.role_arn,
                aws_config_path=str(AWS_CONFIG_PATH),
                certificate_path=str(CERTIFICATE_PATH),
                private_key_path=str(PRIVATE_KEY_PATH),
            )
        )

    def files_for_node(
        self,
        node_spec: NodeSpec,
        *,
        now: datetime | None = None,
    ) -> list[NodeFile]:
        """Mint a node certificate and key signed by the configured authority."""
        if self.ca is None:
            raise CredentialError("A certificate authority is required to issue node certificates.")
        issued = issue_certificate(self.ca, node_subject(node_spec), now=now)
        return [
            NodeFile(CERTIFICATE_PATH, issued.certificate_pem(), 0o644),
            NodeFile(PRIVATE_KEY_PATH, issued.private_key_pem(), 0o600),
        ]

    def verify_uninstall(self, instance_id: str) -> None:
        """Nothing is registered externally."""

    def pre_process(self, context: CredentialContext) -> None:
        """No checks ahead of credential configuration."""

    def identity_daemon(
        self,
        context: CredentialContext,
        on_identity: Callable[[str], None],
    ) -> None:
        """Roles Anywhere runs no agent."""
        return None

    def configure(self, context: CredentialContext) -> AwsClients:
        """Validate the certificate pair and put the signing-helper profile in place."""
        options = _options(context)
        certificate = context.host_path(options.certificate_path or CERTIFICATE_PATH)
        private_key = context.host_path(options.private_key_path or PRIVATE_KEY_PATH)
        report = validate_certificate_pair(certificate, private_key)
        if report.has_errors:
            raise CredentialError("; ".join(report.errors))

        config_path = context.host_path(options.aws_config_path or AWS_CONFIG_PATH)
        rendered = context.templates.render_to_string(
            "aws/hybrid-config.j2",
            {
                "profile": PROFILE_NAME,
                "region": context.node_config.spec.cluster.region,
                "signing_helper": self.signing_helper,
                "certificate_path": options.certificate_path or CERTIFICATE_PATH,
                "private_key_path": options.private_key_path or PRIVATE_KEY_PATH,
                "profile_arn": options.profile_arn,
                "role_arn": options.role_arn,
                "trust_anchor_arn": options.trust_anchor_arn,
                "node_name": options.node_name,
            },
        ).encode("utf-8")
        _ensure_aws_config(config_path, rendered)
        context.logger.info("AWS config for IAM Roles Anywhere in place", path=config_path)
        return AwsClients(
            region=context.node_config.spec.cluster.region,
            profile=PROFILE_NAME,
            config_file=config_path,
        )


def _options(context: CredentialContext) -> RolesAnywhereOptions:
    hybrid = context.node_config.spec.hybrid
    if hybrid is None or hybrid.iam_roles_anywhere is None:
        raise CredentialError("NodeConfig has no iamRolesAnywhere block.")
    return hybrid.iam_roles_anywhere


def _ensure_aws_config(path: Path, rendered: bytes) -> None:
    if not path.exists():
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(rendered)
            path.chmod(0o644)
        except OSError as exc:
            raise CredentialError(f"Cannot write {path}: {exc}") from exc
        return
    try:
        with path.open("rb") as handle:
            existing = handle.read(MAX_CONFIG_BYTES)
    except OSError as exc:
        raise CredentialError(f"Cannot read {path}: {exc}") from exc
    if len(existing) == MAX_CONFIG_BYTES:
        raise CredentialError(f"Unexpected amount of data in {path}")
    if hashlib.sha256(existing).digest() != hashlib.sha256(rendered).digest():
        raise CredentialError(
            f"Hybrid profile already exists at {path} but its contents do not match "
            "the expected configuration"
        )


__all__ = [
    "AWS_CONFIG_PATH",
    "CERTIFICATE_PATH",
    "PRIVATE_KEY_PATH",
    "PROFILE_NAME",
    "RolesAnywhereCredentialProvider",
    "SIGNING_HELPER_PATH",
    "node_subject",
]
