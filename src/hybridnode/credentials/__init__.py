"""Credential providers: SSM registration, IAM Roles Anywhere and instance profiles."""
from __future__ import annotations

from .base import (
    CredentialContext,
    CredentialError,
    CredentialProvider,
    NodeFile,
    NodeSpec,
    wait_for_file,
    write_node_files,
)
from .aws import AwsClients
from .instance import InstanceProfileCredentialProvider
from .rolesanywhere import RolesAnywhereCredentialProvider, node_subject
from .ssm import SsmCredentialProvider, SsmDaemon, SsmRegistration

__all__ = [
    "AwsClients",
    "CredentialContext",
    "CredentialError",
    "CredentialProvider",
    "InstanceProfileCredentialProvider",
    "NodeFile",
    "NodeSpec",
    "RolesAnywhereCredentialProvider",
    "SsmCredentialProvider",
    "SsmDaemon",
    "SsmRegistration",
    "node_subject",
    "wait_for_file",
    "write_node_files",
]
