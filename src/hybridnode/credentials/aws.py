"""Lazily created AWS API clients bound to the node's credentials."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import boto3
import botocore.session


@dataclass(slots=True)
class AwsClients:
    """Build boto3 clients once credentials are in place.

    The session is created on first use so a strategy can hand out clients
    before its credential source (a shared credentials file written by an
    agent, or a ``credential_process`` profile) is ready.
    """

    region: str
    profile: str | None = None
    config_file: Path | None = None
    credentials_file: Path | None = None
    wait_for: Callable[[], None] | None = None
    _session: boto3.Session | None = field(default=None, init=False, repr=False)
    _clients: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def session(self) -> boto3.Session:
        """Return the boto3 session, creating it on first call."""
        if self._session is None:
            if self.wait_for is not None:
                self.wait_for()
            core = botocore.session.Session()
            if self.config_file is not None:
                core.set_config_variable("config_file", str(self.config_file))
            if self.credentials_file is not None:
                core.set_config_variable("credentials_file", str(self.credentials_file))
            if self.profile:
                core.set_config_variable("profile", self.profile)
            self._session = boto3.Session(botocore_session=core, region_name=self.region)
        return self._session

    def client(self, service: str) -> Any:
        """Return a cached client for *service*."""
        if service not in self._clients:
            self._clients[service] = self.session().client(service)
        return self._clients[service]

    def eks(self) -> Any:
        """Return the EKS client."""
        return self.client("eks")

    def ssm(self) -> Any:
        """Return the Systems Manager client."""
        return self.client("ssm")


__all__ = ["AwsClients"]
