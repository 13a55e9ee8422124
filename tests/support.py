"""Shared fakes and NodeConfig documents for the test suite."""

from __future__ import annotations

import base64
import json
from collections.abc import Sequence
from pathlib import Path

from hybridnode.api import NodeConfig
from hybridnode.config import AppConfig
from hybridnode.credentials.base import CredentialContext
from hybridnode.logging import OperationScope
from hybridnode.osinfo import OsRelease
from hybridnode.providers.systemd import SystemdError, SystemdManager
from hybridnode.templates import TemplateEngine

ACTIVATION_ID = "0e9c3a4d-1b2c-4d5e-8f90-123456789abc"
ACTIVATION_CODE = "A1b2C3d4E5f6G7h8I9j0K1l2"
CLUSTER_CA = b"-----BEGIN CERTIFICATE-----\ncluster-ca\n-----END CERTIFICATE-----\n"
MANAGED_ID = "mi-0123456789abcdef0"


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class SystemctlRecorder:
    """Replacement for ``SystemdManager._run_command`` that records invocations."""

    def __init__(self) -> None:
        """Start with every unit active and no failures."""
        self.calls: list[list[str]] = []
        self.states: dict[str, list[str]] = {}
        self.failures: dict[tuple[str, str | None], DummyResult] = {}

    def __call__(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> DummyResult:
        """Record *args* and return a canned result."""
        argv = list(args)
        self.calls.append(argv)
        command = argv[1]
        unit = argv[2] if len(argv) > 2 else None
        if (command, unit) in self.failures:
            result = self.failures[(command, unit)]
        elif command == "is-active":
            queue = self.states.get(unit or "", [])
            state = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else "active")
            result = DummyResult(0 if state == "active" else 3, stdout=f"{state}\n")
        else:
            result = DummyResult()
        if check and result.returncode != 0:
            message = result.stderr.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result

    def commands(self) -> list[tuple[str, str | None]]:
        """Return ``(command, unit)`` pairs in call order."""
        return [(argv[1], argv[2] if len(argv) > 2 else None) for argv in self.calls]


class CommandRecorder:
    """Stand-in for :data:`hybridnode.commands.Runner` that records commands."""

    def __init__(self) -> None:
        """Start with every command succeeding."""
        self.calls: list[list[str]] = []
        self.results: dict[str, list[DummyResult]] = {}

    def __call__(self, command: list[str]) -> DummyResult:
        """Record *command*; pop the next canned result for its program."""
        self.calls.append(list(command))
        queue = self.results.get(Path(command[0]).name, [])
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0] if queue else DummyResult()

    def programs(self) -> list[str]:
        """Return the program names in call order."""
        return [Path(argv[0]).name for argv in self.calls]


def cluster_block(**overrides: str) -> str:
    """Return a ``spec.cluster`` YAML block."""
    values = {"name": "demo", "region": "us-west-2", **overrides}
    return "".join(f"    {key}: {value}\n" for key, value in values.items())


def ssm_document(**cluster: str) -> str:
    """Return a hybrid NodeConfig using SSM activation."""
    return (
        "apiVersion: node.eks.aws/v1alpha1\n"
        "kind: NodeConfig\n"
        "spec:\n"
        "  cluster:\n"
        f"{cluster_block(**cluster)}"
        "  hybrid:\n"
        "    ssm:\n"
        f"      activationCode: {ACTIVATION_CODE}\n"
        f"      activationId: {ACTIVATION_ID}\n"
    )


def roles_anywhere_document(node_name: str = "edge-01", **cluster: str) -> str:
    """Return a hybrid NodeConfig using IAM Roles Anywhere."""
    return (
        "apiVersion: node.eks.aws/v1alpha1\n"
        "kind: NodeConfig\n"
        "spec:\n"
        "  cluster:\n"
        f"{cluster_block(**cluster)}"
        "  hybrid:\n"
        "    iamRolesAnywhere:\n"
        f"      nodeName: {node_name}\n"
        "      trustAnchorArn: arn:aws:rolesanywhere:us-west-2:111122223333:trust-anchor/ta\n"
        "      profileArn: arn:aws:rolesanywhere:us-west-2:111122223333:profile/p\n"
        "      roleArn: arn:aws:iam::111122223333:role/hybrid-node\n"
    )


def cloud_document() -> str:
    """Return a complete NodeConfig for a cloud instance."""
    ca = base64.b64encode(CLUSTER_CA).decode("ascii")
    return (
        "apiVersion: node.eks.aws/v1alpha1\n"
        "kind: NodeConfig\n"
        "spec:\n"
        "  cluster:\n"
        f"{cluster_block(apiServerEndpoint='https://example.eks.amazonaws.com')}"
        f"    certificateAuthority: {ca}\n"
        "    cidr: 10.100.0.0/16\n"
    )


def make_context(
    node_config: NodeConfig,
    settings: AppConfig,
    manager: SystemdManager,
    logger: OperationScope,
    *,
    runner: CommandRecorder | None = None,
    os_release: OsRelease | None = None,
    env: dict[str, str] | None = None,
) -> CredentialContext:
    """Return a credential context that never sleeps or touches the real host."""
    return CredentialContext(
        node_config=node_config,
        settings=settings,
        manager=manager,
        templates=TemplateEngine.with_overrides(None),
        logger=logger,
        os_release=os_release or OsRelease(id="ubuntu", version_id="22.04"),
        runner=runner or CommandRecorder(),
        sleep=lambda _seconds: None,
        env=env or {},
    )


def write_registration(root: Path, region: str = "us-west-2") -> None:
    """Write the SSM agent registration record under *root*."""
    path = root / "var" / "lib" / "amazon" / "ssm" / "registration"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"ManagedInstanceID": MANAGED_ID, "Region": region}))


def install_ssm_agent(root: Path) -> Path:
    """Create a placeholder agent binary under *root*."""
    agent = root / "usr" / "bin" / "amazon-ssm-agent"
    agent.parent.mkdir(parents=True, exist_ok=True)
    agent.write_text("#!/bin/sh\n")
    return agent


class SsmRegistrar(CommandRecorder):
    """Runner that writes the registration record when the agent registers."""

    def __init__(self, root: Path, *, writes: bool = True) -> None:
        """Write the record under *root* when *writes* is set."""
        super().__init__()
        self.root = root
        self.writes = writes

    def __call__(self, command: list[str]) -> DummyResult:
        """Record the command and emulate a successful registration."""
        result = super().__call__(command)
        if "-register" in command and result.returncode == 0 and self.writes:
            write_registration(self.root)
        return result


def snapshot_tree(root: Path) -> dict[str, tuple[bytes | str, int]]:
    """Return every file and symlink under *root* with its content and mode."""
    snapshot: dict[str, tuple[bytes | str, int]] = {}
    for path in sorted(root.rglob("*")):
        key = str(path.relative_to(root))
        if path.is_symlink():
            snapshot[key] = (str(path.readlink()), 0)
        elif path.is_file():
            snapshot[key] = (path.read_bytes(), path.stat().st_mode & 0o777)
    return snapshot
