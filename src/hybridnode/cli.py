"""Typer-powered command line for ``hybridnode``.

``hybridnode init`` is the entry point operators run on a node: it loads the
NodeConfig, builds the node provider and drives the bootstrap orchestrator.
The remaining commands inspect configuration or prepare certificate material
ahead of time.
"""
from __future__ import annotations

import os
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .api import NodeConfigError
from .aspects import AspectError
from .certificates import CertificateAuthority, CertificateError
from .config import AppConfig, ConfigError, load_config
from .configsource import load_node_config
from .credentials import (
    CredentialError,
    NodeFile,
    NodeSpec,
    RolesAnywhereCredentialProvider,
    write_node_files,
)
from .daemons.base import DaemonError
from .exit_codes import ExitCode, exit_code_for
from .imds import ImdsClient
from .logging import OperationScope, StructuredLogger
from .nodeprovider import new_node_provider
from .orchestrator import BootstrapOrchestrator, PhaseError, parse_skip
from .osinfo import read_os_release
from .templates import TemplateEngine

console = Console()

INSTALL_VALIDATION = "install-validation"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to hybridnode's YAML config file.",
)
CONFIG_SOURCE_OPTION = typer.Option(
    ...,
    "--config-source",
    "-c",
    help="NodeConfig source, e.g. file:///etc/hybridnode/nodeconfig.yaml or imds://user-data.",
)

KNOWN_ERRORS = (
    AspectError,
    CertificateError,
    CredentialError,
    DaemonError,
    NodeConfigError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Bootstrap agent for Kubernetes hybrid nodes.

        Run ``hybridnode init`` on a node to configure credentials, containerd
        and the kubelet from a NodeConfig document.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect agent settings and NodeConfig documents.")
credentials_app = typer.Typer(help="Prepare credential material for nodes.")
app.add_typer(config_app, name="config")
app.add_typer(credentials_app, name="credentials")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the hybridnode version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"hybridnode {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _is_root() -> bool:
    return os.geteuid() == 0


@app.command("init")
def init(
    ctx: typer.Context,
    config_source: str = CONFIG_SOURCE_OPTION,
    skip: list[str] = typer.Option(
        [],
        "--skip",
        "-s",
        help=(
            "Phase to skip: pre-process-daemon, daemon-configuration, daemon-run "
            "or install-validation. Repeatable."
        ),
    ),
    daemons: list[str] = typer.Option(
        [],
        "--daemon",
        "-d",
        help="Only manage the named daemon (identity daemons always run). Repeatable.",
    ),
) -> None:
    """Bootstrap this node from a NodeConfig source."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    with runtime.logger.operation(
        "init",
        args={"config_source": config_source, "skip": list(skip), "daemons": list(daemons)},
        target={"kind": "node"},
    ) as op:
        validate_install = INSTALL_VALIDATION not in skip
        try:
            phases = parse_skip(name for name in skip if name != INSTALL_VALIDATION)
        except PhaseError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        if config.require_root and not _is_root():
            _command_error(op, "hybridnode init must run as root.", rc=int(ExitCode.ENVIRONMENT))
        if validate_install:
            if not config.install_marker.exists():
                _command_error(
                    op,
                    f"Install marker {config.install_marker} not found; "
                    "install the node dependencies before running init.",
                    rc=int(ExitCode.ENVIRONMENT),
                )
            op.add_step("install-validation")
        else:
            op.add_step("install-validation", status="skipped")

        try:
            provider = new_node_provider(
                config_source,
                config=config,
                scope=op,
                daemon_filter=daemons or None,
                templates=runtime.templates,
            )
            BootstrapOrchestrator(provider, phases).run()
        except KNOWN_ERRORS as exc:
            _command_error(op, str(exc), rc=int(exit_code_for(exc) or ExitCode.PROVIDER))

        console.print("[green]Node bootstrap complete.[/green]")
        op.success(
            "Node bootstrap complete.",
            context={"node_name": provider.node_config.resolved_node_name()},
        )


@config_app.command("check")
def config_check(
    ctx: typer.Context,
    config_source: str = CONFIG_SOURCE_OPTION,
) -> None:
    """Load and validate a NodeConfig without touching the host."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    with runtime.logger.operation(
        "config check",
        args={"config_source": config_source},
        target={"kind": "node-config"},
    ) as op:
        imds = ImdsClient(endpoint=config.imds.endpoint, timeout=config.imds.timeout)
        try:
            node_config = load_node_config(config_source, imds=imds)
        except NodeConfigError as exc:
            _command_error(op, str(exc), rc=int(exit_code_for(exc) or ExitCode.VALIDATION))
        finally:
            imds.close()

        kind = node_config.node_type().value
        console.print(f"[green]NodeConfig is valid[/green] (node type: {kind}).")
        op.success("NodeConfig is valid.", changed=0, context={"node_type": kind})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective agent settings after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@credentials_app.command("ca")
def credentials_ca(
    ctx: typer.Context,
    out_dir: Path = typer.Option(
        Path("."), "--out-dir", file_okay=False, help="Directory receiving ca.pem and ca.key."
    ),
    common_name: str = typer.Option("hybridnode-ca", "--common-name", help="CA subject CN."),
    force: bool = typer.Option(False, "--force", help="Replace an existing CA."),
) -> None:
    """Create a local certificate authority for an IAM Roles Anywhere trust anchor."""
    runtime = _get_runtime(ctx)
    cert_path = out_dir / "ca.pem"
    key_path = out_dir / "ca.key"

    with runtime.logger.operation(
        "credentials ca",
        args={"out_dir": out_dir, "common_name": common_name, "force": force},
        target={"kind": "credentials", "ca": common_name},
    ) as op:
        if not force and (cert_path.exists() or key_path.exists()):
            _command_error(
                op,
                f"{cert_path} or {key_path} already exists; pass --force to replace the CA.",
                rc=int(ExitCode.VALIDATION),
            )

        ca = CertificateAuthority.generate(common_name)
        files = [
            NodeFile(path=cert_path.resolve(), content=ca.certificate_pem(), mode=0o644),
            NodeFile(path=key_path.resolve(), content=ca.private_key_pem(), mode=0o600),
        ]
        try:
            changed = write_node_files(files)
        except CredentialError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))

        for path in changed:
            op.add_step("write-file", detail=path)
            console.print(f"Wrote {path}")
        op.success("Created certificate authority.", changed=len(changed))


@credentials_app.command("issue")
def credentials_issue(
    ctx: typer.Context,
    node_name: str = typer.Option(..., "--node-name", help="Node name used as the certificate CN."),
    cluster_name: str = typer.Option(..., "--cluster-name", help="Cluster the node joins."),
    ca_cert: Path = typer.Option(..., "--ca-cert", dir_okay=False, help="CA certificate (PEM)."),
    ca_key: Path = typer.Option(..., "--ca-key", dir_okay=False, help="CA private key (PEM)."),
    region: str = typer.Option("", "--region", help="Cluster region."),
    role: str = typer.Option("worker", "--role", help="Node role recorded in the subject."),
    provider: str = typer.Option("hybrid", "--provider", help="Infrastructure provider label."),
    os_name: str | None = typer.Option(
        None,
        "--os",
        help="Operating system label; defaults to the ID in /etc/os-release.",
    ),
) -> None:
    """Issue an IAM Roles Anywhere node certificate and key from a local CA."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    with runtime.logger.operation(
        "credentials issue",
        args={"node_name": node_name, "cluster_name": cluster_name, "ca_cert": ca_cert},
        target={"kind": "credentials", "node": node_name},
    ) as op:
        try:
            ca = CertificateAuthority.load(ca_cert, ca_key)
        except CertificateError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        spec = NodeSpec(
            name=node_name,
            cluster_name=cluster_name,
            region=region,
            os_name=os_name or read_os_release(config.root_dir).id or "linux",
            role=role,
            provider=provider,
        )
        strategy = RolesAnywhereCredentialProvider(
            trust_anchor_arn="", profile_arn="", role_arn="", ca=ca
        )
        try:
            changed = write_node_files(strategy.files_for_node(spec), root=config.root_dir)
        except (CredentialError, CertificateError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))

        for path in changed:
            op.add_step("write-file", detail=path)
            console.print(f"Wrote {path}")
        op.success("Issued node certificate.", changed=len(changed))


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
