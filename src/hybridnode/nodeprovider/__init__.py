"""Node providers turning a configuration source into a bootstrap plan."""
from __future__ import annotations

import time
from collections.abc import Callable, Collection, Mapping

from ..commands import Runner, default_runner
from ..config import AppConfig
from ..configsource import load_node_config
from ..imds import ImdsClient
from ..logging import OperationScope
from ..osinfo import OsRelease, read_os_release
from ..providers.systemd import SystemdManager
from ..templates import TemplateEngine
from .base import BaseNodeProvider, NodeProvider, credential_provider_for, sandbox_image
from .cloud import CloudNodeProvider
from .hybrid import HybridNodeProvider


def new_node_provider(
    source_uri: str,
    *,
    config: AppConfig,
    scope: OperationScope,
    daemon_filter: Collection[str] | None = None,
    manager: SystemdManager | None = None,
    imds: ImdsClient | None = None,
    templates: TemplateEngine | None = None,
    os_release: OsRelease | None = None,
    runner: Runner = default_runner,
    sleep: Callable[[float], None] = time.sleep,
    env: Mapping[str, str] | None = None,
) -> BaseNodeProvider:
    """Load the NodeConfig from *source_uri* and return a validated, enriched provider.

    The daemon manager and metadata client are closed again when validation or
    enrichment fails.
    """
    imds = imds or ImdsClient(endpoint=config.imds.endpoint, timeout=config.imds.timeout)
    try:
        node_config = load_node_config(source_uri, imds=imds)
    except BaseException:
        imds.close()
        raise
    scope.add_step("load-node-config", detail=source_uri)
    manager = manager or SystemdManager(
        systemctl_bin=config.systemd.systemctl_bin,
        sleep=sleep,
    )
    provider_cls = HybridNodeProvider if node_config.is_hybrid_node() else CloudNodeProvider
    provider = provider_cls(
        node_config,
        settings=config,
        logger=scope,
        manager=manager,
        templates=templates or TemplateEngine.with_overrides(config.templates_dir),
        os_release=os_release or read_os_release(config.root_dir),
        daemon_filter=daemon_filter,
        runner=runner,
        sleep=sleep,
        env=env,
        imds=imds,
    )
    try:
        provider.validate_config()
        provider.enrich()
    except BaseException:
        provider.cleanup()
        raise
    return provider


__all__ = [
    "BaseNodeProvider",
    "CloudNodeProvider",
    "HybridNodeProvider",
    "NodeProvider",
    "credential_provider_for",
    "new_node_provider",
    "sandbox_image",
]
