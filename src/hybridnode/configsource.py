"""Resolve a configuration-source URI into a :class:`NodeConfig`."""
from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import unquote, urlparse

from .api import NodeConfig, NodeConfigError, parse_node_config_yaml
from .imds import ImdsClient, ImdsError

LOGGER = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("file", "imds")


class ConfigSourceError(NodeConfigError):
    """Raised when a configuration source is unreachable or unsupported."""


def load_node_config(source: str, *, imds: ImdsClient | None = None) -> NodeConfig:
    """Load the NodeConfig referenced by *source*.

    ``file:///etc/hybridnode/nodeconfig.yaml`` and plain paths read a local
    file; ``imds://user-data`` reads the instance user data.
    """
    if not source:
        raise ConfigSourceError("A configuration source is required.")
    parsed = urlparse(source)
    scheme = parsed.scheme or "file"
    if scheme == "file":
        path = Path(unquote(parsed.path) if parsed.scheme else source)
        return _load_file(path)
    if scheme == "imds":
        target = (parsed.netloc + parsed.path).strip("/") or "user-data"
        if target != "user-data":
            raise ConfigSourceError(f"Unsupported imds source {source!r}; use imds://user-data.")
        return _load_imds(imds or ImdsClient())
    allowed = ", ".join(SUPPORTED_SCHEMES)
    raise ConfigSourceError(
        f"Unsupported configuration source scheme {scheme!r}. Allowed: {allowed}."
    )


def _load_file(path: Path) -> NodeConfig:
    LOGGER.debug("Loading NodeConfig from %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigSourceError(f"Cannot read configuration source {path}: {exc}") from exc
    return parse_node_config_yaml(text, source=str(path))


def _load_imds(client: ImdsClient) -> NodeConfig:
    LOGGER.debug("Loading NodeConfig from instance user data")
    try:
        text = client.user_data()
    except ImdsError as exc:
        raise ConfigSourceError(f"Cannot read instance user data: {exc}") from exc
    return parse_node_config_yaml(text, source="imds://user-data")


__all__ = ["ConfigSourceError", "SUPPORTED_SCHEMES", "load_node_config"]
