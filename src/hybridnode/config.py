"""Configuration loader for the hybridnode agent.

This module centralises the logic for reading the agent's own settings from
multiple sources:

1. Built-in defaults.
2. ``/etc/hybridnode/config.yml`` (or an override path).
3. Environment variables prefixed with ``HYBRIDNODE_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HYBRIDNODE_TIMEOUTS__SSM_REGISTRATION=120
    export HYBRIDNODE_SYSTEMD__SYSTEMCTL_BIN=/usr/bin/systemctl

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

These are agent settings (where to log, how long to poll). The node
description itself is a ``NodeConfig`` document, see :mod:`hybridnode.api`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .retry import PollSettings

ENV_PREFIX = "HYBRIDNODE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Bounded polling windows, in seconds."""

    ssm_registration: float = 60.0
    ssm_registration_backoff: float = 10.0
    ssm_identity: float = 60.0
    ssm_identity_backoff: float = 5.0
    daemon_running: float = 300.0
    daemon_running_backoff: float = 5.0
    credentials_file: float = 120.0
    credentials_file_backoff: float = 2.0
    uninstall: float = 300.0
    uninstall_backoff: float = 10.0

    @property
    def ssm_registration_poll(self) -> PollSettings:
        """Retry window for the agent registration command."""
        return PollSettings(self.ssm_registration, self.ssm_registration_backoff)

    @property
    def ssm_identity_poll(self) -> PollSettings:
        """Wait window for the managed-instance id to appear."""
        return PollSettings(self.ssm_identity, self.ssm_identity_backoff)

    @property
    def daemon_running_poll(self) -> PollSettings:
        """Wait window for a unit to report ``active``."""
        return PollSettings(self.daemon_running, self.daemon_running_backoff)

    @property
    def credentials_file_poll(self) -> PollSettings:
        """Wait window for a shared credentials file to be written."""
        return PollSettings(self.credentials_file, self.credentials_file_backoff)

    @property
    def uninstall_poll(self) -> PollSettings:
        """Wait window for remote deregistration to be observable."""
        return PollSettings(self.uninstall, self.uninstall_backoff)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {name: getattr(self, name) for name in TIMEOUT_KEYS}


@dataclass(frozen=True)
class ImdsConfig:
    """Instance metadata service endpoint settings."""

    endpoint: str = "http://169.254.169.254"
    timeout: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"endpoint": self.endpoint, "timeout": self.timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for hybridnode."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    templates_dir: Path
    root_dir: Path
    install_marker: Path
    require_root: bool
    systemd: SystemdConfig
    timeouts: TimeoutsConfig
    imds: ImdsConfig

    def host_path(self, path: str | Path) -> Path:
        """Return *path* re-rooted under ``root_dir``."""
        candidate = Path(path)
        if candidate.is_absolute():
            candidate = candidate.relative_to("/")
        return self.root_dir / candidate

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "root_dir": str(self.root_dir),
            "install_marker": str(self.install_marker),
            "require_root": self.require_root,
            "systemd": self.systemd.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "imds": self.imds.to_dict(),
        }


TIMEOUT_KEYS = (
    "ssm_registration",
    "ssm_registration_backoff",
    "ssm_identity",
    "ssm_identity_backoff",
    "daemon_running",
    "daemon_running_backoff",
    "credentials_file",
    "credentials_file_backoff",
    "uninstall",
    "uninstall_backoff",
)

DEFAULTS: dict[str, object] = {
    "config_file": "/etc/hybridnode/config.yml",
    "state_dir": "/var/lib/hybridnode",
    "logs_dir": "/var/log/hybridnode",
    "templates_dir": "/etc/hybridnode/templates",
    "root_dir": "/",
    "install_marker": None,  # derived from state_dir when absent
    "require_root": True,
    "systemd": {
        "systemctl_bin": "systemctl",
    },
    "timeouts": {name: getattr(TimeoutsConfig(), name) for name in TIMEOUT_KEYS},
    "imds": {
        "endpoint": "http://169.254.169.254",
        "timeout": 2.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in (
        ("systemd", {"systemctl_bin"}),
        ("timeouts", set(TIMEOUT_KEYS)),
        ("imds", {"endpoint", "timeout"}),
    ):
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    require_root = raw.get("require_root")
    if require_root is not None and not isinstance(require_root, bool):
        raise ConfigError(f"Expected require_root to be a boolean. Got {require_root!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    root_dir = _to_path(raw.get("root_dir"))

    marker_value = raw.get("install_marker")
    install_marker = _to_path(marker_value) if marker_value else state_dir / "tracker"

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=_expect_str(systemd_mapping.get("systemctl_bin", "systemctl"),
                                  "systemd.systemctl_bin"),
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    defaults = TimeoutsConfig()
    timeouts = TimeoutsConfig(
        **{
            name: _expect_non_negative_float(
                timeouts_mapping.get(name),
                f"timeouts.{name}",
                default=getattr(defaults, name),
            )
            for name in TIMEOUT_KEYS
        }
    )

    imds_mapping = _as_dict(raw.get("imds"), "imds")
    imds = ImdsConfig(
        endpoint=_expect_str(imds_mapping.get("endpoint", ImdsConfig.endpoint), "imds.endpoint"),
        timeout=_expect_non_negative_float(
            imds_mapping.get("timeout"), "imds.timeout", default=ImdsConfig.timeout
        ),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        root_dir=root_dir,
        install_marker=install_marker,
        require_root=bool(raw.get("require_root", True)),
        systemd=systemd,
        timeouts=timeouts,
        imds=imds,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ImdsConfig",
    "SystemdConfig",
    "TimeoutsConfig",
    "load_config",
]
