"""Pytest configuration and shared fixtures for the test suite."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from support import SystemctlRecorder

from hybridnode.config import AppConfig, load_config
from hybridnode.logging import OperationScope, StructuredLogger
from hybridnode.providers.systemd import SystemdManager


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def systemctl(monkeypatch: pytest.MonkeyPatch) -> SystemctlRecorder:
    """Patch every :class:`SystemdManager` to record instead of running systemctl."""
    recorder = SystemctlRecorder()
    monkeypatch.setattr(SystemdManager, "_run_command", recorder)
    return recorder


@pytest.fixture
def manager(systemctl: SystemctlRecorder) -> SystemdManager:
    """Return a daemon manager that never sleeps."""
    return SystemdManager(sleep=lambda _seconds: None)


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """Return the directory standing in for ``/`` on the node."""
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def app_config(tmp_path: Path, host_root: Path) -> AppConfig:
    """Return agent settings rooted under the temporary directory."""
    return load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={
            "root_dir": str(host_root),
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(tmp_path / "templates"),
            "require_root": False,
            "timeouts": {
                "ssm_registration": 2,
                "ssm_registration_backoff": 1,
                "ssm_identity": 2,
                "ssm_identity_backoff": 1,
                "daemon_running": 2,
                "daemon_running_backoff": 1,
                "credentials_file": 2,
                "credentials_file_backoff": 1,
                "uninstall": 2,
                "uninstall_backoff": 1,
            },
        },
    )


@pytest.fixture
def operation(tmp_path: Path) -> Iterator[OperationScope]:
    """Yield an operation scope whose records land in the temporary directory."""
    logger = StructuredLogger(tmp_path / "op-logs")
    with logger.operation("test", args={}, target={}) as op:
        yield op
    logger.close()

