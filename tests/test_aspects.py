"""Tests for host preparation aspects."""
from __future__ import annotations

from pathlib import Path

import pytest
from support import CommandRecorder, DummyResult, cloud_document

from hybridnode.api import LocalStorageStrategy, parse_node_config_yaml
from hybridnode.aspects import AspectError, LocalDiskAspect, SysctlAspect
from hybridnode.logging import OperationScope
from hybridnode.templates import TemplateEngine


def test_sysctl_writes_drop_in_and_reloads_once(
    tmp_path: Path, operation: OperationScope
) -> None:
    """The drop-in is written once and sysctl reloads only on change."""
    runner = CommandRecorder()
    path = tmp_path / "etc" / "sysctl.d" / "99-hybridnode.conf"
    aspect = SysctlAspect(
        templates=TemplateEngine.with_overrides(None),
        logger=operation,
        path=path,
        runner=runner,
    )

    aspect.setup()
    aspect.setup()

    assert aspect.name == "sysctl"
    text = path.read_text(encoding="utf-8")
    assert "net.ipv4.ip_forward = 1\n" in text
    assert "fs.inotify.max_user_watches = 524288\n" in text
    assert runner.calls == [["sysctl", "--system"]]


def test_sysctl_reload_failure_raises(tmp_path: Path, operation: OperationScope) -> None:
    """A failing reload surfaces as AspectError."""
    runner = CommandRecorder()
    runner.results["sysctl"] = [DummyResult(returncode=1, stderr="permission denied")]
    aspect = SysctlAspect(
        templates=TemplateEngine.with_overrides(None),
        logger=operation,
        path=tmp_path / "99-hybridnode.conf",
        runner=runner,
    )

    with pytest.raises(AspectError, match=r"sysctl --system failed \(exit 1\): permission denied"):
        aspect.setup()


def test_local_disk_without_strategy_is_noop(operation: OperationScope) -> None:
    """No strategy means no disk layout command."""
    runner = CommandRecorder()
    aspect = LocalDiskAspect(parse_node_config_yaml(cloud_document()), operation, runner)

    aspect.setup()

    assert aspect.name == "local-disk"
    assert runner.calls == []


@pytest.mark.parametrize(
    ("strategy", "argument"),
    [(LocalStorageStrategy.RAID0, "raid0"), (LocalStorageStrategy.MOUNT, "mount")],
)
def test_local_disk_runs_setup_script(
    operation: OperationScope, strategy: LocalStorageStrategy, argument: str
) -> None:
    """The configured strategy is passed to ``setup-local-disks``."""
    runner = CommandRecorder()
    config = parse_node_config_yaml(cloud_document())
    config.spec.instance.local_storage.strategy = strategy

    LocalDiskAspect(config, operation, runner).setup()

    assert runner.calls == [["setup-local-disks", argument]]


def test_local_disk_missing_script_raises(operation: OperationScope) -> None:
    """A missing script surfaces as AspectError."""

    def missing(command: list[str]) -> DummyResult:
        raise FileNotFoundError(2, "No such file or directory")

    config = parse_node_config_yaml(cloud_document())
    config.spec.instance.local_storage.strategy = LocalStorageStrategy.RAID0

    with pytest.raises(AspectError, match="setup-local-disks not found"):
        LocalDiskAspect(config, operation, missing).setup()
