"""Systemd-backed daemon manager used by every managed service."""
from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from ..daemons.base import DaemonError
from ..retry import NotReadyError, PollSettings

LOGGER = logging.getLogger(__name__)


class SystemdError(DaemonError):
    """Raised when systemd operations fail."""


class DaemonStatus(str, Enum):
    """Coarse unit state reported by ``systemctl is-active``."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


_ACTIVE_STATES = {
    "active": DaemonStatus.RUNNING,
    "reloading": DaemonStatus.RUNNING,
    "inactive": DaemonStatus.STOPPED,
    "failed": DaemonStatus.STOPPED,
}


@dataclass(slots=True)
class SystemdManager:
    """Start, stop and inspect systemd units through ``systemctl``."""

    systemctl_bin: str = "systemctl"
    sleep: Callable[[float], None] = time.sleep
    _closed: bool = field(default=False, init=False, repr=False)

    def unit_name(self, name: str) -> str:
        """Return the unit name for daemon *name*."""
        return name if name.endswith(".service") else f"{name}.service"

    def enable(self, name: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit_name(name))

    def disable(self, name: str) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", self.unit_name(name))

    def start(self, name: str) -> subprocess.CompletedProcess[str]:
        """Start the unit; a running unit is left alone."""
        return self._systemctl("start", self.unit_name(name))

    def stop(self, name: str) -> subprocess.CompletedProcess[str]:
        """Stop the unit."""
        return self._systemctl("stop", self.unit_name(name))

    def restart(self, name: str) -> subprocess.CompletedProcess[str]:
        """Restart the unit, starting it when it is not running."""
        return self._systemctl("restart", self.unit_name(name))

    def daemon_reload(self) -> None:
        """Ask systemd to re-read unit files."""
        self._systemctl("daemon-reload")

    def status(self, name: str) -> DaemonStatus:
        """Return the coarse status of the unit."""
        result = self._systemctl("is-active", self.unit_name(name), check=False)
        state = (result.stdout or "").strip().splitlines()
        return _ACTIVE_STATES.get(state[0] if state else "", DaemonStatus.UNKNOWN)

    def wait_for_status(self, name: str, desired: DaemonStatus, poll: PollSettings) -> None:
        """Block until *name* reports *desired* or the window is spent."""
        observed = DaemonStatus.UNKNOWN

        def probe() -> None:
            nonlocal observed
            observed = self.status(name)
            if observed is not desired:
                LOGGER.info("%s is %s, waiting for %s", name, observed.value, desired.value)
                raise NotReadyError(name)

        try:
            poll.retrying(sleep=self.sleep)(probe)
        except NotReadyError as exc:
            raise SystemdError(
                f"{self.unit_name(name)} still has status {observed.value} "
                f"after {poll.timeout:g}s, expected {desired.value}"
            ) from exc

    def close(self) -> None:
        """Release the manager; later calls raise :class:`SystemdError`."""
        self._closed = True

    @property
    def closed(self) -> bool:
        """Return ``True`` once :meth:`close` has been called."""
        return self._closed

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        if self._closed:
            raise SystemdError(f"{self.systemctl_bin} {command}: daemon manager is closed")
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command} {unit or ''}".rstrip(),
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["DaemonStatus", "SystemdError", "SystemdManager"]
