"""Drive one node bootstrap through its phases.

The orchestrator owns ordering only. Every retry, timeout and rollback
decision belongs to the aspects, credential strategies and daemons it calls;
their errors reach the caller unchanged.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from enum import Enum

from .nodeprovider.base import NodeProvider


class Phase(str, Enum):
    """Named steps of a bootstrap run."""

    ASPECT_SETUP = "aspect-setup"
    PRE_PROCESS_DAEMON = "pre-process-daemon"
    CREDENTIAL_CONFIGURATION = "credential-configuration"
    DAEMON_CONFIGURATION = "daemon-configuration"
    DAEMON_RUN = "daemon-run"


SKIPPABLE_PHASES = frozenset(
    {Phase.PRE_PROCESS_DAEMON, Phase.DAEMON_CONFIGURATION, Phase.DAEMON_RUN}
)


class PhaseError(ValueError):
    """Raised when a skip set names a phase that cannot be skipped."""


def parse_skip(names: Iterable[str]) -> frozenset[Phase]:
    """Translate phase names into a skip set, rejecting unknown or mandatory phases."""
    skip: set[Phase] = set()
    allowed = ", ".join(sorted(phase.value for phase in SKIPPABLE_PHASES))
    for name in names:
        try:
            phase = Phase(name)
        except ValueError as exc:
            raise PhaseError(f"Unknown phase {name!r}. Skippable phases: {allowed}.") from exc
        if phase not in SKIPPABLE_PHASES:
            raise PhaseError(f"Phase {name!r} cannot be skipped. Skippable phases: {allowed}.")
        skip.add(phase)
    return frozenset(skip)


class BootstrapOrchestrator:
    """Run aspects, credentials and daemons in order for one node."""

    def __init__(self, provider: NodeProvider, skip: Iterable[Phase] = frozenset()) -> None:
        """Bind the orchestrator to *provider*; *skip* lists optional phases to omit."""
        self.provider = provider
        self.skip = frozenset(skip)
        mandatory = self.skip - SKIPPABLE_PHASES
        if mandatory:
            names = ", ".join(sorted(phase.value for phase in mandatory))
            raise PhaseError(f"Phases cannot be skipped: {names}.")

    def run(self) -> None:
        """Execute every phase not skipped; ``cleanup`` runs exactly once."""
        try:
            self._run_phases()
        finally:
            self.provider.cleanup()
            self.provider.logger.add_step("cleanup")

    # ------------------------------------------------------------------
    def _run_phases(self) -> None:
        provider = self.provider
        scope = provider.logger

        for aspect in provider.aspects():
            self._step(Phase.ASPECT_SETUP, aspect.name, aspect.setup)

        if Phase.PRE_PROCESS_DAEMON in self.skip:
            scope.add_step(Phase.PRE_PROCESS_DAEMON.value, status="skipped")
        else:
            self._step(Phase.PRE_PROCESS_DAEMON, None, provider.pre_process_daemon)

        self._step(Phase.CREDENTIAL_CONFIGURATION, None, provider.configure_credentials)

        daemons = provider.daemons()
        node_config = provider.node_config

        if Phase.DAEMON_CONFIGURATION in self.skip:
            scope.add_step(Phase.DAEMON_CONFIGURATION.value, status="skipped")
        else:
            for daemon in daemons:
                self._step(
                    Phase.DAEMON_CONFIGURATION,
                    daemon.name,
                    lambda daemon=daemon: daemon.configure(node_config),
                )

        if Phase.DAEMON_RUN in self.skip:
            scope.add_step(Phase.DAEMON_RUN.value, status="skipped")
            return
        for daemon in daemons:
            self._step(Phase.DAEMON_RUN, f"{daemon.name}:ensure-running", daemon.ensure_running)
            self._step(
                Phase.DAEMON_RUN,
                f"{daemon.name}:post-launch",
                lambda daemon=daemon: daemon.post_launch(node_config),
            )

    def _step(self, phase: Phase, subject: str | None, action: Callable[[], object]) -> None:
        name = phase.value if subject is None else f"{phase.value}/{subject}"
        try:
            action()
        except Exception as exc:
            self.provider.logger.add_step(name, status="error", detail=str(exc))
            raise
        self.provider.logger.add_step(name)


__all__ = [
    "BootstrapOrchestrator",
    "Phase",
    "PhaseError",
    "SKIPPABLE_PHASES",
    "parse_skip",
]
