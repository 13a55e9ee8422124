"""Process exit codes and the error families that map onto them."""
from __future__ import annotations

from enum import IntEnum

from .api import NodeConfigError
from .aspects import AspectError
from .certificates import CertificateError
from .config import ConfigError
from .configsource import ConfigSourceError
from .credentials.base import CredentialError
from .daemons.base import DaemonError
from .orchestrator import PhaseError


class ExitCode(IntEnum):
    """Well-known exit codes returned by ``hybridnode`` commands."""

    OK = 0
    #: Agent settings, the NodeConfig or the command line are invalid.
    VALIDATION = 2
    #: The host is not ready for a run, or the NodeConfig source is unreachable.
    ENVIRONMENT = 3
    #: A system aspect, credential strategy or daemon failed.
    PROVIDER = 4


def exit_code_for(exc: BaseException) -> ExitCode | None:
    """Return the exit code for *exc*, or ``None`` when it is not a known failure."""
    if isinstance(exc, ConfigSourceError):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, (ConfigError, NodeConfigError, PhaseError)):
        return ExitCode.VALIDATION
    if isinstance(exc, (AspectError, CertificateError, CredentialError, DaemonError)):
        return ExitCode.PROVIDER
    return None


__all__ = ["ExitCode", "exit_code_for"]
