"""Bounded polling helpers built on tenacity."""
from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

T = TypeVar("T")


class NotReadyError(RuntimeError):
    """Raised by a poll probe when the awaited condition does not hold yet."""


@dataclass(frozen=True, slots=True)
class PollSettings:
    """A polling window expressed as a total timeout and a fixed backoff."""

    timeout: float
    backoff: float

    @property
    def attempts(self) -> int:
        """Return the number of probes that fit into the window."""
        if self.backoff <= 0:
            return 1
        return max(1, math.ceil(self.timeout / self.backoff) + 1)

    def retrying(
        self,
        *,
        retry_on: type[BaseException] | tuple[type[BaseException], ...] = NotReadyError,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Retrying:
        """Return a :class:`tenacity.Retrying` bound to this window."""
        return Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.backoff),
            retry=retry_if_exception_type(retry_on),
            sleep=sleep,
            reraise=True,
        )


def poll(
    probe: Callable[[], T],
    settings: PollSettings,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *probe* until it stops raising :class:`NotReadyError`.

    The final :class:`NotReadyError` is re-raised once the window is spent so
    callers can translate it into their own error type.
    """
    return settings.retrying(sleep=sleep)(probe)


__all__ = ["NotReadyError", "PollSettings", "poll"]
