"""Subprocess helpers shared by aspects and daemons."""
from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence

Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    """Run *command*, capturing text output without raising on failure."""
    return subprocess.run(command, check=False, capture_output=True, text=True)  # noqa: S603,S607


def run_checked(
    runner: Runner,
    command: Sequence[str],
    error_cls: type[Exception],
) -> subprocess.CompletedProcess[str]:
    """Run *command* via *runner* and raise *error_cls* on a non-zero exit."""
    args = list(command)
    try:
        result = runner(args)
    except FileNotFoundError as exc:
        raise error_cls(f"{args[0]} not found: {exc}") from exc
    if result.returncode != 0:
        raise error_cls(failure_message(" ".join(args), result))
    return result


def failure_message(prefix: str, result: subprocess.CompletedProcess[str]) -> str:
    """Format a command failure the same way everywhere."""
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    message = stderr.strip() or stdout.strip() or "no output"
    return f"{prefix} failed (exit {result.returncode}): {message}"


__all__ = ["Runner", "default_runner", "failure_message", "run_checked"]
