"""Operating system detection from ``/etc/os-release``."""
from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path

OS_RELEASE = Path("etc/os-release")


@dataclass(frozen=True, slots=True)
class OsRelease:
    """Distribution identity."""

    id: str = ""
    version_id: str = ""


def read_os_release(root: Path = Path("/")) -> OsRelease:
    """Parse ``os-release`` under *root*; unknown systems yield empty fields."""
    path = root / OS_RELEASE
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return OsRelease()
    values: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parsed = shlex.split(raw)
        except ValueError:
            parsed = [raw]
        values[key.strip()] = parsed[0] if parsed else ""
    return OsRelease(id=values.get("ID", "").lower(), version_id=values.get("VERSION_ID", ""))


__all__ = ["OsRelease", "read_os_release"]
