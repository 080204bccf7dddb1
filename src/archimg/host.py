"""Host OS preconditions for the in-VM builder."""

from __future__ import annotations

import platform
import shutil
from pathlib import Path

from archimg.errors import PreconditionError

LSB_RELEASE = Path("/etc/lsb-release")


def ensure_supported_host(
    *,
    system: str | None = None,
    lsb_release: Path = LSB_RELEASE,
) -> None:
    """Refuse to build anywhere but a Debian/Ubuntu family Linux host."""
    system = system or platform.system()
    if system == "Darwin":
        raise PreconditionError(
            "The image builder must run inside a Linux environment (e.g., a Lima VM).",
            hint="macOS lacks the required tools and kernel features; use `archimg-build` instead.",
            context={"system": system},
        )
    if not (lsb_release.exists() or shutil.which("apt-get")):
        raise PreconditionError(
            "The image builder supports only Debian/Ubuntu hosts.",
            hint="Run it inside the build VM created by `archimg-build`.",
            context={"system": system, "lsb_release": str(lsb_release)},
        )
