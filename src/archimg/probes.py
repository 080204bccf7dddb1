"""Capability probes: required command -> providing package.

A capability is verified by probing for its command, remediated by installing
its package, and verified again afterwards.  All missing packages are
installed in a single batch so a build never continues with a partially
provisioned host.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from archimg.errors import DependencyError
from archimg.observability import Reporter
from archimg.runner import CommandRunner


def command_on_path(command: str) -> bool:
    return shutil.which(command) is not None


@dataclass(frozen=True, slots=True)
class Capability:
    command: str
    package: str
    probe: Callable[[str], bool] = field(default=command_on_path, compare=False)

    def present(self) -> bool:
        return self.probe(self.command)


DEFAULT_CAPABILITIES: tuple[Capability, ...] = (
    Capability("arch-chroot", "arch-install-scripts"),
    Capability("update-ca-certificates", "ca-certificates"),
    Capability("curl", "curl"),
    Capability("mkfs.fat", "dosfstools"),
    Capability("makepkg", "makepkg"),
    Capability("pacman", "pacman-package-manager"),
    Capability("parted", "parted"),
    Capability("qemu-img", "qemu-utils"),
    Capability("xz", "xz-utils"),
    Capability("zstd", "zstd"),
)

Installer = Callable[[Sequence[str]], None]


def apt_installer(runner: CommandRunner) -> Installer:
    def install(packages: Sequence[str]) -> None:
        runner.run(["apt-get", "update"], privileged=True)
        runner.run(
            ["apt-get", "install", "--yes", "-qq", "--no-install-recommends", *packages],
            privileged=True,
        )

    return install


def missing_capabilities(capabilities: Iterable[Capability]) -> list[Capability]:
    return [capability for capability in capabilities if not capability.present()]


def ensure_capabilities(
    capabilities: Sequence[Capability],
    *,
    installer: Installer,
    reporter: Reporter,
    verify: bool = True,
) -> list[str]:
    """Install whatever is missing and re-verify; return the packages installed.

    With *verify* false the capabilities are not probed again after the install;
    a dry-run installer only prints its commands.
    """
    missing: list[Capability] = []
    for capability in capabilities:
        reporter.info(
            "probes",
            f"Checking for {capability.command} (provided by {capability.package})...",
            step="check",
        )
        if capability.present():
            reporter.info("probes", f"{capability.command} already present.", step="check")
        else:
            reporter.notice(
                "probes",
                f"{capability.command} not found, will install package {capability.package}...",
                step="check",
            )
            missing.append(capability)

    if not missing:
        return []

    packages = list(dict.fromkeys(capability.package for capability in missing))
    reporter.notice("probes", f"Installing missing packages: {' '.join(packages)}...", step="install")
    installer(packages)
    if not verify:
        reporter.notice("probes", "Skipping verification of the installed packages.", step="verify")
        return packages

    still_missing = missing_capabilities(capabilities)
    if still_missing:
        first = still_missing[0]
        raise DependencyError(
            f"{first.command} still not found after installing {first.package}!",
            hint="Check the package manager output and the VM's apt sources.",
            context={
                "missing": ", ".join(capability.command for capability in still_missing),
                "packages": ", ".join(capability.package for capability in still_missing),
            },
        )
    reporter.info("probes", "All missing packages installed successfully.", step="verify")
    return packages
