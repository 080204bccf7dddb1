"""Arch Linux ARM package repositories, mirror list and keyring on the build host."""

from __future__ import annotations

import re
from pathlib import Path

from archimg.errors import CommandError, FetchError
from archimg.models import HostPaths
from archimg.observability import Reporter
from archimg.runner import CommandRunner

MIRRORLIST_URL = (
    "https://raw.githubusercontent.com/archlinuxarm/PKGBUILDs/master/core/pacman-mirrorlist/mirrorlist"
)
KEYRING_URL = "https://raw.githubusercontent.com/archlinuxarm/PKGBUILDs/master/core/archlinuxarm-keyring/"
KEYRING_FILES = (
    "archlinuxarm-revoked",
    "archlinuxarm-trusted",
    "archlinuxarm.gpg",
)
REPOSITORIES = ("core", "extra", "community", "alarm", "aur")
MIRRORLIST_INCLUDE = "Include = /etc/pacman.d/mirrorlist"
TARGET_ARCH = "aarch64"

_COMMENTED_SERVER_RE = re.compile(r"^\s*#\s*Server\s*=", re.MULTILINE)


def repository_stanzas() -> str:
    return "\n".join(f"[{name}]\n{MIRRORLIST_INCLUDE}\n" for name in REPOSITORIES)


def needs_repositories(pacman_conf_text: str) -> bool:
    lines = pacman_conf_text.splitlines()
    has_alarm = any(line.startswith("[alarm]") for line in lines)
    has_include = any(line.startswith(MIRRORLIST_INCLUDE) for line in lines)
    return not (has_alarm and has_include)


def ensure_pacman_repos(paths: HostPaths, runner: CommandRunner, reporter: Reporter) -> bool:
    """Append the repository stanzas unless pacman.conf already has them."""
    reporter.info("repos", "Editing pacman.conf to add Archlinux ARM mirrorlist...", step="pacman-conf")
    current = paths.pacman_conf.read_text(encoding="utf-8") if paths.pacman_conf.exists() else ""
    if not needs_repositories(current):
        reporter.notice(
            "repos", "Pacman configuration already includes Archlinux ARM mirrorlist.", step="pacman-conf"
        )
        return False
    separator = "\n" if current and not current.endswith("\n") else ""
    runner.write_file(paths.pacman_conf, separator + repository_stanzas(), append=True)
    return True


def rewrite_mirrorlist(text: str, arch: str = TARGET_ARCH) -> str:
    """Enable every commented-out server and pin the architecture."""
    return _COMMENTED_SERVER_RE.sub("Server =", text).replace("$arch", arch)


def install_mirrorlist(
    paths: HostPaths,
    runner: CommandRunner,
    reporter: Reporter,
    *,
    url: str = MIRRORLIST_URL,
) -> None:
    reporter.info("repos", "Installing Archlinux ARM mirrorlist...", step="mirrorlist")
    runner.makedirs(paths.mirrorlist.parent)
    try:
        text = runner.output(["curl", "-fsSL", url])
    except CommandError as exc:
        raise FetchError(
            "Failed to download the mirror list.",
            hint="Check network access from the build VM.",
            context={"url": url, "returncode": str(exc.returncode)},
        ) from exc
    runner.write_file(paths.mirrorlist, rewrite_mirrorlist(text))


def install_keyrings(
    paths: HostPaths,
    runner: CommandRunner,
    reporter: Reporter,
    *,
    base_url: str = KEYRING_URL,
    files: tuple[str, ...] = KEYRING_FILES,
) -> list[str]:
    """Download the keyring files that are not present yet; return their names."""
    reporter.info("repos", "Adding Archlinux ARM keyring...", step="keyring")
    downloaded: list[str] = []
    for name in files:
        target: Path = paths.keyring_dir / name
        if target.exists():
            reporter.notice("repos", f"{name} already exists, skipping download.", step="keyring")
            continue
        reporter.info("repos", f"Downloading {name}...", step="keyring")
        runner.makedirs(paths.keyring_dir)
        try:
            runner.run(["curl", "-fL", f"{base_url}{name}", "-o", str(target)], privileged=True)
        except CommandError as exc:
            raise FetchError(
                f"Failed to download keyring file {name}.",
                hint="Check network access from the build VM.",
                context={"url": f"{base_url}{name}", "returncode": str(exc.returncode)},
            ) from exc
        downloaded.append(name)
    return downloaded
