"""System configuration of the mounted image through ``arch-chroot``."""

from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from archimg.disk import BOOT_LABEL, ROOT_LABEL, DiskImage
from archimg.observability import Reporter
from archimg.runner import CommandRunner

TIMEZONE = "UTC"
LOCALE = "en_US.UTF-8"
HOSTNAME = "archarm"
CLOUD_PACKAGES = ("cloud-guest-utils", "cloud-init")
SSH_PACKAGES = ("openssh",)
CLOUD_INIT_UNITS = ("cloud-init-main.service", "cloud-final.service")
NETWORK_UNITS = ("systemd-networkd.service", "systemd-resolved.service")
SSH_UNITS = ("sshd.service",)

LOADER_CONF = textwrap.dedent("""\
    default arch
    timeout 0
    console-mode max
""")

WIRED_NETWORK = textwrap.dedent("""\
    [Match]
    Name=e*

    [Network]
    DHCP=yes
    DNSSEC=no
""")


def render_fstab(root_partuuid: str, boot_partuuid: str) -> str:
    return (
        f"PARTUUID={root_partuuid}  /       ext4    defaults,noatime    0 1\n"
        f"PARTUUID={boot_partuuid}  /boot   vfat    "
        "defaults,nodev,nosuid,noexec,fmask=0177,dmask=0077    0 2\n"
    )


def render_boot_entry(root_partuuid: str) -> str:
    return textwrap.dedent(f"""\
        title   Arch Linux ARM
        efi     /vmlinuz-linux
        options root=PARTUUID={root_partuuid} rw console=ttyAMA0 rootwait
        initrd  /initramfs-linux.img
    """)


@dataclass(slots=True)
class ChrootConfigurator:
    runner: CommandRunner
    reporter: Reporter

    def __call__(self, disk: DiskImage) -> None:
        self.reporter.info("chroot", "Setting up Arch environment ...", step="chroot")
        root = disk.paths.mount_root
        self.configure_time_and_locale(root)
        self.configure_hostname(root)
        root_partuuid, boot_partuuid = self.resolve_partuuids()
        self.configure_fstab(root, root_partuuid, boot_partuuid)
        self.configure_pacman(root)
        self.configure_bootloader(root, root_partuuid)
        self.configure_cloud_init(root)
        self.configure_network(root)
        self.configure_ssh(root)
        self.purge_package_cache(root)

    def chroot(self, root: Path, argv: Sequence[str], *, input: str | None = None) -> None:
        self.runner.run(["arch-chroot", str(root), *argv], privileged=True, input=input)

    def configure_time_and_locale(self, root: Path) -> None:
        self.reporter.info("chroot", "Setting timezone and locale ...", step="locale")
        self.chroot(root, ["ln", "-sf", f"/usr/share/zoneinfo/{TIMEZONE}", "/etc/localtime"])
        self.reporter.info("chroot", "Setting hardware clock ...", step="locale")
        self.chroot(root, ["hwclock", "--systohc"])
        self.runner.write_file(root / "etc" / "locale.gen", f"{LOCALE} UTF-8\n")
        self.runner.write_file(root / "etc" / "locale.conf", f"LANG={LOCALE}\n")
        self.chroot(root, ["locale-gen"])

    def configure_hostname(self, root: Path) -> None:
        self.reporter.info("chroot", "Setting /etc/hostname ...", step="hostname")
        self.runner.write_file(root / "etc" / "hostname", f"{HOSTNAME}\n")

    def resolve_partuuids(self) -> tuple[str, str]:
        return self._partuuid(ROOT_LABEL), self._partuuid(BOOT_LABEL)

    def configure_fstab(self, root: Path, root_partuuid: str, boot_partuuid: str) -> None:
        self.reporter.info("chroot", "Setting up /etc/fstab ...", step="fstab")
        self.runner.write_file(
            root / "etc" / "fstab", render_fstab(root_partuuid, boot_partuuid), append=True
        )

    def configure_pacman(self, root: Path) -> None:
        self.reporter.info("chroot", "Setting up pacman ...", step="pacman")
        self.chroot(root, ["pacman-key", "--init"])
        self.chroot(root, ["pacman-key", "--populate", "archlinuxarm"])

    def configure_bootloader(self, root: Path, root_partuuid: str) -> None:
        self.reporter.info("chroot", "Setting up bootloader (systemd-boot) ...", step="bootloader")
        self.chroot(root, ["bootctl", "install", "--esp-path=/boot"])
        loader_dir = root / "boot" / "loader"
        self.runner.makedirs(loader_dir / "entries")
        self.reporter.info("chroot", "Creating loader.conf ...", step="bootloader")
        self.runner.write_file(loader_dir / "loader.conf", LOADER_CONF)
        self.reporter.info("chroot", "Creating entry for Arch Linux ...", step="bootloader")
        self.runner.write_file(loader_dir / "entries" / "arch.conf", render_boot_entry(root_partuuid))

    def configure_cloud_init(self, root: Path) -> None:
        self.reporter.info("chroot", "Installing cloud-guest-utils & cloud-init ...", step="cloud-init")
        self._install(root, CLOUD_PACKAGES)
        self.reporter.info("chroot", "Enabling cloud-init services ...", step="cloud-init")
        self._enable(root, CLOUD_INIT_UNITS)

    def configure_network(self, root: Path) -> None:
        self.reporter.info("chroot", "Setting up network configuration ...", step="network")
        network_dir = root / "etc" / "systemd" / "network"
        self.runner.makedirs(network_dir)
        self.runner.write_file(network_dir / "20-wired.network", WIRED_NETWORK)
        self.reporter.info(
            "chroot", "Enabling systemd-networkd and systemd-resolved services ...", step="network"
        )
        self._enable(root, NETWORK_UNITS)

    def configure_ssh(self, root: Path) -> None:
        self.reporter.info("chroot", "Installing OpenSSH ...", step="ssh")
        self._install(root, SSH_PACKAGES)
        self.reporter.info("chroot", "Enabling OpenSSH Daemon ...", step="ssh")
        self._enable(root, SSH_UNITS)

    def purge_package_cache(self, root: Path) -> None:
        self.reporter.info("chroot", "Clearing package cache ...", step="cleanup")
        # pacman -Scc asks twice: remove cached packages, remove unused repos.
        self.chroot(root, ["pacman", "-Scc"], input="y\ny\n")

    def _partuuid(self, label: str) -> str:
        return self.runner.output(
            ["blkid", "-s", "PARTUUID", "-o", "value", f"/dev/disk/by-partlabel/{label}"],
            privileged=True,
            placeholder=f"<{label}-PARTUUID>",
        )

    def _install(self, root: Path, packages: Sequence[str]) -> None:
        self.chroot(root, ["pacman", "-Sy", *packages, "--needed", "--noconfirm"])

    def _enable(self, root: Path, units: Sequence[str]) -> None:
        for unit in units:
            self.chroot(root, ["systemctl", "enable", unit])
