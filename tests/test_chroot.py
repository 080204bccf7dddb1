from pathlib import Path

from archimg.chroot import WIRED_NETWORK, ChrootConfigurator, render_boot_entry, render_fstab
from archimg.disk import DiskImage
from archimg.models import HostPaths
from archimg.observability import Reporter

from .conftest import RecordingRunner

ROOT_UUID = "1111-root"
BOOT_UUID = "2222-boot"


def _configure(tmp_path: Path, reporter: Reporter, paths: HostPaths) -> RecordingRunner:
    runner = RecordingRunner(
        reporter,
        outputs={
            ("blkid", "-s", "PARTUUID", "-o", "value", "/dev/disk/by-partlabel/ROOT"): ROOT_UUID,
            ("blkid", "-s", "PARTUUID", "-o", "value", "/dev/disk/by-partlabel/BOOT"): BOOT_UUID,
        },
    )
    disk = DiskImage(path=tmp_path / "disk.img", runner=runner, reporter=reporter, paths=paths)
    (paths.mount_root / "etc").mkdir(parents=True)
    (paths.mount_root / "boot").mkdir(parents=True)
    ChrootConfigurator(runner, reporter)(disk)
    return runner


def test_fstab_references_partuuids() -> None:
    fstab = render_fstab(ROOT_UUID, BOOT_UUID)

    lines = fstab.splitlines()
    assert lines[0].split()[:4] == [f"PARTUUID={ROOT_UUID}", "/", "ext4", "defaults,noatime"]
    assert lines[1].split()[:3] == [f"PARTUUID={BOOT_UUID}", "/boot", "vfat"]
    assert "fmask=0177,dmask=0077" in lines[1]


def test_boot_entry_points_at_root_partuuid() -> None:
    entry = render_boot_entry(ROOT_UUID)

    assert "efi     /vmlinuz-linux" in entry
    assert f"options root=PARTUUID={ROOT_UUID} rw console=ttyAMA0 rootwait" in entry
    assert entry.endswith("initrd  /initramfs-linux.img\n")


def test_configurator_writes_system_files(tmp_path: Path, reporter: Reporter, host_paths: HostPaths) -> None:
    _configure(tmp_path, reporter, host_paths)
    root = host_paths.mount_root

    assert (root / "etc" / "hostname").read_text(encoding="utf-8") == "archarm\n"
    assert (root / "etc" / "locale.conf").read_text(encoding="utf-8") == "LANG=en_US.UTF-8\n"
    assert (root / "etc" / "fstab").read_text(encoding="utf-8") == render_fstab(ROOT_UUID, BOOT_UUID)
    assert (root / "boot" / "loader" / "loader.conf").read_text(encoding="utf-8").startswith(
        "default arch\n"
    )
    assert ROOT_UUID in (root / "boot" / "loader" / "entries" / "arch.conf").read_text(encoding="utf-8")
    assert (root / "etc" / "systemd" / "network" / "20-wired.network").read_text(
        encoding="utf-8"
    ) == WIRED_NETWORK


def test_configurator_enables_services_and_purges_cache(
    tmp_path: Path, reporter: Reporter, host_paths: HostPaths
) -> None:
    runner = _configure(tmp_path, reporter, host_paths)
    root = str(host_paths.mount_root)
    chroot_calls = [call[2:] for call in runner.commands("arch-chroot")]

    for unit in (
        "cloud-init-main.service",
        "cloud-final.service",
        "systemd-networkd.service",
        "systemd-resolved.service",
        "sshd.service",
    ):
        assert ["systemctl", "enable", unit] in chroot_calls
    assert ["bootctl", "install", "--esp-path=/boot"] in chroot_calls
    assert ["pacman", "-Sy", "cloud-guest-utils", "cloud-init", "--needed", "--noconfirm"] in chroot_calls
    assert ["pacman", "-Sy", "openssh", "--needed", "--noconfirm"] in chroot_calls
    assert runner.calls[-1] == ["arch-chroot", root, "pacman", "-Scc"]
    assert runner.inputs[-1] == "y\ny\n"
    assert runner.index("arch-chroot", root, "bootctl") < runner.index(
        "tee", str(host_paths.mount_root / "boot" / "loader" / "loader.conf")
    )
