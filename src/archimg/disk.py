"""Disk image lifecycle: allocate, partition, format, mount, populate, release.

``DiskImage`` is an explicit state machine over :class:`~archimg.models.DiskState`.
Each operation checks the state it starts from and only advances once the
underlying commands succeeded.  Live resources (the loop device and the mount
stack) are tracked separately from the state so that :meth:`DiskImage.session`
can release exactly what is still held when a build fails midway.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from archimg.errors import CommandError, DiskStateError
from archimg.models import IMAGE_SIZE_BYTES, DiskState, HostPaths
from archimg.observability import Reporter
from archimg.runner import CommandRunner

PARTITION_SCRIPT: tuple[tuple[str, ...], ...] = (
    ("mklabel", "gpt"),
    ("mkpart", "ESP", "fat32", "1MiB", "513MiB"),
    ("set", "1", "boot", "on"),
    ("set", "1", "esp", "on"),
    ("mkpart", "primary", "ext4", "513MiB", "100%"),
    ("name", "1", "BOOT"),
    ("name", "2", "ROOT"),
)
BOOT_LABEL = "BOOT"
ROOT_LABEL = "ROOT"
BOOTSTRAP_PACKAGES = ("base", "linux-aarch64", "archlinuxarm-keyring")
EXT4_OPTIONS = "lazy_itable_init=1,lazy_journal_init=1"
ZERO_FILL_NAME = "zero.fill"

_TRANSITIONS: dict[str, tuple[DiskState, DiskState]] = {
    "allocate": (DiskState.ABSENT, DiskState.ALLOCATED),
    "attach": (DiskState.ALLOCATED, DiskState.ATTACHED),
    "partition": (DiskState.ATTACHED, DiskState.PARTITIONED),
    "format": (DiskState.PARTITIONED, DiskState.FORMATTED),
    "mount": (DiskState.FORMATTED, DiskState.MOUNTED),
    "populate": (DiskState.MOUNTED, DiskState.POPULATED),
    "unmount": (DiskState.POPULATED, DiskState.UNMOUNTED),
    "detach": (DiskState.UNMOUNTED, DiskState.DETACHED),
    "mark_converted": (DiskState.DETACHED, DiskState.CONVERTED),
}


@dataclass(slots=True)
class DiskImage:
    path: Path
    runner: CommandRunner
    reporter: Reporter
    paths: HostPaths = field(default_factory=HostPaths)
    size: int = IMAGE_SIZE_BYTES
    state: DiskState = DiskState.ABSENT
    loop_device: str | None = None
    mounts: list[Path] = field(default_factory=list)

    @property
    def boot_partition(self) -> str:
        return f"{self._require_loop()}p1"

    @property
    def root_partition(self) -> str:
        return f"{self._require_loop()}p2"

    def allocate(self) -> None:
        self._expect("allocate")
        self.reporter.info("disk", "Creating image file...", step="allocate")
        self.runner.run(["truncate", "-s", str(self.size), str(self.path)])
        self._advance("allocate")

    def attach(self) -> None:
        self._expect("attach")
        self.reporter.info("disk", "Setting up loop device...", step="attach")
        loop_device = self.runner.output(
            ["losetup", "-fP", "--show", str(self.path)],
            privileged=True,
            placeholder="/dev/loop0",
        )
        if not loop_device:
            raise DiskStateError(
                "losetup did not report a loop device.",
                hint="Check `losetup -a` for exhausted or stale loop devices.",
                context={"image": str(self.path)},
            )
        self.loop_device = loop_device
        self._advance("attach")

    def partition(self) -> None:
        self._expect("partition")
        self.reporter.info("disk", "Partitioning image...", step="partition")
        loop_device = self._require_loop()
        for command in PARTITION_SCRIPT:
            self.runner.run(["parted", "-s", loop_device, *command], privileged=True)
        self._advance("partition")

    def format(self) -> None:
        self._expect("format")
        self.reporter.info("disk", "Formatting partitions...", step="format")
        self.runner.run(["mkfs.fat", "-F32", self.boot_partition], privileged=True)
        self.runner.run(["mkfs.ext4", "-E", EXT4_OPTIONS, self.root_partition], privileged=True)
        self._advance("format")

    def mount(self) -> None:
        self._expect("mount")
        self.reporter.info("disk", "Mounting partitions...", step="mount")
        self.runner.makedirs(self.paths.mount_root)
        self.runner.run(["mount", self.root_partition, str(self.paths.mount_root)], privileged=True)
        self.mounts.append(self.paths.mount_root)
        self.runner.makedirs(self.paths.mount_boot)
        self.runner.run(["mount", self.boot_partition, str(self.paths.mount_boot)], privileged=True)
        self.mounts.append(self.paths.mount_boot)
        self._advance("mount")

    def populate(self, configure: Callable[[DiskImage], None]) -> None:
        """Bootstrap the base system, then hand the mount tree to *configure*."""
        self._expect("populate")
        self.reporter.info("disk", "Installing base system...", step="bootstrap")
        self.runner.run(["pacman-key", "--init"], privileged=True)
        self.runner.run(["pacman-key", "--populate"], privileged=True)
        self.runner.run(["pacstrap", str(self.paths.mount_root), *BOOTSTRAP_PACKAGES], privileged=True)
        self._rename_kernel()
        configure(self)
        self._advance("populate")

    def zero_free_space(self) -> bool:
        """Fill the root filesystem with zeros and drop the filler; failures are tolerated."""
        if self.state is not DiskState.POPULATED:
            raise self._state_error("zero_free_space", DiskState.POPULATED)
        self.reporter.info("disk", "Zeroing out free space in root partition ...", step="zero")
        filler = self.paths.mount_root / ZERO_FILL_NAME
        result = self.runner.run(
            ["dd", "if=/dev/zero", f"of={filler}", "bs=1M", "status=progress"],
            privileged=True,
            check=False,
        )
        self.runner.run(["sync"], privileged=True, check=False)
        self.runner.run(["rm", "-f", str(filler)], privileged=True, check=False)
        # dd stops on ENOSPC, so a non-zero exit is the normal outcome.
        if result.returncode != 0:
            self.reporter.notice(
                "disk", "Free space filled; dd exited once the disk was full.", step="zero"
            )
        return result.returncode == 0

    def unmount(self) -> None:
        self._expect("unmount")
        self.reporter.info("disk", "Unmounting boot partition ...", step="unmount")
        if self.paths.mount_boot in self.mounts:
            if self.runner.succeeds(["mountpoint", "-q", str(self.paths.mount_boot)]):
                self._umount(self.paths.mount_boot)
            self.mounts.remove(self.paths.mount_boot)
        self.reporter.info("disk", "Unmounting root partition ...", step="unmount")
        if self.paths.mount_root in self.mounts:
            self._umount(self.paths.mount_root)
            self.mounts.remove(self.paths.mount_root)
        self._advance("unmount")

    def detach(self) -> None:
        self._expect("detach")
        self.runner.run(["losetup", "--detach", self._require_loop()], privileged=True)
        self.loop_device = None
        self._advance("detach")

    def mark_converted(self) -> None:
        self._expect("mark_converted")
        self._advance("mark_converted")

    @contextmanager
    def session(self) -> Iterator[DiskImage]:
        """Release any mount or loop device still held when the block exits."""
        try:
            yield self
        finally:
            self.teardown()

    def teardown(self) -> None:
        while self.mounts:
            target = self.mounts.pop()
            self.reporter.warning("disk", f"Releasing leftover mount {target} ...", step="teardown")
            try:
                self._umount(target)
            except CommandError as exc:
                self.reporter.warning("disk", f"Could not unmount {target}: {exc}", step="teardown")
        if self.loop_device is not None:
            self.reporter.warning(
                "disk", f"Detaching leftover loop device {self.loop_device} ...", step="teardown"
            )
            try:
                self.runner.run(["losetup", "--detach", self.loop_device], privileged=True)
            except CommandError as exc:
                self.reporter.warning(
                    "disk", f"Could not detach {self.loop_device}: {exc}", step="teardown"
                )
            else:
                self.loop_device = None

    def _rename_kernel(self) -> None:
        # linux-aarch64 installs boot/Image; systemd-boot entries expect vmlinuz-linux.
        kernel = self.paths.mount_boot / "Image"
        if kernel.exists():
            self.runner.run(
                ["mv", str(kernel), str(self.paths.mount_boot / "vmlinuz-linux")],
                privileged=True,
            )

    def _umount(self, target: Path) -> None:
        if not self.runner.succeeds(["umount", str(target)], privileged=True):
            self.runner.run(["umount", "-l", str(target)], privileged=True)

    def _require_loop(self) -> str:
        if self.loop_device is None:
            raise DiskStateError(
                "Disk image is not attached to a loop device.",
                context={"image": str(self.path), "state": self.state.value},
            )
        return self.loop_device

    def _expect(self, operation: str) -> None:
        expected, _ = _TRANSITIONS[operation]
        if self.state is not expected:
            raise self._state_error(operation, expected)

    def _advance(self, operation: str) -> None:
        _, new_state = _TRANSITIONS[operation]
        self.state = new_state

    def _state_error(self, operation: str, expected: DiskState) -> DiskStateError:
        return DiskStateError(
            f"Cannot {operation.replace('_', ' ')} a disk image that is {self.state.value}.",
            hint=f"`{operation}` requires the image to be {expected.value}.",
            context={"image": str(self.path), "state": self.state.value, "operation": operation},
        )
