"""Core typed dataclasses for build configuration, artifacts and lifecycle states."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path

from archimg.errors import ValidationError, VmStateError

IMAGE_PREFIX = "Arch-Linux-aarch64-cloudimg"
DEFAULT_WORKDIR = Path("/tmp/lima/output")
DEFAULT_SUFFIX = "0"

IMAGE_SIZE_BYTES = 4 * 1024**3

_SUFFIX_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")
_TRUTHY = {"1", "true", "yes", "on"}


def validate_suffix(suffix: str) -> str:
    """Return *suffix* unchanged if it is safe to embed in a file name."""
    if not _SUFFIX_RE.match(suffix):
        raise ValidationError(
            f"Invalid build suffix {suffix!r}.",
            hint="Use letters, digits, '.', '_' or '-' (no leading dot), e.g. `-v 7`.",
            context={"suffix": suffix},
        )
    return suffix


def parse_compress(value: str | int | bool) -> bool:
    text = str(int(value)) if isinstance(value, bool) else str(value).strip()
    if text not in {"0", "1"}:
        raise ValidationError(
            f"Invalid compress value {value!r}.",
            hint="COMPRESS must be 0 (disabled) or 1 (enabled).",
            context={"compress": str(value)},
        )
    return text == "1"


def parse_build_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError as exc:
        raise ValidationError(
            f"Invalid build date {value!r}.",
            hint="BUILD_DATE must be formatted as YYYYMMDD.",
            context={"build_date": value},
        ) from exc


class VmState(Enum):
    """Observed lifecycle state of the build VM."""

    ABSENT = "absent"
    STOPPED = "Stopped"
    RUNNING = "Running"

    @classmethod
    def parse(cls, status: str | None) -> VmState:
        """Map a `limactl` status string to a state; unknown strings are fatal."""
        if status is None:
            return cls.ABSENT
        for state in (cls.RUNNING, cls.STOPPED):
            if status == state.value:
                return state
        raise VmStateError(
            f"Unknown VM state {status!r}.",
            hint="Inspect the VM with `limactl list` or recreate it with `--kill`.",
            context={"status": status},
        )


class DiskState(Enum):
    """Lifecycle of the disk image, in the order a build walks through it."""

    ABSENT = "absent"
    ALLOCATED = "allocated"
    ATTACHED = "attached"
    PARTITIONED = "partitioned"
    FORMATTED = "formatted"
    MOUNTED = "mounted"
    POPULATED = "populated"
    UNMOUNTED = "unmounted"
    DETACHED = "detached"
    CONVERTED = "converted"


@dataclass(frozen=True, slots=True)
class ArtifactSet:
    """Output file names derived deterministically from the image stem."""

    workdir: Path
    stem: str

    @classmethod
    def for_build(cls, workdir: Path, build_date: date, suffix: str) -> ArtifactSet:
        return cls(workdir=workdir, stem=f"{IMAGE_PREFIX}-{build_date:%Y%m%d}.{suffix}")

    @property
    def raw(self) -> Path:
        return self.workdir / f"{self.stem}.img"

    @property
    def qcow2(self) -> Path:
        return self.workdir / f"{self.stem}.qcow2"

    @property
    def vmdk(self) -> Path:
        return self.workdir / f"{self.stem}.vmdk"

    @property
    def images(self) -> tuple[Path, Path, Path]:
        return (self.raw, self.qcow2, self.vmdk)

    @property
    def compressed(self) -> tuple[Path, Path, Path]:
        return (compressed_path(self.raw), compressed_path(self.qcow2), compressed_path(self.vmdk))

    @property
    def latest_aliases(self) -> dict[Path, Path]:
        """Map each compressed artifact to its stable `latest` alias."""
        aliases: dict[Path, Path] = {}
        for source in self.compressed:
            extension = source.name[len(self.stem) :]
            aliases[source] = self.workdir / f"{IMAGE_PREFIX}-latest{extension}"
        return aliases

    @property
    def log_path(self) -> Path:
        return self.workdir / f"{self.stem}.log.jsonl"

    def candidates(self) -> tuple[Path, ...]:
        """Every file a build with this stem may leave behind."""
        return (*self.images, *self.compressed)

    def final(self, *, compress: bool) -> tuple[Path, Path, Path]:
        return self.compressed if compress else self.images


def compressed_path(path: Path) -> Path:
    return path.with_name(f"{path.name}.xz")


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Parameters of a single in-VM image build."""

    suffix: str = DEFAULT_SUFFIX
    compress: bool = True
    github_actions: bool = False
    build_date: date = field(default_factory=date.today)
    workdir: Path = DEFAULT_WORKDIR

    def __post_init__(self) -> None:
        validate_suffix(self.suffix)

    @classmethod
    def from_env(cls, environ: Mapping[str, str], *, today: date | None = None) -> BuildConfig:
        suffix = environ.get("BUILD_SUFFIX") or DEFAULT_SUFFIX
        compress = parse_compress(environ.get("COMPRESS") or "1")
        github_actions = environ.get("GITHUB_ACTIONS", "").strip().lower() in _TRUTHY
        raw_date = environ.get("BUILD_DATE")
        build_date = parse_build_date(raw_date) if raw_date else (today or date.today())
        workdir = Path(environ.get("ARCHIMG_WORKDIR") or DEFAULT_WORKDIR)
        return cls(
            suffix=suffix,
            compress=compress,
            github_actions=github_actions,
            build_date=build_date,
            workdir=workdir,
        )

    @property
    def artifacts(self) -> ArtifactSet:
        return ArtifactSet.for_build(self.workdir, self.build_date, self.suffix)

    @property
    def image_name(self) -> str:
        return self.artifacts.raw.name


@dataclass(frozen=True, slots=True)
class HostPaths:
    """System locations touched by the builder inside the VM."""

    pacman_conf: Path = Path("/etc/pacman.conf")
    mirrorlist: Path = Path("/etc/pacman.d/mirrorlist")
    keyring_dir: Path = Path("/usr/share/keyrings")
    mount_root: Path = Path("/mnt/arch-root")

    @property
    def mount_boot(self) -> Path:
        return self.mount_root / "boot"
