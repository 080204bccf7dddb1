"""Lima-backed build VM lifecycle."""

from __future__ import annotations

import json
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from archimg.errors import PreconditionError, VmStateError
from archimg.models import DEFAULT_WORKDIR, VmState
from archimg.observability import Reporter
from archimg.runner import CommandRunner

UBUNTU_TEMPLATE = "template://ubuntu"
DEBIAN_SID_TEMPLATE = "template://experimental/debian-sid"
LIMA_BOOT_MARKER = Path("/run/lima-boot-done")

VmAction = Literal["created", "started", "none"]


def ensure_outside_lima(
    environ: Mapping[str, str],
    *,
    boot_marker: Path | None = None,
) -> None:
    """The launcher drives Lima from the host; running it inside a guest would recurse."""
    marker = boot_marker if boot_marker is not None else LIMA_BOOT_MARKER
    if marker.exists() or environ.get("LIMA_INSTANCE"):
        raise PreconditionError(
            "This command must be run on the host, not inside a Lima VM.",
            hint="Inside the VM run `python3 -m archimg.builder` directly.",
            context={"lima_instance": environ.get("LIMA_INSTANCE", "")},
        )


def ensure_limactl_available() -> None:
    if shutil.which("limactl") is None:
        raise PreconditionError(
            "limactl is not installed or not in PATH.",
            hint="Install Lima and ensure `limactl` is available before running a build.",
            context={"operation": "prepare"},
        )


def ensure_source_mounted(source_root: Path, mounts: Sequence[Path]) -> None:
    """The guest imports archimg from *source_root*, so it has to sit under a Lima mount."""
    if not any(source_root.is_relative_to(mount) for mount in mounts):
        raise PreconditionError(
            "The archimg sources are not visible inside the build VM.",
            hint="Lima mounts only your home directory and the work directory; "
            "install or check out archimg under one of them.",
            context={
                "source_root": str(source_root),
                "mounts": ", ".join(str(mount) for mount in mounts),
            },
        )


def parse_list_output(text: str, name: str) -> str | None:
    """Return the status of instance *name* from `limactl list --json`, or None if absent."""
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise VmStateError(
                "Unexpected `limactl list --json` output.",
                hint="Upgrade Lima to a release that supports `limactl list --json`.",
                context={"line": line[:200]},
            ) from exc
        if record.get("name") == name:
            return str(record.get("status", ""))
    return None


@dataclass(frozen=True, slots=True)
class LimaVmSpec:
    name: str = "build-arch"
    cpus: int = 12
    memory: int = 16
    disk: int = 10
    template: str = UBUNTU_TEMPLATE
    mount: Path = DEFAULT_WORKDIR


@dataclass(slots=True)
class LimaVm:
    spec: LimaVmSpec
    runner: CommandRunner
    reporter: Reporter

    def status(self) -> str | None:
        listing = self.runner.output(["limactl", "list", "--json"])
        return parse_list_output(listing, self.spec.name)

    def state(self) -> VmState:
        return VmState.parse(self.status())

    def exists(self) -> bool:
        return self.status() is not None

    def create(self) -> None:
        self.reporter.info("lima", f"Creating {self.spec.name} VM...", step="create")
        self.runner.run(
            [
                "limactl",
                "start",
                "--yes",
                "--containerd",
                "none",
                "--cpus",
                str(self.spec.cpus),
                "--memory",
                str(self.spec.memory),
                "--disk",
                str(self.spec.disk),
                "--name",
                self.spec.name,
                self.spec.template,
                "--mount",
                f"{self.spec.mount}:w",
            ]
        )

    def start(self) -> None:
        self.reporter.info("lima", f"Starting stopped {self.spec.name} VM...", step="start")
        self.runner.run(["limactl", "start", self.spec.name])

    def delete(self) -> None:
        self.reporter.info("lima", f"Killing {self.spec.name} VM...", step="delete")
        self.runner.run(["limactl", "delete", "--force", self.spec.name])

    def ensure_running(self) -> VmAction:
        state = self.state()
        if state is VmState.ABSENT:
            self.create()
            return "created"
        if state is VmState.STOPPED:
            self.start()
            return "started"
        self.reporter.info("lima", f"{self.spec.name} VM is already running", step="ensure")
        return "none"

    def shell(self, argv: Sequence[str], *, env: Mapping[str, str] | None = None) -> None:
        assignments = [f"{key}={value}" for key, value in (env or {}).items()]
        self.runner.run(["limactl", "shell", self.spec.name, "env", *assignments, *argv])
