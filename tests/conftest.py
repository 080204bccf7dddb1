"""Shared test fixtures."""

from __future__ import annotations

import io
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest

from archimg.errors import CommandError
from archimg.models import HostPaths
from archimg.observability import Reporter
from archimg.runner import CommandRunner


class RecordingRunner(CommandRunner):
    """Runner that records argv and simulates the file effects of common tools.

    ``outputs`` and ``failures`` are keyed by an argv prefix (without ``sudo``).
    """

    def __init__(
        self,
        reporter: Reporter,
        *,
        outputs: Mapping[tuple[str, ...], str] | None = None,
        failures: Mapping[tuple[str, ...], int] | None = None,
    ) -> None:
        super().__init__(reporter=reporter, sudo=False)
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.outputs = dict(outputs or {})
        self.failures = dict(failures or {})

    def run(
        self,
        argv: Sequence[str],
        *,
        privileged: bool = False,
        input: str | None = None,
        check: bool = True,
        capture: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        cmd = self.command(argv, privileged=privileged)
        self.calls.append(cmd)
        self.inputs.append(input)
        returncode = int(_lookup(self.failures, cmd, 0))
        if returncode == 0:
            _simulate(cmd, input)
        if check and returncode != 0:
            raise CommandError(f"Command `{cmd[0]}` failed.", returncode=returncode)
        stdout = str(_lookup(self.outputs, cmd, ""))
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    def commands(self, program: str) -> list[list[str]]:
        return [call for call in self.calls if call[0] == program]

    def index(self, *prefix: str) -> int:
        for position, call in enumerate(self.calls):
            if tuple(call[: len(prefix)]) == prefix:
                return position
        raise AssertionError(f"{prefix} was never run")

    def ran(self, *prefix: str) -> bool:
        return any(tuple(call[: len(prefix)]) == prefix for call in self.calls)


def _lookup(table: Mapping[tuple[str, ...], object], cmd: list[str], default: object) -> object:
    for prefix, value in table.items():
        if tuple(cmd[: len(prefix)]) == prefix:
            return value
    return default


def _simulate(cmd: list[str], input: str | None) -> None:
    program, args = cmd[0], cmd[1:]
    if program == "tee":
        append = args[0] == "-a"
        path = Path(args[-1])
        if path.parent.is_dir():
            with path.open("a" if append else "w", encoding="utf-8") as handle:
                handle.write(input or "")
    elif program == "mkdir" and args[:1] == ["-p"]:
        Path(args[1]).mkdir(parents=True, exist_ok=True)
    elif program == "curl" and "-o" in args:
        target = Path(args[args.index("-o") + 1])
        if target.parent.is_dir():
            target.write_text("keyring\n", encoding="utf-8")
    elif program == "truncate":
        Path(args[-1]).touch()
    elif program == "qemu-img":
        Path(args[-1]).touch()
    elif program == "xz":
        source = Path(args[-1])
        source.rename(source.with_name(f"{source.name}.xz"))
    elif program == "cp":
        shutil.copyfile(args[-2], args[-1])
    elif program == "rm":
        for name in args[1:]:
            Path(name).unlink(missing_ok=True)


@pytest.fixture
def reporter() -> Reporter:
    return Reporter(operation="test", stream=io.StringIO(), color=False)


@pytest.fixture
def runner(reporter: Reporter) -> RecordingRunner:
    return RecordingRunner(reporter)


@pytest.fixture
def host_paths(tmp_path: Path) -> HostPaths:
    etc = tmp_path / "etc"
    (etc / "pacman.d").mkdir(parents=True)
    (tmp_path / "keyrings").mkdir()
    return HostPaths(
        pacman_conf=etc / "pacman.conf",
        mirrorlist=etc / "pacman.d" / "mirrorlist",
        keyring_dir=tmp_path / "keyrings",
        mount_root=tmp_path / "mnt" / "arch-root",
    )
