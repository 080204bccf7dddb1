"""External command execution.

Every build step shells out to a system tool.  ``CommandRunner`` is the single
place where argv lists become processes: it adds ``sudo`` for privileged
commands when the caller is not root, feeds stdin, turns non-zero exits into
:class:`~archimg.errors.CommandError`, and in dry-run mode prints the shell
equivalent of each command instead of running it.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from archimg.errors import CommandError
from archimg.observability import Reporter


@dataclass(slots=True)
class CommandRunner:
    reporter: Reporter
    sudo: bool | None = None
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.sudo is None:
            self.sudo = os.geteuid() != 0

    def command(self, argv: Sequence[str], *, privileged: bool = False) -> list[str]:
        cmd = [str(arg) for arg in argv]
        if privileged and self.sudo:
            cmd.insert(0, "sudo")
        return cmd

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
        if self.dry_run:
            if input is None:
                self.reporter.plain(shlex.join(cmd))
            else:
                self.reporter.plain(f'{shlex.join(cmd)} << "EOF"\n{input}EOF')
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        result = subprocess.run(
            cmd,
            input=input,
            capture_output=capture,
            text=True,
            check=False,
            env={**os.environ, **env} if env is not None else None,
        )
        if check and result.returncode != 0:
            raise CommandError(
                f"Command `{cmd[0] if cmd[0] != 'sudo' else cmd[1]}` failed.",
                returncode=result.returncode,
                hint="Check the command output above for details.",
                context={
                    "command": shlex.join(cmd),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[-2000:] if result.stderr else "",
                },
            )
        return result

    def output(self, argv: Sequence[str], *, privileged: bool = False, placeholder: str = "") -> str:
        """Run *argv* and return its stripped stdout (*placeholder* in dry-run mode)."""
        if self.dry_run:
            self.run(argv, privileged=privileged)
            return placeholder
        return self.run(argv, privileged=privileged, capture=True).stdout.strip()

    def succeeds(self, argv: Sequence[str], *, privileged: bool = False) -> bool:
        return self.run(argv, privileged=privileged, check=False).returncode == 0

    def makedirs(self, path: Path, *, privileged: bool = True) -> None:
        if privileged:
            self.run(["mkdir", "-p", str(path)], privileged=True)
        elif not self.dry_run:
            path.mkdir(parents=True, exist_ok=True)

    def write_file(
        self,
        path: Path,
        text: str,
        *,
        append: bool = False,
        privileged: bool = True,
    ) -> None:
        if privileged:
            argv = ["tee", "-a", str(path)] if append else ["tee", str(path)]
            self.run(argv, privileged=True, input=text, capture=not self.dry_run)
            return
        if self.dry_run:
            redirect = ">>" if append else ">"
            self.reporter.plain(f'cat << "EOF" {redirect} {shlex.quote(str(path))}\n{text}EOF')
            return
        with path.open("a" if append else "w", encoding="utf-8") as handle:
            handle.write(text)
