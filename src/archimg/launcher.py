"""Host launcher: manage the build VM and run the image builder inside it.

Usage:
    archimg-build [-v N] [-c 0|1] [-s] [-k]
"""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from archimg.artifacts import clear_outputs
from archimg.errors import ArchImgError
from archimg.lima import (
    DEBIAN_SID_TEMPLATE,
    UBUNTU_TEMPLATE,
    LimaVm,
    LimaVmSpec,
    ensure_limactl_available,
    ensure_outside_lima,
    ensure_source_mounted,
)
from archimg.models import DEFAULT_SUFFIX, DEFAULT_WORKDIR, BuildConfig, parse_compress
from archimg.observability import Reporter
from archimg.runner import CommandRunner
from archimg.template import render_template, write_template

SOURCE_ROOT = Path(__file__).resolve().parents[1]
BUILDER_COMMAND = ("python3", "-m", "archimg.builder")


@dataclass(frozen=True, slots=True)
class LauncherOptions:
    suffix: str = DEFAULT_SUFFIX
    compress: bool = True
    sid: bool = False
    kill: bool = False
    workdir: Path = DEFAULT_WORKDIR
    template_output: Path = Path("archlinux.yaml")
    dry_run: bool = False

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> LauncherOptions:
        return cls(
            suffix=args.version,
            compress=parse_compress(args.compress),
            sid=args.sid,
            kill=args.kill,
            workdir=args.workdir,
            template_output=args.template_output,
            dry_run=args.dry_run,
        )

    def vm_spec(self) -> LimaVmSpec:
        template = DEBIAN_SID_TEMPLATE if self.sid else UBUNTU_TEMPLATE
        return LimaVmSpec(template=template, mount=self.workdir)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archimg-build",
        description="Build the Arch Linux ARM cloud image inside a disposable Lima VM.",
        epilog=(
            "The VM runs archimg from this installation, so it must live under your home "
            "directory or the work directory (the only paths Lima mounts)."
        ),
    )
    parser.add_argument(
        "-v",
        "--version",
        metavar="N",
        default=DEFAULT_SUFFIX,
        help="custom version suffix for the image filename (default: 0)",
    )
    parser.add_argument(
        "-c",
        "--compress",
        choices=("0", "1"),
        default="1",
        help="enable or disable compression (default: 1, enabled)",
    )
    parser.add_argument(
        "-s",
        "--sid",
        action="store_true",
        help="use the Debian Sid template instead of Ubuntu",
    )
    parser.add_argument(
        "-k",
        "--kill",
        action="store_true",
        help='force delete the existing "build-arch" Lima VM first',
    )
    parser.add_argument(
        "--workdir",
        type=Path,
        default=DEFAULT_WORKDIR,
        help="output directory shared with the VM (default: %(default)s)",
    )
    parser.add_argument(
        "--template-output",
        type=Path,
        default=Path("archlinux.yaml"),
        help="where to write the Lima template for the new image (default: %(default)s)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="print the commands that would be run instead of running them",
    )
    return parser


@dataclass(slots=True)
class Launcher:
    options: LauncherOptions
    runner: CommandRunner
    reporter: Reporter
    environ: Mapping[str, str]
    today: date
    source_root: Path = SOURCE_ROOT
    home: Path = field(default_factory=lambda: Path.home().resolve())

    def run(self) -> Path:
        config = BuildConfig(
            suffix=self.options.suffix,
            compress=self.options.compress,
            build_date=self.today,
            workdir=self.options.workdir,
        )
        ensure_source_mounted(self.source_root, (self.home, self.options.workdir.resolve()))
        vm = LimaVm(spec=self.options.vm_spec(), runner=self.runner, reporter=self.reporter)

        # A dry run cannot list instances, so it shows the delete unconditionally.
        if self.options.kill and (self.runner.dry_run or vm.exists()):
            vm.delete()

        self.runner.makedirs(self.options.workdir, privileged=False)
        clear_outputs(config.artifacts, self.runner, self.reporter)

        action = vm.ensure_running()
        self.reporter.logger.log(
            operation="build", component="launcher", step="vm", message=f"vm action: {action}"
        )
        self.remote_build(vm, config)

        self.reporter.info("launcher", "Creating archlinux.yaml for lima-vm", step="template")
        document = render_template(config.artifacts, compress=config.compress)
        if self.options.dry_run:
            self.reporter.plain(f"# would write {self.options.template_output}")
            return self.options.template_output
        return write_template(self.options.template_output, document)

    def remote_build(self, vm: LimaVm, config: BuildConfig) -> None:
        self.reporter.info(
            "launcher", f"Starting the image builder in {vm.spec.name} VM", step="remote-build"
        )
        vm.shell(BUILDER_COMMAND, env=self.remote_env(config))

    def remote_env(self, config: BuildConfig) -> dict[str, str]:
        env = {
            "BUILD_SUFFIX": config.suffix,
            "COMPRESS": "1" if config.compress else "0",
            "BUILD_DATE": f"{config.build_date:%Y%m%d}",
            "ARCHIMG_WORKDIR": str(config.workdir),
            "PYTHONPATH": str(self.source_root),
        }
        if self.environ.get("GITHUB_ACTIONS"):
            env["GITHUB_ACTIONS"] = self.environ["GITHUB_ACTIONS"]
        return env


def main(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    today: date | None = None,
) -> int:
    args = build_parser().parse_args(argv)
    environ = os.environ if environ is None else environ
    reporter = Reporter(operation="build")
    try:
        ensure_outside_lima(environ)
        if not args.dry_run:
            ensure_limactl_available()
        options = LauncherOptions.from_args(args)
        runner = CommandRunner(reporter=reporter, sudo=False, dry_run=options.dry_run)
        Launcher(
            options=options,
            runner=runner,
            reporter=reporter,
            environ=environ,
            today=today or date.today(),
        ).run()
    except ArchImgError as exc:
        reporter.error("launcher", f"[ERROR] {exc}", step="abort", code=exc.code)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
