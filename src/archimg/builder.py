"""In-VM image builder: from a bare Debian/Ubuntu VM to compressed cloud images.

Run inside the build VM (``python3 -m archimg.builder``).  Inputs come from the
environment: ``BUILD_SUFFIX``, ``COMPRESS``, ``GITHUB_ACTIONS`` and the
optional ``BUILD_DATE`` / ``ARCHIMG_WORKDIR``.
"""

from __future__ import annotations

import argparse
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from archimg.artifacts import alias_latest, clear_outputs, compress, convert, final_listing
from archimg.chroot import ChrootConfigurator
from archimg.disk import DiskImage
from archimg.errors import ArchImgError
from archimg.host import ensure_supported_host
from archimg.models import BuildConfig, HostPaths
from archimg.observability import Reporter
from archimg.probes import DEFAULT_CAPABILITIES, Capability, Installer, apt_installer, ensure_capabilities
from archimg.repos import ensure_pacman_repos, install_keyrings, install_mirrorlist
from archimg.runner import CommandRunner


@dataclass(slots=True)
class ImageBuilder:
    config: BuildConfig
    runner: CommandRunner
    reporter: Reporter
    paths: HostPaths = field(default_factory=HostPaths)
    capabilities: tuple[Capability, ...] = DEFAULT_CAPABILITIES
    installer: Installer | None = None
    check_host: Callable[[], None] = ensure_supported_host

    def build(self) -> tuple[Path, Path, Path]:
        """Run the whole pipeline and return the final artifact paths."""
        self.check_host()
        self.reporter.info("builder", "Starting Arch Linux ARM image build...", step="start")
        ensure_capabilities(
            self.capabilities,
            installer=self.installer or apt_installer(self.runner),
            reporter=self.reporter,
            verify=not self.runner.dry_run,
        )
        self.prepare_repositories()

        artifacts = self.config.artifacts
        self.reporter.info("builder", "Creating output directory...", step="workdir")
        self.runner.makedirs(self.config.workdir, privileged=False)
        clear_outputs(artifacts, self.runner, self.reporter)

        disk = DiskImage(path=artifacts.raw, runner=self.runner, reporter=self.reporter, paths=self.paths)
        with disk.session():
            disk.allocate()
            disk.attach()
            disk.partition()
            disk.format()
            disk.mount()
            disk.populate(ChrootConfigurator(self.runner, self.reporter))
            disk.zero_free_space()
            disk.unmount()
            disk.detach()

        convert(artifacts, self.runner, self.reporter)
        disk.mark_converted()

        if self.config.compress:
            compress(artifacts, self.runner, self.reporter)
            if self.config.github_actions:
                alias_latest(artifacts, self.runner, self.reporter)

        self.reporter.info("builder", "All images created:", step="done")
        for line in final_listing(artifacts, compress=self.config.compress):
            self.reporter.plain(line)
        self.reporter.info("builder", "Static build finished.", step="done")
        return artifacts.final(compress=self.config.compress)

    def prepare_repositories(self) -> None:
        ensure_pacman_repos(self.paths, self.runner, self.reporter)
        install_mirrorlist(self.paths, self.runner, self.reporter)
        install_keyrings(self.paths, self.runner, self.reporter)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archimg-create-image",
        description="Build the Arch Linux ARM cloud image (run inside the build VM).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="print the commands that would be run instead of running them",
    )
    return parser


def main(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    args = _parser().parse_args(argv)
    reporter = Reporter(operation="create-image")
    config: BuildConfig | None = None
    try:
        config = BuildConfig.from_env(os.environ if environ is None else environ)
        runner = CommandRunner(reporter=reporter, dry_run=args.dry_run)
        ImageBuilder(config=config, runner=runner, reporter=reporter).build()
    except ArchImgError as exc:
        reporter.error("builder", f"[ERROR] {exc}", step="abort", code=exc.code)
        return 1
    finally:
        if config is not None and not args.dry_run and config.workdir.is_dir():
            reporter.logger.to_json_lines(config.artifacts.log_path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
