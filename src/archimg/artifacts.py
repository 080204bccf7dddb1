"""Image format conversion, compression and release aliases."""

from __future__ import annotations

from pathlib import Path

from archimg.models import ArtifactSet
from archimg.observability import Reporter
from archimg.runner import CommandRunner

CONVERSIONS = ("qcow2", "vmdk")


def clear_outputs(artifacts: ArtifactSet, runner: CommandRunner, reporter: Reporter) -> list[Path]:
    """Remove every earlier output of this build name; return what was removed."""
    stale = [path for path in artifacts.candidates() if path.exists()]
    if stale:
        reporter.notice("artifacts", f"Removing {len(stale)} stale output file(s)...", step="clear")
        runner.run(["rm", "-f", *(str(path) for path in stale)])
    return stale


def convert(artifacts: ArtifactSet, runner: CommandRunner, reporter: Reporter) -> tuple[Path, Path]:
    reporter.info("artifacts", "Creating VM images ...", step="convert")
    targets = {"qcow2": artifacts.qcow2, "vmdk": artifacts.vmdk}
    for fmt in CONVERSIONS:
        runner.run(
            ["qemu-img", "convert", "-p", "-O", fmt, str(artifacts.raw), str(targets[fmt])],
            privileged=True,
        )
    return artifacts.qcow2, artifacts.vmdk


def compress(artifacts: ArtifactSet, runner: CommandRunner, reporter: Reporter) -> tuple[Path, ...]:
    """Compress raw, qcow2 and vmdk in place; xz removes each uncompressed input."""
    reporter.info("artifacts", "Compressing images ...", step="compress")
    for image in artifacts.images:
        runner.run(["xz", "-T", "0", "--verbose", str(image)], privileged=True)
    return artifacts.compressed


def alias_latest(artifacts: ArtifactSet, runner: CommandRunner, reporter: Reporter) -> dict[Path, Path]:
    reporter.info("artifacts", "Copying images to latest for GitHub Releases ...", step="alias")
    aliases = artifacts.latest_aliases
    for source, alias in aliases.items():
        runner.run(["cp", "-fv", str(source), str(alias)])
    return aliases


def final_listing(artifacts: ArtifactSet, *, compress: bool) -> list[str]:
    raw, qcow2, vmdk = artifacts.final(compress=compress)
    return [
        f"  Raw:   {raw.name}",
        f"  QCOW2: {qcow2.name}",
        f"  VMDK:  {vmdk.name}",
    ]
