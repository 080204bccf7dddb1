import io
import json
from datetime import date
from pathlib import Path

import pytest

from archimg import builder as builder_module
from archimg.builder import ImageBuilder, main
from archimg.errors import CommandError, PreconditionError
from archimg.host import ensure_supported_host
from archimg.models import BuildConfig, HostPaths
from archimg.observability import Reporter
from archimg.probes import Capability
from archimg.runner import CommandRunner

from .conftest import RecordingRunner

LOOP = "/dev/loop3"
TODAY = date(2026, 10, 18)


def _runner(reporter: Reporter, failures: dict[tuple[str, ...], int] | None = None) -> RecordingRunner:
    return RecordingRunner(
        reporter,
        outputs={
            ("losetup", "-fP", "--show"): LOOP,
            ("blkid",): "0000-uuid",
            ("curl", "-fsSL"): "# Server = http://mirror.archlinuxarm.org/$arch/$repo\n",
        },
        failures=failures,
    )


def _builder(
    tmp_path: Path,
    reporter: Reporter,
    runner: RecordingRunner,
    host_paths: HostPaths,
    **config: object,
) -> ImageBuilder:
    workdir = tmp_path / "output"
    return ImageBuilder(
        config=BuildConfig(suffix="7", build_date=TODAY, workdir=workdir, **config),  # type: ignore[arg-type]
        runner=runner,
        reporter=reporter,
        paths=host_paths,
        capabilities=(Capability("qemu-img", "qemu-utils", probe=lambda _: True),),
        installer=lambda packages: pytest.fail(f"unexpected install of {packages}"),
        check_host=lambda: None,
    )


def test_uncompressed_build_produces_three_images(
    tmp_path: Path, reporter: Reporter, host_paths: HostPaths
) -> None:
    runner = _runner(reporter)
    image_builder = _builder(tmp_path, reporter, runner, host_paths, compress=False)

    final = image_builder.build()

    workdir = tmp_path / "output"
    names = sorted(path.name for path in workdir.iterdir())
    assert names == [
        "Arch-Linux-aarch64-cloudimg-20261018.7.img",
        "Arch-Linux-aarch64-cloudimg-20261018.7.qcow2",
        "Arch-Linux-aarch64-cloudimg-20261018.7.vmdk",
    ]
    assert [path.name for path in final] == names
    assert not runner.ran("xz")
    assert not runner.ran("cp")


def test_compressed_build_on_ci_adds_latest_aliases(
    tmp_path: Path, reporter: Reporter, host_paths: HostPaths
) -> None:
    runner = _runner(reporter)
    image_builder = _builder(tmp_path, reporter, runner, host_paths, compress=True, github_actions=True)

    final = image_builder.build()

    names = sorted(path.name for path in (tmp_path / "output").iterdir())
    assert all(name.endswith(".xz") for name in names)
    assert len([name for name in names if "latest" in name]) == 3
    assert len([name for name in names if "20261018.7" in name]) == 3
    assert all(path.exists() for path in final)


def test_compressed_build_outside_ci_has_no_aliases(
    tmp_path: Path, reporter: Reporter, host_paths: HostPaths
) -> None:
    runner = _runner(reporter)

    _builder(tmp_path, reporter, runner, host_paths, compress=True).build()

    names = [path.name for path in (tmp_path / "output").iterdir()]
    assert len(names) == 3
    assert not any("latest" in name for name in names)


def test_pipeline_order(tmp_path: Path, reporter: Reporter, host_paths: HostPaths) -> None:
    runner = _runner(reporter)

    _builder(tmp_path, reporter, runner, host_paths, compress=True).build()

    order = [
        runner.index("tee", "-a", str(host_paths.pacman_conf)),
        runner.index("truncate"),
        runner.index("losetup", "-fP"),
        runner.index("parted"),
        runner.index("mkfs.fat"),
        runner.index("pacstrap"),
        runner.index("arch-chroot"),
        runner.index("dd"),
        runner.index("umount"),
        runner.index("losetup", "--detach"),
        runner.index("qemu-img"),
        runner.index("xz"),
    ]
    assert order == sorted(order)


def test_failed_step_aborts_and_releases_resources(
    tmp_path: Path, reporter: Reporter, host_paths: HostPaths
) -> None:
    runner = _runner(reporter, failures={("arch-chroot",): 1})

    with pytest.raises(CommandError):
        _builder(tmp_path, reporter, runner, host_paths).build()

    assert runner.ran("umount", str(host_paths.mount_boot))
    assert runner.calls[-1] == ["losetup", "--detach", LOOP]
    assert not runner.ran("qemu-img")


def test_unsupported_host_is_refused(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(PreconditionError) as excinfo:
        ensure_supported_host(system="Darwin")
    assert "Linux environment" in str(excinfo.value)

    monkeypatch.setattr("archimg.host.shutil.which", lambda _: None)
    with pytest.raises(PreconditionError) as excinfo:
        ensure_supported_host(system="Linux", lsb_release=tmp_path / "missing")
    assert "Debian/Ubuntu" in str(excinfo.value)


def test_debian_host_is_accepted(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("archimg.host.shutil.which", lambda _: "/usr/bin/apt-get")

    ensure_supported_host(system="Linux", lsb_release=tmp_path / "missing")


def test_main_reports_invalid_environment(capsys: pytest.CaptureFixture[str]) -> None:
    status = main([], environ={"COMPRESS": "maybe"})

    assert status == 1
    assert "Invalid compress value" in capsys.readouterr().err


def test_main_writes_structured_log_on_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def refuse(self: ImageBuilder) -> tuple[Path, Path, Path]:
        raise PreconditionError("wrong host")

    monkeypatch.setattr(builder_module.ImageBuilder, "build", refuse)

    status = main([], environ={"ARCHIMG_WORKDIR": str(tmp_path), "BUILD_DATE": "20261018"})

    assert status == 1
    log_path = tmp_path / "Arch-Linux-aarch64-cloudimg-20261018.0.log.jsonl"
    records = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    assert records[-1]["level"] == "error"
    assert records[-1]["extra"] == {"code": "E_PRECONDITION"}


def test_dry_run_on_bare_host_prints_the_whole_pipeline(tmp_path: Path, host_paths: HostPaths) -> None:
    stream = io.StringIO()
    reporter = Reporter(operation="test", stream=stream, color=False)
    image_builder = ImageBuilder(
        config=BuildConfig(suffix="7", build_date=TODAY, workdir=tmp_path / "output"),
        runner=CommandRunner(reporter=reporter, sudo=False, dry_run=True),
        reporter=reporter,
        paths=host_paths,
        capabilities=(
            Capability("arch-chroot", "arch-install-scripts", probe=lambda _: False),
            Capability("qemu-img", "qemu-utils", probe=lambda _: False),
        ),
        check_host=lambda: None,
    )

    final = image_builder.build()

    printed = stream.getvalue()
    assert "apt-get install --yes -qq --no-install-recommends arch-install-scripts qemu-utils" in printed
    assert "pacstrap" in printed
    assert "losetup --detach /dev/loop0" in printed
    assert "xz -T 0 --verbose" in printed
    assert [path.name for path in final][0] == "Arch-Linux-aarch64-cloudimg-20261018.7.img.xz"
    assert not (tmp_path / "output").exists()
