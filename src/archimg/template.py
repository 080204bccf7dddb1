"""Lima instance template for booting the freshly built image."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from archimg.models import ArtifactSet

HEADER = "# Arch Linux ARM cloud image, generated by archimg-build.\n"
MINIMUM_LIMA_VERSION = "1.0.0"


def render_template(artifacts: ArtifactSet, *, compress: bool) -> dict[str, Any]:
    """Describe a Lima instance booting the qcow2 artifact.

    The image runs cloud-init on first boot, which is how Lima installs the
    user's public keys for ``ssh``.
    """
    _, qcow2, _ = artifacts.final(compress=compress)
    return {
        "minimumLimaVersion": MINIMUM_LIMA_VERSION,
        "images": [{"location": str(qcow2), "arch": "aarch64"}],
        "mounts": [
            {"location": "~"},
            {"location": str(artifacts.workdir), "writable": True},
        ],
        "containerd": {"system": False, "user": False},
        "ssh": {"localPort": 0, "loadDotSSHPubKeys": True, "forwardAgent": False},
    }


def write_template(path: Path, document: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    body = yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
    path.write_text(HEADER + body, encoding="utf-8")
    return path
