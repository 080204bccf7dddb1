"""Arch Linux ARM cloud image builder driven through a Lima VM."""

from .errors import (
    ArchImgError,
    CommandError,
    DependencyError,
    DiskStateError,
    FetchError,
    PreconditionError,
    ValidationError,
    VmStateError,
)
from .models import ArtifactSet, BuildConfig, DiskState, HostPaths, VmState

__version__ = "0.1.0"

__all__ = [
    "ArchImgError",
    "ArtifactSet",
    "BuildConfig",
    "CommandError",
    "DependencyError",
    "DiskState",
    "DiskStateError",
    "FetchError",
    "HostPaths",
    "PreconditionError",
    "ValidationError",
    "VmState",
    "VmStateError",
]
