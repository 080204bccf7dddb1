"""Typed build error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used by both command-line entrypoints."""

    VALIDATION = "E_VALIDATION"
    PRECONDITION = "E_PRECONDITION"
    DEPENDENCY = "E_DEPENDENCY"
    COMMAND = "E_COMMAND"
    FETCH = "E_FETCH"
    VM_STATE = "E_VM_STATE"
    DISK_STATE = "E_DISK_STATE"


class ArchImgError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(ArchImgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class PreconditionError(ArchImgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PRECONDITION, hint=hint, context=context)


class DependencyError(ArchImgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.DEPENDENCY, hint=hint, context=context)


class CommandError(ArchImgError):
    """An external command exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.COMMAND, hint=hint, context=context)
        self.returncode = returncode


class FetchError(ArchImgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FETCH, hint=hint, context=context)


class VmStateError(ArchImgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VM_STATE, hint=hint, context=context)


class DiskStateError(ArchImgError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.DISK_STATE, hint=hint, context=context)


__all__ = [
    "ArchImgError",
    "CommandError",
    "DependencyError",
    "DiskStateError",
    "ErrorCode",
    "FetchError",
    "PreconditionError",
    "ValidationError",
    "VmStateError",
]
