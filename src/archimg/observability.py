"""Structured logging and colored console reporting."""

from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, TextIO

Level = Literal["info", "notice", "warning", "error"]

RESET = "\x1b[0m"
LEVEL_COLORS: dict[str, str] = {
    "info": "\x1b[32m",
    "notice": "\x1b[33m",
    "warning": "\x1b[33m",
    "error": "\x1b[31m",
}


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)

    def log(
        self,
        *,
        operation: str,
        component: str,
        step: str | None,
        message: str,
        level: Level = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "component": component,
            "step": step,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        self.records.append(record)

    def records_for_component(self, component: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("component") == component]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path


@dataclass(slots=True)
class Reporter:
    """Human-readable progress output backed by a structured record trail."""

    operation: str
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    stream: TextIO | None = None
    color: bool | None = None

    def info(self, component: str, message: str, *, step: str | None = None, **extra: Any) -> None:
        self._emit("info", component, message, step, extra)

    def notice(self, component: str, message: str, *, step: str | None = None, **extra: Any) -> None:
        self._emit("notice", component, message, step, extra)

    def warning(self, component: str, message: str, *, step: str | None = None, **extra: Any) -> None:
        self._emit("warning", component, message, step, extra)

    def error(self, component: str, message: str, *, step: str | None = None, **extra: Any) -> None:
        self._emit("error", component, message, step, extra)

    def plain(self, text: str) -> None:
        """Print *text* without color or a structured record."""
        print(text, file=self._stream())

    def _emit(
        self,
        level: Level,
        component: str,
        message: str,
        step: str | None,
        extra: dict[str, Any],
    ) -> None:
        self.logger.log(
            operation=self.operation,
            component=component,
            step=step,
            message=message,
            level=level,
            extra=extra or None,
        )
        stream = sys.stderr if level == "error" and self.stream is None else self._stream()
        if self._use_color(stream):
            print(f"{LEVEL_COLORS[level]} {message}{RESET}", file=stream)
        else:
            print(f" {message}", file=stream)

    def _stream(self) -> TextIO:
        return self.stream if self.stream is not None else sys.stdout

    def _use_color(self, stream: TextIO) -> bool:
        if self.color is not None:
            return self.color
        if os.environ.get("NO_COLOR"):
            return False
        return hasattr(stream, "isatty") and stream.isatty()
