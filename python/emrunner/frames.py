"""Decoded log frame records and their JSON representation.

Frames are exchanged as JSON objects in the defmt JSON (v1) layout::

    {"data": "...", "host_timestamp": 1700000000000000000, "level": "INFO",
     "location": {"file": "src/main.rs", "line": 12,
                  "module_path": {"crate_name": "app", "modules": ["tests"],
                                  "function": "it_works"}},
     "target_timestamp": "0.000123"}

The helpers in this module coerce loosely typed input into the canonical
:class:`LogFrame` so downstream stages (log printing, coverage extraction)
can rely on a stable shape regardless of whether frames were decoded live or
read back from a ``defmt.json`` capture.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, TextIO, Tuple


class Level(enum.Enum):
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def from_tag(cls, tag: str) -> Optional["Level"]:
        """Map a defmt table tag (``defmt_info`` ...) to a level."""
        prefix = "defmt_"
        if not tag.startswith(prefix):
            return None
        try:
            return cls(tag[len(prefix):].upper())
        except ValueError:
            return None

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    Level.TRACE: logging.DEBUG,
    Level.DEBUG: logging.DEBUG,
    Level.INFO: logging.INFO,
    Level.WARN: logging.WARNING,
    Level.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class ModulePath:
    crate_name: str
    modules: Tuple[str, ...]
    function: str

    def __str__(self) -> str:
        return "::".join((self.crate_name, *self.modules, self.function))


@dataclass(frozen=True)
class FrameLocation:
    file: Optional[str] = None
    line: Optional[int] = None
    module_path: Optional[ModulePath] = None

    @property
    def complete(self) -> bool:
        return self.file is not None and self.line is not None and self.module_path is not None


@dataclass(frozen=True)
class LogFrame:
    """One decoded unit of target log data."""

    text: str
    host_timestamp: int
    level: Optional[Level] = None
    location: FrameLocation = field(default_factory=FrameLocation)
    target_timestamp: str = ""

    def location_str(self) -> str:
        loc = self.location
        if not loc.complete:
            return "no-location"
        return f"{loc.file}:{loc.line} in {loc.module_path}"


def create_module_path(module_path: Optional[str]) -> Optional[ModulePath]:
    """Split ``crate::mod::fn`` into its parts.

    At least the crate and the function must be present.
    """
    if not module_path:
        return None
    parts = module_path.split("::")
    if len(parts) < 2:
        return None
    return ModulePath(crate_name=parts[0], modules=tuple(parts[1:-1]), function=parts[-1])


def _coerce_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer, got boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip(), 0)
    raise ValueError(f"{field_name} must be integer-compatible (got {value!r})")


def _module_path_from_json(value: Any) -> Optional[ModulePath]:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValueError("location.module_path must be an object")
    crate_name = value.get("crate_name")
    function = value.get("function")
    if not isinstance(crate_name, str) or not isinstance(function, str):
        raise ValueError("location.module_path requires crate_name and function")
    modules = value.get("modules") or []
    if not isinstance(modules, (list, tuple)):
        raise ValueError("location.module_path.modules must be a sequence")
    return ModulePath(crate_name=crate_name, modules=tuple(str(m) for m in modules), function=function)


def frame_to_json(frame: LogFrame) -> Dict[str, Any]:
    loc = frame.location
    module_path = None
    if loc.module_path is not None:
        module_path = {
            "crate_name": loc.module_path.crate_name,
            "modules": list(loc.module_path.modules),
            "function": loc.module_path.function,
        }
    return {
        "data": frame.text,
        "host_timestamp": frame.host_timestamp,
        "level": frame.level.value if frame.level else None,
        "location": {"file": loc.file, "line": loc.line, "module_path": module_path},
        "target_timestamp": frame.target_timestamp,
    }


def frame_from_json(record: Mapping[str, Any]) -> LogFrame:
    """Parse a JSON frame record, raising ``ValueError`` on schema violations."""
    if "data" not in record:
        raise ValueError("frame record missing required field 'data'")
    if "host_timestamp" not in record:
        raise ValueError("frame record missing required field 'host_timestamp'")
    level_raw = record.get("level")
    level = None
    if level_raw is not None:
        try:
            level = Level(str(level_raw).upper())
        except ValueError as exc:
            raise ValueError(f"unknown frame level {level_raw!r}") from exc
    loc_raw = record.get("location") or {}
    if not isinstance(loc_raw, Mapping):
        raise ValueError("location must be an object")
    line = loc_raw.get("line")
    location = FrameLocation(
        file=loc_raw.get("file"),
        line=_coerce_int(line, "location.line") if line is not None else None,
        module_path=_module_path_from_json(loc_raw.get("module_path")),
    )
    return LogFrame(
        text=str(record["data"]),
        host_timestamp=_coerce_int(record["host_timestamp"], "host_timestamp"),
        level=level,
        location=location,
        target_timestamp=str(record.get("target_timestamp") or ""),
    )


def dumps_ndjson(frames: Iterable[LogFrame]) -> str:
    return "".join(json.dumps(frame_to_json(frame)) + "\n" for frame in frames)


def write_ndjson(frames: Iterable[LogFrame], path: Path) -> None:
    Path(path).write_text(dumps_ndjson(frames), encoding="utf-8")


def read_ndjson(source: Path | TextIO) -> List[LogFrame]:
    if isinstance(source, (str, Path)):
        text = Path(source).read_text(encoding="utf-8")
    else:
        text = source.read()
    frames: List[LogFrame] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        frames.append(frame_from_json(json.loads(line)))
    return frames
