"""Runner configuration (``.embedded/runner.toml``) and platform capabilities."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import RunnerError
from .gdb import DEFAULT_GDB, READY_MARKER
from .elf import RTT_BLOCK_SYMBOL
from .transport import DEFAULT_RTT_PORT

logger = logging.getLogger(__name__)

EMBEDDED_DIR_NAME = ".embedded"
DEFAULT_SETUP_TIMEOUT = 12.0
DEFAULT_EXECUTION_TIMEOUT = 300.0


class ConfigError(RunnerError):
    """Raised when the runner config cannot be parsed."""


class SetupError(RunnerError):
    """Raised when the workspace cannot be prepared."""


@dataclass(frozen=True)
class Platform:
    """Host capabilities resolved once at startup."""

    name: str
    sleep_command: str

    @property
    def is_windows(self) -> bool:
        return self.name == "windows"

    @classmethod
    def detect(cls) -> "Platform":
        if os.name == "nt":
            return cls(name="windows", sleep_command="timeout")
        return cls(name="posix", sleep_command="sleep")


@dataclass(frozen=True)
class Command:
    name: str
    args: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, value: Any, key: str) -> "Command":
        if not isinstance(value, Mapping) or not isinstance(value.get("name"), str):
            raise ConfigError(f"'{key}' must be a table with a 'name' entry")
        args = value.get("args") or []
        if not isinstance(args, list):
            raise ConfigError(f"'{key}.args' must be a list")
        return cls(name=value["name"], args=[str(arg) for arg in args])


@dataclass
class RunnerConfig:
    load: Optional[str] = None
    gdb_connection: Optional[str] = None
    openocd_cfg: Optional[Path] = None
    gdb_logfile: Optional[Path] = None
    gdb_executable: str = DEFAULT_GDB
    pre_runner: Optional[Command] = None
    pre_runner_windows: Optional[Command] = None
    post_runner: Optional[Command] = None
    post_runner_windows: Optional[Command] = None
    rtt_port: int = DEFAULT_RTT_PORT
    rtt_channel: int = 0
    rtt_block_symbol: str = RTT_BLOCK_SYMBOL
    rtt_ready_marker: str = READY_MARKER.decode()
    setup_timeout: float = DEFAULT_SETUP_TIMEOUT
    execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT
    pre_exit: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RunnerConfig":
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for raw_key, value in data.items():
            key = raw_key.replace("-", "_")
            if key not in known:
                logger.warning("ignoring unknown runner config key '%s'", raw_key)
                continue
            values[key] = _coerce(key, value)
        return cls(**values)

    def pre_runner_for(self, platform: Platform) -> Optional[Command]:
        if platform.is_windows and self.pre_runner_windows is not None:
            return self.pre_runner_windows
        return self.pre_runner

    def post_runner_for(self, platform: Platform) -> Optional[Command]:
        if platform.is_windows and self.post_runner_windows is not None:
            return self.post_runner_windows
        return self.post_runner


def _coerce(key: str, value: Any) -> Any:
    if key in ("pre_runner", "pre_runner_windows", "post_runner", "post_runner_windows"):
        return Command.from_mapping(value, key)
    if key in ("openocd_cfg", "gdb_logfile"):
        return Path(str(value))
    if key in ("rtt_port", "rtt_channel"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"'{key}' must be an integer")
        return value
    if key in ("setup_timeout", "execution_timeout"):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"'{key}' must be a positive number of seconds")
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a string")
    return value


def load_runner_config(path: Path) -> RunnerConfig:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError:
        logger.warning("No runner config found at '%s'. Using default config.", path)
        return RunnerConfig()
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Error parsing the runner config '{path}': {exc}") from exc
    return RunnerConfig.from_mapping(data)


@dataclass
class ResolvedConfig:
    runner_cfg: RunnerConfig
    workspace_dir: Path
    embedded_dir: Path
    platform: Platform
    verbose: bool = False


def resolve_config(
    workspace_dir: Path,
    *,
    runner_cfg_path: Optional[Path] = None,
    verbose: bool = False,
    platform: Optional[Platform] = None,
) -> ResolvedConfig:
    embedded_dir = Path(workspace_dir) / EMBEDDED_DIR_NAME
    try:
        embedded_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SetupError(f"Could not create directory '{embedded_dir}'. Cause: {exc}") from exc
    runner_cfg = load_runner_config(runner_cfg_path or embedded_dir / "runner.toml")
    return ResolvedConfig(
        runner_cfg=runner_cfg,
        workspace_dir=Path(workspace_dir),
        embedded_dir=embedded_dir,
        platform=platform or Platform.detect(),
        verbose=verbose,
    )
