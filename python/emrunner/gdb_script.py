"""Generation of the GDB command script that flashes and starts the target."""

from __future__ import annotations

from pathlib import Path

import jinja2

from .config import Platform, RunnerConfig
from .elf import Symbol
from .errors import RunnerError

DEFAULT_OPENOCD_CFG = Path(".embedded/openocd.cfg")
RTT_BLOCK_ID = "SEGGER RTT"
_FLUSH_SECONDS = 1

_env = jinja2.Environment(
    keep_trailing_newline=True,
    undefined=jinja2.StrictUndefined,
    autoescape=False,
)


class ScriptError(RunnerError):
    """Raised when the GDB script cannot be produced."""


def resolve_load(load: str, binary: Path) -> str:
    """Render the ``load`` template of the runner config for ``binary``.

    Available variables are ``binary_path`` (the containing directory),
    ``binary_filepath_noextension`` and ``binary_filepath``, all with forward
    slashes.
    """
    binary = Path(binary)
    if not binary.stem:
        raise ScriptError(f"Given binary '{binary}' has no valid filename.")
    parent = binary.parent
    context = {
        "binary_path": parent.as_posix(),
        "binary_filepath_noextension": (parent / binary.stem).as_posix(),
        "binary_filepath": binary.as_posix(),
    }
    try:
        return _env.from_string(load).render(**context)
    except jinja2.TemplateError as exc:
        raise ScriptError(f"Failed rendering the load template. Cause: {exc}") from exc


def _connection(cfg: RunnerConfig, log_file: Path) -> str:
    if cfg.gdb_connection:
        return f"target extended-remote {cfg.gdb_connection}"
    openocd_cfg = (cfg.openocd_cfg or DEFAULT_OPENOCD_CFG).as_posix()
    return (
        f'target extended-remote | openocd -c "gdb_port pipe; log_output {log_file.as_posix()}"'
        f" -f {openocd_cfg}"
    )


def render_gdb_script(
    cfg: RunnerConfig,
    symbol: Symbol,
    binary: Path,
    output_dir: Path,
    platform: Platform,
) -> str:
    log_file = cfg.gdb_logfile or Path(output_dir) / "gdb.log"
    load = resolve_load(cfg.load, binary) if cfg.load else "load"
    sleep = f"shell {platform.sleep_command} {_FLUSH_SECONDS}"
    lines = [
        "set pagination off",
        "",
        _connection(cfg, log_file),
    ]
    if cfg.gdb_connection:
        lines.append(f"set logging file {log_file.as_posix()}")
        lines.append("set logging enabled on")
    lines += [
        "",
        load,
        "",
        "b main",
        "continue",
        "",
        f'monitor rtt setup 0x{symbol.address:x} {symbol.size} "{RTT_BLOCK_ID}"',
        "monitor rtt start",
        f"monitor rtt server start {cfg.rtt_port} {cfg.rtt_channel}",
        "",
        sleep,
        "",
        "continue",
        "",
        sleep,
        "",
    ]
    if cfg.pre_exit:
        lines += [cfg.pre_exit, ""]
    lines.append("quit")
    return "\n".join(lines) + "\n"


def write_gdb_script(script: str, output_dir: Path, name: str = "embedded.gdb") -> Path:
    path = Path(output_dir) / name
    try:
        path.write_text(script, encoding="utf-8")
    except OSError as exc:
        raise ScriptError(f"Could not write gdb script '{path}'. Cause: {exc}") from exc
    return path

