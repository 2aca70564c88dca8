"""emrunner CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

from . import __version__, collect
from .config import resolve_config
from .errors import RunnerError
from .paths import get_workspace_root
from .runner import RunOptions, run_cmd

LOG = logging.getLogger("emrunner.cli")


def _configure_logging(level: str, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emrunner",
        description="Run firmware on an embedded target and collect its defmt logs and test coverage",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--runner-cfg", type=Path, help="Runner config (default .embedded/runner.toml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("EMRUNNER_LOG", "INFO"),
        help="Logging level (default INFO)",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Flash and run a binary, capturing its logs")
    run.add_argument("--run-name", help="Name of the test run (default: binary file name)")
    run.add_argument("--output-dir", type=Path, help="Directory for the run artifacts")
    run.add_argument(
        "--meta-filepath",
        type=Path,
        help="JSON metadata linked with the test run (default .embedded/meta.json)",
    )
    run.add_argument("binary", type=Path, help="Firmware ELF to run")

    coll = sub.add_parser("collect", help="Merge the coverage files of recent runs")
    coll.add_argument("output", nargs="?", type=Path, help="Output JSON file (default coverage.json)")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level, args.verbose)
    try:
        cfg = resolve_config(get_workspace_root(), runner_cfg_path=args.runner_cfg, verbose=args.verbose)
        if args.cmd == "run":
            options = RunOptions(
                binary=args.binary,
                run_name=args.run_name,
                output_dir=args.output_dir,
                meta_filepath=args.meta_filepath,
            )
            run_cmd(cfg, options)
        else:
            collect.run(cfg.embedded_dir, args.output, version=__version__)
    except RunnerError as exc:
        LOG.error("Embedded runner failed: %s", exc)
        if args.verbose:
            LOG.debug("traceback", exc_info=True)
        return 1
    except KeyboardInterrupt:
        print()
        return 130
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
