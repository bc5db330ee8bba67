"""Command-line entry point for the directory watcher."""
from __future__ import annotations

import argparse
import logging
from importlib import metadata
from pathlib import Path
from typing import List, Optional, Sequence

from .config import ConfigError, FileSettings, WatchConfig, build_config, load_config
from .engine import SetupError, StartError, WatchEngine
from .events import Operation, operation_name

logger = logging.getLogger("watchit")


def _version() -> str:
    try:
        return metadata.version("watchit")
    except metadata.PackageNotFoundError:
        return "unknown"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watchit",
        description="Watch directories for changes and run commands on changed files.",
    )
    parser.add_argument(
        "-d",
        "--dirs",
        action="extend",
        nargs="+",
        default=[],
        metavar="DIR",
        help="Directories to watch (repeatable)",
    )
    parser.add_argument(
        "-c",
        "--cmds",
        action="extend",
        nargs="+",
        default=[],
        metavar="CMD",
        help="Commands to run on changed files (repeatable)",
    )
    parser.add_argument(
        "-e",
        "--ext",
        action="extend",
        nargs="+",
        metavar="EXT",
        help="Watch only files with these extensions (default: md)",
    )
    parser.add_argument(
        "-R",
        "--recursive",
        action="store_true",
        default=None,
        help="Watch directories recursively",
    )
    parser.add_argument(
        "--interval",
        type=float,
        metavar="SECONDS",
        help="Polling interval in seconds (default: 5)",
    )
    parser.add_argument(
        "--config",
        help="Optional YAML file providing dirs, cmds, extensions, recursive and poll_interval",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {_version()}")
    return parser


def resolve_config(args: argparse.Namespace) -> WatchConfig:
    """Merge the optional config file with command-line arguments."""

    settings = load_config(Path(args.config)) if args.config else FileSettings()

    dirs: List[str] = [*settings.dirs, *args.dirs]
    cmds: List[str] = [*settings.cmds, *args.cmds]
    if not dirs or not cmds:
        raise ConfigError("-d DIR and -c CMD are required")

    extensions = args.ext or settings.extensions
    recursive = args.recursive if args.recursive is not None else bool(settings.recursive)

    options = {}
    interval = args.interval if args.interval is not None else settings.poll_interval
    if interval is not None:
        options["poll_interval"] = interval

    return build_config(dirs, cmds, extensions, recursive=recursive, **options)


def log_change(op: Operation, path: str) -> None:
    logger.info("op=%s file=%s", operation_name(op), path)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    try:
        config = resolve_config(args)
    except ConfigError as exc:
        logger.error("%s", exc)
        raise SystemExit(2) from exc

    logger.debug("Configuration: %r", config)
    for command in config.cmds:
        logger.info("Configured command: %s", command)

    engine = WatchEngine(config, log_change)
    try:
        engine.setup()
        engine.start()
    except SetupError as exc:
        logger.error("setting up watch failed: %s", exc)
        raise SystemExit(1) from exc
    except StartError as exc:
        logger.error("starting watch failed: %s", exc.__cause__ or exc)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.info("Watch interrupted by user")
    finally:
        engine.stop(timeout=1.0)


if __name__ == "__main__":
    main()
