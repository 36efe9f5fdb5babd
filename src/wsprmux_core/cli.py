import argparse
import logging
import os
import sys
import time
from pathlib import Path

from wsprmux_core import __version__
from wsprmux_core import config as config_module

LOG_LEVEL_ENV_VAR = "WSPRMUX_LOG_LEVEL"


def _add_common_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", help="Path to config file")
    p.add_argument("--data-dir", help="Override base data directory")
    p.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Logging level",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsprmux",
        description="Aggregate WSPR spots from MQTT receivers and upload them to WSPRNet",
    )
    parser.add_argument("--version", action="version", version=f"wsprmux {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser(
        "run", help="Subscribe, deduplicate and upload spots until interrupted"
    )
    _add_common_flags(run)
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Log batches instead of posting them to WSPRNet",
    )

    gaps = subparsers.add_parser("gaps", help="Report missing WSPR cycles per instance/band")
    _add_common_flags(gaps)
    gaps.add_argument(
        "--hours", type=int, default=1, help="How many hours back to analyse (default 1)"
    )
    gaps.add_argument("--json", action="store_true", help="Emit JSON output")

    stats = subparsers.add_parser("stats", help="Show the saved statistics snapshot")
    _add_common_flags(stats)
    stats.add_argument("--json", action="store_true", help="Emit JSON output")

    clear = subparsers.add_parser("clear-spots", help="Delete all spot log files")
    _add_common_flags(clear)
    clear.add_argument(
        "--include-stats",
        action="store_true",
        help="Also delete the statistics snapshot",
    )

    init = subparsers.add_parser("init", help="Write a starter configuration file")
    _add_common_flags(init)
    init.add_argument("--callsign", required=True, help="Receiver callsign")
    init.add_argument("--locator", required=True, help="Receiver Maidenhead locator")
    init.add_argument("--broker", default="localhost", help="MQTT broker host")
    init.add_argument("--port", type=int, default=1883, help="MQTT broker port")
    init.add_argument(
        "--instance",
        action="append",
        default=[],
        metavar="NAME=PREFIX",
        help="Receiver instance and its topic prefix (repeatable)",
    )
    init.add_argument(
        "--force", action="store_true", help="Overwrite an existing configuration"
    )

    return parser


def _resolve_log_level(candidate: str | None) -> int:
    aliases = {
        "critical": logging.CRITICAL,
        "error": logging.ERROR,
        "warning": logging.WARNING,
        "info": logging.INFO,
        "debug": logging.DEBUG,
    }
    for value in (candidate, os.getenv(LOG_LEVEL_ENV_VAR)):
        if not value:
            continue
        stripped = value.strip()
        if not stripped:
            continue
        lower = stripped.lower()
        if lower in aliases:
            return aliases[lower]
        if stripped.isdigit():
            return int(stripped)
    return logging.INFO


def _configure_logging(level_name: str | None) -> None:
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers: list[logging.Handler] = [stream_handler]

    try:
        log_dir = config_module.get_logs_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "wsprmux.log", encoding="utf-8")
        file_formatter = logging.Formatter(
            "%(asctime)sZ %(message)s", datefmt="%Y-%m-%dT%H:%M:%S"
        )
        file_formatter.converter = time.gmtime
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)
    except OSError:
        # Unwritable data directory: console logging only
        pass

    logging.basicConfig(level=_resolve_log_level(level_name), handlers=handlers, force=True)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Propagate the data directory override via environment so that storage
    # defaults and the log directory agree without signature changes.
    if getattr(args, "data_dir", None):
        os.environ[config_module.DATA_DIR_ENV_VAR] = str(Path(args.data_dir).expanduser())

    level = getattr(args, "log_level", None)
    if level is None and getattr(args, "json", False):
        # Keep stdout parseable
        level = os.getenv(LOG_LEVEL_ENV_VAR) or "warning"
    _configure_logging(level)

    if args.command == "run":
        from wsprmux_wspr.commands.run import run_aggregator

        return run_aggregator(args)
    elif args.command == "gaps":
        from wsprmux_wspr.commands.gaps import run_gaps

        return run_gaps(args)
    elif args.command == "stats":
        from wsprmux_wspr.commands.stats import run_stats

        return run_stats(args)
    elif args.command == "clear-spots":
        from wsprmux_wspr.commands.clear import run_clear

        return run_clear(args)
    elif args.command == "init":
        from wsprmux_wspr.commands.init_config import run_init

        return run_init(args)
    else:
        parser.error("Unknown command")

    return 0


if __name__ == "__main__":
    sys.exit(main())
