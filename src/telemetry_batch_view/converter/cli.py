#!/usr/bin/env python3
"""
Command-line interface for the telemetry converter.

Workflow:
 1. Parse --from-date / --to-date and the derived stream name
 2. Resolve the stream from the registry (unknown names are fatal)
 3. Load & validate config via load_config
 4. Run the stream and log a summary
"""

import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from telemetry_batch_view.converter.config import load_config, ConverterConfig
from telemetry_batch_view.converter.core import OutputPartitionExistsError, run_stream
from telemetry_batch_view.converter.streams import date_range, get_stream

# Module-level logger
logger = logging.getLogger(__name__)

USAGE = "converter --from-date YYYYMMDD --to-date YYYYMMDD stream_name"


class _QuietParser(argparse.ArgumentParser):
    """Parser that raises on bad input instead of printing an error and exiting."""

    def error(self, message):
        raise argparse.ArgumentError(None, message)


def build_parser() -> argparse.ArgumentParser:
    parser = _QuietParser(
        exit_on_error=False,
        prog="converter",
        usage=USAGE,
        description="Convert a day range of raw telemetry into a derived Parquet stream",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("project_config/converter_config.yaml"),
        help="Path to YAML config file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Set logging level",
    )
    parser.add_argument(
        "--num-workers",
        type=int,
        help="Number of parallel worker processes to use (overrides config.num_workers)",
    )
    parser.add_argument("--from-date", type=str, help="First day, YYYYMMDD")
    parser.add_argument("--to-date", type=str, help="Last day (inclusive), YYYYMMDD")
    parser.add_argument("stream", nargs="?", help="Derived stream name, e.g. Longitudinal")
    return parser


def _valid_invocation(args: argparse.Namespace, extras: List[str]) -> bool:
    if extras or not args.stream or not args.from_date or not args.to_date:
        return False
    try:
        date_range(args.from_date, args.to_date)
    except ValueError:
        return False
    return True


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the converter CLI.

    Missing or malformed dates or stream name print the usage line and return
    normally. Config errors and an already-populated output partition exit 1.
    """
    parser = build_parser()
    try:
        args, extras = parser.parse_known_args(argv)
    except argparse.ArgumentError:
        print(USAGE)
        return

    if not _valid_invocation(args, extras):
        print(USAGE)
        return

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s – %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.debug("Arguments: %s", args)

    stream = get_stream(args.stream)

    # Load & validate config
    try:
        cfg: ConverterConfig = load_config(args.config)
        if args.num_workers is not None:
            if args.num_workers <= 0:
                raise ValueError("--num-workers must be > 0")
            cfg.num_workers = args.num_workers
    except (FileNotFoundError, ValueError) as e:
        logger.error("Config error: %s", e)
        sys.exit(1)

    logger.info(
        "Starting %s (%s..%s, num_workers=%d)",
        stream.name,
        args.from_date,
        args.to_date,
        cfg.num_workers,
    )
    try:
        summary = run_stream(stream, cfg, args.from_date, args.to_date)
    except OutputPartitionExistsError:
        sys.exit(1)

    logger.info(
        "Converted %d pings from %d groups into %d rows across %d files",
        summary.pings,
        summary.groups,
        summary.built,
        len(summary.files),
    )


if __name__ == "__main__":
    main()
