from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import argparse
import logging
import math
import re
import sys

from .compress import PillowCodec, build_output_paths, reduce_file
from .errors import ConfigurationError, ReducerError
from .models import DEFAULT_RATE, PNG_OUTPUT_FORMATS, RunConfiguration, utc_now
from .runner import BatchRunner, WatchScheduler, resolve_override, run_once

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
# Date-only --since values mean midnight in Japan Standard Time.
DATE_ONLY_TIMEZONE = timezone(timedelta(hours=9))
DATE_ONLY_PATTERN = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")


def configure_logging(verbosity: int = 0) -> None:
    level = logging.INFO
    if verbosity > 0:
        level = logging.DEBUG
    elif verbosity < 0:
        level = logging.WARNING
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def parse_since(value: str | None) -> datetime | None:
    if not value:
        return None
    match = DATE_ONLY_PATTERN.match(value)
    if match:
        year, month, day = (int(part) for part in match.groups())
        try:
            return datetime(year, month, day, tzinfo=DATE_ONLY_TIMEZONE)
        except ValueError as exc:
            raise ConfigurationError(f"--since date is invalid (YYYY-M-D): {value}") from exc
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ConfigurationError("--since must be ISO 8601 or YYYY-M-D") from exc
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def validate_rate(rate: float) -> float:
    if math.isfinite(rate) and 0 < rate <= 1:
        return rate
    raise ConfigurationError("--rate must be a number greater than 0 and at most 1")


def validate_max_output_width(value: int | None) -> int | None:
    if value is None or value > 0:
        return value
    raise ConfigurationError("--max-output-width must be an integer of at least 1")


def validate_interval(seconds: float) -> float:
    if math.isfinite(seconds) and seconds > 0:
        return seconds
    raise ConfigurationError("--interval must be a finite number of seconds greater than 0")


def validate_png_format(value: str) -> str:
    if value in PNG_OUTPUT_FORMATS:
        return value
    raise ConfigurationError("--png-format must be one of png / webp / avif")


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="photo-reducer",
        description="Shrink the images of a directory tree, only touching files changed since the last run.",
    )
    parser.add_argument("--source", help="Directory to process")
    parser.add_argument("--output", help="Directory that receives the reduced images")
    parser.add_argument(
        "--rate",
        type=float,
        default=DEFAULT_RATE,
        help=f"Reduction rate, greater than 0 and at most 1 (default: {DEFAULT_RATE})",
    )
    baseline = parser.add_mutually_exclusive_group()
    baseline.add_argument("--since", help="Only process files changed after this instant (ISO 8601 or YYYY-M-D)")
    baseline.add_argument(
        "--from-now",
        action="store_true",
        help="Start from the current instant (the default when no .photo-reducer exists yet)",
    )
    parser.add_argument("--max-output-width", type=int, help="Maximum output width in pixels")
    parser.add_argument(
        "--png-format",
        default="png",
        help="Output format for PNG sources: png, webp or avif (default: png); webp/avif change the extension",
    )
    parser.add_argument("--watch", action="store_true", help="Keep running and process new files periodically")
    parser.add_argument("--interval", type=float, default=60.0, help="Seconds between watch cycles (default: 60)")
    parser.add_argument("--file", help="Reduce a single file; does not read or update .photo-reducer")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    return parser


def build_configuration(args: argparse.Namespace) -> RunConfiguration:
    rate = validate_rate(args.rate)
    max_output_width = validate_max_output_width(args.max_output_width)
    png_output_format = validate_png_format(args.png_format)
    if not args.output:
        if args.file:
            raise ConfigurationError("--output is required in single-file mode")
        raise ConfigurationError("--source and --output are required to process a directory")
    output_dir = Path(args.output).resolve()
    if args.file:
        return RunConfiguration(
            source_dir=None,
            output_dir=output_dir,
            rate=rate,
            max_output_width=max_output_width,
            png_output_format=png_output_format,
            single_file=Path(args.file).resolve(),
        )
    if not args.source:
        raise ConfigurationError("--source and --output are required to process a directory")
    source_dir = Path(args.source).resolve()
    if not source_dir.is_dir():
        raise ConfigurationError(f"--source is not a directory: {source_dir}")
    return RunConfiguration(
        source_dir=source_dir,
        output_dir=output_dir,
        rate=rate,
        max_output_width=max_output_width,
        png_output_format=png_output_format,
        since_override=parse_since(args.since),
        from_now=args.from_now,
        watch=args.watch,
        interval_seconds=validate_interval(args.interval),
    )


def reduce_single_file(config: RunConfiguration) -> None:
    source = config.single_file
    if source is None or not source.is_file():
        raise ConfigurationError(f"not a file: {source}")
    relative = Path(source.name)
    paths = build_output_paths(relative, config.output_dir, config.png_output_format)
    result = reduce_file(
        source,
        paths,
        PillowCodec(),
        config.rate,
        config.max_output_width,
        config.png_output_format,
    )
    logger.info(
        "%s -> %s : %dB -> %dB",
        relative,
        result.written_path.name,
        result.original_size,
        result.optimized_size,
    )


def start_watch(config: RunConfiguration) -> None:
    runner = BatchRunner(config)
    scheduler = WatchScheduler(
        runner,
        config.interval_seconds,
        since_override=resolve_override(config, utc_now),
        force_baseline_write=config.from_now,
    )
    scheduler.install_signal_handlers()
    scheduler.run_forever()


def execute(config: RunConfiguration) -> None:
    if config.single_file is not None:
        reduce_single_file(config)
        return
    config.output_dir.mkdir(parents=True, exist_ok=True)
    if config.watch:
        start_watch(config)
        return
    run_once(config)


def main(argv: list[str] | None = None) -> int:
    args = get_parser().parse_args(argv)
    configure_logging(1 if args.verbose else -1 if args.quiet else 0)
    try:
        execute(build_configuration(args))
    except ReducerError as exc:
        logger.error("%s", exc)
        return 1
    except OSError as exc:
        logger.error("Unexpected filesystem error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.warning("Operation interrupted by user")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
