from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import logging
import signal
import threading
import time

from .compress import Codec, PillowCodec, build_output_paths, reduce_file
from .errors import ConfigurationError, ReducerError
from .metadata import MetadataStore
from .models import (
    Clock,
    CycleReport,
    FileOutcome,
    ProgressRecord,
    RunConfiguration,
    iter_candidates,
    scan_error,
    utc_now,
)

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 1.0


def resolve_since(recorded_at: datetime, override: datetime | None) -> datetime:
    return override if override is not None else recorded_at


def should_write_metadata(processed_count: int, existed: bool, force_baseline_write: bool) -> bool:
    return processed_count > 0 or not existed or force_baseline_write


def compute_updated_last_processed_at(
    recorded_at: datetime,
    latest_processed_at: datetime,
    processed_count: int,
    since_override: datetime | None,
    write_eligible: bool,
) -> datetime:
    if not write_eligible:
        return recorded_at
    if processed_count == 0:
        return since_override if since_override is not None else recorded_at
    return max(recorded_at, latest_processed_at)


def format_since(value: datetime) -> str:
    return value.astimezone().isoformat(timespec="seconds")


class BatchRunner:
    """One incremental pass over the source directory."""

    def __init__(
        self,
        config: RunConfiguration,
        codec: Codec | None = None,
        store: MetadataStore | None = None,
        clock: Clock = utc_now,
        stop_event: threading.Event | None = None,
    ):
        if config.source_dir is None:
            raise ConfigurationError("batch processing requires a source directory")
        self.config = config
        self.source_dir: Path = config.source_dir
        self.codec = codec or PillowCodec()
        self.store = store or MetadataStore(config.metadata_path, clock)
        self.stop_event = stop_event or threading.Event()

    def run(
        self,
        since_override: datetime | None = None,
        force_baseline_write: bool = False,
        quiet_when_idle: bool = False,
    ) -> CycleReport:
        record, existed = self.store.load()
        since = resolve_since(record.last_processed_at, since_override)
        report = CycleReport(since=since, last_processed_at=record.last_processed_at)
        started_logged = not quiet_when_idle
        if started_logged:
            self._log_start(since)

        latest_processed_at = since
        candidates = iter_candidates(
            self.source_dir,
            since,
            exclude=self._nested_output_dir(),
            on_error=lambda path, exc: self._on_scan_error(report, path, exc),
        )
        for candidate in candidates:
            if self.stop_event.is_set():
                report.interrupted = True
                logger.info("Stop requested, leaving the remaining files for the next run")
                break
            if not started_logged:
                self._log_start(since)
                started_logged = True
            paths = build_output_paths(candidate.relative_path, self.config.output_dir, self.config.png_output_format)
            try:
                result = reduce_file(
                    candidate.path,
                    paths,
                    self.codec,
                    self.config.rate,
                    self.config.max_output_width,
                    self.config.png_output_format,
                )
            except ReducerError as exc:
                logger.error("Error processing '%s': %s", candidate.relative_path, exc)
                report.outcomes.append(FileOutcome(candidate.relative_path, "failed", error=exc, mtime=candidate.mtime))
                continue
            report.processed_count += 1
            latest_processed_at = max(latest_processed_at, candidate.mtime)
            report.outcomes.append(FileOutcome(candidate.relative_path, "processed", result=result, mtime=candidate.mtime))
            logger.info(
                "%s -> %s : %dB -> %dB (%d%%)",
                candidate.relative_path,
                result.written_path.relative_to(self.config.output_dir),
                result.original_size,
                result.optimized_size,
                round(result.ratio * 100),
            )

        if not quiet_when_idle or report.processed_count > 0:
            logger.info("Processed %d file(s)", report.processed_count)
        if report.interrupted:
            return report

        write_eligible = should_write_metadata(report.processed_count, existed, force_baseline_write)
        report.last_processed_at = compute_updated_last_processed_at(
            record.last_processed_at,
            latest_processed_at,
            report.processed_count,
            since_override,
            write_eligible,
        )
        if write_eligible:
            self.store.save(ProgressRecord(report.last_processed_at, self.config.rate))
            report.metadata_written = True
        return report

    def _log_start(self, since: datetime) -> None:
        logger.info("Processing %s -> %s (since=%s)", self.source_dir, self.config.output_dir, format_since(since))

    def _nested_output_dir(self) -> Path | None:
        output_dir = self.config.output_dir.resolve()
        if output_dir.is_relative_to(self.source_dir.resolve()):
            return output_dir
        return None

    def _on_scan_error(self, report: CycleReport, path: Path, exc: OSError) -> None:
        error = scan_error(path, exc)
        logger.warning("Skipping unreadable entry: %s", error)
        report.outcomes.append(FileOutcome(_relative_to(path, self.source_dir), "skipped", error=error))


def _relative_to(path: Path, root: Path) -> Path:
    try:
        return path.relative_to(root)
    except ValueError:
        return path


@dataclass
class WatchState:
    effective_since: datetime | None = None
    running: bool = False
    cycles: int = 0
    skipped_ticks: int = 0


class WatchScheduler:
    """Run a BatchRunner now and then once per interval until stopped.

    A tick that falls due while a cycle is still running is skipped, not
    queued. When an explicit baseline was given, it is advanced to each
    persisted baseline so already reduced files are not matched again.
    """

    def __init__(
        self,
        runner: BatchRunner,
        interval_seconds: float,
        since_override: datetime | None = None,
        force_baseline_write: bool = False,
        stop_event: threading.Event | None = None,
    ):
        self.runner = runner
        self.interval = max(MIN_INTERVAL_SECONDS, interval_seconds)
        self.force_baseline_write = force_baseline_write
        self.stop_event = stop_event or runner.stop_event
        self.state = WatchState(effective_since=since_override)

    def run_cycle(self) -> CycleReport | None:
        state = self.state
        if state.running:
            state.skipped_ticks += 1
            logger.debug("Previous cycle still running, skipping this tick")
            return None
        state.running = True
        try:
            report = self.runner.run(
                since_override=state.effective_since,
                force_baseline_write=self.force_baseline_write,
                quiet_when_idle=True,
            )
        except Exception:
            logger.exception("Watch cycle failed")
            return None
        finally:
            state.running = False
            state.cycles += 1
        if report.metadata_written and state.effective_since is not None:
            state.effective_since = report.last_processed_at
        return report

    def run_forever(self) -> None:
        logger.info("Watching %s every %gs", self.runner.source_dir, self.interval)
        self.run_cycle()
        next_tick = time.monotonic() + self.interval
        while not self.stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self.run_cycle()
            next_tick += self.interval
            now = time.monotonic()
            while next_tick <= now:
                self.state.skipped_ticks += 1
                logger.debug("Cycle overran the interval, skipping a tick")
                next_tick += self.interval
        logger.info("Watch mode stopped")

    def stop(self, signum: int | None = None, frame: object = None) -> None:
        if not self.stop_event.is_set():
            logger.info("Stopping watch mode")
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.stop)
        signal.signal(signal.SIGTERM, self.stop)


def run_once(config: RunConfiguration, codec: Codec | None = None, clock: Clock = utc_now) -> CycleReport:
    runner = BatchRunner(config, codec=codec, clock=clock)
    return runner.run(since_override=resolve_override(config, clock), force_baseline_write=config.from_now)


def resolve_override(config: RunConfiguration, clock: Clock = utc_now) -> datetime | None:
    if config.from_now:
        return clock()
    if config.since_override is not None:
        return config.since_override.astimezone(timezone.utc)
    return None
