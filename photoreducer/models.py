from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
import os
from stat import S_ISREG
from typing import Callable, Iterable, Iterator, Literal

from .errors import ScanError

IMAGE_EXTENSIONS = frozenset(
    {".jpg", ".jpeg", ".png", ".webp", ".tif", ".tiff", ".avif", ".gif", ".heic"}
)
METADATA_FILENAME = ".photo-reducer"
DEFAULT_RATE = 0.9
PNG_OUTPUT_FORMATS = ("png", "webp", "avif")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Clock = Callable[[], datetime]
ScanErrorHandler = Callable[[Path, OSError], None]
OutcomeStatus = Literal["processed", "skipped", "failed"]


def truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def utc_now() -> datetime:
    return truncate_to_millis(datetime.now(timezone.utc))


def mtime_from_stat(stat: os.stat_result) -> datetime:
    return EPOCH + timedelta(milliseconds=stat.st_mtime_ns // 1_000_000)


@dataclass(frozen=True)
class RunConfiguration:
    source_dir: Path | None
    output_dir: Path
    rate: float = DEFAULT_RATE
    max_output_width: int | None = None
    png_output_format: str = "png"
    since_override: datetime | None = None
    from_now: bool = False
    watch: bool = False
    interval_seconds: float = 60.0
    single_file: Path | None = None

    @property
    def metadata_path(self) -> Path:
        if self.source_dir is None:
            raise ValueError("metadata path requires a source directory")
        return self.source_dir / METADATA_FILENAME


@dataclass(frozen=True)
class ProgressRecord:
    last_processed_at: datetime
    last_rate: float = DEFAULT_RATE


@dataclass(frozen=True)
class CandidateFile:
    path: Path
    relative_path: Path
    mtime: datetime


@dataclass(frozen=True)
class ResizePlan:
    width: int
    height: int


@dataclass(frozen=True)
class ProbeResult:
    width: int | None
    height: int | None
    format: str | None


@dataclass(frozen=True)
class OutputPaths:
    primary: Path
    fallback: Path


@dataclass(frozen=True)
class CommitResult:
    source: Path
    written_path: Path
    original_size: int
    optimized_size: int
    reencoded: bool = True

    @property
    def ratio(self) -> float:
        if self.original_size == 0:
            return 1.0
        return self.optimized_size / self.original_size


@dataclass(frozen=True)
class FileOutcome:
    relative_path: Path
    status: OutcomeStatus
    result: CommitResult | None = None
    error: Exception | None = None
    mtime: datetime | None = None


@dataclass
class CycleReport:
    since: datetime
    last_processed_at: datetime
    processed_count: int = 0
    metadata_written: bool = False
    interrupted: bool = False
    outcomes: list[FileOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[FileOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == "failed"]


def iter_image_files(
    root: Path,
    formats: Iterable[str] = IMAGE_EXTENSIONS,
    exclude: Path | None = None,
    on_error: ScanErrorHandler | None = None,
) -> Iterator[Path]:
    patterns = {fmt.lower() if fmt.startswith(".") else f".{fmt.lower()}" for fmt in formats}
    excluded = exclude.resolve() if exclude is not None else None
    seen: set[Path] = set()

    def report(error: OSError) -> None:
        if on_error is not None:
            on_error(Path(error.filename or root), error)

    for dirpath, dirnames, filenames in os.walk(root, onerror=report):
        current = Path(dirpath)
        if excluded is not None:
            dirnames[:] = [name for name in dirnames if (current / name).resolve() != excluded]
        dirnames.sort()
        for name in sorted(filenames):
            path = current / name
            if path.suffix.lower() not in patterns or path in seen:
                continue
            seen.add(path)
            yield path


def iter_candidates(
    source_dir: Path,
    since: datetime,
    exclude: Path | None = None,
    on_error: ScanErrorHandler | None = None,
) -> Iterator[CandidateFile]:
    """Yield image files under ``source_dir`` modified strictly after ``since``."""
    for path in iter_image_files(source_dir, exclude=exclude, on_error=on_error):
        try:
            stat = path.stat()
        except OSError as exc:
            if on_error is not None:
                on_error(path, exc)
            continue
        if not S_ISREG(stat.st_mode):
            continue
        mtime = mtime_from_stat(stat)
        if mtime <= since:
            continue
        yield CandidateFile(path, path.relative_to(source_dir), mtime)


def scan_error(path: Path, exc: OSError) -> ScanError:
    return ScanError(f"cannot read '{path}': {exc.strerror or exc}")
