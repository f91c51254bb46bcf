from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import json
import logging
import os

from .errors import MetadataCorruptionError
from .models import DEFAULT_RATE, Clock, ProgressRecord, truncate_to_millis, utc_now

logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    return truncate_to_millis(value).astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return truncate_to_millis(parsed.astimezone(timezone.utc))


class MetadataStore:
    """Progress record of one source directory, kept as a small JSON file.

    Writes go to ``<path>.tmp`` and are renamed over the record, so a
    reader sees either the previous record or the new one.
    """

    def __init__(self, path: Path, clock: Clock = utc_now):
        self.path = path
        self.clock = clock

    @property
    def temp_path(self) -> Path:
        return self.path.with_name(f"{self.path.name}.tmp")

    def load(self) -> tuple[ProgressRecord, bool]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return ProgressRecord(self.clock(), DEFAULT_RATE), False
        try:
            data = json.loads(raw.decode("utf-8"))
            last_processed_at = parse_timestamp(data["lastProcessedAt"])
        except (ValueError, TypeError, KeyError) as exc:
            raise MetadataCorruptionError(f"cannot parse metadata file '{self.path}': {exc}") from exc
        last_rate = data.get("lastRate", DEFAULT_RATE)
        if isinstance(last_rate, bool) or not isinstance(last_rate, (int, float)):
            logger.warning("Ignoring invalid lastRate %r in '%s'", last_rate, self.path)
            last_rate = DEFAULT_RATE
        return ProgressRecord(last_processed_at, float(last_rate)), True

    def save(self, record: ProgressRecord) -> None:
        payload = {
            "lastProcessedAt": format_timestamp(record.last_processed_at),
            "lastRate": record.last_rate,
        }
        temp = self.temp_path
        try:
            temp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(temp, self.path)
        except OSError:
            temp.unlink(missing_ok=True)
            raise
        logger.debug("Saved progress record %s to '%s'", payload, self.path)
