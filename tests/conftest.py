"""Shared fixtures: fake codec, fake clock and image helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import os

import pytest
from PIL import Image

from photoreducer.models import EPOCH, ProbeResult, ResizePlan

T0 = datetime(2026, 1, 10, 3, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeCodec:
    """Codec double writing ``encoded_size`` bytes and recording every call."""

    def __init__(self, width: int | None = 1000, height: int | None = 800, fmt: str | None = "JPEG", encoded_size: int = 10):
        self.probe_result = ProbeResult(width, height, fmt)
        self.encoded_size = encoded_size
        self.calls: list[tuple[Path, Path, ResizePlan | None, str, int]] = []
        self.fail_with: Exception | None = None

    def probe(self, source: Path) -> ProbeResult:
        return self.probe_result

    def encode(self, source: Path, target: Path, plan: ResizePlan | None, output_format: str, quality: int) -> None:
        self.calls.append((source, target, plan, output_format, quality))
        if self.fail_with is not None:
            target.write_bytes(b"partial")
            raise self.fail_with
        target.write_bytes(b"\0" * self.encoded_size)


def set_mtime(path: Path, when: datetime) -> None:
    ns = (when - EPOCH) // timedelta(microseconds=1) * 1000
    os.utime(path, ns=(ns, ns))


def write_file(path: Path, size: int, when: datetime | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(os.urandom(size))
    if when is not None:
        set_mtime(path, when)
    return path


def write_image(path: Path, size: tuple[int, int] = (200, 160), fmt: str = "JPEG", mode: str = "RGB") -> Path:
    """Save a noisy image so encoders cannot shrink it to nothing."""
    path.parent.mkdir(parents=True, exist_ok=True)
    noise = Image.effect_noise(size, 64).convert(mode)
    if fmt == "JPEG":
        noise.save(path, format=fmt, quality=100)
    else:
        noise.save(path, format=fmt)
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    source = tmp_path / "source"
    output = tmp_path / "output"
    source.mkdir()
    return source, output
