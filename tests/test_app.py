"""Tests for the command-line layer: parsing, validation and exit codes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import json

import pytest

from conftest import write_image
from photoreducer import app
from photoreducer.errors import ConfigurationError


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda verbosity=0: None)


class TestParseSince:
    def test_date_only_is_jst_midnight(self):
        assert app.parse_since("2026-2-3") == datetime(2026, 2, 2, 15, 0, tzinfo=timezone.utc)

    def test_impossible_date(self):
        with pytest.raises(ConfigurationError):
            app.parse_since("2026-2-30")

    def test_iso_with_offset(self):
        parsed = app.parse_since("2026-01-10T12:00:00+09:00")
        assert parsed == datetime(2026, 1, 10, 3, 0, tzinfo=timezone.utc)

    def test_naive_iso_is_local(self):
        parsed = app.parse_since("2026-01-10T12:00:00")
        assert parsed.tzinfo is not None
        assert parsed.replace(tzinfo=None) == datetime(2026, 1, 10, 12, 0)

    def test_garbage(self):
        with pytest.raises(ConfigurationError):
            app.parse_since("last tuesday")

    def test_empty(self):
        assert app.parse_since(None) is None


class TestValidation:
    @pytest.mark.parametrize("rate", [0, -0.1, 1.01, float("nan"), float("inf")])
    def test_bad_rate(self, rate: float):
        with pytest.raises(ConfigurationError):
            app.validate_rate(rate)

    def test_good_rate(self):
        assert app.validate_rate(1.0) == 1.0

    def test_max_width(self):
        assert app.validate_max_output_width(None) is None
        assert app.validate_max_output_width(800) == 800
        with pytest.raises(ConfigurationError):
            app.validate_max_output_width(0)

    @pytest.mark.parametrize("seconds", [0, -5, float("nan"), float("inf")])
    def test_bad_interval(self, seconds: float):
        with pytest.raises(ConfigurationError, match="--interval"):
            app.validate_interval(seconds)

    def test_png_format(self):
        assert app.validate_png_format("avif") == "avif"
        with pytest.raises(ConfigurationError):
            app.validate_png_format("jpeg")


class TestBuildConfiguration:
    def _args(self, *argv: str):
        return app.get_parser().parse_args(list(argv))

    def test_directory_mode(self, tmp_path: Path):
        config = app.build_configuration(
            self._args("--source", str(tmp_path), "--output", str(tmp_path / "out"), "--rate", "0.5", "--since", "2026-1-1")
        )
        assert config.source_dir == tmp_path.resolve()
        assert config.metadata_path == tmp_path.resolve() / ".photo-reducer"
        assert config.rate == 0.5
        assert config.since_override == datetime(2025, 12, 31, 15, 0, tzinfo=timezone.utc)

    def test_source_required(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="--source"):
            app.build_configuration(self._args("--output", str(tmp_path)))

    def test_output_required_for_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="single-file"):
            app.build_configuration(self._args("--file", str(tmp_path / "a.jpg")))

    @pytest.mark.parametrize("interval", ["inf", "nan"])
    def test_non_finite_interval(self, tmp_path: Path, interval: str):
        args = self._args("--source", str(tmp_path), "--output", str(tmp_path / "out"), "--watch", "--interval", interval)
        with pytest.raises(ConfigurationError, match="--interval"):
            app.build_configuration(args)

    def test_since_and_from_now_are_exclusive(self, tmp_path: Path):
        with pytest.raises(SystemExit):
            self._args("--since", "2026-1-1", "--from-now")


class TestMain:
    def test_configuration_error_exits_nonzero(self, tmp_path: Path):
        assert app.main(["--source", str(tmp_path), "--output", str(tmp_path / "out"), "--rate", "2"]) == 1

    def test_missing_source_directory(self, tmp_path: Path):
        assert app.main(["--source", str(tmp_path / "nope"), "--output", str(tmp_path / "out")]) == 1

    def test_batch_run_creates_baseline(self, tmp_path: Path):
        source = tmp_path / "src"
        source.mkdir()
        assert app.main(["--source", str(source), "--output", str(tmp_path / "out")]) == 0
        assert (tmp_path / "out").is_dir()
        assert "lastProcessedAt" in json.loads((source / ".photo-reducer").read_text())

    def test_batch_run_with_since_reduces_images(self, tmp_path: Path):
        source = tmp_path / "src"
        write_image(source / "album/photo.jpg", (200, 160))
        since = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()

        code = app.main(["--source", str(source), "--output", str(tmp_path / "out"), "--rate", "0.5", "--since", since])

        assert code == 0
        assert (tmp_path / "out/album/photo.jpg").is_file()

    def test_corrupt_metadata_fails_batch(self, tmp_path: Path):
        source = tmp_path / "src"
        source.mkdir()
        (source / ".photo-reducer").write_text("{oops")
        assert app.main(["--source", str(source), "--output", str(tmp_path / "out")]) == 1

    def test_undecodable_metadata_fails_batch(self, tmp_path: Path):
        source = tmp_path / "src"
        source.mkdir()
        (source / ".photo-reducer").write_bytes(b"\xff\xfe{bad")
        assert app.main(["--source", str(source), "--output", str(tmp_path / "out")]) == 1

    def test_single_file_mode_leaves_metadata_alone(self, tmp_path: Path):
        source = write_image(tmp_path / "src/shot.png", (200, 160), fmt="PNG")
        code = app.main(["--file", str(source), "--output", str(tmp_path / "out"), "--png-format", "webp", "--rate", "0.5"])
        assert code == 0
        written = list((tmp_path / "out").iterdir())
        assert [p.name for p in written] in (["shot.webp"], ["shot.png"])
        assert not (tmp_path / "src/.photo-reducer").exists()

    def test_single_file_must_exist(self, tmp_path: Path):
        assert app.main(["--file", str(tmp_path / "missing.jpg"), "--output", str(tmp_path / "out")]) == 1
