from __future__ import annotations

from pathlib import Path
import logging
import os
import shutil
from typing import Callable, Protocol

from PIL import Image, ImageSequence, UnidentifiedImageError
import pillow_heif

from .errors import ProcessingError, UnsupportedFormatError
from .models import CommitResult, OutputPaths, ProbeResult, ResizePlan

pillow_heif.register_heif_opener()

logger = logging.getLogger(__name__)

MIN_QUALITY = 30
MAX_QUALITY = 90
TEMP_SUFFIX = ".tmp"
FORMAT_ALIASES = {"MPO": "JPEG", "JPG": "JPEG"}
PNG_FORMAT_TARGETS = {"png": "PNG", "webp": "WEBP", "avif": "AVIF"}
PNG_FORMAT_SUFFIXES = {"webp": ".webp", "avif": ".avif"}

Encoder = Callable[[Image.Image, Path, int], None]
_ENCODER_REGISTRY: dict[str, Encoder] = {}


class Codec(Protocol):
    def probe(self, source: Path) -> ProbeResult: ...

    def encode(
        self,
        source: Path,
        target: Path,
        plan: ResizePlan | None,
        output_format: str,
        quality: int,
    ) -> None: ...


def clamp_quality(rate: float) -> int:
    return max(MIN_QUALITY, min(MAX_QUALITY, round(rate * 100)))


def plan_resize(
    source_width: int | None,
    source_height: int | None,
    rate: float,
    max_output_width: int | None = None,
) -> ResizePlan | None:
    """Scale the source by ``rate``, clamping the width to ``max_output_width``.

    The height follows the ratio actually applied to the width, so a
    width clamp keeps the aspect ratio. Returns ``None`` when the source
    has no known raster size.
    """
    if not source_width or not source_height:
        return None
    scaled_width = max(1, round(source_width * rate))
    limited_width = min(scaled_width, max_output_width) if max_output_width else scaled_width
    applied_rate = limited_width / source_width
    return ResizePlan(limited_width, max(1, round(source_height * applied_rate)))


def normalize_format(source_format: str | None) -> str | None:
    if source_format is None:
        return None
    upper = source_format.upper()
    return FORMAT_ALIASES.get(upper, upper)


def select_output_format(source_format: str | None, png_output_format: str) -> str | None:
    normalized = normalize_format(source_format)
    if normalized == "PNG":
        return PNG_FORMAT_TARGETS.get(png_output_format, "PNG")
    return normalized


def build_output_paths(relative: Path, output_dir: Path, png_output_format: str) -> OutputPaths:
    fallback = output_dir / relative
    suffix = PNG_FORMAT_SUFFIXES.get(png_output_format)
    if relative.suffix.lower() == ".png" and suffix is not None:
        return OutputPaths(output_dir / relative.with_suffix(suffix), fallback)
    return OutputPaths(fallback, fallback)


def temp_path_for(path: Path) -> Path:
    return path.with_name(f"{path.name}{TEMP_SUFFIX}")


def prepare_image_for_save(image: Image.Image, output_format: str) -> Image.Image:
    if output_format == "JPEG" and image.mode not in {"RGB", "L", "CMYK"}:
        if image.mode in {"RGBA", "LA", "P"}:
            rgba = image.convert("RGBA")
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[3])
            return background
        return image.convert("RGB")
    if output_format in {"WEBP", "AVIF", "HEIF"} and image.mode == "P":
        return image.convert("RGBA" if "transparency" in image.info else "RGB")
    return image


def resize_image(image: Image.Image, plan: ResizePlan | None) -> Image.Image:
    if plan is None or (plan.width, plan.height) == image.size:
        return image
    return image.resize((plan.width, plan.height), Image.Resampling.LANCZOS)


def save_jpeg(image: Image.Image, target: Path, quality: int) -> None:
    image.save(target, format="JPEG", quality=quality, optimize=True, progressive=True)


def save_webp(image: Image.Image, target: Path, quality: int) -> None:
    image.save(target, format="WEBP", quality=quality, method=6)


def save_avif(image: Image.Image, target: Path, quality: int) -> None:
    image.save(target, format="AVIF", quality=quality)


def save_heif(image: Image.Image, target: Path, quality: int) -> None:
    image.save(target, format="HEIF", quality=quality)


def save_png(image: Image.Image, target: Path, quality: int) -> None:
    image.save(target, format="PNG", optimize=True, compress_level=9)


def save_tiff(image: Image.Image, target: Path, quality: int) -> None:
    image.save(target, format="TIFF", compression="tiff_lzw")


def get_encoder_registry() -> dict[str, Encoder]:
    global _ENCODER_REGISTRY
    if not _ENCODER_REGISTRY:
        _ENCODER_REGISTRY = {
            "JPEG": save_jpeg,
            "WEBP": save_webp,
            "AVIF": save_avif,
            "HEIF": save_heif,
            "PNG": save_png,
            "TIFF": save_tiff,
        }
    return _ENCODER_REGISTRY


def set_encoder_registry(registry: dict[str, Encoder]) -> None:
    global _ENCODER_REGISTRY
    _ENCODER_REGISTRY = dict(registry)


class PillowCodec:
    """Probe and re-encode images with Pillow (HEIF through pillow-heif)."""

    def probe(self, source: Path) -> ProbeResult:
        try:
            with Image.open(source) as image:
                width, height = image.size
                return ProbeResult(width or None, height or None, image.format)
        except UnidentifiedImageError as exc:
            raise ProcessingError(f"cannot identify image '{source.name}'") from exc

    def encode(
        self,
        source: Path,
        target: Path,
        plan: ResizePlan | None,
        output_format: str,
        quality: int,
    ) -> None:
        if output_format == "GIF":
            self._encode_gif(source, target, plan)
            return
        encoder = get_encoder_registry().get(output_format)
        if encoder is None:
            raise UnsupportedFormatError(f"no re-encoding for format {output_format}")
        with Image.open(source) as image:
            image.load()
            resized = resize_image(image, plan)
            encoder(prepare_image_for_save(resized, output_format), target, quality)

    def _encode_gif(self, source: Path, target: Path, plan: ResizePlan | None) -> None:
        with Image.open(source) as image:
            frames = [resize_image(frame.copy(), plan) for frame in ImageSequence.Iterator(image)]
            frames[0].save(
                target,
                format="GIF",
                save_all=True,
                append_images=frames[1:],
                duration=image.info.get("duration", 0),
                loop=image.info.get("loop", 0),
                optimize=True,
            )


def _copy_verbatim(source: Path, target: Path) -> None:
    temp = temp_path_for(target)
    try:
        shutil.copy2(source, temp)
        os.replace(temp, target)
    except OSError:
        temp.unlink(missing_ok=True)
        raise


def commit_file(
    source: Path,
    paths: OutputPaths,
    codec: Codec,
    plan: ResizePlan | None,
    quality: int,
    output_format: str | None,
) -> CommitResult:
    """Write a reduced copy of ``source``, or the original when nothing is gained.

    The candidate is encoded next to the primary target with a ``.tmp``
    suffix and only ever renamed into place. When the candidate is not
    strictly smaller than the source, or the format has no re-encoding,
    the source is copied byte for byte to the fallback path instead.
    """
    temp = temp_path_for(paths.primary)
    try:
        paths.primary.parent.mkdir(parents=True, exist_ok=True)
        paths.fallback.parent.mkdir(parents=True, exist_ok=True)
        original_size = source.stat().st_size
        try:
            if output_format is None:
                raise UnsupportedFormatError(f"unknown format for '{source.name}'")
            codec.encode(source, temp, plan, output_format, quality)
        except UnsupportedFormatError as exc:
            temp.unlink(missing_ok=True)
            logger.info("%s: unsupported for re-encode (%s), copying original", source.name, exc)
            _copy_verbatim(source, paths.fallback)
            return CommitResult(source, paths.fallback, original_size, paths.fallback.stat().st_size, False)
        optimized_size = temp.stat().st_size
        if optimized_size >= original_size:
            temp.unlink()
            _copy_verbatim(source, paths.fallback)
            return CommitResult(source, paths.fallback, original_size, paths.fallback.stat().st_size)
        os.replace(temp, paths.primary)
        return CommitResult(source, paths.primary, original_size, optimized_size)
    except ProcessingError:
        temp.unlink(missing_ok=True)
        raise
    except Exception as exc:
        temp.unlink(missing_ok=True)
        raise ProcessingError(f"failed to reduce '{source.name}': {exc}") from exc


def reduce_file(
    source: Path,
    paths: OutputPaths,
    codec: Codec,
    rate: float,
    max_output_width: int | None = None,
    png_output_format: str = "png",
) -> CommitResult:
    try:
        probe = codec.probe(source)
    except ProcessingError:
        raise
    except Exception as exc:
        raise ProcessingError(f"cannot read '{source.name}': {exc}") from exc
    plan = plan_resize(probe.width, probe.height, rate, max_output_width)
    output_format = select_output_format(probe.format, png_output_format)
    logger.debug("%s: %s %sx%s -> %s %s", source.name, probe.format, probe.width, probe.height, output_format, plan)
    return commit_file(source, paths, codec, plan, clamp_quality(rate), output_format)
