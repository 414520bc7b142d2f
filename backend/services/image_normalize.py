"""
Image normalization for pin uploads.

Every user-selected image is decoded, downscaled to fit MAX_IMAGE_WIDTH x
MAX_IMAGE_HEIGHT (aspect ratio kept, never upscaled) and re-encoded to a single
target encoding. Quality starts at 0.9 and steps down by 0.1 until the payload
fits MAX_IMAGE_BYTES or the 0.5 floor is reached; at the floor the last encode
is returned even if it is still over budget.

Decode/encode primitives live behind RasterCodec so the control flow can be
exercised with synthetic rasters.
"""

import asyncio
import io
import logging
import math
from dataclasses import dataclass, field
from typing import Any, FrozenSet, List, Optional, Tuple

from PIL import Image, ImageOps

from .previews import PreviewHandle, PreviewRegistry, get_preview_registry

logger = logging.getLogger(__name__)

MAX_IMAGE_WIDTH = 1920
MAX_IMAGE_HEIGHT = 1920
MAX_IMAGE_BYTES = 1024 * 1024  # 1MB

INITIAL_QUALITY = 0.9
QUALITY_STEP = 0.1
QUALITY_FLOOR = 0.5

TARGET_MEDIA_TYPE = "image/jpeg"

ACCEPTED_IMAGE_TYPES = frozenset(
    {"image/jpeg", "image/jpg", "image/png", "image/webp", "image/gif"}
)

_ENCODER_FORMATS = {"image/jpeg": "JPEG", "image/webp": "WEBP"}


class ImageNormalizeError(Exception):
    """Base class for normalization failures."""


class UnsupportedTypeError(ImageNormalizeError):
    def __init__(self, media_type: Optional[str]):
        self.media_type = media_type
        super().__init__(f"Unsupported image type: {media_type or 'unknown'}")


class DecodeError(ImageNormalizeError):
    """The payload could not be interpreted as a raster image."""


@dataclass(frozen=True)
class NormalizerConfig:
    max_width: int = MAX_IMAGE_WIDTH
    max_height: int = MAX_IMAGE_HEIGHT
    max_bytes: int = MAX_IMAGE_BYTES
    initial_quality: float = INITIAL_QUALITY
    quality_step: float = QUALITY_STEP
    quality_floor: float = QUALITY_FLOOR
    target_media_type: str = TARGET_MEDIA_TYPE
    accepted_types: FrozenSet[str] = field(default=ACCEPTED_IMAGE_TYPES)

    def __post_init__(self):
        if self.max_width <= 0 or self.max_height <= 0:
            raise ValueError("max_width and max_height must be > 0")
        if self.max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        if self.quality_step <= 0:
            raise ValueError("quality_step must be > 0")
        if not 0.0 < self.quality_floor <= self.initial_quality <= 1.0:
            raise ValueError("expected 0 < quality_floor <= initial_quality <= 1")
        if self.target_media_type not in _ENCODER_FORMATS:
            raise ValueError(f"Unsupported target encoding: {self.target_media_type}")


@dataclass
class NormalizedImage:
    data: bytes
    width: int
    height: int
    media_type: str
    quality: float
    attempts: int
    max_bytes: int
    preview: PreviewHandle

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def over_budget(self) -> bool:
        return len(self.data) > self.max_bytes


class RasterCodec:
    """Decode/encode capability used by the normalizer."""

    def decode(self, data: bytes) -> Any:
        """Return a raster or raise DecodeError."""
        raise NotImplementedError

    def size(self, raster: Any) -> Tuple[int, int]:
        raise NotImplementedError

    def resize(self, raster: Any, size: Tuple[int, int]) -> Any:
        raise NotImplementedError

    def encode(self, raster: Any, quality: float, media_type: str) -> bytes:
        raise NotImplementedError


class PillowCodec(RasterCodec):
    def decode(self, data: bytes) -> Image.Image:
        if not data:
            raise DecodeError("Empty image")
        try:
            with Image.open(io.BytesIO(data)) as im:
                # Multi-frame inputs (GIF, animated WebP) keep their first frame.
                im.seek(0)
                im.load()
                # exif_transpose returns a detached copy, usable after close.
                raster = ImageOps.exif_transpose(im)
        except Image.DecompressionBombError as e:
            raise DecodeError(f"Image too large to decode: {e}") from e
        except (OSError, SyntaxError, ValueError, EOFError) as e:
            # UnidentifiedImageError is an OSError; truncated data raises OSError on load().
            raise DecodeError(f"Could not decode image: {e}") from e

        has_alpha = raster.mode in ("RGBA", "LA", "PA") or (
            raster.mode == "P" and "transparency" in (raster.info or {})
        )
        target_mode = "RGBA" if has_alpha else "RGB"
        if raster.mode != target_mode:
            raster = raster.convert(target_mode)
        return raster

    def size(self, raster: Image.Image) -> Tuple[int, int]:
        return raster.size

    def resize(self, raster: Image.Image, size: Tuple[int, int]) -> Image.Image:
        return raster.resize(size, Image.Resampling.LANCZOS)

    def encode(self, raster: Image.Image, quality: float, media_type: str) -> bytes:
        fmt = _ENCODER_FORMATS[media_type]
        q = max(1, min(100, int(round(quality * 100))))

        # Flatten alpha onto white; neither target keeps transparency here.
        if raster.mode == "RGBA":
            rgb = Image.new("RGB", raster.size, (255, 255, 255))
            rgb.paste(raster, mask=raster.split()[-1])
        else:
            rgb = raster.convert("RGB") if raster.mode != "RGB" else raster

        out = io.BytesIO()
        if fmt == "WEBP":
            rgb.save(out, format="WEBP", quality=q, method=6)
        else:
            rgb.save(out, format="JPEG", quality=q, optimize=True, progressive=True)
        return out.getvalue()


def normalize_media_type(media_type: Optional[str]) -> str:
    """'Image/JPEG; charset=binary' -> 'image/jpeg'."""
    if not media_type:
        return ""
    return media_type.split(";", 1)[0].strip().lower()


def is_valid_image_type(media_type: Optional[str], accepted=ACCEPTED_IMAGE_TYPES) -> bool:
    return normalize_media_type(media_type) in accepted


def _round_half_up(value: float) -> int:
    # round() is half-to-even; 500.5 must give 501 here.
    return int(math.floor(value + 0.5))


def compute_target_dimensions(
    width: int, height: int, max_width: int, max_height: int
) -> Tuple[int, int]:
    """
    Fit (width, height) inside (max_width, max_height) keeping the aspect ratio.
    Images already within both bounds are returned unchanged; nothing is upscaled.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image dimensions: {width}x{height}")
    if width <= max_width and height <= max_height:
        return width, height

    scale = min(max_width / float(width), max_height / float(height))
    new_w = min(max_width, max(1, _round_half_up(width * scale)))
    new_h = min(max_height, max(1, _round_half_up(height * scale)))
    return new_w, new_h


def quality_levels(initial: float, step: float, floor: float) -> List[float]:
    """
    Qualities to try, highest first: initial, initial - step, ... down to floor.
    The last level is clamped to floor so the floor itself is always tried.
    """
    if step <= 0:
        raise ValueError("step must be > 0")
    if floor > initial:
        raise ValueError("floor must be <= initial")

    levels: List[float] = []
    i = 0
    while True:
        # Rounded so 0.9 - 4 * 0.1 lands on 0.5 rather than 0.5000000000000001.
        q = round(initial - i * step, 6)
        if q <= floor:
            levels.append(round(floor, 6))
            break
        levels.append(q)
        i += 1
    return levels


def normalize_image(
    source_bytes: bytes,
    declared_type: Optional[str],
    *,
    config: Optional[NormalizerConfig] = None,
    codec: Optional[RasterCodec] = None,
    previews: Optional[PreviewRegistry] = None,
) -> NormalizedImage:
    """
    Decode, fit to bounds and re-encode an uploaded image under the byte budget.

    Raises UnsupportedTypeError before any decode work when declared_type is not
    accepted, and DecodeError when the bytes are not a readable image.
    """
    config = config or NormalizerConfig()
    codec = codec or PillowCodec()
    if previews is None:
        previews = get_preview_registry()

    if normalize_media_type(declared_type) not in config.accepted_types:
        raise UnsupportedTypeError(declared_type)

    raster = codec.decode(source_bytes)
    src_w, src_h = codec.size(raster)
    width, height = compute_target_dimensions(src_w, src_h, config.max_width, config.max_height)
    if (width, height) != (src_w, src_h):
        raster = codec.resize(raster, (width, height))
        logger.info(f"Downscaled image {src_w}x{src_h} -> {width}x{height}")

    encoded = b""
    quality = config.initial_quality
    attempts = 0
    for quality in quality_levels(config.initial_quality, config.quality_step, config.quality_floor):
        encoded = codec.encode(raster, quality, config.target_media_type)
        attempts += 1
        if len(encoded) <= config.max_bytes:
            break
        logger.debug(f"Encoded {len(encoded)} bytes at quality {quality:.2f}, over {config.max_bytes}")

    if len(encoded) > config.max_bytes:
        # Best-effort fallback (may exceed max_bytes)
        logger.warning(
            f"Image still {len(encoded)} bytes at quality floor {quality:.2f} "
            f"(budget {config.max_bytes}); returning best effort"
        )

    preview = previews.create(encoded, config.target_media_type)
    logger.info(
        f"Normalized {normalize_media_type(declared_type)} {src_w}x{src_h} -> "
        f"{config.target_media_type} {width}x{height}, {len(encoded)} bytes, "
        f"quality {quality:.2f} after {attempts} attempt(s)"
    )
    return NormalizedImage(
        data=encoded,
        width=width,
        height=height,
        media_type=config.target_media_type,
        quality=quality,
        attempts=attempts,
        max_bytes=config.max_bytes,
        preview=preview,
    )


async def normalize(
    source_bytes: bytes,
    declared_type: Optional[str],
    *,
    config: Optional[NormalizerConfig] = None,
    codec: Optional[RasterCodec] = None,
    previews: Optional[PreviewRegistry] = None,
) -> NormalizedImage:
    """Async wrapper: runs normalize_image in a worker thread."""
    return await asyncio.to_thread(
        normalize_image,
        source_bytes,
        declared_type,
        config=config,
        codec=codec,
        previews=previews,
    )


def format_file_size(num_bytes: int) -> str:
    """Human-readable size, base 1024: 0 -> '0 Bytes', 1536 -> '1.5 KB'."""
    if num_bytes <= 0:
        return "0 Bytes"

    units = ["Bytes", "KB", "MB", "GB"]
    value = float(num_bytes)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    value = round(value, 2)
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[i]}"
