"""
Image loading, probing and resizing.

Everything here works on in-memory buffers. Probing only reads the header so
admission can reject undersized images cheaply; the full decode happens once,
inside the normalization pipeline.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
import math
from pathlib import PurePath
from typing import Iterator, Optional

from PIL import Image, ImageOps

from .errors import ImageUnreadable, InvalidDimensions

# EXIF orientations 5-8 rotate by 90 degrees, swapping width and height.
_ORIENTATION_TAG = 0x0112
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}

_FLATTEN_BACKGROUND = (255, 255, 255)


class ImageFormat(str, Enum):
    JPEG = "image/jpeg"
    PNG = "image/png"
    WEBP = "image/webp"
    HEIC = "image/heic"
    HEIF = "image/heif"

    @property
    def is_heic(self) -> bool:
        return self in (ImageFormat.HEIC, ImageFormat.HEIF)


SUPPORTED_FORMATS = frozenset({ImageFormat.JPEG, ImageFormat.PNG, ImageFormat.WEBP})

_EXTENSION_FORMATS = {
    ".jpg": ImageFormat.JPEG,
    ".jpeg": ImageFormat.JPEG,
    ".png": ImageFormat.PNG,
    ".webp": ImageFormat.WEBP,
    ".heic": ImageFormat.HEIC,
    ".heif": ImageFormat.HEIF,
}

_MIME_ALIASES = {
    "image/jpg": ImageFormat.JPEG.value,
    "image/pjpeg": ImageFormat.JPEG.value,
}


def declared_format(filename: str, content_type: Optional[str] = None) -> Optional[ImageFormat]:
    """
    Resolve the container format a file declares for itself.

    The content type wins when present; clients that send no type (or a
    generic one) fall back to the filename extension. HEIC is additionally
    recognized by extension even when the type is something else, since
    several platforms label HEIC uploads inconsistently.
    """
    extension = PurePath(filename).suffix.lower()
    by_extension = _EXTENSION_FORMATS.get(extension)
    if by_extension is not None and by_extension.is_heic:
        return by_extension

    mime = (content_type or "").split(";")[0].strip().lower()
    mime = _MIME_ALIASES.get(mime, mime)
    if mime and mime != "application/octet-stream":
        try:
            return ImageFormat(mime)
        except ValueError:
            return None
    return by_extension


@dataclass(frozen=True)
class ImageBuffer:
    data: bytes
    format: Optional[ImageFormat]

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int

    @property
    def long_edge(self) -> int:
        return max(self.width, self.height)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def plan_resize(source_width: int, source_height: int, max_long_edge: int = 2000) -> Dimensions:
    """Preserve aspect ratio while constraining the longest edge. Never upscales."""
    if source_width <= 0 or source_height <= 0:
        raise InvalidDimensions(
            f"Image has invalid dimensions ({source_width}x{source_height})."
        )
    long_edge = max(source_width, source_height)
    if long_edge <= max_long_edge:
        return Dimensions(source_width, source_height)
    scale = max_long_edge / long_edge
    return Dimensions(
        width=max(1, _round_half_up(source_width * scale)),
        height=max(1, _round_half_up(source_height * scale)),
    )


def _oriented_size(image: Image.Image) -> Dimensions:
    width, height = image.size
    try:
        orientation = image.getexif().get(_ORIENTATION_TAG)
    except Exception:  # noqa: BLE001
        # A broken EXIF block must not hide a readable image.
        orientation = None
    if orientation in _TRANSPOSED_ORIENTATIONS:
        return Dimensions(height, width)
    return Dimensions(width, height)


def probe_dimensions(image_bytes: bytes) -> Dimensions:
    """Read display dimensions from the image header without decoding pixels."""
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            return _oriented_size(image)
    except Exception as exc:  # noqa: BLE001
        raise ImageUnreadable("This file could not be read as an image.") from exc


@contextmanager
def decode_image(image_bytes: bytes) -> Iterator[Image.Image]:
    """
    Fully decode an image and apply its EXIF orientation.

    The decoded image is closed when the block exits, on every path.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except Exception as exc:  # noqa: BLE001
        raise ImageUnreadable("This file could not be read as an image.") from exc

    try:
        oriented = ImageOps.exif_transpose(image)
        try:
            yield oriented
        finally:
            if oriented is not image:
                oriented.close()
    finally:
        image.close()


def _flatten_to_rgb(image: Image.Image) -> Image.Image:
    if image.mode.startswith("I"):
        # 16-bit grayscale PNGs hold 0..65535; scale down before the 8-bit conversion clips them.
        image = image.convert("I").point(lambda v: v * (1 / 256)).convert("L")
    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")
    if image.mode in ("RGBA", "LA", "PA"):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, _FLATTEN_BACKGROUND)
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


def render(image: Image.Image, target: Dimensions) -> Image.Image:
    """Draw ``image`` into a new RGB bitmap of exactly ``target`` size."""
    bitmap = _flatten_to_rgb(image)
    if bitmap.size != (target.width, target.height):
        bitmap = bitmap.resize((target.width, target.height), Image.Resampling.LANCZOS)
    return bitmap
