"""
HEIC/HEIF to JPEG conversion.

The codec:
 - registers the pillow-heif opener lazily, on the first HEIC upload,
 - tracks the load as `uninitialized -> loading -> {ready | failed}`,
 - lets every caller that arrives while loading await the same attempt,
 - exposes `get_heic_codec()` for a process-wide shared instance.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from io import BytesIO
import logging
import re
from threading import Lock
from typing import Callable, Optional

from PIL import Image, ImageOps

from .errors import ConversionFailed
from .preprocessing import ImageBuffer, ImageFormat

logger = logging.getLogger(__name__)

LOAD_FAILED_MESSAGE = "Could not load HEIC support. Please convert to JPG or PNG first."
CONVERT_FAILED_MESSAGE = "Could not convert HEIC file. Please convert to JPG or PNG first."

_HEIC_SUFFIX = re.compile(r"\.hei[cf]$", re.IGNORECASE)


class CodecState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def _register_pillow_heif() -> None:
    import pillow_heif

    pillow_heif.register_heif_opener()


def _heic_to_jpeg(image_bytes: bytes, quality: float) -> bytes:
    with Image.open(BytesIO(image_bytes)) as image:
        rgb = ImageOps.exif_transpose(image).convert("RGB")
    out = BytesIO()
    rgb.save(out, format="JPEG", quality=int(round(quality * 100)))
    return out.getvalue()


def converted_filename(filename: str) -> str:
    """Name a converted upload the way the user will recognize it: ``IMG_1.HEIC`` -> ``IMG_1.jpg``."""
    return _HEIC_SUFFIX.sub(".jpg", filename)


class HeicCodec:
    def __init__(self, loader: Callable[[], None] = _register_pillow_heif):
        self._loader = loader
        self.state = CodecState.UNINITIALIZED
        self._loading: Optional[asyncio.Future] = None

    async def ensure_loaded(self) -> None:
        if self.state is CodecState.READY:
            return
        if self.state is CodecState.FAILED:
            raise ConversionFailed(LOAD_FAILED_MESSAGE)
        if self._loading is None:
            self.state = CodecState.LOADING
            self._loading = asyncio.ensure_future(self._load())
        await self._loading

    async def _load(self) -> None:
        logger.info("Loading HEIC codec")
        try:
            await asyncio.to_thread(self._loader)
        except Exception as exc:  # noqa: BLE001
            logger.exception("HEIC codec failed to load: %s", exc)
            self.state = CodecState.FAILED
            raise ConversionFailed(LOAD_FAILED_MESSAGE) from exc
        finally:
            self._loading = None
        self.state = CodecState.READY
        logger.info("HEIC codec ready")

    async def convert(
        self,
        source: ImageBuffer,
        target_format: ImageFormat = ImageFormat.JPEG,
        quality: float = 0.95,
    ) -> ImageBuffer:
        """
        Return a rendition of ``source`` in ``target_format``.

        Only JPEG output is supported; asking for anything else is a caller
        error (``ValueError``). Codec failures surface as ``ConversionFailed``.
        """
        if target_format is not ImageFormat.JPEG:
            raise ValueError(f"HEIC conversion only produces JPEG, not {target_format.value}")
        await self.ensure_loaded()
        try:
            data = await asyncio.to_thread(_heic_to_jpeg, source.data, quality)
        except Exception as exc:  # noqa: BLE001
            logger.warning("HEIC conversion failed: %s", exc)
            raise ConversionFailed(CONVERT_FAILED_MESSAGE) from exc
        return ImageBuffer(data, ImageFormat.JPEG)


_CODEC: Optional[HeicCodec] = None
_LOCK = Lock()


def get_heic_codec() -> HeicCodec:
    """Return the shared codec. Loading is deferred until the first conversion."""
    global _CODEC
    if _CODEC is not None:
        return _CODEC

    with _LOCK:
        if _CODEC is None:
            _CODEC = HeicCodec()
    return _CODEC
