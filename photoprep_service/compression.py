"""
Iterative JPEG re-encoding under a byte budget.

The quality ladder is a fixed linear descent, so the same pixels always walk
the same rungs and land on the same quality.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Callable, Iterator, Optional

from PIL import Image

from . import config
from .errors import EncodingFailed
from .preprocessing import ImageBuffer, ImageFormat

logger = logging.getLogger(__name__)

Encoder = Callable[[Image.Image, float], bytes]


@dataclass(frozen=True)
class NormalizationResult:
    artifact: ImageBuffer
    width: int
    height: int
    quality_used: float
    degraded: bool

    @property
    def size_bytes(self) -> int:
        return self.artifact.size_bytes


def iter_quality_ladder(initial: float, floor: float, step: float) -> Iterator[float]:
    """Yield qualities from ``initial`` down to ``floor``, rounded to 2 decimals per step."""
    quality = initial
    while quality >= floor:
        yield quality
        quality = round(quality - step, 2)


def encode_jpeg(bitmap: Image.Image, quality: float) -> bytes:
    buf = BytesIO()
    try:
        bitmap.save(buf, format="JPEG", quality=int(round(quality * 100)))
    except (OSError, ValueError) as exc:
        raise EncodingFailed("Image compression failed. Try closing other programs to free memory.") from exc
    data = buf.getvalue()
    if not data:
        raise EncodingFailed("Image compression failed. Try closing other programs to free memory.")
    return data


def compress(
    bitmap: Image.Image,
    width: int,
    height: int,
    settings: Optional[config.Settings] = None,
    encoder: Encoder = encode_jpeg,
) -> NormalizationResult:
    """
    Encode ``bitmap`` as JPEG at the highest ladder quality that fits the budget.

    If no rung fits, a final encode at the floor quality is returned with
    ``degraded=True`` when it is still over budget. Encoder failures propagate
    as ``EncodingFailed`` and are not retried at other qualities.
    """
    settings = settings or config.get_settings()
    budget = settings.target_bytes

    for quality in iter_quality_ladder(settings.initial_quality, settings.min_quality, settings.quality_step):
        data = encoder(bitmap, quality)
        logger.debug("JPEG attempt quality=%.2f size=%d budget=%d", quality, len(data), budget)
        if len(data) <= budget:
            return NormalizationResult(
                artifact=ImageBuffer(data, ImageFormat.JPEG),
                width=width,
                height=height,
                quality_used=quality,
                degraded=False,
            )

    floor = settings.min_quality
    data = encoder(bitmap, floor)
    degraded = len(data) > budget
    if degraded:
        logger.warning(
            "Budget not met at minimum quality %.2f: size=%d budget=%d", floor, len(data), budget
        )
    return NormalizationResult(
        artifact=ImageBuffer(data, ImageFormat.JPEG),
        width=width,
        height=height,
        quality_used=floor,
        degraded=degraded,
    )
