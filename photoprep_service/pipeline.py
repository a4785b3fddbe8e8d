"""
High-level normalization pipeline.

`process_image_bytes` is the main entry point used by the batch scheduler,
the HTTP API and the local script. It keeps orchestration simple:
bytes in -> decode -> resize plan -> render -> budgeted JPEG out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from . import config
from .compression import NormalizationResult, compress
from .preprocessing import ImageBuffer, decode_image, plan_resize, render

logger = logging.getLogger(__name__)


def process_image_bytes(
    image_bytes: bytes,
    settings: Optional[config.Settings] = None,
) -> NormalizationResult:
    """
    Full pipeline from raw bytes to a JPEG that fits the byte budget.

    Raises:
        ImageUnreadable: when the input cannot be decoded.
        InvalidDimensions: when the decoded image reports degenerate dimensions.
        EncodingFailed: when the JPEG encoder fails.
    """
    settings = settings or config.get_settings()

    with decode_image(image_bytes) as image:
        source_width, source_height = image.size
        target = plan_resize(source_width, source_height, settings.max_long_edge)
        bitmap = render(image, target)

    try:
        result = compress(bitmap, target.width, target.height, settings=settings)
    finally:
        bitmap.close()

    logger.info(
        "Normalized %dx%d -> %dx%d quality=%.2f size=%d degraded=%s",
        source_width,
        source_height,
        result.width,
        result.height,
        result.quality_used,
        result.size_bytes,
        result.degraded,
    )
    return result


async def process(
    source: ImageBuffer,
    settings: Optional[config.Settings] = None,
) -> NormalizationResult:
    """Run the pipeline off the event loop; the caller is suspended until it finishes."""
    return await asyncio.to_thread(process_image_bytes, source.data, settings)
