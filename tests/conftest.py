from __future__ import annotations

from io import BytesIO
from typing import Optional, Tuple

import pytest
from PIL import Image

from photoprep_service.config import Settings


def encode_image(
    width: int,
    height: int,
    fmt: str = "PNG",
    color: Tuple[int, ...] = (120, 130, 140),
    mode: str = "RGB",
    exif_orientation: Optional[int] = None,
) -> bytes:
    image = Image.new(mode, (width, height), color=color)
    buf = BytesIO()
    kwargs = {}
    if exif_orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = exif_orientation
        kwargs["exif"] = exif
    image.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


@pytest.fixture
def make_image():
    return encode_image


@pytest.fixture
def settings() -> Settings:
    return Settings()
