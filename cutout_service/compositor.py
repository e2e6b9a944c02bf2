"""
Raster resizing and mask compositing.

The segmentation model may run at a reduced resolution, so the mask it returns
rarely matches the original image. ``apply_mask`` reconciles the two and turns
the mask's R channel into the output alpha.
"""

from __future__ import annotations

from io import BytesIO
import logging
from typing import Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .protocol import Raster

logger = logging.getLogger(__name__)

MAX_DIMENSION = 4096
OUTPUT_SUFFIX = "_no_bg"


def _capped_dims(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Scale proportionally so the longest side fits within ``max_dimension``."""
    if width <= max_dimension and height <= max_dimension:
        return width, height
    scale = max_dimension / max(width, height)
    return max(1, int(width * scale + 0.5)), max(1, int(height * scale + 0.5))


def resize_raster(src: Raster, target_width: int, target_height: int) -> Raster:
    if target_width <= 0 or target_height <= 0:
        raise ValueError(f"Invalid target size {target_width}x{target_height}")
    if (src.width, src.height) == (target_width, target_height):
        return src

    resized = cv2.resize(
        src.to_array(),
        (target_width, target_height),
        interpolation=cv2.INTER_LINEAR,
    )
    return Raster.from_array(resized)


def apply_mask(original: Raster, mask: Raster) -> Raster:
    """Copy RGB from ``original`` and take alpha from the mask's R channel."""
    if (mask.width, mask.height) != (original.width, original.height):
        logger.debug(
            "resizing mask %dx%d -> %dx%d",
            mask.width,
            mask.height,
            original.width,
            original.height,
        )
        mask = resize_raster(mask, original.width, original.height)

    out = original.to_array().copy()
    out[..., 3] = mask.to_array()[..., 0]
    return Raster.from_array(out)


def mask_from_matte(matte: np.ndarray) -> Raster:
    """Expand a single-channel uint8 matte into an opaque grey RGBA mask."""
    if matte.ndim != 2:
        raise ValueError(f"Matte must be 2-D, got shape {matte.shape}")
    value = np.asarray(matte, dtype=np.uint8)
    opaque = np.full_like(value, 255)
    return Raster.from_array(np.dstack((value, value, value, opaque)))


def load_raster(data: bytes, max_dimension: int = MAX_DIMENSION) -> Raster:
    """
    Decode image bytes into an RGBA raster.

    Images whose longer side exceeds ``max_dimension`` are downscaled
    proportionally to bound memory and compute cost.
    """
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Invalid image data") from exc

    image = image.convert("RGBA")
    width, height = _capped_dims(image.width, image.height, max_dimension)
    if (width, height) != image.size:
        logger.info(
            "downscaling %dx%d image to %dx%d", image.width, image.height, width, height
        )
        image = image.resize((width, height), Image.Resampling.BILINEAR)

    return Raster.from_array(np.asarray(image))


def encode_png(raster: Raster) -> bytes:
    out = Image.fromarray(raster.to_array())
    buf = BytesIO()
    out.save(buf, format="PNG")
    return buf.getvalue()


def derive_output_filename(original: str, suffix: str = OUTPUT_SUFFIX) -> str:
    """``photo.jpg`` -> ``photo_no_bg.png``; dot-files keep their full name."""
    dot = original.rfind(".")
    base = original[:dot] if dot > 0 else original
    return f"{base}{suffix}.png"
