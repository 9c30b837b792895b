"""Image decoding and geometry helpers.

Covers byte decoding, aspect-preserving letterbox resize into a square
canvas, conversion to the planar float tensor layout the ONNX models expect,
and coordinate mapping between canvas space and original-image space.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from facematch.errors import DecodeFailureError, InvalidInputError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResizeContext:
    """Geometry of one letterbox resize, used to map coordinates back."""

    scale: float
    offset_x: int
    offset_y: int
    new_width: int
    new_height: int
    target_size: int


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an HxWx3 BGR uint8 array.

    Raises:
        DecodeFailureError: If the bytes are empty or not a supported image.
        InvalidInputError: If the decoded image exceeds ``max_pixels``.
    """
    if not image_bytes:
        raise DecodeFailureError("Image data is empty")

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise DecodeFailureError("Image data could not be decoded")

    height, width = image.shape[:2]
    if max_pixels is not None and height * width > max_pixels:
        raise InvalidInputError(f"Image has {width}x{height} pixels, limit is {max_pixels}")

    logger.debug("Decoded image %dx%d", width, height)
    return image


def decode_base64_image(data: str, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode a base64 string (optionally a ``data:`` URI) into a BGR image."""
    if "," in data:
        data = data.split(",", 1)[1]
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeFailureError("Image data is not valid base64") from exc
    return decode_image(raw, max_pixels=max_pixels)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def letterbox_resize(
    image: NDArray[np.uint8],
    target_size: int,
    pad_value: int = 114,
) -> tuple[NDArray[np.uint8], ResizeContext]:
    """Resize ``image`` into a ``target_size`` square canvas without distortion.

    The resized content is centred and the border filled with ``pad_value``.
    """
    height, width = image.shape[:2]
    if width <= 0 or height <= 0:
        raise InvalidInputError("Image has no pixels")

    scale = min(target_size / width, target_size / height)
    new_width = min(target_size, max(1, _round_half_up(width * scale)))
    new_height = min(target_size, max(1, _round_half_up(height * scale)))

    resized = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_LINEAR)
    if resized.ndim == 2:
        resized = resized[:, :, np.newaxis]

    channels = image.shape[2] if image.ndim == 3 else 1
    canvas = np.full((target_size, target_size, channels), pad_value, dtype=image.dtype)
    offset_x = (target_size - new_width) // 2
    offset_y = (target_size - new_height) // 2
    canvas[offset_y : offset_y + new_height, offset_x : offset_x + new_width] = resized

    ctx = ResizeContext(
        scale=scale,
        offset_x=offset_x,
        offset_y=offset_y,
        new_width=new_width,
        new_height=new_height,
        target_size=target_size,
    )
    logger.debug(
        "Letterbox %dx%d -> %dx%d (scale=%.4f, offset=(%d, %d))",
        width,
        height,
        new_width,
        new_height,
        scale,
        offset_x,
        offset_y,
    )
    return canvas, ctx


def to_tensor_layout(
    image: NDArray[np.uint8],
    mean: Sequence[float],
    std: Sequence[float],
    normalize: bool = False,
) -> NDArray[np.float32]:
    """Convert an HxWx3 image into a (1, 3, H, W) float32 tensor.

    Channels 0 and 2 are swapped (BGR -> RGB), then each value is optionally
    divided by 255 and standardized with the per-channel ``mean``/``std``.
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise InvalidInputError(f"Expected an HxWx3 image, got shape {image.shape}")

    planar = image[:, :, ::-1].transpose(2, 0, 1).astype(np.float32)
    if normalize:
        planar /= 255.0
    mean_arr = np.asarray(mean, dtype=np.float32).reshape(3, 1, 1)
    std_arr = np.asarray(std, dtype=np.float32).reshape(3, 1, 1)
    planar = (planar - mean_arr) / std_arr
    return np.ascontiguousarray(planar[np.newaxis, ...])


def unmap(x: float, y: float, ctx: ResizeContext) -> tuple[float, float]:
    """Map a canvas coordinate back into original-image space."""
    return (x - ctx.offset_x) / ctx.scale, (y - ctx.offset_y) / ctx.scale


def map_to_canvas(x: float, y: float, ctx: ResizeContext) -> tuple[float, float]:
    """Map an original-image coordinate into canvas space (inverse of ``unmap``)."""
    return x * ctx.scale + ctx.offset_x, y * ctx.scale + ctx.offset_y
