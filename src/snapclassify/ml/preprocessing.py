"""Image normalizer: decode a photo and redraw it as a fixed-size model input buffer.

The source image is stretched to the full target rectangle. Aspect ratio is
not preserved, so non-square photos are distorted; this is a known limitation
of the pipeline rather than something to correct here.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

from snapclassify.errors import AllocationError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snapclassify.config import Settings

logger = logging.getLogger(__name__)

SourceImage = Image.Image

DEFAULT_INPUT_SIZE: int = 224


class PixelFormat(StrEnum):
    """32-bit pixel layouts a model input buffer can use.

    The alpha byte is skipped: it is always written as 255.
    """

    ARGB32 = "ARGB32"
    BGRA32 = "BGRA32"
    RGBA32 = "RGBA32"

    @property
    def channel_order(self) -> str:
        return self.value[:4]


class BufferOrigin(StrEnum):
    """Which image row the first row of buffer memory holds."""

    TOP_LEFT = "top_left"
    BOTTOM_LEFT = "bottom_left"


@dataclass(frozen=True)
class ModelInputBuffer:
    """A read-only HxWx4 uint8 pixel buffer in a fixed pixel format."""

    pixels: NDArray[np.uint8]
    pixel_format: PixelFormat
    origin: BufferOrigin = BufferOrigin.TOP_LEFT

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def rgb(self) -> NDArray[np.uint8]:
        """Return an HxWx3 RGB view with the top image row first."""
        order = self.pixel_format.channel_order
        rgb = self.pixels[..., [order.index(channel) for channel in "RGB"]]
        if self.origin is BufferOrigin.BOTTOM_LEFT:
            rgb = rgb[::-1]
        return rgb


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> SourceImage:
    """Decode raw image bytes into a Pillow image with EXIF orientation applied.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this.

    Returns:
        The decoded source image.

    Raises:
        AllocationError: If the data is empty, undecodable, or too large.
    """
    if not image_bytes:
        raise AllocationError("Image data is empty")

    try:
        image = Image.open(io.BytesIO(image_bytes))
        width, height = image.size
        if max_pixels is not None and width * height > max_pixels:
            raise AllocationError(f"Image has {width * height} pixels, limit is {max_pixels}")
        image.load()
        transposed = ImageOps.exif_transpose(image)
    except AllocationError:
        raise
    except Exception as exc:
        # Pillow plugins raise OSError, SyntaxError, struct.error, EOFError and more on damaged data.
        raise AllocationError(f"Cannot decode image: {exc}") from exc

    return transposed if transposed is not None else image


def normalize(
    source: SourceImage,
    target_width: int = DEFAULT_INPUT_SIZE,
    target_height: int = DEFAULT_INPUT_SIZE,
    pixel_format: PixelFormat | str = PixelFormat.ARGB32,
    origin: BufferOrigin | str = BufferOrigin.TOP_LEFT,
) -> ModelInputBuffer:
    """Redraw a source image into a new model input buffer.

    Args:
        source: Image of any size and mode. It is not modified.
        target_width: Buffer width in pixels.
        target_height: Buffer height in pixels.
        pixel_format: Byte layout of each buffer pixel.
        origin: Row order of the buffer memory.

    Returns:
        A read-only buffer of exactly ``target_height x target_width`` pixels.

    Raises:
        AllocationError: If the source is empty or corrupt, or the buffer
            cannot be allocated in the requested format.
    """
    width, height = source.size
    if width <= 0 or height <= 0:
        raise AllocationError(f"Source image has zero size ({width}x{height})")

    try:
        pixel_format = PixelFormat(pixel_format)
        origin = BufferOrigin(origin)
    except ValueError as exc:
        raise AllocationError(str(exc)) from exc

    pixels = _allocate(target_width, target_height)

    try:
        drawn = source.convert("RGB").resize((target_width, target_height), Image.Resampling.BILINEAR)
    except (OSError, SyntaxError, ValueError) as exc:
        raise AllocationError(f"Cannot draw source image: {exc}") from exc

    if origin is BufferOrigin.BOTTOM_LEFT:
        # Translate by the buffer height, then scale Y by -1: row y lands on row H-1-y.
        drawn = drawn.transpose(Image.Transpose.FLIP_TOP_BOTTOM)

    channels = np.asarray(drawn, dtype=np.uint8)
    for index, channel in enumerate(pixel_format.channel_order):
        if channel != "A":
            pixels[..., index] = channels[..., "RGB".index(channel)]

    # Unlocked: consumers only read from here on.
    pixels.flags.writeable = False
    return ModelInputBuffer(pixels=pixels, pixel_format=pixel_format, origin=origin)


def _allocate(width: int, height: int) -> NDArray[np.uint8]:
    if width <= 0 or height <= 0:
        raise AllocationError(f"Invalid buffer size {width}x{height}")
    try:
        return np.full((height, width, 4), 255, dtype=np.uint8)
    except (MemoryError, ValueError) as exc:
        raise AllocationError(f"Cannot allocate {width}x{height} buffer: {exc}") from exc


class ImageNormalizer:
    """Normalizes images to the buffer shape configured in settings."""

    def __init__(self, settings: Settings) -> None:
        self._width = settings.input_width
        self._height = settings.input_height
        self._pixel_format = PixelFormat(settings.pixel_format)
        self._origin = BufferOrigin(settings.buffer_origin)
        self._max_pixels = settings.max_image_pixels

    @property
    def target_size(self) -> tuple[int, int]:
        """Buffer size as ``(width, height)``."""
        return self._width, self._height

    @property
    def pixel_format(self) -> PixelFormat:
        return self._pixel_format

    def normalize(self, source: SourceImage) -> ModelInputBuffer:
        return normalize(source, self._width, self._height, self._pixel_format, self._origin)

    def normalize_bytes(self, image_bytes: bytes) -> ModelInputBuffer:
        """Decode and normalize an uploaded image in one step."""
        image = decode_image(image_bytes, max_pixels=self._max_pixels)
        logger.debug("Decoded %sx%s %s image", image.width, image.height, image.mode)
        return self.normalize(image)
