"""Image preprocessing pipeline.

Handles decoding, orientation correction, color space conversion, size
validation, crop/scale to the model's input size, and conversion to a
normalized NCHW float tensor.
"""

from __future__ import annotations

import io
import logging
from enum import IntEnum, StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from visiontag.config import Settings

logger = logging.getLogger(__name__)


class ImageValidationError(ValueError):
    """The uploaded payload is not a usable image."""


class ImageDecodeError(ImageValidationError):
    """The payload is empty, truncated, or in an unsupported format."""


class ImageTooLargeError(ImageValidationError):
    """The image exceeds the configured pixel limit."""


class Orientation(IntEnum):
    """EXIF/TIFF orientation tag values."""

    UP = 1
    UP_MIRRORED = 2
    DOWN = 3
    DOWN_MIRRORED = 4
    LEFT_MIRRORED = 5
    RIGHT = 6
    RIGHT_MIRRORED = 7
    LEFT = 8


class CropMode(StrEnum):
    CENTER_CROP = "center_crop"
    SCALE_FIT = "scale_fit"
    SCALE_FILL = "scale_fill"


# Pillow signals corrupt input with any of these, depending on the codec.
_DECODE_ERRORS = (UnidentifiedImageError, OSError, SyntaxError, ValueError)

# Transpose that brings stored pixels upright, same table as ImageOps.exif_transpose.
_ORIENTATION_TRANSPOSE: dict[Orientation, Image.Transpose | None] = {
    Orientation.UP: None,
    Orientation.UP_MIRRORED: Image.Transpose.FLIP_LEFT_RIGHT,
    Orientation.DOWN: Image.Transpose.ROTATE_180,
    Orientation.DOWN_MIRRORED: Image.Transpose.FLIP_TOP_BOTTOM,
    Orientation.LEFT_MIRRORED: Image.Transpose.TRANSPOSE,
    Orientation.RIGHT: Image.Transpose.ROTATE_270,
    Orientation.RIGHT_MIRRORED: Image.Transpose.TRANSVERSE,
    Orientation.LEFT: Image.Transpose.ROTATE_90,
}


class ImagePreprocessor(Protocol):
    """Protocol for image preprocessing."""

    def prepare(
        self,
        image_bytes: bytes,
        size: int,
        mode: CropMode,
        orientation: Orientation | None,
        mean: Sequence[float],
        std: Sequence[float],
    ) -> NDArray[np.float32]:
        """Decode raw image bytes and return a model-ready 1x3xHxW tensor."""
        ...


class PillowPreprocessor:
    """Pillow/NumPy implementation of the preprocessing pipeline."""

    def __init__(self, settings: Settings) -> None:
        self._max_pixels = settings.max_image_pixels

    def decode_image(self, image_bytes: bytes, orientation: Orientation | None = None) -> NDArray[np.uint8]:
        """Decode raw image bytes into an upright RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).
            orientation: Orientation tag supplied by the caller. When given it
                replaces whatever EXIF orientation the file carries.

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            ImageDecodeError: If the bytes cannot be decoded.
            ImageTooLargeError: If the image exceeds the pixel limit.
        """
        if not image_bytes:
            raise ImageDecodeError("Empty image payload")

        try:
            img = Image.open(io.BytesIO(image_bytes))
        except Image.DecompressionBombError as exc:
            raise ImageTooLargeError(str(exc)) from exc
        except _DECODE_ERRORS as exc:
            raise ImageDecodeError("Unsupported or corrupt image") from exc

        image_format = img.format
        width, height = img.size
        if width * height > self._max_pixels:
            raise ImageTooLargeError(
                f"Image has {width * height} pixels, limit is {self._max_pixels}",
            )

        method = None if orientation is None else _ORIENTATION_TRANSPOSE[Orientation(orientation)]
        try:
            img.load()
            if orientation is None:
                img = ImageOps.exif_transpose(img)
            elif method is not None:
                img = img.transpose(method)
            if img.mode != "RGB":
                img = img.convert("RGB")
        except _DECODE_ERRORS as exc:
            raise ImageDecodeError("Unsupported or corrupt image") from exc

        logger.debug("Decoded %s image %dx%d", image_format or "raw", img.width, img.height)
        return np.asarray(img, dtype=np.uint8)

    @staticmethod
    def crop_and_scale(image: NDArray[np.uint8], size: int, mode: CropMode) -> NDArray[np.uint8]:
        """Bring an RGB image to a ``size`` x ``size`` square."""
        img = Image.fromarray(image)
        target = (size, size)
        if mode == CropMode.CENTER_CROP:
            img = ImageOps.fit(img, target, method=Image.Resampling.BILINEAR, centering=(0.5, 0.5))
        elif mode == CropMode.SCALE_FIT:
            img = ImageOps.pad(img, target, method=Image.Resampling.BILINEAR, color=(0, 0, 0))
        else:
            img = img.resize(target, Image.Resampling.BILINEAR)
        return np.asarray(img, dtype=np.uint8)

    @staticmethod
    def to_model_input(
        image: NDArray[np.uint8], mean: Sequence[float], std: Sequence[float]
    ) -> NDArray[np.float32]:
        """Scale to [0, 1], normalize per channel and reorder to NCHW."""
        scaled = image.astype(np.float32) / 255.0
        normalized = (scaled - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
        return np.ascontiguousarray(normalized.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    def prepare(
        self,
        image_bytes: bytes,
        size: int,
        mode: CropMode,
        orientation: Orientation | None,
        mean: Sequence[float],
        std: Sequence[float],
    ) -> NDArray[np.float32]:
        image = self.decode_image(image_bytes, orientation)
        square = self.crop_and_scale(image, size, mode)
        return self.to_model_input(square, mean, std)
