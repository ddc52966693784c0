"""Image preprocessing pipeline.

Turns an ``HxWxC`` image plus a sensor orientation into the exact input
tensor a model declares. The steps always run in this order:

    channel match -> center square crop -> nearest-neighbour resize
    -> rotate by quarter turns -> normalize -> layout/batch/dtype

Rotation comes after crop and resize. For non-square models an odd number
of quarter turns resizes to the transposed size so the rotated buffer fits.
"""

from __future__ import annotations

import io
import logging
import math
import numbers
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from plantex.errors import InvalidImageError, InvalidOrientationError, PreprocessingError
from plantex.ml.geometry import TensorLayout

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from plantex.ml.geometry import TensorGeometry
    from plantex.ml.normalization import NormalizationPolicy

logger = logging.getLogger(__name__)


def decode_image(data: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Raises:
        InvalidImageError: If the bytes are not a decodable image or the image
            has more than ``max_pixels`` pixels.
    """
    if not data:
        raise InvalidImageError("Image data is empty")
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise InvalidImageError(f"Image has {width * height} pixels, limit is {max_pixels}")
            return np.asarray(img.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise InvalidImageError(f"Could not decode image: {exc}") from exc


def validate_image(image: object) -> NDArray[np.generic]:
    """Return ``image`` as an ``HxWxC`` array, or raise if it has no pixels."""
    if image is None:
        raise InvalidImageError("No image supplied")
    if not isinstance(image, np.ndarray):
        raise InvalidImageError(f"Expected a numpy array, got {type(image).__name__}")
    if image.ndim == 2:
        image = image[:, :, np.newaxis]
    if image.ndim != 3:
        raise InvalidImageError(f"Expected an HxW or HxWxC image, got {image.ndim} dimensions")
    height, width, channels = image.shape
    if height == 0 or width == 0 or channels == 0:
        raise InvalidImageError(f"Image has zero area ({width}x{height}x{channels})")
    return image


def match_channels(image: NDArray[np.generic], channels: int) -> NDArray[np.generic]:
    """Convert an image to the channel count the model expects."""
    current = image.shape[2]
    if current == channels:
        return image
    if channels == 1:
        rgb = image[:, :, :3]
        return rgb.mean(axis=2, keepdims=True).astype(image.dtype)
    if current == 1:
        return np.repeat(image, channels, axis=2)
    if current > channels:
        # Drop alpha
        return image[:, :, :channels]
    raise InvalidImageError(f"Cannot convert a {current}-channel image to {channels} channels")


def center_crop_square(image: NDArray[np.generic]) -> NDArray[np.generic]:
    """Crop the largest centered square out of the image."""
    height, width = image.shape[:2]
    size = min(height, width)
    top = (height - size) // 2
    left = (width - size) // 2
    return image[top : top + size, left : left + size]


def resize_nearest(image: NDArray[np.generic], width: int, height: int) -> NDArray[np.generic]:
    """Resize with nearest-neighbour sampling. Same-size input is returned unchanged."""
    src_height, src_width = image.shape[:2]
    if (src_width, src_height) == (width, height):
        return image
    rows = (np.arange(height) * src_height) // height
    cols = (np.arange(width) * src_width) // width
    return image[rows[:, np.newaxis], cols]


def quarter_turns(orientation: float) -> int:
    """Number of counter-clockwise quarter turns (0-3) for a sensor orientation.

    ``orientation / 90`` is truncated toward zero, so 135 degrees gives one
    turn and -90 gives three.
    """
    if isinstance(orientation, bool) or not isinstance(orientation, numbers.Real):
        raise InvalidOrientationError(f"Orientation must be a number of degrees, got {orientation!r}")
    if not math.isfinite(orientation):
        raise InvalidOrientationError(f"Orientation must be finite, got {orientation!r}")
    turns = math.trunc(orientation / 90)
    if orientation % 90:
        logger.debug("Orientation %s is not a multiple of 90, using %d quarter turns", orientation, turns)
    return turns % 4


def rotate_quarter_turns(image: NDArray[np.generic], turns: int) -> NDArray[np.generic]:
    """Rotate the image counter-clockwise by ``turns`` quarter turns."""
    return np.rot90(image, k=turns % 4, axes=(0, 1))


def cast_to_dtype(values: NDArray[np.float32], dtype: np.dtype) -> NDArray[np.generic]:
    """Cast normalized values to the model's element type, saturating integers."""
    dtype = np.dtype(dtype)
    if dtype.kind in "ui":
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    return values.astype(dtype)


class ImagePreprocessor:
    """Builds input tensors for one model geometry and normalization policy."""

    def __init__(self, geometry: TensorGeometry, policy: NormalizationPolicy) -> None:
        self._geometry = geometry
        self._policy = policy

    @property
    def policy(self) -> NormalizationPolicy:
        return self._policy

    def preprocess(self, image: object, orientation: float = 0) -> NDArray[np.generic]:
        """Run the full pipeline and return a batch-of-one input tensor.

        Raises:
            InvalidImageError: If the image is empty or has an unusable channel count.
            InvalidOrientationError: If the orientation is not a finite number.
            PreprocessingError: If the result does not match the model input shape.
        """
        geometry = self._geometry
        turns = quarter_turns(orientation)

        pixels = match_channels(validate_image(image), geometry.channels)
        pixels = center_crop_square(pixels)
        width, height = geometry.resize_width, geometry.resize_height
        if turns % 2:
            # A quarter turn swaps the axes, so resize to the transposed size first.
            width, height = height, width
        pixels = resize_nearest(pixels, width, height)
        pixels = rotate_quarter_turns(pixels, turns)
        values = self._policy.apply(pixels)

        if geometry.layout is TensorLayout.NCHW:
            values = values.transpose(2, 0, 1)
        tensor = cast_to_dtype(values[np.newaxis], geometry.input_dtype)

        if tensor.shape != geometry.input_shape:
            raise PreprocessingError(
                f"Preprocessed tensor has shape {tensor.shape}, model expects {geometry.input_shape}"
            )
        return tensor
