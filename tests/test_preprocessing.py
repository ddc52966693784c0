"""Tests for the image preprocessing pipeline."""

from __future__ import annotations

import io
import math
from unittest.mock import patch

import numpy as np
import pytest
from conftest import make_image
from PIL import Image

from plantex.errors import InvalidImageError, InvalidOrientationError, PreprocessingError
from plantex.ml.geometry import TensorGeometry, TensorLayout
from plantex.ml.normalization import NormalizationPolicy
from plantex.ml.preprocessing import (
    ImagePreprocessor,
    cast_to_dtype,
    center_crop_square,
    decode_image,
    match_channels,
    quarter_turns,
    resize_nearest,
    rotate_quarter_turns,
    validate_image,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_geometry(**overrides: object) -> TensorGeometry:
    defaults: dict[str, object] = {
        "resize_width": 4,
        "resize_height": 4,
        "channels": 3,
        "layout": TensorLayout.NHWC,
        "input_dtype": np.dtype(np.uint8),
        "output_shape": (1, 3),
        "output_dtype": np.dtype(np.float32),
    }
    defaults.update(overrides)
    return TensorGeometry(**defaults)  # type: ignore[arg-type]


def _png_bytes(width: int, height: int) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(10, 20, 30)).save(buf, format="PNG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Individual steps
# ---------------------------------------------------------------------------


class TestCenterCropSquare:
    def test_landscape_crops_width(self) -> None:
        image = make_image(width=6, height=4)
        cropped = center_crop_square(image)
        assert cropped.shape == (4, 4, 3)
        np.testing.assert_array_equal(cropped, image[:, 1:5])

    def test_portrait_crops_height(self) -> None:
        image = make_image(width=3, height=8)
        cropped = center_crop_square(image)
        assert cropped.shape == (3, 3, 3)
        np.testing.assert_array_equal(cropped, image[2:5, :])

    def test_square_is_unchanged(self) -> None:
        image = make_image(width=5, height=5)
        np.testing.assert_array_equal(center_crop_square(image), image)


class TestResizeNearest:
    def test_same_size_is_identity(self) -> None:
        image = make_image(width=4, height=4)
        np.testing.assert_array_equal(resize_nearest(image, 4, 4), image)

    def test_downscale_picks_nearest_pixels(self) -> None:
        image = make_image(width=4, height=4, channels=1)
        resized = resize_nearest(image, 2, 2)
        np.testing.assert_array_equal(resized, image[::2, ::2])

    def test_upscale_repeats_pixels(self) -> None:
        image = np.array([[[1], [2]], [[3], [4]]], dtype=np.uint8)
        resized = resize_nearest(image, 4, 4)
        assert resized.shape == (4, 4, 1)
        np.testing.assert_array_equal(resized[:, :, 0], [[1, 1, 2, 2], [1, 1, 2, 2], [3, 3, 4, 4], [3, 3, 4, 4]])

    def test_non_square_target(self) -> None:
        resized = resize_nearest(make_image(width=8, height=8), width=4, height=2)
        assert resized.shape == (2, 4, 3)


class TestRotation:
    @pytest.mark.parametrize(
        ("orientation", "expected"),
        [(0, 0), (90, 1), (180, 2), (270, 3), (360, 0), (450, 1), (-90, 3), (-180, 2)],
    )
    def test_quarter_turns(self, orientation: int, expected: int) -> None:
        assert quarter_turns(orientation) == expected

    def test_non_multiple_is_truncated(self) -> None:
        assert quarter_turns(135) == 1
        assert quarter_turns(89.9) == 0
        assert quarter_turns(-135) == 3

    @pytest.mark.parametrize("orientation", [math.nan, math.inf, "90", None, True])
    def test_invalid_orientation_rejected(self, orientation: object) -> None:
        with pytest.raises(InvalidOrientationError):
            quarter_turns(orientation)  # type: ignore[arg-type]

    def test_four_quarter_turns_is_identity(self) -> None:
        image = make_image(width=4, height=4)
        rotated = image
        for _ in range(4):
            rotated = rotate_quarter_turns(rotated, 1)
        np.testing.assert_array_equal(rotated, rotate_quarter_turns(image, 0))

    def test_rotation_is_counter_clockwise(self) -> None:
        image = np.array([[[1], [2]], [[3], [4]]], dtype=np.uint8)
        rotated = rotate_quarter_turns(image, 1)
        np.testing.assert_array_equal(rotated[:, :, 0], [[2, 4], [1, 3]])


class TestChannels:
    def test_grayscale_expanded_to_rgb(self) -> None:
        image = validate_image(np.full((2, 2), 7, dtype=np.uint8))
        rgb = match_channels(image, 3)
        assert rgb.shape == (2, 2, 3)
        assert (rgb == 7).all()

    def test_alpha_dropped(self) -> None:
        rgba = make_image(width=2, height=2, channels=4)
        np.testing.assert_array_equal(match_channels(rgba, 3), rgba[:, :, :3])

    def test_rgb_to_single_channel(self) -> None:
        image = np.array([[[30, 60, 90]]], dtype=np.uint8)
        assert match_channels(image, 1)[0, 0, 0] == 60

    def test_two_channels_rejected(self) -> None:
        with pytest.raises(InvalidImageError):
            match_channels(np.zeros((2, 2, 2), dtype=np.uint8), 3)


class TestValidateImage:
    @pytest.mark.parametrize(
        "image",
        [None, [[1, 2], [3, 4]], np.zeros((0, 4, 3), dtype=np.uint8), np.zeros((4, 0, 3), dtype=np.uint8)],
    )
    def test_rejects_empty_or_non_array(self, image: object) -> None:
        with pytest.raises(InvalidImageError):
            validate_image(image)

    def test_rejects_wrong_rank(self) -> None:
        with pytest.raises(InvalidImageError, match="dimensions"):
            validate_image(np.zeros((1, 2, 2, 3), dtype=np.uint8))


class TestCastToDtype:
    def test_integer_values_saturate(self) -> None:
        values = np.array([-5.0, 12.6, 300.0], dtype=np.float32)
        np.testing.assert_array_equal(cast_to_dtype(values, np.dtype(np.uint8)), [0, 13, 255])

    def test_float_passes_through(self) -> None:
        values = np.array([0.25, 0.5], dtype=np.float32)
        assert cast_to_dtype(values, np.dtype(np.float32)).dtype == np.float32


class TestDecodeImage:
    def test_decodes_png_to_rgb_array(self) -> None:
        image = decode_image(_png_bytes(5, 3))
        assert image.shape == (3, 5, 3)
        assert image.dtype == np.uint8
        assert tuple(image[0, 0]) == (10, 20, 30)

    def test_garbage_rejected(self) -> None:
        with pytest.raises(InvalidImageError, match="decode"):
            decode_image(b"not an image")

    def test_empty_rejected(self) -> None:
        with pytest.raises(InvalidImageError):
            decode_image(b"")

    def test_pixel_limit(self) -> None:
        with pytest.raises(InvalidImageError, match="limit"):
            decode_image(_png_bytes(10, 10), max_pixels=99)


# ---------------------------------------------------------------------------
# Full pipeline
# ---------------------------------------------------------------------------


class TestImagePreprocessor:
    def test_correctly_sized_image_passes_through(self) -> None:
        geometry = _make_geometry()
        preprocessor = ImagePreprocessor(geometry, NormalizationPolicy())
        image = make_image(width=4, height=4)

        tensor = preprocessor.preprocess(image, 0)

        assert tensor.shape == (1, 4, 4, 3)
        assert tensor.dtype == np.uint8
        np.testing.assert_array_equal(tensor[0], image)

    def test_crop_resize_then_rotate(self) -> None:
        geometry = _make_geometry(resize_width=2, resize_height=2, channels=1)
        preprocessor = ImagePreprocessor(geometry, NormalizationPolicy())
        image = np.arange(24, dtype=np.uint8).reshape(4, 6, 1)

        tensor = preprocessor.preprocess(image, 90)

        expected = np.rot90(image[:, 1:5][::2, ::2], k=1)
        np.testing.assert_array_equal(tensor[0], expected)

    def test_float_model_scaled_to_unit_range(self) -> None:
        geometry = _make_geometry(input_dtype=np.dtype(np.float32))
        preprocessor = ImagePreprocessor(geometry, NormalizationPolicy.for_input(geometry.input_dtype))
        image = np.full((4, 4, 3), 255, dtype=np.uint8)

        tensor = preprocessor.preprocess(image)

        assert tensor.dtype == np.float32
        np.testing.assert_allclose(tensor, 1.0)

    def test_nchw_layout(self) -> None:
        geometry = _make_geometry(layout=TensorLayout.NCHW)
        preprocessor = ImagePreprocessor(geometry, NormalizationPolicy())
        image = make_image(width=4, height=4)

        tensor = preprocessor.preprocess(image)

        assert tensor.shape == (1, 3, 4, 4)
        np.testing.assert_array_equal(tensor[0, 1], image[:, :, 1])

    @pytest.mark.parametrize("orientation", [0, 90, 180, 270])
    def test_non_square_model_keeps_declared_shape(self, orientation: int) -> None:
        geometry = _make_geometry(resize_width=4, resize_height=2)
        preprocessor = ImagePreprocessor(geometry, NormalizationPolicy())

        assert preprocessor.preprocess(make_image(8, 8), orientation).shape == (1, 2, 4, 3)

    def test_non_square_quarter_turn_resizes_transposed(self) -> None:
        geometry = _make_geometry(resize_width=4, resize_height=2)
        preprocessor = ImagePreprocessor(geometry, NormalizationPolicy())
        image = make_image(8, 8)

        tensor = preprocessor.preprocess(image, 90)

        np.testing.assert_array_equal(tensor[0], np.rot90(image[::2, ::4], k=1))

    def test_shape_mismatch_raises(self) -> None:
        preprocessor = ImagePreprocessor(_make_geometry(), NormalizationPolicy())
        with patch("plantex.ml.preprocessing.rotate_quarter_turns", return_value=np.zeros((3, 3, 3))):
            with pytest.raises(PreprocessingError):
                preprocessor.preprocess(make_image(4, 4))

    def test_zero_area_image_rejected(self) -> None:
        preprocessor = ImagePreprocessor(_make_geometry(), NormalizationPolicy())
        with pytest.raises(InvalidImageError):
            preprocessor.preprocess(np.zeros((0, 0, 3), dtype=np.uint8))
