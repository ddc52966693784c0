"""Tensor geometry: what the model's input and output tensors look like.

Resolved once when a classifier is built and never re-read afterwards.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from plantex.errors import ModelLoadError

if TYPE_CHECKING:
    from plantex.ml.engine import Dim, InferenceEngine, Shape

INPUT_TENSOR_INDEX = 0
OUTPUT_TENSOR_INDEX = 0

_CHANNEL_COUNTS = (1, 3, 4)


class TensorLayout(StrEnum):
    NHWC = "nhwc"
    NCHW = "nchw"


@dataclass(frozen=True)
class TensorGeometry:
    """Concrete input/output tensor metadata for one model (batch size 1)."""

    resize_width: int
    resize_height: int
    channels: int
    layout: TensorLayout
    input_dtype: np.dtype
    output_shape: tuple[int, ...]
    output_dtype: np.dtype

    @property
    def input_shape(self) -> tuple[int, int, int, int]:
        if self.layout is TensorLayout.NHWC:
            return (1, self.resize_height, self.resize_width, self.channels)
        return (1, self.channels, self.resize_height, self.resize_width)

    @property
    def num_classes(self) -> int:
        return math.prod(self.output_shape)


def _is_dynamic(dim: Dim) -> bool:
    return dim is None or isinstance(dim, str) or dim < 0


def _concrete(dim: Dim, what: str) -> int:
    if _is_dynamic(dim) or isinstance(dim, bool) or dim == 0:
        raise ModelLoadError(f"Model {what} must be a fixed positive size, got {dim!r}")
    return int(dim)  # type: ignore[arg-type]


def _check_dtype(dtype: np.dtype, what: str) -> np.dtype:
    dtype = np.dtype(dtype)
    if dtype.kind not in "uif":
        raise ModelLoadError(f"Model {what} has non-numeric element type {dtype}")
    return dtype


def _resolve_batch(dim: Dim, what: str) -> None:
    if not _is_dynamic(dim) and dim != 1:
        raise ModelLoadError(f"Model {what} has fixed batch size {dim}; only batch size 1 is supported")


def _resolve_input(shape: Shape) -> tuple[int, int, int, TensorLayout]:
    if len(shape) != 4:
        raise ModelLoadError(f"Model input must be a rank-4 image tensor, got shape {list(shape)}")
    _resolve_batch(shape[0], "input")

    if shape[3] in _CHANNEL_COUNTS:
        layout = TensorLayout.NHWC
        height, width, channels = shape[1], shape[2], shape[3]
    elif shape[1] in _CHANNEL_COUNTS:
        layout = TensorLayout.NCHW
        channels, height, width = shape[1], shape[2], shape[3]
    else:
        raise ModelLoadError(f"Cannot find a 1, 3 or 4 channel dimension in input shape {list(shape)}")

    return _concrete(width, "input width"), _concrete(height, "input height"), int(channels), layout  # type: ignore[arg-type]


def _resolve_output(shape: Shape) -> tuple[int, ...]:
    if not shape:
        raise ModelLoadError("Model output must have at least one dimension")
    dims = list(shape)
    if len(dims) > 1:
        _resolve_batch(dims[0], "output")
        if _is_dynamic(dims[0]):
            dims[0] = 1
    return tuple(_concrete(dim, "output dimension") for dim in dims)


def resolve_geometry(engine: InferenceEngine) -> TensorGeometry:
    """Read the declared shapes and element types of the model's first input and output.

    Raises:
        ModelLoadError: If the model's tensors cannot be used for image classification.
    """
    width, height, channels, layout = _resolve_input(engine.get_input_shape(INPUT_TENSOR_INDEX))
    return TensorGeometry(
        resize_width=width,
        resize_height=height,
        channels=channels,
        layout=layout,
        input_dtype=_check_dtype(engine.get_input_type(INPUT_TENSOR_INDEX), "input"),
        output_shape=_resolve_output(engine.get_output_shape(OUTPUT_TENSOR_INDEX)),
        output_dtype=_check_dtype(engine.get_output_type(OUTPUT_TENSOR_INDEX), "output"),
    )
