"""Shared test fixtures: an in-memory inference engine standing in for a model."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from plantex.ml.engine import Shape


class StubEngine:
    """InferenceEngine that returns a fixed output vector and records its inputs."""

    def __init__(
        self,
        output: list[float] | NDArray[np.generic],
        *,
        input_shape: Shape = (1, 4, 4, 3),
        input_dtype: type[np.generic] = np.uint8,
        output_shape: Shape | None = None,
        output_dtype: type[np.generic] = np.float32,
        error: Exception | None = None,
    ) -> None:
        self.output = np.asarray(output, dtype=output_dtype)
        self.input_shape = input_shape
        self.input_dtype = np.dtype(input_dtype)
        self.output_shape = output_shape if output_shape is not None else (1, self.output.size)
        self.output_dtype = np.dtype(output_dtype)
        self.error = error
        self.inputs: list[NDArray[np.generic]] = []

    def get_input_shape(self, index: int) -> Shape:
        return self.input_shape

    def get_input_type(self, index: int) -> np.dtype:
        return self.input_dtype

    def get_output_shape(self, index: int) -> Shape:
        return self.output_shape

    def get_output_type(self, index: int) -> np.dtype:
        return self.output_dtype

    def run(self, inputs: NDArray[np.generic], outputs: NDArray[np.generic]) -> None:
        self.inputs.append(inputs.copy())
        if self.error is not None:
            raise self.error
        np.copyto(outputs, self.output.reshape(outputs.shape))


def make_image(width: int, height: int, channels: int = 3) -> NDArray[np.uint8]:
    """Image whose pixel values encode their position, so crops and rotations are traceable."""
    count = width * height * channels
    return (np.arange(count) % 251).astype(np.uint8).reshape(height, width, channels)


@pytest.fixture()
def animal_engine() -> StubEngine:
    return StubEngine([0.1, 0.9, 0.0])


@pytest.fixture()
def animal_labels() -> list[str]:
    return ["cat", "dog", "bird"]
