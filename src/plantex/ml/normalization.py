"""Affine normalization applied to model inputs and outputs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray


@dataclass(frozen=True)
class NormalizationPolicy:
    """Computes ``(value - mean) / std`` element-wise.

    Quantized models take raw byte-range pixels (pass-through) and emit
    scores that need dividing by 255; float models want pixels scaled to
    ``[0, 1]`` and already emit probabilities.
    """

    mean: float = 0.0
    std: float = 1.0

    def __post_init__(self) -> None:
        if self.std == 0:
            raise ValueError("Normalization std must be non-zero")

    @property
    def is_identity(self) -> bool:
        return self.mean == 0 and self.std == 1

    def apply(self, values: NDArray[np.generic]) -> NDArray[np.float32]:
        out = values.astype(np.float32)
        if not self.is_identity:
            out = (out - np.float32(self.mean)) / np.float32(self.std)
        return out

    @classmethod
    def for_input(cls, dtype: np.dtype) -> NormalizationPolicy:
        """Pick the pixel normalization for a model input element type."""
        dtype = np.dtype(dtype)
        if dtype.kind == "f":
            return cls(mean=0.0, std=255.0)
        if dtype == np.int8:
            return cls(mean=128.0, std=1.0)
        return cls()

    @classmethod
    def for_output(cls, dtype: np.dtype) -> NormalizationPolicy:
        """Pick the dequantization for a model output element type."""
        dtype = np.dtype(dtype)
        if dtype == np.uint8:
            return cls(mean=0.0, std=255.0)
        if dtype == np.int8:
            return cls(mean=-128.0, std=255.0)
        return cls()
