"""Image classifier: preprocess, run the model once, rank the labeled scores."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from plantex.errors import InferenceError, LabelMismatchError, ModelLoadError
from plantex.ml.engine import OnnxInferenceEngine
from plantex.ml.geometry import resolve_geometry
from plantex.ml.normalization import NormalizationPolicy
from plantex.ml.postprocessing import MAX_RESULTS, Postprocessor
from plantex.ml.preprocessing import ImagePreprocessor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from plantex.ml.engine import InferenceEngine
    from plantex.ml.geometry import TensorGeometry
    from plantex.ml.postprocessing import Recognition

logger = logging.getLogger(__name__)


class ImageClassifier:
    """Owns one model, its labels, and the tensor buffers reused across calls.

    ``classify`` is serialized per instance because the input and output
    buffers are overwritten on every call. Create one instance per worker if
    calls need to run in parallel.
    """

    def __init__(
        self,
        model: bytes | str | Path | InferenceEngine,
        labels: Sequence[str],
        *,
        top_k: int = MAX_RESULTS,
        input_policy: NormalizationPolicy | None = None,
        output_policy: NormalizationPolicy | None = None,
        name: str = "classifier",
    ) -> None:
        """Load the model and check it against the labels.

        Args:
            model: Serialized ONNX model, a path to one, or an already-loaded inference engine.
            labels: One label per model output class, in output order.
            top_k: Maximum number of results returned by ``classify``.
            input_policy: Pixel normalization; chosen from the input element type if omitted.
            output_policy: Score dequantization; chosen from the output element type if omitted.
            name: Identifier used in logs and API responses.

        Raises:
            ModelLoadError: If the model cannot be loaded or its tensors are unusable.
            LabelMismatchError: If the label count differs from the model's output length.
        """
        if top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {top_k}")
        labels = tuple(labels)
        engine = _as_engine(model)
        geometry = resolve_geometry(engine)
        if geometry.num_classes != len(labels):
            raise LabelMismatchError(expected=geometry.num_classes, actual=len(labels))

        self._name = name
        self._engine = engine
        self._geometry = geometry
        self._labels = labels
        self._top_k = top_k
        self._preprocessor = ImagePreprocessor(
            geometry, input_policy or NormalizationPolicy.for_input(geometry.input_dtype)
        )
        self._postprocessor = Postprocessor(
            labels, output_policy or NormalizationPolicy.for_output(geometry.output_dtype), top_k
        )

        self._input_buffer = np.zeros(geometry.input_shape, dtype=geometry.input_dtype)
        self._output_buffer = np.zeros(geometry.output_shape, dtype=geometry.output_dtype)
        self._lock = threading.Lock()

        logger.info(
            "Classifier %s ready (input=%dx%dx%d %s %s, output=%s %s, labels=%d, top_k=%d)",
            name,
            geometry.resize_width,
            geometry.resize_height,
            geometry.channels,
            geometry.layout,
            geometry.input_dtype,
            list(geometry.output_shape),
            geometry.output_dtype,
            len(labels),
            top_k,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def geometry(self) -> TensorGeometry:
        return self._geometry

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def top_k(self) -> int:
        return self._top_k

    def classify(self, image: NDArray[np.generic], orientation: float = 0) -> list[Recognition]:
        """Classify an image and return ranked labels.

        Args:
            image: HxWxC (or HxW) pixel array, normally RGB uint8.
            orientation: Sensor orientation in degrees; only ``orientation / 90``
                truncated toward zero matters.

        Returns:
            At most ``top_k`` results sorted by confidence (descending).

        Raises:
            InvalidImageError: If the image is empty or not an array.
            InvalidOrientationError: If the orientation is not a finite number.
            InferenceError: If the inference engine fails.
        """
        with self._lock:
            tensor = self._preprocessor.preprocess(image, orientation)
            np.copyto(self._input_buffer, tensor)
            self._invoke()
            return self._postprocessor.process(self._output_buffer)

    def _invoke(self) -> None:
        self._output_buffer.fill(0)
        try:
            self._engine.run(self._input_buffer, self._output_buffer)
        except Exception as exc:  # engine internals are opaque; any failure is an inference failure
            raise InferenceError(f"Inference failed for {self._name}: {exc}") from exc


_ENGINE_METHODS = ("get_input_shape", "get_input_type", "get_output_shape", "get_output_type", "run")


def _as_engine(model: object) -> InferenceEngine:
    if isinstance(model, (bytes, bytearray, str, Path)):
        return OnnxInferenceEngine(model)
    if not all(callable(getattr(model, method, None)) for method in _ENGINE_METHODS):
        raise ModelLoadError(
            f"Expected ONNX model bytes, a model path or an inference engine, got {type(model).__name__}"
        )
    return model  # type: ignore[return-value]
