"""Inference engine capability and its ONNX Runtime implementation.

The classifier never looks inside a model. It only needs tensor shape/type
introspection and a ``run`` call that fills an output buffer in place, which
is what ``InferenceEngine`` describes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from plantex.errors import ModelLoadError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from plantex.config import Settings

logger = logging.getLogger(__name__)

# Dimensions may be symbolic (str) or unknown (None) for dynamic axes.
Dim = int | str | None
Shape = tuple[Dim, ...]

_ONNX_DTYPES: dict[str, np.dtype] = {
    "tensor(float)": np.dtype(np.float32),
    "tensor(float16)": np.dtype(np.float16),
    "tensor(double)": np.dtype(np.float64),
    "tensor(uint8)": np.dtype(np.uint8),
    "tensor(int8)": np.dtype(np.int8),
    "tensor(uint16)": np.dtype(np.uint16),
    "tensor(int16)": np.dtype(np.int16),
    "tensor(int32)": np.dtype(np.int32),
    "tensor(int64)": np.dtype(np.int64),
}


class InferenceEngine(Protocol):
    """Protocol for an opaque, already-loaded model."""

    def get_input_shape(self, index: int) -> Shape:
        """Return the declared shape of input tensor ``index``."""
        ...

    def get_input_type(self, index: int) -> np.dtype:
        """Return the element type of input tensor ``index``."""
        ...

    def get_output_shape(self, index: int) -> Shape:
        """Return the declared shape of output tensor ``index``."""
        ...

    def get_output_type(self, index: int) -> np.dtype:
        """Return the element type of output tensor ``index``."""
        ...

    def run(self, inputs: NDArray[np.generic], outputs: NDArray[np.generic]) -> None:
        """Run the model on ``inputs`` and write the result into ``outputs``."""
        ...


def build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """Return the ONNX Runtime execution providers for the configured device."""
    device = settings.device
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    """Return session options with the configured threading."""
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


def _to_dtype(onnx_type: str) -> np.dtype:
    try:
        return _ONNX_DTYPES[onnx_type]
    except KeyError:
        raise ModelLoadError(f"Unsupported tensor element type: {onnx_type}") from None


class OnnxInferenceEngine:
    """Runs a single-input, single-output ONNX model with ONNX Runtime."""

    def __init__(
        self,
        model: bytes | str | Path,
        *,
        providers: list[str | tuple[str, dict[str, object]]] | None = None,
        session_options: SessionOptions | None = None,
    ) -> None:
        source = bytes(model) if isinstance(model, (bytes, bytearray)) else str(model)
        try:
            self._session = InferenceSession(
                source,
                sess_options=session_options,
                providers=providers or ["CPUExecutionProvider"],
            )
        except Exception as exc:  # onnxruntime raises several unrelated exception types
            raise ModelLoadError(f"Could not load ONNX model: {exc}") from exc

        self._inputs = self._session.get_inputs()
        self._outputs = self._session.get_outputs()
        if not self._inputs or not self._outputs:
            raise ModelLoadError("ONNX model must declare at least one input and one output")
        logger.debug(
            "ONNX session ready (input=%s %s, output=%s %s)",
            self._inputs[0].name,
            self._inputs[0].shape,
            self._outputs[0].name,
            self._outputs[0].shape,
        )

    def get_input_shape(self, index: int) -> Shape:
        return tuple(self._inputs[index].shape)

    def get_input_type(self, index: int) -> np.dtype:
        return _to_dtype(self._inputs[index].type)

    def get_output_shape(self, index: int) -> Shape:
        return tuple(self._outputs[index].shape)

    def get_output_type(self, index: int) -> np.dtype:
        return _to_dtype(self._outputs[index].type)

    def run(self, inputs: NDArray[np.generic], outputs: NDArray[np.generic]) -> None:
        result = self._session.run([self._outputs[0].name], {self._inputs[0].name: inputs})[0]
        np.copyto(outputs, np.asarray(result).reshape(outputs.shape))
