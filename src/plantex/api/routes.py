"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from plantex.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from plantex.errors import (
    InferenceError,
    InvalidImageError,
    InvalidOrientationError,
    LabelMismatchError,
    ModelLoadError,
    PreprocessingError,
)
from plantex.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from plantex.config import Settings
    from plantex.ml.inference import InferencePool
    from plantex.ml.model_manager import ModelManager
    from plantex.ml.postprocessing import Recognition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _classify(manager: ModelManager, data: bytes, orientation: float, max_pixels: int) -> list[Recognition]:
    # Runs on a worker thread: decoding and first-use model loading block too.
    image = decode_image(data, max_pixels=max_pixels)
    return manager.get_classifier().classify(image, orientation)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    orientation: Annotated[float, Form(description="Sensor orientation in degrees")] = 0,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    pool = _get_inference_pool(request)

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(status.HTTP_413_CONTENT_TOO_LARGE, f"File exceeds {settings.max_file_size} bytes")

    try:
        results = await pool.run(_classify, manager, data, orientation, settings.max_image_pixels)
    except (InvalidImageError, InvalidOrientationError) as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_CONTENT, str(exc))
    except (ModelLoadError, LabelMismatchError) as exc:
        logger.error("Model unavailable: %s", exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, f"Model unavailable: {exc}")
    except (InferenceError, PreprocessingError) as exc:
        logger.exception("Classification failed for %s", file.filename)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, try again later")

    return ClassifyImageResponse(
        model=manager.model_name,
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in results],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the configured model and whether it is loaded."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    loaded = manager.get_loaded_models()
    return ModelsResponse(
        models=[
            ModelInfo(
                name=manager.model_name,
                status="active" if manager.model_name in loaded else "available",
                top_k=settings.top_k,
            )
        ]
    )
