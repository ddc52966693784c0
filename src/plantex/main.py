"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from plantex.api.routes import router
from plantex.config import get_settings
from plantex.ml.inference import InferencePool
from plantex.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Plantex (device=%s, max_concurrent=%s, model=%s, top_k=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_name,
        settings.top_k,
    )

    model_manager = OnnxModelManager(settings)
    if settings.preload_model:
        model_manager.get_classifier()
    app.state.model_manager = model_manager

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    logger.info("Plantex ready")
    yield

    logger.info("Shutting down Plantex")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("Plantex shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Plantex",
        description="Image classification API for pre-trained ONNX models",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def main() -> None:
    """Run the API server with uvicorn."""
    settings = get_settings()
    uvicorn.run("plantex.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
