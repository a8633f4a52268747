"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from snapclassify.config import Settings

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snapclassify.api.routes import router
from snapclassify.config import get_settings
from snapclassify.ml.inference import InferencePool
from snapclassify.ml.model_manager import OnnxModelManager, load_model_or_none
from snapclassify.ml.pipeline import ClassificationPipeline, PredictionDisplay
from snapclassify.ml.preprocessing import ImageNormalizer

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Load the model once and attach the request-serving objects to the app."""
    model_manager = OnnxModelManager(settings)
    model = load_model_or_none(model_manager, settings.classification_model)

    app.state.settings = settings
    app.state.model_manager = model_manager
    app.state.pipeline = ClassificationPipeline(ImageNormalizer(settings), model)
    app.state.display = PredictionDisplay()
    app.state.inference_pool = InferencePool(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapClassify (device=%s, model=%s, input=%sx%s %s)",
        settings.device,
        settings.classification_model,
        settings.input_width,
        settings.input_height,
        settings.pixel_format,
    )

    init_state(app, settings)
    if not app.state.pipeline.model_available:
        logger.warning("SnapClassify running without a model; classify requests will fail")

    logger.info("SnapClassify ready")
    yield

    logger.info("Shutting down SnapClassify")
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("SnapClassify shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapClassify",
        description="Classify a captured or picked photo with a pretrained ImageNet model",
        version="0.1.0",
        lifespan=lifespan,
    )

    origins = get_settings().cors_origins
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn."""
    settings = get_settings()
    uvicorn.run("snapclassify.main:app", host=settings.host, port=settings.port)
