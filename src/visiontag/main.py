"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from visiontag.ml.model_manager import ModelManager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from visiontag.api.routes import router
from visiontag.config import get_settings
from visiontag.ml.image_classifier import OnnxImageClassifier
from visiontag.ml.inference import InferencePool
from visiontag.ml.model_manager import OnnxModelManager
from visiontag.ml.preprocessing import PillowPreprocessor

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0


async def _evict_idle_models(manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            manager.unload_idle_models()
        except Exception:
            logger.exception("Idle model eviction failed")


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
        "Starting VisionTag (device=%s, max_concurrent=%s, model=%s, crop_mode=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.crop_mode,
    )

    model_manager = OnnxModelManager(settings)
    classifier = OnnxImageClassifier(settings, model_manager, PillowPreprocessor(settings))
    inference_pool = InferencePool(settings)
    app.state.model_manager = model_manager
    app.state.classifier = classifier
    app.state.inference_pool = inference_pool

    if settings.preload_model:
        await inference_pool.run(classifier.warm_up)

    eviction_task = None
    if settings.model_ttl > 0:
        interval = min(EVICTION_INTERVAL_SECONDS, float(settings.model_ttl))
        eviction_task = asyncio.create_task(_evict_idle_models(model_manager, interval))

    logger.info("VisionTag ready")
    yield

    logger.info("Shutting down VisionTag")
    if eviction_task is not None:
        eviction_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await eviction_task
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("VisionTag shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VisionTag",
        description="Image classification API: upload a photo, get ranked MobileNet tags",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using VISIONTAG_HOST/PORT."""
    settings = get_settings()
    uvicorn.run(
        "visiontag.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
