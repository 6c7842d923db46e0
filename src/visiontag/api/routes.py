"""API route definitions."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, UploadFile, status

from visiontag.api.dependencies import get_classifier, get_inference_pool, get_model_manager, get_settings
from visiontag.api.middleware import verify_api_key
from visiontag.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from visiontag.formatting import format_failure, format_predictions
from visiontag.ml.image_classifier import ClassificationError
from visiontag.ml.model_manager import MODEL_REGISTRY
from visiontag.ml.preprocessing import ImageTooLargeError, ImageValidationError, Orientation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    orientation: Annotated[int | None, Form(ge=1, le=8, description="EXIF orientation tag (1-8)")] = None,
    top_k: Annotated[int | None, Query(ge=1, le=20)] = None,
) -> ClassifyImageResponse:
    """Classify an uploaded photo and return ranked tags plus a text summary."""
    settings = get_settings(request)
    pool = get_inference_pool(request)
    classifier = get_classifier(request)

    contents = await file.read(settings.max_file_size + 1)
    if len(contents) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    tag = Orientation(orientation) if orientation is not None else None
    try:
        results = await pool.run(classifier.classify, contents, tag, top_k)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from None
    except ImageTooLargeError as exc:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=str(exc)) from exc
    except ImageValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ClassificationError as exc:
        logger.warning("Returning no predictions for %s: %s", file.filename, exc)
        return ClassifyImageResponse(model=classifier.model_name, tags=[], summary=format_failure())

    return ClassifyImageResponse(
        model=classifier.model_name,
        tags=[
            ImageTag(label=r.label, confidence=r.confidence, confidence_text=r.confidence_text) for r in results
        ],
        summary=format_predictions(results, settings.summary_limit),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the classification models and which one is active."""
    active = get_settings(request).classification_model
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                input_size=spec.input_size,
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
