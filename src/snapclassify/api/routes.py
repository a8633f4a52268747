"""API route definitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from snapclassify.api.dependencies import (
    get_display,
    get_inference_pool,
    get_model_manager,
    get_pipeline,
    get_settings,
    verify_api_key,
)
from snapclassify.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageSource,
    ModelInfo,
    ModelsResponse,
    PredictionResponse,
)
from snapclassify.errors import (
    AllocationError,
    ClassificationError,
    InferenceError,
    ModelLoadError,
    ModelUnavailableError,
)
from snapclassify.ml.model_manager import MODEL_REGISTRY

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERROR_STATUS: dict[type[ClassificationError], int] = {
    AllocationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ModelUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ModelLoadError: status.HTTP_503_SERVICE_UNAVAILABLE,
    InferenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _status_for(error: ClassificationError) -> int:
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a captured or picked photo",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    source: ImageSource = ImageSource.LIBRARY,
) -> ClassifyImageResponse:
    """Classify one uploaded image and update the displayed prediction.

    On any failure the displayed prediction is left as it was.
    """
    settings = get_settings(request)
    image_bytes = await file.read(settings.max_file_size + 1)
    if not image_bytes:
        # An empty upload is a cancelled pick.
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No image was selected")
    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image exceeds {settings.max_file_size} bytes",
        )

    pipeline = get_pipeline(request)
    try:
        outcome = await get_inference_pool(request).run(pipeline.run_bytes, image_bytes)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Another classification is still running",
        ) from None

    if outcome.error is not None or outcome.result is None:
        error = outcome.error or InferenceError("Classification produced no result")
        raise HTTPException(status_code=_status_for(error), detail=str(error))

    get_display(request).apply(outcome)
    result = outcome.result
    logger.info("Classified %s image as %r (%s)", source, result.cleaned_label, result.formatted_probability)
    return ClassifyImageResponse(
        raw_label=result.raw_label,
        label=result.cleaned_label,
        probability=result.probability,
        formatted_probability=result.formatted_probability,
        text=result.describe(),
        source=source,
    )


@router.get(
    "/prediction",
    response_model=PredictionResponse,
    summary="Current prediction text",
)
async def current_prediction(request: Request) -> PredictionResponse:
    """Return the sentence for the last successful classification."""
    return PredictionResponse(text=get_display(request).text)


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
        model_loaded=get_pipeline(request).model_available,
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
    """Return known models and whether the configured one is serving."""
    settings = get_settings(request)
    model_available = get_pipeline(request).model_available

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name != settings.classification_model:
            model_status = "available"
        elif model_available:
            model_status = "active"
        else:
            model_status = "unavailable"

        models.append(
            ModelInfo(
                name=spec.name,
                input_size=spec.input_size,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
