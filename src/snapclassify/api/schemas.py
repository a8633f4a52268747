"""Pydantic request/response schemas for the SnapClassify API."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class ImageSource(StrEnum):
    """Where the client got the photo from."""

    CAMERA = "camera"
    LIBRARY = "library"


class ClassifyImageResponse(BaseModel):
    """Top prediction for one uploaded image."""

    raw_label: str = Field(description="Label as reported by the model, qualifiers included")
    label: str = Field(description="Label with any comma-separated qualifier removed")
    probability: float = Field(ge=0.0, le=1.0)
    formatted_probability: str = Field(description="Probability as a percentage, e.g. '87.34%'")
    text: str = Field(description="Sentence to display to the user")
    source: ImageSource


class PredictionResponse(BaseModel):
    """The prediction sentence currently on display."""

    text: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    input_size: int
    status: str = Field(description="Model status: 'active', 'unavailable', or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
