"""Request dependencies: API key authentication and access to app state."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from snapclassify.config import Settings
    from snapclassify.ml.inference import InferencePool
    from snapclassify.ml.model_manager import OnnxModelManager
    from snapclassify.ml.pipeline import ClassificationPipeline, PredictionDisplay

_bearer_scheme = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def get_display(request: Request) -> PredictionDisplay:
    display: PredictionDisplay = request.app.state.display
    return display


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require 'Authorization: Bearer <key>' when SNAPCLASSIFY_API_KEY is set."""
    expected = get_settings(request).api_key
    if expected is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
