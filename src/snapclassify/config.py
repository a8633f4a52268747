"""Environment-based configuration for SnapClassify."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SNAPCLASSIFY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPCLASSIFY_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # Browser origins allowed to call the API; credentials are only sent to listed origins
    cors_origins: list[str] = ["*"]

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    classification_model: str = "resnet50_v1"
    models_dir: str = "models"
    # HuggingFace repo holding the ONNX files and synset.txt (None = registry default).
    # Files already present in models_dir are used without contacting the hub.
    model_repo_id: str | None = None

    # Model input buffer
    input_width: int = Field(default=224, gt=0)
    input_height: int = Field(default=224, gt=0)
    pixel_format: Literal["ARGB32", "BGRA32", "RGBA32"] = "ARGB32"
    buffer_origin: Literal["top_left", "bottom_left"] = "top_left"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency (one classification in flight by default)
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
