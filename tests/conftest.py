"""Shared test helpers."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pytest
from PIL import Image

if TYPE_CHECKING:
    from snapclassify.ml.preprocessing import ModelInputBuffer


class FakeClassifier:
    """Stands in for a loaded ONNX model; records every buffer it sees."""

    model_name = "fake"

    def __init__(
        self,
        top_label: str = "goldfish, Carassius auratus",
        label_probs: dict[str, float] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.top_label = top_label
        self.label_probs = label_probs if label_probs is not None else {top_label: 0.9123}
        self.error = error
        self.calls: list[ModelInputBuffer] = []

    def predict(self, buffer: ModelInputBuffer) -> tuple[str, dict[str, float]]:
        self.calls.append(buffer)
        if self.error is not None:
            raise self.error
        return self.top_label, self.label_probs


def encode_image(image: Image.Image, fmt: str = "PNG") -> bytes:
    out = io.BytesIO()
    image.save(out, format=fmt)
    return out.getvalue()


@pytest.fixture()
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture()
def png_bytes() -> bytes:
    return encode_image(Image.new("RGB", (320, 240), (200, 120, 40)))


def damaged_png() -> bytes:
    """A PNG whose first chunk after the header has a corrupted length byte."""
    data = bytearray(encode_image(Image.new("RGB", (64, 48), (10, 200, 90))))
    data[36] = 0x00
    return bytes(data)
