"""Inference adapter: run the classifier on a normalized buffer and clean up its answer."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from snapclassify.errors import ClassificationError, InferenceError, ModelUnavailableError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from snapclassify.ml.preprocessing import ModelInputBuffer

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """Protocol for a loaded classification model."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def predict(self, buffer: ModelInputBuffer) -> tuple[str, Mapping[str, float]]:
        """Run one forward pass.

        Args:
            buffer: Model input buffer of the size the model expects.

        Returns:
            The top label and the probability of every label.
        """
        ...


def clean_label(label: str) -> str:
    """Drop everything from the first comma on: ``"tabby cat, tabby"`` -> ``"tabby cat"``."""
    head, _, _ = label.partition(",")
    return head


def format_probability(probability: float) -> str:
    return f"{probability * 100:.2f}%"


@dataclass(frozen=True)
class ClassificationResult:
    """The top prediction for one image."""

    raw_label: str
    cleaned_label: str
    probability: float

    @property
    def formatted_probability(self) -> str:
        return format_probability(self.probability)

    def describe(self) -> str:
        """Return the sentence shown to the user."""
        return f"I think this is a {self.cleaned_label} with probability {self.formatted_probability}."


def classify(model: Classifier | None, buffer: ModelInputBuffer) -> ClassificationResult:
    """Classify a normalized image with a loaded model.

    Args:
        model: The loaded model handle, or None if loading failed.
        buffer: Normalized input buffer.

    Returns:
        The top label, cleaned, with its probability in [0, 1].

    Raises:
        ModelUnavailableError: If ``model`` is None.
        InferenceError: If the model fails to produce a prediction.
    """
    if model is None:
        raise ModelUnavailableError("No classification model is loaded")

    try:
        top_label, label_probs = model.predict(buffer)
        probability = float(label_probs.get(top_label, 0.0))
    except ClassificationError:
        raise
    except Exception as exc:
        raise InferenceError(f"Prediction failed: {exc}") from exc

    if math.isnan(probability):
        raise InferenceError(f"Model returned no valid probability for {top_label!r}")
    probability = min(max(probability, 0.0), 1.0)

    result = ClassificationResult(
        raw_label=top_label,
        cleaned_label=clean_label(top_label),
        probability=probability,
    )
    logger.debug("Classified as %r (%s)", result.raw_label, result.formatted_probability)
    return result
