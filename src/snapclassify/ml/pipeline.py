"""Per-request classification pipeline: normalize -> classify, with explicit state.

Each run walks ``idle -> normalizing -> inferring -> done`` or ends in
``failed``. Failures are captured on the outcome instead of raised, and the
display only changes on success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from snapclassify.errors import ClassificationError, ModelUnavailableError
from snapclassify.ml.image_classifier import classify

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapclassify.ml.image_classifier import ClassificationResult, Classifier
    from snapclassify.ml.preprocessing import ImageNormalizer, ModelInputBuffer, SourceImage

logger = logging.getLogger(__name__)

INITIAL_PREDICTION_TEXT = "I think this is a ..."


class RequestState(StrEnum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    INFERRING = "inferring"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ClassificationOutcome:
    """What happened to one classification request."""

    state: RequestState = RequestState.IDLE
    result: ClassificationResult | None = None
    error: ClassificationError | None = None
    history: list[RequestState] = field(default_factory=lambda: [RequestState.IDLE])

    @property
    def succeeded(self) -> bool:
        return self.state is RequestState.DONE

    def advance(self, state: RequestState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: ClassificationError) -> ClassificationOutcome:
        self.error = error
        self.advance(RequestState.FAILED)
        return self


class ClassificationPipeline:
    """Runs normalize -> classify for one image at a time.

    The pipeline holds only the normalizer and the read-only model handle, so
    consecutive runs share no mutable state.
    """

    def __init__(self, normalizer: ImageNormalizer, model: Classifier | None) -> None:
        self._normalizer = normalizer
        self._model = model

    @property
    def model_available(self) -> bool:
        return self._model is not None

    def run(self, source: SourceImage) -> ClassificationOutcome:
        """Classify a decoded image."""
        return self._run(lambda: self._normalizer.normalize(source))

    def run_bytes(self, image_bytes: bytes) -> ClassificationOutcome:
        """Decode and classify raw uploaded bytes."""
        return self._run(lambda: self._normalizer.normalize_bytes(image_bytes))

    def _run(self, build_buffer: Callable[[], ModelInputBuffer]) -> ClassificationOutcome:
        outcome = ClassificationOutcome()

        if self._model is None:
            # Fail fast: never normalize for a model that is not there.
            outcome.advance(RequestState.INFERRING)
            logger.warning("Classification requested but no model is loaded")
            return outcome.fail(ModelUnavailableError("No classification model is loaded"))

        outcome.advance(RequestState.NORMALIZING)
        try:
            buffer = build_buffer()
        except ClassificationError as exc:
            logger.warning("Normalization failed: %s", exc)
            return outcome.fail(exc)

        outcome.advance(RequestState.INFERRING)
        try:
            outcome.result = classify(self._model, buffer)
        except ClassificationError as exc:
            logger.warning("Inference failed: %s", exc)
            return outcome.fail(exc)

        outcome.advance(RequestState.DONE)
        return outcome


class PredictionDisplay:
    """Presentation state: the sentence currently shown for the last good prediction."""

    def __init__(self, text: str = INITIAL_PREDICTION_TEXT) -> None:
        self._text = text
        self._last_result: ClassificationResult | None = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def last_result(self) -> ClassificationResult | None:
        return self._last_result

    def apply(self, outcome: ClassificationOutcome) -> bool:
        """Show the outcome if it succeeded; leave the text unchanged otherwise."""
        if not outcome.succeeded or outcome.result is None:
            return False
        self._last_result = outcome.result
        self._text = outcome.result.describe()
        return True
