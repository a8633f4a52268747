"""Tests for the classification pipeline and display state."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import FakeClassifier, damaged_png
from PIL import Image

from snapclassify.config import Settings
from snapclassify.errors import AllocationError, InferenceError, ModelUnavailableError
from snapclassify.ml.pipeline import (
    INITIAL_PREDICTION_TEXT,
    ClassificationOutcome,
    ClassificationPipeline,
    PredictionDisplay,
    RequestState,
)
from snapclassify.ml.preprocessing import ImageNormalizer


@pytest.fixture()
def normalizer() -> ImageNormalizer:
    return ImageNormalizer(Settings())


class TestClassificationPipeline:
    def test_success_walks_all_states(self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier) -> None:
        pipeline = ClassificationPipeline(normalizer, fake_classifier)

        outcome = pipeline.run(Image.new("RGB", (640, 480)))

        assert outcome.state is RequestState.DONE
        assert outcome.succeeded
        assert outcome.history == [
            RequestState.IDLE,
            RequestState.NORMALIZING,
            RequestState.INFERRING,
            RequestState.DONE,
        ]
        assert outcome.error is None
        assert outcome.result is not None
        assert outcome.result.cleaned_label == "goldfish"
        assert fake_classifier.calls[0].pixels.shape == (224, 224, 4)

    def test_run_bytes(self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier, png_bytes: bytes) -> None:
        outcome = ClassificationPipeline(normalizer, fake_classifier).run_bytes(png_bytes)
        assert outcome.succeeded

    def test_normalization_failure(self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier) -> None:
        outcome = ClassificationPipeline(normalizer, fake_classifier).run_bytes(b"not an image")

        assert outcome.state is RequestState.FAILED
        assert outcome.history == [RequestState.IDLE, RequestState.NORMALIZING, RequestState.FAILED]
        assert isinstance(outcome.error, AllocationError)
        assert outcome.result is None
        assert fake_classifier.calls == []

    def test_damaged_png_fails_cleanly(self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier) -> None:
        outcome = ClassificationPipeline(normalizer, fake_classifier).run_bytes(damaged_png())

        assert outcome.state is RequestState.FAILED
        assert isinstance(outcome.error, AllocationError)
        assert fake_classifier.calls == []

    def test_zero_size_image_fails_in_normalizing(
        self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier
    ) -> None:
        outcome = ClassificationPipeline(normalizer, fake_classifier).run(Image.new("RGB", (0, 0)))
        assert isinstance(outcome.error, AllocationError)
        assert outcome.history[-2] is RequestState.NORMALIZING

    def test_inference_failure(self, normalizer: ImageNormalizer) -> None:
        model = FakeClassifier(error=RuntimeError("boom"))

        outcome = ClassificationPipeline(normalizer, model).run(Image.new("RGB", (10, 10)))

        assert outcome.history == [
            RequestState.IDLE,
            RequestState.NORMALIZING,
            RequestState.INFERRING,
            RequestState.FAILED,
        ]
        assert isinstance(outcome.error, InferenceError)

    def test_missing_model_fails_fast_without_normalizing(self) -> None:
        normalizer = MagicMock(spec=ImageNormalizer)
        pipeline = ClassificationPipeline(normalizer, None)

        outcome = pipeline.run(Image.new("RGB", (10, 10)))

        assert not pipeline.model_available
        assert outcome.history == [RequestState.IDLE, RequestState.INFERRING, RequestState.FAILED]
        assert isinstance(outcome.error, ModelUnavailableError)
        normalizer.normalize.assert_not_called()

    def test_runs_do_not_share_state(self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier) -> None:
        pipeline = ClassificationPipeline(normalizer, fake_classifier)

        failed = pipeline.run_bytes(b"junk")
        succeeded = pipeline.run(Image.new("RGB", (10, 10)))

        assert failed is not succeeded
        assert failed.state is RequestState.FAILED
        assert succeeded.state is RequestState.DONE
        assert succeeded.error is None


class TestPredictionDisplay:
    def test_initial_text(self) -> None:
        assert PredictionDisplay().text == INITIAL_PREDICTION_TEXT == "I think this is a ..."

    def test_success_updates_text(self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier) -> None:
        display = PredictionDisplay()
        outcome = ClassificationPipeline(normalizer, fake_classifier).run(Image.new("RGB", (10, 10)))

        assert display.apply(outcome) is True
        assert display.text == "I think this is a goldfish with probability 91.23%."
        assert display.last_result is outcome.result

    def test_failure_keeps_previous_text(self, normalizer: ImageNormalizer, fake_classifier: FakeClassifier) -> None:
        display = PredictionDisplay()
        pipeline = ClassificationPipeline(normalizer, fake_classifier)
        display.apply(pipeline.run(Image.new("RGB", (10, 10))))
        before = display.text

        assert display.apply(pipeline.run_bytes(b"junk")) is False
        assert display.text == before

    def test_unfinished_outcome_is_ignored(self) -> None:
        display = PredictionDisplay()
        assert display.apply(ClassificationOutcome()) is False
        assert display.text == INITIAL_PREDICTION_TEXT
