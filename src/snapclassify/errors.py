"""Error taxonomy for the classification pipeline.

Every failure a single classification request can hit derives from
``ClassificationError`` so the request boundary can catch one type and leave
the displayed prediction untouched.
"""

from __future__ import annotations


class ClassificationError(Exception):
    """Base class for all classification failures."""


class ModelLoadError(ClassificationError):
    """The model artifact is unknown, missing, or could not be loaded."""


class AllocationError(ClassificationError):
    """The model input buffer could not be created from the source image."""


class InferenceError(ClassificationError):
    """The model raised during prediction or rejected the input buffer."""


class ModelUnavailableError(ClassificationError):
    """Classification was attempted while no model is loaded."""
