"""Exception hierarchy for the classification core.

Construction errors (ModelLoadError, LabelMismatchError) mean no usable
classifier exists. The remaining errors are raised per call and leave the
classifier usable.
"""

from __future__ import annotations


class ClassifierError(Exception):
    """Base class for all classification errors."""


class ModelLoadError(ClassifierError):
    """The model could not be loaded or declares unusable tensors."""


class LabelMismatchError(ClassifierError):
    """The label count disagrees with the model's output length."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Model declares {expected} output classes but {actual} labels were supplied")
        self.expected = expected
        self.actual = actual


class InvalidImageError(ClassifierError, ValueError):
    """The image is missing, empty, or cannot be decoded."""


class InvalidOrientationError(ClassifierError, ValueError):
    """The orientation is not a finite number of degrees."""


class PreprocessingError(ClassifierError):
    """Preprocessing produced a tensor that does not fit the model input."""


class InferenceError(ClassifierError):
    """The inference engine failed to run the model."""
