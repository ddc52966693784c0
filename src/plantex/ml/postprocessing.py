"""Turn raw model output into ranked, labeled scores."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from plantex.errors import LabelMismatchError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from plantex.ml.normalization import NormalizationPolicy

MAX_RESULTS = 5


@dataclass(frozen=True)
class Recognition:
    """A single classification prediction."""

    label: str
    confidence: float


def dequantize(raw: NDArray[np.generic], policy: NormalizationPolicy) -> NDArray[np.float32]:
    """Apply the output policy and flatten to one float32 score per class."""
    return policy.apply(raw).reshape(-1)


def label_scores(labels: Sequence[str], scores: NDArray[np.float32]) -> list[Recognition]:
    """Pair each score with the label at the same index."""
    if len(labels) != len(scores):
        raise LabelMismatchError(expected=len(scores), actual=len(labels))
    return [Recognition(label=label, confidence=float(score)) for label, score in zip(labels, scores, strict=True)]


def rank(recognitions: Sequence[Recognition], top_k: int = MAX_RESULTS) -> list[Recognition]:
    """Sort by descending confidence and keep at most ``top_k`` entries.

    The sort is stable, so equal confidences keep their label order.
    """
    ordered = sorted(recognitions, key=lambda r: r.confidence, reverse=True)
    return ordered[:top_k]


class Postprocessor:
    """Dequantizes, labels and ranks the output of one model."""

    def __init__(self, labels: Sequence[str], policy: NormalizationPolicy, top_k: int = MAX_RESULTS) -> None:
        self._labels = tuple(labels)
        self._policy = policy
        self._top_k = top_k

    @property
    def policy(self) -> NormalizationPolicy:
        return self._policy

    def process(self, raw: NDArray[np.generic]) -> list[Recognition]:
        scores = dequantize(raw, self._policy)
        return rank(label_scores(self._labels, scores), self._top_k)
