"""
Patient-level aggregation of per-event MDR-TB probabilities.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from mdrtb.errors import EmptyInputError

# A patient is classified MDR-TB positive when the mean probability reaches this
CLASSIFICATION_THRESHOLD = 0.5

# Risk label thresholds
LABEL_THRESHOLDS = [
    (0.7, "High"),
    (0.5, "Elevated"),
    (0.3, "Moderate"),
    (0.0, "Low"),
]


@dataclass(frozen=True)
class PredictionResult:
    event_probabilities: tuple[float, ...]
    average: float
    positive: bool
    label: str

    @property
    def classification(self) -> str:
        return "Yes" if self.positive else "No"


def risk_label(probability: float) -> str:
    for threshold, label in LABEL_THRESHOLDS:
        if probability >= threshold:
            return label
    return "Low"


def aggregate(probabilities: Sequence[float]) -> PredictionResult:
    """Average per-event probabilities; positive iff the mean is >= 0.5."""
    if len(probabilities) == 0:
        raise EmptyInputError("Cannot aggregate predictions for a patient with no events")
    values = tuple(float(p) for p in probabilities)
    average = float(np.mean(values))
    return PredictionResult(
        event_probabilities=values,
        average=average,
        positive=average >= CLASSIFICATION_THRESHOLD,
        label=risk_label(average),
    )
