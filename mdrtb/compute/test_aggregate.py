"""
Unit tests for patient-level aggregation.

Run:
    pytest mdrtb/compute/test_aggregate.py -v
"""

from __future__ import annotations

import numpy as np
import pytest

from mdrtb.compute.aggregate import CLASSIFICATION_THRESHOLD, aggregate, risk_label
from mdrtb.errors import EmptyInputError


class TestAggregate:
    @pytest.mark.parametrize("p", [0.0, 0.2, 0.5, 0.93, 1.0])
    def test_single_event_is_identity(self, p):
        assert aggregate([p]).average == pytest.approx(p)

    def test_mean_of_events(self):
        result = aggregate([0.3, 0.7])
        assert result.average == pytest.approx(0.5)
        assert result.positive
        assert result.classification == "Yes"

    def test_below_threshold(self):
        result = aggregate([0.1, 0.2, 0.3])
        assert result.average == pytest.approx(0.2)
        assert not result.positive
        assert result.classification == "No"

    def test_boundary_counts_as_positive(self):
        assert aggregate([CLASSIFICATION_THRESHOLD]).positive

    def test_keeps_event_probabilities(self):
        result = aggregate(np.array([0.25, 0.75], dtype=np.float32))
        assert result.event_probabilities == pytest.approx((0.25, 0.75))
        assert all(isinstance(p, float) for p in result.event_probabilities)

    def test_empty_rejected(self):
        with pytest.raises(EmptyInputError):
            aggregate([])

    def test_empty_is_also_value_error(self):
        with pytest.raises(ValueError):
            aggregate(np.zeros(0))


class TestRiskLabel:
    @pytest.mark.parametrize("p,label", [
        (0.95, "High"),
        (0.70, "High"),
        (0.69, "Elevated"),
        (0.50, "Elevated"),
        (0.49, "Moderate"),
        (0.30, "Moderate"),
        (0.29, "Low"),
        (0.00, "Low"),
    ])
    def test_bands(self, p, label):
        assert risk_label(p) == label

    def test_label_matches_average(self):
        assert aggregate([0.8, 0.9]).label == "High"
