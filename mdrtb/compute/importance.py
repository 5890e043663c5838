"""
Permutation feature importance for a single patient's event vectors.

  baseline      = mean(predict(v) for v in vectors)
  shuffled[c]   = mean(predict(v') for v' in vectors with column c permuted)
  importance[c] = baseline - shuffled[c]

Positive importance means permuting the column lowered the patient's
score.  One batched model call is made per column (per repeat), so cost is
O(columns x repeats) forward passes over the event matrix.
"""
from __future__ import annotations

from typing import Mapping, Optional, Sequence

import numpy as np
import polars as pl

from mdrtb.compute.inference import Predictor
from mdrtb.errors import EmptyInputError

IMPORTANCE_SCHEMA = {"feature_id": pl.Utf8, "feature_name": pl.Utf8, "importance": pl.Float64}


def shuffle_column(matrix: np.ndarray, column: int, rng: np.random.Generator) -> np.ndarray:
    """Copy of *matrix* with one column permuted across rows, all others fixed."""
    shuffled = matrix.copy()
    shuffled[:, column] = matrix[rng.permutation(matrix.shape[0]), column]
    return shuffled


def permutation_importance(
    predictor: Predictor,
    matrix: np.ndarray,
    rng: Optional[np.random.Generator] = None,
    n_repeats: int = 1,
) -> np.ndarray:
    """Signed importance per column of *matrix*; all zeros for a single row."""
    matrix = np.asarray(matrix, dtype=np.float32)
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        raise EmptyInputError("Permutation importance needs at least one event vector")
    if n_repeats < 1:
        raise ValueError("n_repeats must be >= 1")

    n_rows, n_cols = matrix.shape
    if n_rows == 1:
        # a single row permuted against itself changes nothing
        return np.zeros(n_cols, dtype=np.float64)

    rng = rng if rng is not None else np.random.default_rng()
    baseline = float(np.mean(predictor.predict_batch(matrix)))

    importances = np.zeros(n_cols, dtype=np.float64)
    for c in range(n_cols):
        scores = [
            float(np.mean(predictor.predict_batch(shuffle_column(matrix, c, rng))))
            for _ in range(n_repeats)
        ]
        importances[c] = baseline - float(np.mean(scores))
    return importances


def rank_importances(
    importances: Sequence[float],
    feature_ids: Sequence[str],
    display_names: Optional[Mapping[str, str]] = None,
) -> pl.DataFrame:
    """
    Keep positive importances, sorted descending, with a display name per
    feature (the raw id when the lookup has none).
    """
    if len(importances) != len(feature_ids):
        raise ValueError(
            f"{len(importances)} importances for {len(feature_ids)} feature ids"
        )
    scores = pl.DataFrame(
        {"feature_id": list(feature_ids), "importance": [float(v) for v in importances]},
        schema={"feature_id": pl.Utf8, "importance": pl.Float64},
    )
    names = pl.DataFrame(
        {
            "feature_id": list((display_names or {}).keys()),
            "feature_name": list((display_names or {}).values()),
        },
        schema={"feature_id": pl.Utf8, "feature_name": pl.Utf8},
    )
    ranked = (
        scores
        .filter(pl.col("importance") > 0)
        .join(names, on="feature_id", how="left")
        .with_columns(pl.col("feature_name").fill_null(pl.col("feature_id")))
        .sort(["importance", "feature_id"], descending=[True, False])
    )
    return ranked.select(list(IMPORTANCE_SCHEMA))
