"""
Inference engine around the pre-trained Keras MDR-TB model.

The model takes a single-timestep sequence, ``(batch, 1, width)``; feature
vectors are reshaped accordingly.  The artifact is loaded once per engine
and a failed load disables the engine for its lifetime.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Protocol

import numpy as np
from dotenv import load_dotenv

from mdrtb.errors import ModelLoadError

load_dotenv(Path(__file__).parents[2] / ".env", override=True)

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_MODEL_PATH = "models/mdrtb_model.keras"


class Predictor(Protocol):
    def predict_batch(self, matrix: np.ndarray) -> np.ndarray: ...


class InferenceEngine:
    def __init__(self, model_path: str | Path):
        path = Path(model_path)
        self.model_path = path if path.is_absolute() else _REPO_ROOT / path
        self._model = None
        self._load_error: Optional[str] = None

    @classmethod
    def from_env(cls) -> "InferenceEngine":
        return cls(os.environ.get("MDRTB_MODEL_PATH", DEFAULT_MODEL_PATH))

    @property
    def disabled(self) -> bool:
        return self._load_error is not None

    def load(self):
        """Return the cached model, loading it on first call."""
        if self._model is not None:
            return self._model
        if self._load_error is not None:
            raise ModelLoadError(f"Prediction disabled for this session: {self._load_error}")

        try:
            os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")
            from tensorflow import keras

            logger.info("Loading model from %s", self.model_path)
            self._model = keras.models.load_model(str(self.model_path), compile=False)
        except Exception as exc:
            self._load_error = f"{type(exc).__name__}: {exc}"
            logger.error("Failed to load model from %s: %s", self.model_path, self._load_error)
            raise ModelLoadError(f"Could not load model {self.model_path}: {exc}") from exc
        return self._model

    def _reshape(self, matrix: np.ndarray, model) -> np.ndarray:
        batch = np.asarray(matrix, dtype=np.float32)
        if batch.ndim == 1:
            batch = batch.reshape(1, -1)
        input_shape = getattr(model, "input_shape", None)
        if isinstance(input_shape, tuple) and len(input_shape) == 2:
            return batch
        return batch.reshape(batch.shape[0], 1, batch.shape[1])

    def predict_batch(self, matrix: np.ndarray) -> np.ndarray:
        """Probability per row of *matrix* (``(n, width)``)."""
        model = self.load()
        if len(matrix) == 0:
            return np.zeros(0, dtype=np.float64)
        output = model(self._reshape(matrix, model), training=False)
        try:
            probabilities = np.asarray(output, dtype=np.float64).reshape(len(matrix), -1)[:, 0]
        finally:
            # release the output tensor before the next call
            del output
        return probabilities

    def predict(self, vector: np.ndarray) -> float:
        return float(self.predict_batch(np.asarray(vector).reshape(1, -1))[0])

    def close(self) -> None:
        """Drop the cached model handle."""
        self._model = None
