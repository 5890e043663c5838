"""
Unit tests for the inference engine.

The Keras round trip only runs where tensorflow is installed.

Run:
    pytest mdrtb/compute/test_inference.py -v
"""

from __future__ import annotations

import numpy as np
import pytest

from mdrtb.compute.inference import InferenceEngine
from mdrtb.errors import ModelLoadError


class SequenceModel:
    """Mimics a Keras model with a (batch, 1, width) input."""

    input_shape = (None, 1, 3)

    def __init__(self):
        self.seen_shapes = []

    def __call__(self, x, training=False):
        self.seen_shapes.append(x.shape)
        return x.sum(axis=(1, 2)).reshape(-1, 1) / 10.0


class FlatModel(SequenceModel):
    input_shape = (None, 3)

    def __call__(self, x, training=False):
        self.seen_shapes.append(x.shape)
        return x.sum(axis=1).reshape(-1, 1) / 10.0


def _engine_with(model) -> InferenceEngine:
    engine = InferenceEngine("unused.keras")
    engine._model = model
    return engine


class TestLoadFailure:
    def test_missing_model_raises(self, tmp_path):
        engine = InferenceEngine(tmp_path / "missing.keras")
        with pytest.raises(ModelLoadError):
            engine.load()
        assert engine.disabled

    def test_failure_is_not_retried(self, tmp_path):
        path = tmp_path / "missing.keras"
        engine = InferenceEngine(path)
        with pytest.raises(ModelLoadError):
            engine.load()
        path.write_bytes(b"not a model")
        with pytest.raises(ModelLoadError, match="disabled"):
            engine.predict_batch(np.zeros((1, 3)))

    def test_relative_path_resolves_from_repo_root(self):
        engine = InferenceEngine("models/mdrtb_model.keras")
        assert engine.model_path.is_absolute()
        assert engine.model_path.parts[-2:] == ("models", "mdrtb_model.keras")


class TestPredictBatch:
    def test_sequence_input_is_reshaped(self):
        model = SequenceModel()
        probs = _engine_with(model).predict_batch(np.ones((4, 3), dtype=np.float32))
        assert model.seen_shapes == [(4, 1, 3)]
        assert probs.shape == (4,)
        assert probs == pytest.approx([0.3] * 4)

    def test_flat_input_left_alone(self):
        model = FlatModel()
        _engine_with(model).predict_batch(np.ones((2, 3)))
        assert model.seen_shapes == [(2, 3)]

    def test_empty_batch_skips_model(self):
        model = SequenceModel()
        probs = _engine_with(model).predict_batch(np.zeros((0, 3)))
        assert probs.shape == (0,)
        assert model.seen_shapes == []

    def test_single_vector(self):
        assert _engine_with(SequenceModel()).predict(np.array([1, 2, 3])) == pytest.approx(0.6)

    def test_close_drops_model(self):
        engine = _engine_with(SequenceModel())
        engine.close()
        assert engine._model is None
        assert not engine.disabled


class TestKerasRoundTrip:
    def test_saved_model_scores_in_unit_interval(self, tmp_path):
        tf = pytest.importorskip("tensorflow")
        keras = tf.keras

        model = keras.Sequential([
            keras.Input(shape=(1, 4)),
            keras.layers.LSTM(2),
            keras.layers.Dense(1, activation="sigmoid"),
        ])
        path = tmp_path / "model.keras"
        model.save(str(path))

        engine = InferenceEngine(path)
        assert engine.load() is engine.load()
        probs = engine.predict_batch(np.random.default_rng(0).random((3, 4)).astype(np.float32))
        assert probs.shape == (3,)
        assert np.all((probs >= 0.0) & (probs <= 1.0))
