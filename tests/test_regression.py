"""Tests for the character-level amount regression model."""

import json

import numpy as np
import pytest

from tithebook.config import LearningConfig
from tithebook.learning import AmountRegressionModel, TrainingGuard
from tithebook.learning.regression import (
    INPUT_SIZE,
    VOCAB_SIZE,
    encode_input,
    input_shape,
    scale_amount,
    unscale_amount,
)


@pytest.fixture
def small_config() -> LearningConfig:
    """Thresholds small enough to train on a handful of examples."""
    return LearningConfig(
        regression_min_train=2,
        regression_min_predict=3,
        regression_retrain_every=100,
        regression_epochs=5,
    )


class TestEncoding:
    """Tests for input encoding and output scaling."""

    def test_encode_input_shape(self):
        vector = encode_input("1OO")
        assert vector.shape == (INPUT_SIZE,)
        # One hot per position, padding included
        assert vector.reshape(-1, VOCAB_SIZE).sum(axis=1).tolist() == [1.0] * 10

    def test_unknown_characters_share_a_slot(self):
        a = encode_input("#").reshape(-1, VOCAB_SIZE)
        b = encode_input("?").reshape(-1, VOCAB_SIZE)
        assert np.array_equal(a[0], b[0])
        assert a[0, -1] == 1.0

    def test_input_shape(self):
        assert input_shape("1o5") == "#O#"
        assert input_shape("5OO") == input_shape("1OO")

    def test_scale_round_trip(self):
        for amount in (1, 50, 100, 2500):
            assert unscale_amount(scale_amount(amount)) == amount
        assert scale_amount(0) == 0.0


class TestAmountRegressionModel:
    """Tests for training, prediction and persistence."""

    def test_no_prediction_before_training(self, store, small_config):
        model = AmountRegressionModel("Central", store, small_config)
        assert model.is_trained is False
        assert model.predict("1OO") is None

    def test_add_example_skips_no_ops(self, store, small_config):
        model = AmountRegressionModel("Central", store, small_config)
        assert model.add_example("100", 100) is False
        assert model.add_example("", 100) is False
        assert model.add_example("1OO", "abc") is False
        assert model.example_count == 0

    def test_train_needs_minimum(self, store, small_config):
        model = AmountRegressionModel("Central", store, small_config)
        model.add_example("1OO", 100)
        assert model.train() is None

    def test_train_and_predict(self, store, small_config):
        model = AmountRegressionModel("Central", store, small_config)
        for raw, value in (("1OO", 100), ("2OO", 200), ("5OO", 500)):
            model.add_example(raw, value)

        result = model.train(epochs=5)

        assert result is not None
        assert result.examples == 3
        assert result.epochs == 5
        assert np.isfinite(result.loss)

        prediction = model.predict("3OO")
        assert prediction is not None
        assert prediction.value > 0
        assert prediction.similar_examples == 3
        assert prediction.confidence == pytest.approx(0.8)

    def test_model_survives_restart(self, store, small_config):
        model = AmountRegressionModel("Central", store, small_config)
        for raw, value in (("1OO", 100), ("2OO", 200), ("5OO", 500)):
            model.add_example(raw, value)
        model.train(epochs=2)

        reloaded = AmountRegressionModel("CENTRAL", store, small_config)

        assert reloaded.is_trained is True
        assert reloaded.example_count == 3
        assert reloaded.predict("1OO").value == model.predict("1OO").value

    def test_unreadable_weights_discarded(self, store, small_config):
        store.save_regression_model(
            scope="central",
            weights_json="{not json",
            examples_json=json.dumps([{"input": "1OO", "output": 100}]),
            examples_since_train=1,
            trained_at=None,
        )

        model = AmountRegressionModel("Central", store, small_config)

        assert model.is_trained is False
        assert model.example_count == 1

    def test_corpus_capped(self, store):
        config = LearningConfig(regression_max_examples=3, regression_retrain_every=100)
        model = AmountRegressionModel("Central", store, config)
        for raw in ("1OO", "2OO", "3OO", "4OO", "5OO"):
            model.add_example(raw, 100)
        assert model.example_count == 3

    def test_overlapping_training_is_dropped(self, store, small_config):
        guard = TrainingGuard()
        model = AmountRegressionModel("Central", store, small_config, guard=guard)
        for raw, value in (("1OO", 100), ("2OO", 200), ("5OO", 500)):
            model.add_example(raw, value)

        with guard.try_hold("central"):
            assert model.train() is None
        assert model.is_trained is False

    def test_retrain_trigger(self, store):
        config = LearningConfig(
            regression_min_train=2,
            regression_min_predict=3,
            regression_retrain_every=3,
            regression_epochs=2,
        )
        model = AmountRegressionModel("Central", store, config)
        for raw, value in (("1OO", 100), ("2OO", 200), ("5OO", 500)):
            model.add_example(raw, value)

        assert model.is_trained is True
        assert model.status()["examples_since_train"] == 0

    def test_reset(self, store, small_config):
        model = AmountRegressionModel("Central", store, small_config)
        model.add_example("1OO", 100)
        model.reset()

        assert model.example_count == 0
        assert store.get_regression_model("central") is None
