"""
Character-level amount regression.

A small fully connected network (numpy) that learns OCR error patterns
from user corrections and generalizes them to unseen inputs: having seen
"1OO" -> 100 a few times it can suggest 300 for "3OO".

Input: the uppercased OCR string, padded/truncated to MAX_INPUT_LENGTH and
one-hot encoded over VOCAB (plus an unknown slot).
Output: log10(amount) / LOG_SCALE squashed through a sigmoid.

Weights and the example corpus are stored per scope in the state store's
``regression_models`` table, so a model survives restarts. A missing or
unreadable blob simply means "no prediction yet".
"""

from __future__ import annotations

import json
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from ..amounts.normalizer import parse_plain_number
from ..config import LearningConfig
from ..state_store import StorageUnavailableError, utc_now
from .locks import TRAINING_GUARD, TrainingGuard, scope_key

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

VOCAB = "0123456789OoIilSsBbGg. "
UNKNOWN_INDEX = len(VOCAB)
VOCAB_SIZE = len(VOCAB) + 1
MAX_INPUT_LENGTH = 10
INPUT_SIZE = MAX_INPUT_LENGTH * VOCAB_SIZE

LOG_SCALE = 6  # amounts up to ~1,000,000
HIDDEN_UNITS = (64, 32)
LEARNING_RATE = 0.01
L2_PENALTY = 0.01  # first layer only
MAX_BATCH_SIZE = 32
MAX_CONFIDENCE = 0.9

_DIGIT_RE = re.compile(r"\d")


def encode_input(text: str) -> np.ndarray:
    """One-hot encode an OCR string into a flat vector of INPUT_SIZE."""
    padded = text.upper()[:MAX_INPUT_LENGTH].ljust(MAX_INPUT_LENGTH, " ")
    encoded = np.zeros((MAX_INPUT_LENGTH, VOCAB_SIZE))
    for position, char in enumerate(padded):
        index = VOCAB.find(char)
        encoded[position, index if index >= 0 else UNKNOWN_INDEX] = 1.0
    return encoded.ravel()


def scale_amount(amount: float) -> float:
    return math.log10(max(1.0, amount)) / LOG_SCALE


def unscale_amount(scaled: float) -> int:
    return round(10 ** (scaled * LOG_SCALE))


def input_shape(text: str) -> str:
    """Structure of an OCR string with every digit replaced by ``#``."""
    return _DIGIT_RE.sub("#", text.upper())


def _sigmoid(z: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(z, -50, 50)))


@dataclass
class TrainingExample:
    input: str  # uppercased OCR text
    output: float

    def to_dict(self) -> dict[str, Any]:
        return {"input": self.input, "output": self.output}


@dataclass
class TrainingResult:
    loss: float
    accuracy: float  # 1 - mean absolute error on the scaled target
    examples: int
    epochs: int


@dataclass
class RegressionPrediction:
    value: float
    confidence: float
    similar_examples: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "similar_examples": self.similar_examples,
            "method": "ml",
        }


class _Network:
    """Dense ReLU layers with a single sigmoid output."""

    def __init__(self, weights: list[np.ndarray], biases: list[np.ndarray]):
        self.weights = weights
        self.biases = biases

    @classmethod
    def initialize(cls, rng: np.random.Generator, input_size: int = INPUT_SIZE) -> _Network:
        sizes = [input_size, *HIDDEN_UNITS, 1]
        weights = []
        biases = []
        for fan_in, fan_out in zip(sizes[:-1], sizes[1:]):
            weights.append(rng.normal(0.0, math.sqrt(2.0 / fan_in), size=(fan_in, fan_out)))
            biases.append(np.zeros(fan_out))
        return cls(weights, biases)

    def copy(self) -> _Network:
        return _Network([w.copy() for w in self.weights], [b.copy() for b in self.biases])

    def _forward(self, x: np.ndarray) -> tuple[list[np.ndarray], list[np.ndarray]]:
        activations = [x]
        pre_activations = []
        for layer, (w, b) in enumerate(zip(self.weights, self.biases)):
            z = activations[-1] @ w + b
            pre_activations.append(z)
            is_output = layer == len(self.weights) - 1
            activations.append(_sigmoid(z) if is_output else np.maximum(z, 0.0))
        return activations, pre_activations

    def predict(self, x: np.ndarray) -> np.ndarray:
        activations, _ = self._forward(x)
        return activations[-1]

    def fit(
        self,
        x: np.ndarray,
        y: np.ndarray,
        epochs: int,
        rng: np.random.Generator,
        learning_rate: float = LEARNING_RATE,
    ) -> tuple[float, float]:
        """Mini-batch Adam on mean squared error. Returns final (loss, mae)."""
        n = len(x)
        batch_size = min(MAX_BATCH_SIZE, n)
        params = self.weights + self.biases
        first_moment = [np.zeros_like(p) for p in params]
        second_moment = [np.zeros_like(p) for p in params]
        beta1, beta2, eps = 0.9, 0.999, 1e-7
        step = 0

        for _ in range(epochs):
            order = rng.permutation(n)
            for start in range(0, n, batch_size):
                idx = order[start : start + batch_size]
                grads = self._gradients(x[idx], y[idx])
                step += 1
                for i, (param, grad) in enumerate(zip(params, grads)):
                    first_moment[i] = beta1 * first_moment[i] + (1 - beta1) * grad
                    second_moment[i] = beta2 * second_moment[i] + (1 - beta2) * grad**2
                    m_hat = first_moment[i] / (1 - beta1**step)
                    v_hat = second_moment[i] / (1 - beta2**step)
                    param -= learning_rate * m_hat / (np.sqrt(v_hat) + eps)

        error = self.predict(x) - y
        return float(np.mean(error**2)), float(np.mean(np.abs(error)))

    def _gradients(self, x: np.ndarray, y: np.ndarray) -> list[np.ndarray]:
        activations, pre_activations = self._forward(x)
        out = activations[-1]
        delta = 2.0 * (out - y) / len(x) * out * (1.0 - out)

        weight_grads: list[np.ndarray] = [np.empty(0)] * len(self.weights)
        bias_grads: list[np.ndarray] = [np.empty(0)] * len(self.biases)
        for layer in range(len(self.weights) - 1, -1, -1):
            weight_grads[layer] = activations[layer].T @ delta
            bias_grads[layer] = delta.sum(axis=0)
            if layer > 0:
                delta = (delta @ self.weights[layer].T) * (pre_activations[layer - 1] > 0)

        weight_grads[0] = weight_grads[0] + 2.0 * L2_PENALTY * self.weights[0]
        return weight_grads + bias_grads

    def to_dict(self) -> dict[str, Any]:
        return {
            "vocab": VOCAB,
            "max_input_length": MAX_INPUT_LENGTH,
            "layers": [
                {"weights": w.tolist(), "bias": b.tolist()}
                for w, b in zip(self.weights, self.biases)
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> _Network:
        if data.get("vocab") != VOCAB or data.get("max_input_length") != MAX_INPUT_LENGTH:
            raise ValueError("Encoding of stored model does not match")
        layers = data["layers"]
        weights = [np.asarray(layer["weights"], dtype=float) for layer in layers]
        biases = [np.asarray(layer["bias"], dtype=float) for layer in layers]
        expected = [INPUT_SIZE, *HIDDEN_UNITS, 1]
        shapes = [w.shape for w in weights]
        if shapes != list(zip(expected[:-1], expected[1:])):
            raise ValueError(f"Unexpected layer shapes {shapes}")
        return cls(weights, biases)


class AmountRegressionModel:
    """Per-scope regression model with its persisted example corpus.

    Training runs one job at a time per scope (process-wide); a retrain
    trigger that arrives while a job is running is dropped.
    """

    def __init__(
        self,
        scope: str,
        state_store: StateStore | None = None,
        learning_config: LearningConfig | None = None,
        seed: int = 42,
        guard: TrainingGuard | None = None,
    ) -> None:
        self.scope = scope_key(scope)
        self.store = state_store
        self.config = learning_config or LearningConfig()
        self.seed = seed
        self.guard = guard or TRAINING_GUARD

        self._examples: list[TrainingExample] = []
        self._examples_since_train = 0
        self._network: _Network | None = None
        self.trained_at: str | None = None
        self._lock = threading.Lock()

        self._load()

    @property
    def example_count(self) -> int:
        return len(self._examples)

    @property
    def is_trained(self) -> bool:
        return self._network is not None

    def _load(self) -> None:
        if self.store is None:
            return
        try:
            row = self.store.get_regression_model(self.scope)
        except StorageUnavailableError as e:
            logger.warning("Regression store unavailable, continuing stateless: %s", e)
            self.store = None
            return
        if row is None:
            return

        try:
            examples = json.loads(row["examples_json"] or "[]")
            self._examples = [
                TrainingExample(input=str(ex["input"]), output=float(ex["output"]))
                for ex in examples
            ]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Discarding unreadable training examples for %s: %s", self.scope, e)
            self._examples = []
        self._examples_since_train = row["examples_since_train"] or 0

        if row["weights_json"]:
            try:
                self._network = _Network.from_dict(json.loads(row["weights_json"]))
                self.trained_at = row["trained_at"]
            except (ValueError, TypeError, KeyError) as e:
                logger.warning("Discarding unreadable model weights for %s: %s", self.scope, e)
                self._network = None

    def _persist(self) -> None:
        if self.store is None:
            return
        with self._lock:
            examples_json = json.dumps([ex.to_dict() for ex in self._examples])
            since_train = self._examples_since_train
        network = self._network
        try:
            self.store.save_regression_model(
                scope=self.scope,
                weights_json=json.dumps(network.to_dict()) if network else None,
                examples_json=examples_json,
                examples_since_train=since_train,
                trained_at=self.trained_at,
            )
        except StorageUnavailableError as e:
            logger.warning("Could not persist regression model for %s: %s", self.scope, e)
            self.store = None

    def add_example(self, original: str, corrected: float) -> bool:
        """Add a correction to the corpus, retraining when enough are new.

        Duplicates are kept so frequent patterns weigh more.
        """
        text = str(original or "").strip().upper()
        if not text:
            return False
        try:
            value = float(corrected)
        except (TypeError, ValueError):
            return False
        if parse_plain_number(text) == value:
            return False

        with self._lock:
            self._examples.append(TrainingExample(input=text, output=value))
            overflow = len(self._examples) - self.config.regression_max_examples
            if overflow > 0:
                del self._examples[:overflow]
            self._examples_since_train += 1
            should_train = (
                len(self._examples) >= self.config.regression_min_predict
                and self._examples_since_train >= self.config.regression_retrain_every
            )

        self._persist()
        if should_train:
            self.train()
        return True

    def train(self, epochs: int | None = None) -> TrainingResult | None:
        """Fit the network on the current corpus, starting from the last weights."""
        epochs = epochs or self.config.regression_epochs
        with self.guard.try_hold(self.scope) as acquired:
            if not acquired:
                logger.info("Training already running for %s, skipping trigger", self.scope)
                return None

            with self._lock:
                examples = list(self._examples)
            if len(examples) < self.config.regression_min_train:
                logger.debug(
                    "Need at least %d examples to train %s (have %d)",
                    self.config.regression_min_train,
                    self.scope,
                    len(examples),
                )
                return None

            x = np.stack([encode_input(ex.input) for ex in examples])
            y = np.array([[scale_amount(ex.output)] for ex in examples])
            rng = np.random.default_rng(self.seed)
            network = self._network.copy() if self._network else _Network.initialize(rng)
            loss, mae = network.fit(x, y, epochs, rng)

            self._network = network
            with self._lock:
                self._examples_since_train = 0
            self.trained_at = utc_now()
            self._persist()

        logger.info(
            "Trained amount model for %s on %d examples (loss=%.5f)", self.scope, len(examples), loss
        )
        return TrainingResult(loss=loss, accuracy=1.0 - mae, examples=len(examples), epochs=epochs)

    def predict(self, raw: str) -> RegressionPrediction | None:
        """Suggest an amount, or None without a model or enough examples."""
        network = self._network
        if network is None or len(self._examples) < self.config.regression_min_predict:
            return None
        text = str(raw or "").strip().upper()
        if not text:
            return None

        scaled = float(network.predict(encode_input(text)[np.newaxis, :])[0, 0])
        shape = input_shape(text)
        with self._lock:
            similar = sum(1 for ex in self._examples if input_shape(ex.input) == shape)

        return RegressionPrediction(
            value=float(unscale_amount(scaled)),
            confidence=min(MAX_CONFIDENCE, 0.5 + similar * 0.1),
            similar_examples=similar,
        )

    def status(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "training_examples": len(self._examples),
            "examples_since_train": self._examples_since_train,
            "is_trained": self.is_trained,
            "trained_at": self.trained_at,
        }

    def reset(self) -> None:
        with self._lock:
            self._examples = []
            self._examples_since_train = 0
        self._network = None
        self.trained_at = None
        if self.store is not None:
            try:
                self.store.delete_regression_model(self.scope)
            except StorageUnavailableError as e:
                logger.warning("Could not delete regression model for %s: %s", self.scope, e)
                self.store = None
