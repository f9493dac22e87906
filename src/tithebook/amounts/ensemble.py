"""
Ensemble amount correction.

Combines the character-substitution learner with the regression model.
When both agree the confidence is boosted; when they disagree the value
with the highest confidence-weighted vote wins.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..learning.locks import scope_key
from .normalizer import normalize_amount

if TYPE_CHECKING:
    from ..learning.regression import AmountRegressionModel
    from ..learning.substitutions import SubstitutionLearner

logger = logging.getLogger(__name__)

MIN_MODEL_CONFIDENCE = 0.5
AGREEMENT_BOOST = 0.1
MAX_AGREED_CONFIDENCE = 0.98
MAX_DISAGREED_CONFIDENCE = 0.9


@dataclass
class EnsemblePrediction:
    value: float
    confidence: float
    method: str  # "ensemble", "char_substitution" or "ml"
    agreement: int  # number of methods that produced ``value``
    breakdown: dict[str, dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "method": self.method,
            "agreement": self.agreement,
            "breakdown": self.breakdown,
        }


class EnsembleCorrector:
    """Votes between the substitution learner and a per-scope regression model."""

    def __init__(
        self,
        substitutions: SubstitutionLearner,
        model_factory: Callable[[str], AmountRegressionModel] | None = None,
    ) -> None:
        self.substitutions = substitutions
        self.model_factory = model_factory
        self._models: dict[str, AmountRegressionModel] = {}
        self._models_lock = threading.Lock()

    def model_for(self, scope: str) -> AmountRegressionModel | None:
        if self.model_factory is None:
            return None
        key = scope_key(scope)
        with self._models_lock:
            model = self._models.get(key)
            if model is None:
                model = self.model_factory(key)
                self._models[key] = model
            return model

    def predict(self, scope: str, raw: str) -> EnsemblePrediction | None:
        predictions: list[tuple[str, float, float]] = []  # (method, value, confidence)
        breakdown: dict[str, dict[str, float]] = {}

        substitution = self.substitutions.predict(scope, raw)
        if substitution:
            predictions.append(("char_substitution", substitution.value, substitution.confidence))
            breakdown["char_substitution"] = {
                "value": substitution.value,
                "confidence": substitution.confidence,
            }

        model = self.model_for(scope)
        regression = model.predict(raw) if model else None
        if regression and regression.confidence > MIN_MODEL_CONFIDENCE:
            predictions.append(("ml", regression.value, regression.confidence))
            breakdown["ml"] = {"value": regression.value, "confidence": regression.confidence}

        if not predictions:
            return None

        values = {value for _, value, _ in predictions}
        if len(values) == 1 and len(predictions) > 1:
            average = sum(conf for _, _, conf in predictions) / len(predictions)
            return EnsemblePrediction(
                value=predictions[0][1],
                confidence=min(MAX_AGREED_CONFIDENCE, average + AGREEMENT_BOOST),
                method="ensemble",
                agreement=len(predictions),
                breakdown=breakdown,
            )

        votes: dict[float, float] = {}
        for _, value, confidence in predictions:
            votes[value] = votes.get(value, 0.0) + confidence
        best_value = max(votes, key=lambda v: votes[v])
        method, _, confidence = next(p for p in predictions if p[1] == best_value)

        return EnsemblePrediction(
            value=best_value,
            confidence=min(MAX_DISAGREED_CONFIDENCE, confidence),
            method=method,
            agreement=sum(1 for p in predictions if p[1] == best_value),
            breakdown=breakdown,
        )

    def train(self, scope: str, original: str, corrected: float) -> None:
        """Feed one verified correction to every learner."""
        self.substitutions.learn(scope, original, corrected)
        model = self.model_for(scope)
        if model is not None:
            model.add_example(original, corrected)

    def train_from_verified_batch(
        self, scope: str, pairs: Iterable[tuple[str, float]]
    ) -> int:
        """Train on (raw OCR text, verified amount) pairs from a reviewed batch.

        Pairs whose raw text does not resolve to any number are skipped.
        Returns the number of pairs used.
        """
        trained = 0
        for original, corrected in pairs:
            if not original or normalize_amount(original) == 0:
                continue
            self.train(scope, original, corrected)
            trained += 1
        if trained:
            logger.info("Trained ensemble for %s on %d verified amounts", scope, trained)
        return trained

    def stats(self, scope: str) -> dict[str, Any]:
        model = self.model_for(scope)
        return {
            "char_sub_patterns": self.substitutions.stats(scope)["total_patterns"],
            "ml_examples": model.example_count if model else 0,
            "ml_model_loaded": bool(model and model.is_trained),
        }
