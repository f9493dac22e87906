"""Learned state: amount corrections, OCR substitutions, regression model and name aliases."""

from .aliases import AliasMatch, NameAliasLearner
from .corrections import AutoCorrectDecision, CorrectionStore, CorrectionSuggestion
from .locks import TRAINING_GUARD, ScopeLocks, TrainingGuard, scope_key
from .regression import AmountRegressionModel, RegressionPrediction, TrainingResult
from .substitutions import SubstitutionLearner, SubstitutionPrediction

__all__ = [
    "AliasMatch",
    "AmountRegressionModel",
    "AutoCorrectDecision",
    "CorrectionStore",
    "CorrectionSuggestion",
    "NameAliasLearner",
    "RegressionPrediction",
    "ScopeLocks",
    "SubstitutionLearner",
    "SubstitutionPrediction",
    "TRAINING_GUARD",
    "TrainingGuard",
    "TrainingResult",
    "scope_key",
]
