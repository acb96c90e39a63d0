"""Segment weight learning."""

from tradecal.learning.backtest import backtest
from tradecal.learning.fitting import FitCandidate, clamped_update, fit, week_version
from tradecal.learning.learner import LearningResult, WeightLearner, commit

__all__ = [
    "backtest",
    "FitCandidate",
    "clamped_update",
    "fit",
    "week_version",
    "LearningResult",
    "WeightLearner",
    "commit",
]
