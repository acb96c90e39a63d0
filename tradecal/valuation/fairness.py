"""Trade fairness scoring.

Pure functions: identical inputs give identical outputs, which the analysis
cache relies on.
"""

from dataclasses import dataclass
from typing import Iterable, Optional
import math

from tradecal.config import FairnessSettings
from tradecal.constants import (
    TIER_FAIR,
    TIER_FLEECE_THEM,
    TIER_FLEECE_YOU,
    TIER_LEAN_THEM,
    TIER_LEAN_YOU,
    TIER_SLIGHT_THEM,
    TIER_SLIGHT_YOU,
)


@dataclass(frozen=True)
class FairnessResult:
    fairness_score: float
    value_delta_pct: float
    tier: str
    grade: str
    total_a: float
    total_b: float

    def to_dict(self) -> dict:
        return {
            "fairness_score": self.fairness_score,
            "value_delta_pct": self.value_delta_pct,
            "tier": self.tier,
            "grade": self.grade,
            "total_a": self.total_a,
            "total_b": self.total_b,
        }


def value_delta_pct(total_a: float, total_b: float) -> float:
    """Signed gain for the side receiving B, relative to the smaller side.

    Equals ``(B - A) / max(1, A)`` whenever the user gains; normalising by the
    smaller total keeps the result antisymmetric when the sides are swapped.
    """
    denominator = max(1.0, min(total_a, total_b))
    return (total_b - total_a) / denominator


def fairness_tier(delta: float, settings: Optional[FairnessSettings] = None) -> str:
    settings = settings or FairnessSettings()
    magnitude = abs(delta)
    if delta == 0 or magnitude <= settings.fair_threshold:
        return TIER_FAIR
    if magnitude <= settings.slight_threshold:
        return TIER_SLIGHT_YOU if delta > 0 else TIER_SLIGHT_THEM
    if magnitude <= settings.lean_threshold:
        return TIER_LEAN_YOU if delta > 0 else TIER_LEAN_THEM
    return TIER_FLEECE_THEM if delta > 0 else TIER_FLEECE_YOU


def trade_score(total_get: float, total_give: float, scale: float = 0.20) -> float:
    """0-100 score, 50 for an even swap, saturating via tanh."""
    if total_give <= 0:
        return 50.0
    ratio = total_get / total_give
    score = 50.0 + 50.0 * math.tanh((ratio - 1.0) / scale)
    return max(0.0, min(100.0, score))


def letter_grade(score: float) -> str:
    if score >= 85:
        return "A"
    if score >= 70:
        return "B"
    if score >= 58:
        return "C"
    if score >= 45:
        return "D"
    return "F"


def score(
    side_a_values: Iterable[float],
    side_b_values: Iterable[float],
    settings: Optional[FairnessSettings] = None,
) -> FairnessResult:
    settings = settings or FairnessSettings()
    total_a = float(sum(side_a_values))
    total_b = float(sum(side_b_values))
    delta = value_delta_pct(total_a, total_b)
    points = trade_score(total_b, total_a, settings.score_scale)
    return FairnessResult(
        fairness_score=round(points, 2),
        value_delta_pct=delta,
        tier=fairness_tier(delta, settings),
        grade=letter_grade(points),
        total_a=total_a,
        total_b=total_b,
    )
