"""Acceptance probability model.

Logistic regression over four counterparty-perspective features with a
per-segment intercept. ``resolve_weights`` is the only place that decides
between learned and default coefficients.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple
import logging
import math

from tradecal.config import AcceptanceSettings
from tradecal.constants import (
    DEFAULT_SCARCITY,
    FEATURE_BOUND,
    FEATURE_NAMES,
    POSITION_SCARCITY,
    WEIGHTS_SOURCE_DEFAULT,
    WEIGHTS_SOURCE_LEARNED,
)
from tradecal.exceptions import PersistenceError, SchemaVersionError
from tradecal.models.records import (
    AcceptanceFeatures,
    FeatureWeights,
    PricedAsset,
    SegmentWeights,
    TradeOffer,
)

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "default"
_NEUTRAL_NEED = 0.5


def _clamp(value: float, low: float = -FEATURE_BOUND, high: float = FEATURE_BOUND) -> float:
    return max(low, min(high, value))


def sigmoid(z: float) -> float:
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def logit(p: float, eps: float = 1e-6) -> float:
    p = min(1.0 - eps, max(eps, p))
    return math.log(p / (1.0 - p))


# =============================================================================
# WEIGHTS
# =============================================================================

def default_weights(segment: str, settings: Optional[AcceptanceSettings] = None) -> SegmentWeights:
    settings = settings or AcceptanceSettings()
    return SegmentWeights(
        segment=segment,
        b0=settings.default_b0,
        feature_weights=FeatureWeights.uniform(settings.default_feature_weight),
        sample_size=0,
        version=DEFAULT_VERSION,
    )


def resolve_weights(
    segment: str,
    repository=None,
    settings: Optional[AcceptanceSettings] = None,
) -> Tuple[SegmentWeights, str]:
    """Return ``(weights, source)`` where source is "learned" or "default".

    A repository failure degrades to the defaults rather than failing the
    prediction; the source annotation makes the fallback visible.
    """
    if repository is not None:
        try:
            active = repository.get_active_weights(segment)
        except (PersistenceError, SchemaVersionError) as e:
            logger.warning(f"Could not read weights for {segment}, using defaults: {e}")
            active = None
        if active is not None and active.version != DEFAULT_VERSION:
            return active, WEIGHTS_SOURCE_LEARNED
    return default_weights(segment, settings), WEIGHTS_SOURCE_DEFAULT


# =============================================================================
# FEATURES
# =============================================================================

def _position_key(priced: PricedAsset) -> str:
    return (priced.asset.position or ("PICK" if priced.asset.is_pick else "")).upper()


def _mean_need(assets: Sequence[PricedAsset], needs: Dict[str, float]) -> float:
    if not assets:
        return _NEUTRAL_NEED
    values = [needs.get(_position_key(p), _NEUTRAL_NEED) for p in assets]
    return sum(values) / len(values)


def _weighted_scarcity(assets: Sequence[PricedAsset]) -> float:
    if not assets:
        return DEFAULT_SCARCITY
    scarcities = [POSITION_SCARCITY.get(_position_key(p), DEFAULT_SCARCITY) for p in assets]
    total = sum(p.value for p in assets)
    if total <= 0:
        return sum(scarcities) / len(scarcities)
    return sum(p.value * s for p, s in zip(assets, scarcities)) / total


def build_features(
    offer: TradeOffer,
    priced_a: Sequence[PricedAsset],
    priced_b: Sequence[PricedAsset],
    value_delta_pct: float,
    settings: Optional[AcceptanceSettings] = None,
) -> AcceptanceFeatures:
    """Features from the counterparty's point of view.

    The counterparty receives side A and gives up side B, so their value gain
    is the negated delta.
    """
    settings = settings or AcceptanceSettings()
    context = offer.context
    value_delta = _clamp(-value_delta_pct / settings.value_delta_scale)
    liquidity = _clamp(2.0 * float(context.liquidity) - 1.0, -1.0, 1.0)
    needs = {k.upper(): float(v) for k, v in context.counterparty_needs.items()}
    if needs:
        archetype_fit = _clamp(2.0 * (_mean_need(priced_a, needs) - _mean_need(priced_b, needs)))
    else:
        archetype_fit = 0.0
    scarcity = _clamp(4.0 * (_weighted_scarcity(priced_a) - _weighted_scarcity(priced_b)))
    return AcceptanceFeatures(
        value_delta=value_delta,
        liquidity=liquidity,
        archetype_fit=archetype_fit,
        scarcity=scarcity,
    )


# =============================================================================
# PREDICTION
# =============================================================================

def linear_score(features: AcceptanceFeatures, weights: SegmentWeights) -> float:
    return weights.b0 + sum(
        w * x for w, x in zip(weights.feature_weights.as_list(), features.as_list())
    )


def predict(
    features: AcceptanceFeatures,
    weights: SegmentWeights,
    settings: Optional[AcceptanceSettings] = None,
) -> float:
    settings = settings or AcceptanceSettings()
    p = sigmoid(linear_score(features, weights))
    return max(settings.probability_floor, min(settings.probability_ceiling, p))


def explain(features: AcceptanceFeatures, weights: SegmentWeights) -> Dict[str, Dict[str, float]]:
    result: Dict[str, Dict[str, float]] = {}
    for name, x, w in zip(FEATURE_NAMES, features.as_list(), weights.feature_weights.as_list()):
        result[name] = {
            "value": round(x, 4),
            "weight": round(w, 4),
            "contribution": round(w * x, 4),
        }
    result["intercept"] = {"value": 1.0, "weight": round(weights.b0, 4), "contribution": round(weights.b0, 4)}
    return result
