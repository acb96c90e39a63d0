"""
Isotonic post-calibration of acceptance probabilities.

The logistic model can be well ranked but systematically over- or
under-confident in parts of its range. The isotonic map corrects that:

- raw probabilities are grouped into equal-width bins
- a weighted isotonic regression runs over (mean raw, observed rate) per bin
- new predictions are mapped by linear interpolation between the fitted
  points, clamped to the end points outside the fitted range

Usage:
    from tradecal.calibration.isotonic import apply_isotonic_map, fit_isotonic_map

    isotonic_map = fit_isotonic_map("DYN_SF", raw, accepted, weights.version)
    p = apply_isotonic_map(0.31, isotonic_map)
"""

from datetime import datetime
from typing import Optional, Sequence, Tuple
import logging

import numpy as np
from sklearn.isotonic import IsotonicRegression

from tradecal.calibration.metrics import expected_calibration_error
from tradecal.config import AcceptanceSettings, IsotonicSettings
from tradecal.models.records import IsotonicMap, IsotonicPoint

logger = logging.getLogger(__name__)


def bin_pairs(predictions: Sequence[float], outcomes: Sequence[float],
              bin_count: int = 20) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Mean prediction, observed rate and count for every non-empty bin."""
    p = np.clip(np.asarray(predictions, dtype=float), 0.0, 1.0)
    y = np.asarray(outcomes, dtype=float)
    idx = np.minimum((p * bin_count).astype(int), bin_count - 1)
    counts = np.bincount(idx, minlength=bin_count)
    sum_p = np.bincount(idx, weights=p, minlength=bin_count)
    sum_y = np.bincount(idx, weights=y, minlength=bin_count)
    keep = counts > 0
    return sum_p[keep] / counts[keep], sum_y[keep] / counts[keep], counts[keep]


def _interpolate(probabilities: np.ndarray, points: Sequence[IsotonicPoint]) -> np.ndarray:
    xs = np.array([point.x for point in points], dtype=float)
    ys = np.array([point.y for point in points], dtype=float)
    # np.interp holds the end values outside [xs[0], xs[-1]]
    return np.interp(np.clip(probabilities, 0.0, 1.0), xs, ys)


def fit_isotonic_map(
    segment: str,
    predictions: Sequence[float],
    outcomes: Sequence[float],
    weights_version: str,
    settings: Optional[IsotonicSettings] = None,
    computed_at: Optional[datetime] = None,
) -> Optional[IsotonicMap]:
    """Fit a map from raw probabilities to observed acceptance.

    Args:
        segment: Segment key the map belongs to
        predictions: Raw (pre-isotonic) probabilities from ``weights_version``
        outcomes: 1 for accepted, 0 for rejected
        weights_version: Version of the weights that produced ``predictions``
        settings: Sample and bin thresholds
        computed_at: Timestamp stored on the map

    Returns:
        IsotonicMap, or None when there are too few samples or occupied bins
    """
    settings = settings or IsotonicSettings()
    if len(predictions) < settings.min_samples:
        logger.info(f"Only {len(predictions)} outcomes for {segment}, need {settings.min_samples} for isotonic map")
        return None

    xs, ys, counts = bin_pairs(predictions, outcomes, settings.bin_count)
    if len(xs) < settings.min_points:
        logger.info(f"Isotonic map for {segment} skipped: {len(xs)} occupied bins")
        return None

    model = IsotonicRegression(out_of_bounds="clip", y_min=0.0, y_max=1.0)
    model.fit(xs, ys, sample_weight=counts)
    fitted = model.predict(xs)
    points = tuple(
        IsotonicPoint(round(float(x), 4), round(float(v), 4), int(c))
        for x, v, c in zip(xs, fitted, counts)
    )

    raw = np.asarray(predictions, dtype=float)
    calibrated = _interpolate(raw, points)
    return IsotonicMap(
        segment=segment,
        weights_version=weights_version,
        points=points,
        sample_size=int(len(raw)),
        ece_before=round(expected_calibration_error(raw, outcomes), 4),
        ece_after=round(expected_calibration_error(calibrated, outcomes), 4),
        computed_at=computed_at or datetime.utcnow(),
    )


def apply_isotonic_map(
    probability: float,
    isotonic_map: Optional[IsotonicMap],
    acceptance: Optional[AcceptanceSettings] = None,
) -> float:
    """Calibrated probability, clipped to the model's probability bounds.

    Without a map (or with an empty one) the raw probability comes back
    unchanged.
    """
    if isotonic_map is None or not isotonic_map.points:
        return probability
    acceptance = acceptance or AcceptanceSettings()
    value = float(_interpolate(np.array([probability]), isotonic_map.points)[0])
    return max(acceptance.probability_floor, min(acceptance.probability_ceiling, round(value, 6)))
