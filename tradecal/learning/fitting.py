"""
Segment Weight Fitting
======================
Pure fitting step of the weight learner: no repository access, no clock
beyond the timestamps passed in.

A fit proposes unconstrained coefficients by L2-regularised logistic
regression, then moves the prior toward them by at most ``max_weight_delta``
per coefficient (clamped learning), recalibrates the intercept in log-odds
space, and scores prior and candidate on a time-ordered holdout slice.

Usage:
    from tradecal.learning.fitting import fit

    candidate = fit("DYN_SF", outcomes, prior_weights, settings)
    if candidate.improved:
        ...
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
from scipy import optimize
from scipy.special import expit

from tradecal.calibration.metrics import brier_score, expected_calibration_error, log_loss
from tradecal.config import AcceptanceSettings, LearnerSettings
from tradecal.constants import FEATURE_NAMES
from tradecal.exceptions import InsufficientDataError, LearningError
from tradecal.models.acceptance import logit
from tradecal.models.records import FeatureWeights, Outcome, SegmentWeights

logger = logging.getLogger(__name__)

STATUS_APPLIED = "APPLIED"
STATUS_REJECTED = "REJECTED"
STATUS_INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
STATUS_NO_NEW_DATA = "NO_NEW_DATA"
STATUS_FAILED = "FAILED"
STATUS_ROLLED_BACK = "ROLLED_BACK"
STATUS_DRY_RUN = "DRY_RUN"
STATUS_CANDIDATE = "CANDIDATE"

# Keeps the intercept finite when every outcome has the same label.
_INTERCEPT_L2 = 1e-3
# Keeps floating-point rounding inside the clamp.
_CLAMP_SLACK = 1.0 - 1e-9


@dataclass
class FitCandidate:
    """Result of a pure fit: a candidate plus the score comparison."""
    segment: str
    status: str
    prior: SegmentWeights
    learned: Optional[SegmentWeights] = None
    proposed_weights: Dict[str, float] = field(default_factory=dict)
    proposed_b0: Optional[float] = None
    baseline_score: Optional[float] = None
    learned_score: Optional[float] = None
    improved: bool = False
    sample_size: int = 0
    train_size: int = 0
    holdout_size: int = 0
    message: str = ""


def week_version(segment: str, as_of: datetime) -> str:
    iso_year, iso_week, _ = as_of.isocalendar()
    return f"rw_{iso_year}w{iso_week:02d}_{segment}"


def week_start(moment: datetime) -> datetime:
    """Monday 00:00 of the week containing ``moment``."""
    day = datetime(moment.year, moment.month, moment.day)
    return day - timedelta(days=day.weekday())


def usable_outcomes(outcomes: Sequence[Outcome]) -> List[Outcome]:
    """Outcomes carrying a feature snapshot, oldest first."""
    return sorted((o for o in outcomes if o.features is not None), key=lambda o: o.observed_at)


def design_matrix(outcomes: Sequence[Outcome]) -> Tuple[np.ndarray, np.ndarray]:
    if not outcomes:
        return np.zeros((0, 4)), np.zeros(0)
    X = np.array([o.features.as_list() for o in outcomes], dtype=float)
    y = np.array([1.0 if o.accepted else 0.0 for o in outcomes], dtype=float)
    return X, y


def predict_matrix(weights: SegmentWeights, X: np.ndarray,
                   acceptance: Optional[AcceptanceSettings] = None) -> np.ndarray:
    acceptance = acceptance or AcceptanceSettings()
    w = np.asarray(weights.feature_weights.as_list(), dtype=float)
    p = expit(weights.b0 + X @ w) if len(X) else np.zeros(0)
    return np.clip(p, acceptance.probability_floor, acceptance.probability_ceiling)


def clamped_update(
    old: Sequence[float],
    proposed: Sequence[float],
    max_delta: float,
    min_weight: float = 0.0,
    max_weight: float = 3.0,
) -> List[float]:
    """Move ``old`` toward ``proposed`` by at most ``max_delta`` per weight.

    The result is renormalised to the old weight total; renormalisation is
    re-clamped, so ``|new - old| <= max_delta`` holds for every weight.
    """
    old_arr = np.asarray(old, dtype=float)
    proposed_arr = np.asarray(proposed, dtype=float)
    step = max_delta * _CLAMP_SLACK
    low = np.maximum(old_arr - step, min_weight)
    high = np.minimum(old_arr + step, max_weight)
    target_total = float(old_arr.sum())

    new = np.clip(proposed_arr, low, high)
    for _ in range(20):
        total = float(new.sum())
        if total <= 0 or abs(total - target_total) < 1e-12:
            break
        new = np.clip(new * (target_total / total), low, high)
    return [float(v) for v in new]


def _propose(X: np.ndarray, y: np.ndarray, prior: SegmentWeights,
             settings: LearnerSettings, segment: str) -> Tuple[float, np.ndarray]:
    prior_w = np.asarray(prior.feature_weights.as_list(), dtype=float)
    n = float(len(y))

    def objective(params: np.ndarray) -> Tuple[float, np.ndarray]:
        b0 = params[0]
        w = params[1:]
        z = b0 + X @ w
        loss = float(np.mean(np.logaddexp(0.0, z) - y * z))
        diff = w - prior_w
        penalty = settings.l2 * float(diff @ diff) + _INTERCEPT_L2 * (b0 - prior.b0) ** 2
        residual = (expit(z) - y) / n
        grad = np.empty_like(params)
        grad[0] = residual.sum() + 2.0 * _INTERCEPT_L2 * (b0 - prior.b0)
        grad[1:] = X.T @ residual + 2.0 * settings.l2 * diff
        return loss + penalty, grad

    start = np.concatenate([[prior.b0], prior_w])
    bounds = [(None, None)] + [(settings.min_weight, settings.max_weight)] * len(prior_w)
    try:
        result = optimize.minimize(objective, start, jac=True, method="L-BFGS-B", bounds=bounds)
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as e:
        raise LearningError(segment, "optimizer raised", e)

    if not np.all(np.isfinite(result.x)) or not np.isfinite(result.fun):
        raise LearningError(segment, f"non-finite coefficients ({result.message})")
    if not result.success:
        logger.warning(f"Optimizer for {segment} stopped early: {result.message}")
    return float(result.x[0]), np.asarray(result.x[1:], dtype=float)


def recalibrate_intercept(
    b0: float,
    weights: FeatureWeights,
    X: np.ndarray,
    y: np.ndarray,
    settings: LearnerSettings,
    acceptance: AcceptanceSettings,
) -> float:
    """Shift the intercept by the log-odds gap between observed and predicted rates."""
    if not len(y):
        return b0
    w = np.asarray(weights.as_list(), dtype=float)
    predicted_mean = float(np.mean(expit(b0 + X @ w)))
    observed_mean = float(np.mean(y))
    shift = logit(observed_mean) - logit(predicted_mean)
    shift = max(-settings.max_intercept_delta, min(settings.max_intercept_delta, shift))
    low = acceptance.default_b0 - settings.intercept_band
    high = acceptance.default_b0 + settings.intercept_band
    return max(low, min(high, b0 + shift))


def fit(
    segment: str,
    outcomes: Sequence[Outcome],
    prior: SegmentWeights,
    settings: Optional[LearnerSettings] = None,
    acceptance: Optional[AcceptanceSettings] = None,
    as_of: Optional[datetime] = None,
    version: Optional[str] = None,
) -> FitCandidate:
    """Fit a candidate for one segment without touching storage.

    Raises:
        InsufficientDataError: if fewer than ``min_samples`` outcomes carry features
        LearningError: if the optimizer produces unusable coefficients
    """
    settings = settings or LearnerSettings()
    acceptance = acceptance or AcceptanceSettings()
    as_of = as_of or datetime.utcnow()
    usable = usable_outcomes(outcomes)

    if len(usable) < max(2, settings.min_samples):
        raise InsufficientDataError(segment, max(2, settings.min_samples), len(usable))

    holdout_size = max(1, int(round(len(usable) * settings.holdout_fraction)))
    holdout_size = min(holdout_size, len(usable) - 1)
    train, holdout = usable[:-holdout_size], usable[-holdout_size:]
    X_train, y_train = design_matrix(train)
    X_hold, y_hold = design_matrix(holdout)

    proposed_b0, proposed_w = _propose(X_train, y_train, prior, settings, segment)
    new_w = FeatureWeights.from_list(clamped_update(
        prior.feature_weights.as_list(),
        proposed_w,
        settings.max_weight_delta,
        settings.min_weight,
        settings.max_weight,
    ))
    new_b0 = recalibrate_intercept(prior.b0, new_w, X_train, y_train, settings, acceptance)

    baseline_probs = predict_matrix(prior, X_hold, acceptance)
    baseline_score = brier_score(baseline_probs, y_hold)

    learned = SegmentWeights(
        segment=segment,
        b0=new_b0,
        feature_weights=new_w,
        updated_at=datetime.utcnow(),
        sample_size=len(usable),
        version=version or week_version(segment, as_of),
        trained_through=usable[-1].observed_at,
    )
    learned_probs = predict_matrix(learned, X_hold, acceptance)
    learned_score = brier_score(learned_probs, y_hold)
    learned = SegmentWeights(
        segment=learned.segment,
        b0=learned.b0,
        feature_weights=learned.feature_weights,
        updated_at=learned.updated_at,
        sample_size=learned.sample_size,
        version=learned.version,
        trained_through=learned.trained_through,
        holdout_metrics={
            "brier": round(learned_score, 6),
            "baseline_brier": round(baseline_score, 6),
            "ece": expected_calibration_error(learned_probs, y_hold) or 0.0,
            "log_loss": round(log_loss(learned_probs, y_hold), 6),
            "holdout_size": float(len(holdout)),
        },
    )

    improved = learned_score < baseline_score - settings.min_improvement
    logger.info(
        f"Fit {segment}: n={len(usable)} baseline={baseline_score:.5f} "
        f"learned={learned_score:.5f} improved={improved}"
    )
    return FitCandidate(
        segment=segment,
        status=STATUS_CANDIDATE,
        prior=prior,
        learned=learned,
        proposed_weights={
            name: round(float(v), 6)
            for name, v in zip(FEATURE_NAMES, proposed_w)
        },
        proposed_b0=proposed_b0,
        baseline_score=baseline_score,
        learned_score=learned_score,
        improved=improved,
        sample_size=len(usable),
        train_size=len(train),
        holdout_size=len(holdout),
    )
