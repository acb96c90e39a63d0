"""Calibration and discrimination metrics for acceptance predictions."""

from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats


def _arrays(probs: Sequence[float], outcomes: Sequence[int]) -> Tuple[np.ndarray, np.ndarray]:
    p = np.clip(np.asarray(probs, dtype=float), 0.0, 1.0)
    y = np.asarray(outcomes, dtype=float)
    if p.shape != y.shape:
        raise ValueError("probabilities and outcomes must have the same length")
    return p, y


def reliability_buckets(
    probs: Sequence[float],
    outcomes: Sequence[int],
    bins: int = 10,
    min_count: int = 10,
) -> Tuple[List[Dict], Dict]:
    """Equal-width probability buckets with observed acceptance per bucket.

    Every bucket is returned; sparse ones are flagged ``low_confidence``
    instead of being dropped.
    """
    if bins <= 0:
        bins = 10
    p, y = _arrays(probs, outcomes)
    edges = np.linspace(0.0, 1.0, bins + 1)
    idx = np.minimum((p * bins).astype(int), bins - 1) if len(p) else np.array([], dtype=int)
    total = len(p)

    output = []
    ece = 0.0
    mce = 0.0
    for i in range(bins):
        mask = idx == i
        count = int(mask.sum())
        if count:
            mean_predicted = float(p[mask].mean())
            observed_rate = float(y[mask].mean())
            gap = abs(mean_predicted - observed_rate)
            ece += (count / total) * gap
            mce = max(mce, gap)
        else:
            mean_predicted = None
            observed_rate = None
            gap = None
        output.append({
            "lower": round(float(edges[i]), 4),
            "upper": round(float(edges[i + 1]), 4),
            "count": count,
            "mean_predicted": round(mean_predicted, 6) if mean_predicted is not None else None,
            "observed_rate": round(observed_rate, 6) if observed_rate is not None else None,
            "gap": round(gap, 6) if gap is not None else None,
            "low_confidence": count < min_count,
        })

    return output, {
        "samples": total,
        "ece": round(ece, 6),
        "mce": round(mce, 6),
    }


def expected_calibration_error(probs: Sequence[float], outcomes: Sequence[int], bins: int = 10) -> Optional[float]:
    if len(probs) == 0:
        return None
    _, summary = reliability_buckets(probs, outcomes, bins=bins, min_count=0)
    return summary["ece"]


def brier_score(probs: Sequence[float], outcomes: Sequence[int]) -> Optional[float]:
    p, y = _arrays(probs, outcomes)
    if not len(p):
        return None
    return float(np.mean((p - y) ** 2))


def log_loss(probs: Sequence[float], outcomes: Sequence[int], eps: float = 1e-6) -> Optional[float]:
    p, y = _arrays(probs, outcomes)
    if not len(p):
        return None
    p = np.clip(p, eps, 1.0 - eps)
    return float(-np.mean(y * np.log(p) + (1.0 - y) * np.log(1.0 - p)))


def auc(probs: Sequence[float], outcomes: Sequence[int], min_class_count: int = 30) -> Optional[float]:
    """Area under the ROC curve via the rank-sum statistic.

    None when either class has fewer than ``min_class_count`` members.
    """
    p, y = _arrays(probs, outcomes)
    positives = int((y == 1).sum())
    negatives = int((y == 0).sum())
    if positives < max(1, min_class_count) or negatives < max(1, min_class_count):
        return None
    ranks = stats.rankdata(p)
    rank_sum = float(ranks[y == 1].sum())
    u = rank_sum - positives * (positives + 1) / 2.0
    return u / (positives * negatives)


def top_k_hit_rates(
    probs: Sequence[float],
    outcomes: Sequence[int],
    fractions: Sequence[float] = (0.05, 0.10, 0.20),
) -> Dict[str, Optional[float]]:
    p, y = _arrays(probs, outcomes)
    result: Dict[str, Optional[float]] = {}
    order = np.argsort(-p, kind="mergesort")
    for fraction in fractions:
        key = f"top_{int(round(fraction * 100))}pct"
        k = int(np.ceil(len(p) * fraction))
        if k <= 0:
            result[key] = None
            continue
        result[key] = round(float(y[order[:k]].mean()), 6)
    return result


def lift_by_decile(probs: Sequence[float], outcomes: Sequence[int], deciles: int = 10) -> List[Dict]:
    """Observed rate per predicted-probability decile (highest first) relative to the base rate."""
    p, y = _arrays(probs, outcomes)
    if not len(p):
        return []
    base_rate = float(y.mean())
    order = np.argsort(-p, kind="mergesort")
    rows = []
    for i, chunk in enumerate(np.array_split(order, deciles)):
        if not len(chunk):
            continue
        rate = float(y[chunk].mean())
        rows.append({
            "decile": i + 1,
            "count": int(len(chunk)),
            "mean_predicted": round(float(p[chunk].mean()), 6),
            "observed_rate": round(rate, 6),
            "lift": round(rate / base_rate, 4) if base_rate > 0 else None,
        })
    return rows


def compute_metrics(
    probs: Sequence[float],
    outcomes: Sequence[int],
    bins: int = 10,
    auc_min_class_count: int = 30,
) -> Dict:
    if len(probs) == 0:
        return {
            "samples": 0,
            "brier": None,
            "log_loss": None,
            "ece": None,
            "mce": None,
            "auc": None,
        }
    _, bucket_summary = reliability_buckets(probs, outcomes, bins=bins, min_count=0)
    brier = brier_score(probs, outcomes)
    loss = log_loss(probs, outcomes)
    area = auc(probs, outcomes, auc_min_class_count)
    return {
        "samples": len(probs),
        "brier": round(brier, 6),
        "log_loss": round(loss, 6),
        "ece": bucket_summary["ece"],
        "mce": bucket_summary["mce"],
        "auc": round(area, 6) if area is not None else None,
    }
