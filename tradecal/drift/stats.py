"""Distribution statistics used by the drift detector."""

from typing import Optional, Sequence

import numpy as np
from scipy import stats

PSI_EDGES = np.arange(-2.0, 2.0 + 1e-9, 0.5)
PSI_FLOOR = 1e-6


def spearman_rho(x: Sequence[float], y: Sequence[float]) -> float:
    """Spearman rank correlation with average ranks for ties.

    Returns 0.0 for fewer than three points or a constant input.
    """
    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    if len(a) < 3 or len(a) != len(b):
        return 0.0
    if np.all(a == a[0]) or np.all(b == b[0]):
        return 0.0
    ra = stats.rankdata(a)
    rb = stats.rankdata(b)
    rho = np.corrcoef(ra, rb)[0, 1]
    return float(rho) if np.isfinite(rho) else 0.0


def _histogram(values: np.ndarray, edges: np.ndarray) -> np.ndarray:
    clipped = np.clip(values, edges[0], edges[-1])
    counts, _ = np.histogram(clipped, bins=edges)
    share = counts / max(1, len(values))
    return np.maximum(share, PSI_FLOOR)


def psi(reference: Sequence[float], current: Sequence[float],
        edges: Optional[np.ndarray] = None) -> float:
    """Population stability index of ``current`` against ``reference``."""
    edges = PSI_EDGES if edges is None else np.asarray(edges, dtype=float)
    ref = np.asarray(reference, dtype=float)
    cur = np.asarray(current, dtype=float)
    if not len(ref) or not len(cur):
        return 0.0
    expected = _histogram(ref, edges)
    actual = _histogram(cur, edges)
    return float(np.sum((actual - expected) * np.log(actual / expected)))


def mean_shift_z(reference: Sequence[float], current: Sequence[float]) -> float:
    """Difference of means in units of the pooled standard error."""
    ref = np.asarray(reference, dtype=float)
    cur = np.asarray(current, dtype=float)
    if len(ref) < 2 or len(cur) < 2:
        return 0.0
    pooled_var = (
        (len(ref) - 1) * ref.var(ddof=1) + (len(cur) - 1) * cur.var(ddof=1)
    ) / (len(ref) + len(cur) - 2)
    if pooled_var <= 0:
        return 0.0
    se = np.sqrt(pooled_var * (1.0 / len(ref) + 1.0 / len(cur)))
    return float((cur.mean() - ref.mean()) / se)
