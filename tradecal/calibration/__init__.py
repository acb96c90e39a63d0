"""
Calibration metrics and dashboard.

Usage:
    from tradecal.calibration import compute_dashboard

    dashboard = compute_dashboard(rows, window_days=30, filters={"mode": "dynasty"})
    print(dashboard["summary_cards"])
"""

from tradecal.calibration.dashboard import apply_filters, compute_dashboard, parse_filter_tokens
from tradecal.calibration.isotonic import apply_isotonic_map, fit_isotonic_map
from tradecal.calibration.metrics import (
    auc,
    brier_score,
    compute_metrics,
    expected_calibration_error,
    lift_by_decile,
    log_loss,
    reliability_buckets,
    top_k_hit_rates,
)

__all__ = [
    "apply_filters",
    "compute_dashboard",
    "parse_filter_tokens",
    "apply_isotonic_map",
    "fit_isotonic_map",
    "auc",
    "brier_score",
    "compute_metrics",
    "expected_calibration_error",
    "lift_by_decile",
    "log_loss",
    "reliability_buckets",
    "top_k_hit_rates",
]
