"""Drift detection over logged predictions and outcomes."""

from tradecal.drift.detector import detect
from tradecal.drift.stats import mean_shift_z, psi, spearman_rho

__all__ = ["detect", "mean_shift_z", "psi", "spearman_rho"]
