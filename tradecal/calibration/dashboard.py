"""Calibration dashboard over logged predictions and resolved outcomes."""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from tradecal.calibration.metrics import (
    compute_metrics,
    lift_by_decile,
    reliability_buckets,
    top_k_hit_rates,
)
from tradecal.config import DashboardSettings

logger = logging.getLogger(__name__)

STATUS_GOOD = "good"
STATUS_WATCH = "watch"
STATUS_CRITICAL = "critical"

_BASE_COLUMNS = ["offer_id", "segment", "offered_at", "predicted", "accepted"]

_KEY_ALIASES = {
    "leagueformat": "format",
    "league_format": "format",
    "scoringtype": "scoring",
    "scoring_type": "scoring",
}

_TOKEN_FILTERS = {
    "sf": ("format", "sf"),
    "superflex": ("format", "sf"),
    "1qb": ("format", "1qb"),
    "dynasty": ("mode", "dynasty"),
    "redraft": ("mode", "redraft"),
    "tep": ("tep", "true"),
    "ppr": ("scoring", "ppr"),
    "half_ppr": ("scoring", "half_ppr"),
    "standard": ("scoring", "standard"),
}


def _normalize_key(key: str) -> str:
    key = str(key).strip().lower()
    return _KEY_ALIASES.get(key, key)


def parse_filter_tokens(tokens: Iterable[str]) -> Dict[str, str]:
    """Turn CLI/API tokens (``sf``, ``dynasty``, ``segment=DYN_SF``) into filters."""
    filters: Dict[str, str] = {}
    for token in tokens:
        token = str(token).strip()
        if not token:
            continue
        if "=" in token:
            key, value = token.split("=", 1)
            filters[_normalize_key(key)] = value.strip()
            continue
        mapped = _TOKEN_FILTERS.get(token.lower())
        if mapped is None:
            logger.warning(f"Ignoring unknown dashboard filter token: {token}")
            continue
        filters[mapped[0]] = mapped[1]
    return filters


def build_frame(rows: Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    """Flatten prediction rows (with an ``attributes`` mapping) into a frame."""
    records = []
    for row in rows:
        record = {key: row.get(key) for key in _BASE_COLUMNS}
        for key, value in (row.get("attributes") or {}).items():
            record.setdefault(_normalize_key(key), value)
        records.append(record)
    frame = pd.DataFrame.from_records(records)
    if frame.empty:
        return pd.DataFrame(columns=_BASE_COLUMNS)
    frame["offered_at"] = pd.to_datetime(frame["offered_at"])
    frame["predicted"] = frame["predicted"].astype(float)
    return frame


def _match(frame: pd.DataFrame, key: str, value: Any) -> pd.Series:
    key = _normalize_key(key)
    if key not in frame.columns:
        return pd.Series(False, index=frame.index)
    if key == "segment":
        return frame[key].astype(str) == str(value)
    return frame[key].astype(str).str.lower() == str(value).strip().lower()


def apply_filters(frame: pd.DataFrame, filters: Optional[Mapping[str, Any]]) -> pd.DataFrame:
    if not filters or frame.empty:
        return frame
    mask = pd.Series(True, index=frame.index)
    for key, value in filters.items():
        if value is None or value == "":
            continue
        mask &= _match(frame, key, value)
    return frame[mask]


def _resolved(frame: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray]:
    if frame.empty:
        return np.zeros(0), np.zeros(0)
    resolved = frame[frame["accepted"].notna()]
    probs = resolved["predicted"].to_numpy(dtype=float)
    outcomes = resolved["accepted"].astype(bool).to_numpy(dtype=float)
    return probs, outcomes


def _status(value: Optional[float], watch: float, critical: float) -> Optional[str]:
    if value is None:
        return None
    if value >= critical:
        return STATUS_CRITICAL
    if value >= watch:
        return STATUS_WATCH
    return STATUS_GOOD


def _group_table(frame: pd.DataFrame, key: str, settings: DashboardSettings) -> List[Dict]:
    key = _normalize_key(key)
    if frame.empty or key not in frame.columns:
        return []
    rows = []
    for value, group in frame.groupby(frame[key].astype(str), sort=True):
        probs, outcomes = _resolved(group)
        metrics = compute_metrics(probs, outcomes, settings.n_buckets, settings.auc_min_class_count)
        rows.append({
            key: value,
            "offer_count": int(len(group)),
            "resolved_count": int(len(probs)),
            "mean_predicted": round(float(probs.mean()), 6) if len(probs) else None,
            "mean_observed": round(float(outcomes.mean()), 6) if len(probs) else None,
            "ece": metrics["ece"],
            "brier": metrics["brier"],
            "low_confidence": len(probs) < settings.min_bucket_count,
        })
    return rows


def compute_dashboard(
    rows: Iterable[Mapping[str, Any]],
    window_days: Optional[int] = None,
    filters: Optional[Mapping[str, Any]] = None,
    drill_down: Optional[Tuple[str, Optional[str]]] = None,
    as_of: Optional[datetime] = None,
    settings: Optional[DashboardSettings] = None,
) -> Dict[str, Any]:
    """Buckets, metrics and headline cards for predictions in the window.

    ``drill_down`` is ``(key, value)``; with a value the dashboard is narrowed
    to that slice, with ``None`` a per-value breakdown table is added instead.
    """
    settings = settings or DashboardSettings()
    window_days = window_days or settings.window_days
    as_of = as_of or datetime.utcnow()
    frame = build_frame(rows)
    if not frame.empty:
        frame = frame[frame["offered_at"] >= pd.Timestamp(as_of - timedelta(days=window_days))]
        frame = frame[frame["offered_at"] <= pd.Timestamp(as_of)]
    frame = apply_filters(frame, filters)

    breakdown: List[Dict] = []
    if drill_down is not None:
        key, value = drill_down
        if value is None:
            breakdown = _group_table(frame, key, settings)
        elif not frame.empty:
            frame = frame[_match(frame, key, value)]

    probs, outcomes = _resolved(frame)
    buckets, _ = reliability_buckets(probs, outcomes, settings.n_buckets, settings.min_bucket_count)
    metrics = compute_metrics(probs, outcomes, settings.n_buckets, settings.auc_min_class_count)
    segments = _group_table(frame, "segment", settings)

    ranked_segments = [row for row in segments if not row["low_confidence"] and row["ece"] is not None]
    worst = max(ranked_segments, key=lambda row: row["ece"]) if ranked_segments else None

    summary_cards = {
        "mean_predicted": round(float(probs.mean()), 6) if len(probs) else None,
        "mean_observed": round(float(outcomes.mean()), 6) if len(probs) else None,
        "offer_count": int(len(frame)),
        "resolved_count": int(len(probs)),
        "ece": metrics["ece"],
        "ece_status": _status(metrics["ece"], settings.ece_watch, settings.ece_critical),
        "brier": metrics["brier"],
        "auc": metrics["auc"],
        "worst_segment": worst["segment"] if worst else None,
        "worst_segment_ece": worst["ece"] if worst else None,
        "worst_segment_status": _status(
            worst["ece"] if worst else None,
            settings.segment_ece_watch,
            settings.segment_ece_critical,
        ),
    }

    return {
        "as_of": as_of.isoformat(),
        "window_days": window_days,
        "filters": dict(filters or {}),
        "drill_down": list(drill_down) if drill_down else None,
        "buckets": buckets,
        "summary_cards": summary_cards,
        "metrics": metrics,
        "top_k": top_k_hit_rates(probs, outcomes, settings.top_k_fractions),
        "lift": lift_by_decile(probs, outcomes),
        "segments": segments,
        "breakdown": breakdown,
    }
