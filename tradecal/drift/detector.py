"""
Drift Detector
==============
Compares the recent prediction window against what the model promised and
against the preceding reference window.

Checks:
- calibration: mean predicted vs observed acceptance rate
- rank order: Spearman rho of predictions vs outcomes, plus consistency of
  predictions with the value-delta feature
- per segment: current gap against that segment's reference baseline
- input shift: PSI and mean-shift z-score per feature

Every check degrades to ``insufficient_data`` instead of raising. The
report status stays ``insufficient_data`` until the calibration check has
enough resolved outcomes.

Usage:
    from tradecal.drift import detect

    report = detect(rows, segment="DYN_SF", as_of=datetime.utcnow())
    print(report.summary())
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np

from tradecal.calibration.metrics import expected_calibration_error
from tradecal.config import DriftSettings
from tradecal.constants import FEATURE_NAMES, FEATURE_VALUE_DELTA
from tradecal.drift.stats import mean_shift_z, psi, spearman_rho
from tradecal.models.records import (
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_OK,
    SEVERITY_WARN,
    STATUS_INSUFFICIENT_DATA,
    DriftAlert,
    DriftReport,
    max_severity,
    parse_datetime,
)

logger = logging.getLogger(__name__)

CATEGORY_CALIBRATION = "calibration"
CATEGORY_RANK = "rank"
CATEGORY_SEGMENT = "segment"
CATEGORY_INPUT = "input"


def _above(value: float, warn: float, critical: float) -> str:
    if value > critical:
        return SEVERITY_CRITICAL
    if value > warn:
        return SEVERITY_WARN
    return SEVERITY_OK


def _below(value: float, warn: float, critical: float) -> str:
    if value < critical:
        return SEVERITY_CRITICAL
    if value < warn:
        return SEVERITY_WARN
    return SEVERITY_OK


def _normalize(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    normalized = []
    for row in rows:
        if row.get("predicted") is None or row.get("offered_at") is None:
            continue
        offered_at = row["offered_at"]
        if not isinstance(offered_at, datetime):
            offered_at = parse_datetime(offered_at)
        accepted = row.get("accepted")
        normalized.append({
            "segment": row.get("segment"),
            "offered_at": offered_at,
            "predicted": float(row["predicted"]),
            "accepted": None if accepted is None else bool(accepted),
            "features": dict(row.get("features") or {}),
        })
    return normalized


def _split(rows: Sequence[Dict], as_of: datetime, settings: DriftSettings) -> Tuple[List[Dict], List[Dict]]:
    current_start = as_of - timedelta(days=settings.window_days)
    reference_start = current_start - timedelta(days=settings.reference_days)
    current = [r for r in rows if current_start < r["offered_at"] <= as_of]
    reference = [r for r in rows if reference_start < r["offered_at"] <= current_start]
    return current, reference


def _resolved(rows: Sequence[Dict]) -> Tuple[np.ndarray, np.ndarray]:
    resolved = [r for r in rows if r["accepted"] is not None]
    probs = np.array([r["predicted"] for r in resolved], dtype=float)
    outcomes = np.array([1.0 if r["accepted"] else 0.0 for r in resolved], dtype=float)
    return probs, outcomes


def _calibration(current: Sequence[Dict], segment: Optional[str], settings: DriftSettings,
                 alerts: List[DriftAlert]) -> Dict[str, Any]:
    probs, outcomes = _resolved(current)
    result: Dict[str, Any] = {"sample_size": int(len(probs))}
    if len(probs) < settings.min_calibration_sample:
        result.update({"status": STATUS_INSUFFICIENT_DATA, "severity": SEVERITY_OK})
        return result

    mean_predicted = float(probs.mean())
    observed_rate = float(outcomes.mean())
    gap = abs(mean_predicted - observed_rate)
    severity = _above(gap, settings.calibration_warn, settings.calibration_critical)
    result.update({
        "mean_predicted": round(mean_predicted, 6),
        "observed_rate": round(observed_rate, 6),
        "absolute_gap": round(gap, 6),
        "ece": expected_calibration_error(probs, outcomes),
        "status": severity,
        "severity": severity,
    })
    if severity != SEVERITY_OK:
        threshold = settings.calibration_critical if severity == SEVERITY_CRITICAL else settings.calibration_warn
        alerts.append(DriftAlert(
            severity=severity,
            category=CATEGORY_CALIBRATION,
            metric="absolute_gap",
            value=round(gap, 6),
            threshold=threshold,
            message=(
                f"Predicted {mean_predicted:.1%} vs observed {observed_rate:.1%} "
                f"over {len(probs)} outcomes"
            ),
            segment=segment,
        ))
    return result


def _rank_order(current: Sequence[Dict], segment: Optional[str], settings: DriftSettings,
                alerts: List[DriftAlert]) -> Dict[str, Any]:
    probs, outcomes = _resolved(current)
    result: Dict[str, Any] = {"sample_size": int(len(probs))}

    if len(probs) < settings.min_rank_sample:
        result.update({"spearman_rho": None, "status": STATUS_INSUFFICIENT_DATA})
        severity = SEVERITY_OK
    else:
        rho = spearman_rho(probs, outcomes)
        severity = _below(rho, settings.rank_warn, settings.rank_critical)
        result.update({"spearman_rho": round(rho, 6), "status": severity})
        if severity != SEVERITY_OK:
            threshold = settings.rank_critical if severity == SEVERITY_CRITICAL else settings.rank_warn
            alerts.append(DriftAlert(
                severity=severity,
                category=CATEGORY_RANK,
                metric="spearman_rho",
                value=round(rho, 6),
                threshold=threshold,
                message=f"Predictions rank outcomes weakly (rho={rho:.3f}, n={len(probs)})",
                segment=segment,
            ))

    predicted = [r["predicted"] for r in current]
    deltas = [float(r["features"].get(FEATURE_VALUE_DELTA, 0.0)) for r in current]
    consistency_severity = SEVERITY_OK
    if len(predicted) < settings.min_rank_sample:
        result["consistency_rho"] = None
        result["consistency_status"] = STATUS_INSUFFICIENT_DATA
    else:
        consistency = spearman_rho(predicted, deltas)
        consistency_severity = _below(consistency, settings.consistency_warn, settings.consistency_critical)
        result["consistency_rho"] = round(consistency, 6)
        result["consistency_status"] = consistency_severity
        if consistency_severity != SEVERITY_OK:
            threshold = (
                settings.consistency_critical
                if consistency_severity == SEVERITY_CRITICAL
                else settings.consistency_warn
            )
            alerts.append(DriftAlert(
                severity=consistency_severity,
                category=CATEGORY_RANK,
                metric="consistency_rho",
                value=round(consistency, 6),
                threshold=threshold,
                message=f"Predictions no longer track value delta (rho={consistency:.3f})",
                segment=segment,
            ))

    result["severity"] = max_severity([severity, consistency_severity])
    return result


def _segment_rows(current: Sequence[Dict], reference: Sequence[Dict], segments: Sequence[str],
                  settings: DriftSettings, alerts: List[DriftAlert]) -> List[Dict[str, Any]]:
    rows = []
    for segment in segments:
        cur_probs, cur_outcomes = _resolved([r for r in current if r["segment"] == segment])
        ref_probs, ref_outcomes = _resolved([r for r in reference if r["segment"] == segment])
        row: Dict[str, Any] = {"segment": segment, "sample_size": int(len(cur_probs))}
        if len(cur_probs) < settings.segment_min_sample:
            row.update({"status": STATUS_INSUFFICIENT_DATA, "severity": SEVERITY_OK})
            rows.append(row)
            continue

        observed_rate = float(cur_outcomes.mean())
        gap = abs(float(cur_probs.mean()) - observed_rate)
        severity = _above(gap, settings.segment_warn, settings.segment_critical)
        row.update({
            "mean_predicted": round(float(cur_probs.mean()), 6),
            "observed_rate": round(observed_rate, 6),
            "absolute_gap": round(gap, 6),
            "reference_sample_size": int(len(ref_probs)),
            "gap_delta": None,
            "observed_rate_delta": None,
            "status": severity,
            "severity": severity,
        })
        if len(ref_probs) >= settings.segment_min_sample:
            ref_rate = float(ref_outcomes.mean())
            ref_gap = abs(float(ref_probs.mean()) - ref_rate)
            row["gap_delta"] = round(gap - ref_gap, 6)
            row["observed_rate_delta"] = round(observed_rate - ref_rate, 6)
        if severity != SEVERITY_OK:
            threshold = settings.segment_critical if severity == SEVERITY_CRITICAL else settings.segment_warn
            alerts.append(DriftAlert(
                severity=severity,
                category=CATEGORY_SEGMENT,
                metric="absolute_gap",
                value=round(gap, 6),
                threshold=threshold,
                message=f"{segment} predicted/observed gap {gap:.1%} over {len(cur_probs)} outcomes",
                segment=segment,
            ))
        rows.append(row)
    return rows


def _input_shift(current: Sequence[Dict], reference: Sequence[Dict], segment: Optional[str],
                 settings: DriftSettings, alerts: List[DriftAlert]) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "current_size": len(current),
        "reference_size": len(reference),
        "features": {},
        "shifts": [],
    }
    if len(current) < settings.input_min_sample or len(reference) < settings.input_min_sample:
        result.update({"status": STATUS_INSUFFICIENT_DATA, "severity": SEVERITY_OK})
        return result

    severities = []
    for name in FEATURE_NAMES:
        ref_values = [float(r["features"].get(name, 0.0)) for r in reference]
        cur_values = [float(r["features"].get(name, 0.0)) for r in current]
        index = psi(ref_values, cur_values)
        z = mean_shift_z(ref_values, cur_values)
        if index > settings.psi_critical or abs(z) > settings.z_critical:
            severity = SEVERITY_CRITICAL
        elif index > settings.psi_warn or abs(z) > settings.z_warn:
            severity = SEVERITY_WARN
        elif index >= settings.psi_record or abs(z) >= settings.z_record:
            severity = SEVERITY_INFO
        else:
            severity = SEVERITY_OK
        entry = {
            "psi": round(index, 6),
            "z": round(z, 4),
            "reference_mean": round(float(np.mean(ref_values)), 6),
            "current_mean": round(float(np.mean(cur_values)), 6),
            "severity": severity,
        }
        result["features"][name] = entry
        severities.append(severity)
        if severity == SEVERITY_OK:
            continue
        result["shifts"].append(name)
        alerts.append(DriftAlert(
            severity=severity,
            category=CATEGORY_INPUT,
            metric=f"{name}.psi",
            value=round(index, 6),
            threshold=settings.psi_critical if severity == SEVERITY_CRITICAL else settings.psi_warn,
            message=f"{name} shifted (psi={index:.3f}, z={z:.2f})",
            segment=segment,
        ))

    severity = max_severity(severities)
    result.update({"status": severity, "severity": severity})
    return result


def detect(
    rows: Iterable[Mapping[str, Any]],
    segment: Optional[str] = None,
    as_of: Optional[datetime] = None,
    settings: Optional[DriftSettings] = None,
    history: Optional[Sequence[DriftReport]] = None,
) -> DriftReport:
    """Build a drift report for one segment, or across all segments.

    Args:
        rows: Prediction rows with ``segment``, ``offered_at``, ``predicted``,
            ``accepted`` (None while unresolved) and ``features``
        segment: Restrict every check to one segment
        as_of: End of the current window
        settings: Thresholds and window sizes
        history: Earlier reports for the same scope, newest first

    Returns:
        DriftReport; never raises on missing data
    """
    settings = settings or DriftSettings()
    as_of = as_of or datetime.utcnow()
    normalized = _normalize(rows)
    if segment is not None:
        normalized = [r for r in normalized if r["segment"] == segment]
    current, reference = _split(normalized, as_of, settings)

    alerts: List[DriftAlert] = []
    calibration = _calibration(current, segment, settings, alerts)
    rank_order = _rank_order(current, segment, settings, alerts)
    if segment is not None:
        scope_segments = [segment]
    else:
        scope_segments = sorted({r["segment"] for r in current if r["segment"]})
    segments = _segment_rows(current, reference, scope_segments, settings, alerts)
    input_shift = _input_shift(current, reference, segment, settings, alerts)

    overall = max_severity([alert.severity for alert in alerts])
    # input alerts stay in overall_severity; status needs resolved outcomes
    status = STATUS_INSUFFICIENT_DATA if calibration["status"] == STATUS_INSUFFICIENT_DATA else overall

    relearn = set()
    for alert in alerts:
        if alert.severity != SEVERITY_CRITICAL or alert.category not in (CATEGORY_CALIBRATION, CATEGORY_SEGMENT):
            continue
        if alert.segment:
            relearn.add(alert.segment)
        else:
            relearn.update(row["segment"] for row in segments if row["status"] != STATUS_INSUFFICIENT_DATA)

    limit = settings.history_limit
    report = DriftReport(
        timestamp=as_of,
        segment=segment,
        status=status,
        overall_severity=overall,
        calibration=calibration,
        rank_order=rank_order,
        segments=segments,
        input=input_shift,
        alerts=alerts,
        history=[previous.summary() for previous in list(history or [])[:limit]],
        relearn_segments=sorted(relearn),
    )
    if overall in (SEVERITY_WARN, SEVERITY_CRITICAL):
        logger.warning(f"Drift {overall} for {segment or 'all segments'}: {len(alerts)} alerts")
    else:
        logger.info(f"Drift check for {segment or 'all segments'}: {status}")
    return report
