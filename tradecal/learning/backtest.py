"""Week-by-week replay of weight learning over historical outcomes."""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence
import logging
import time

from tradecal.calibration.metrics import brier_score
from tradecal.config import AcceptanceSettings, LearnerSettings
from tradecal.exceptions import InsufficientDataError, LearningError
from tradecal.learning.fitting import (
    design_matrix,
    fit,
    predict_matrix,
    usable_outcomes,
    week_start,
    week_version,
)
from tradecal.models.records import Outcome, SegmentWeights

logger = logging.getLogger(__name__)


def _weighted_mean(pairs: List[tuple]) -> Optional[float]:
    total = sum(n for _, n in pairs)
    if not total:
        return None
    return sum(value * n for value, n in pairs) / total


def backtest(
    segment: str,
    outcomes: Sequence[Outcome],
    prior: SegmentWeights,
    settings: Optional[LearnerSettings] = None,
    acceptance: Optional[AcceptanceSettings] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Dict:
    """Replay weekly learning for one segment.

    Each week trains on outcomes observed before the week starts and is
    scored on the outcomes observed during it, once with the static prior and
    once with the weights the learner would have been running. ``deadline``
    is a ``clock()`` value; when it passes, the weeks completed so far are
    returned with ``partial`` set.
    """
    settings = settings or LearnerSettings()
    acceptance = acceptance or AcceptanceSettings()
    usable = usable_outcomes(outcomes)
    results: List[Dict] = []
    timed_out = False

    if not usable:
        return {
            "segment": segment,
            "results": results,
            "summary": _summary(results, prior, timed_out, 0),
        }

    start = week_start(start or usable[0].observed_at)
    end = end or (usable[-1].observed_at + timedelta(seconds=1))
    current = prior
    weeks: List[datetime] = []
    cursor = start
    while cursor < end:
        weeks.append(cursor)
        cursor += timedelta(days=7)

    for week in weeks:
        if deadline is not None and clock() >= deadline:
            timed_out = True
            logger.warning(f"Backtest for {segment} hit its deadline at {week.date()}")
            break
        week_end = week + timedelta(days=7)
        lookback_start = week - timedelta(days=settings.lookback_days)
        train = [o for o in usable if lookback_start <= o.observed_at < week]
        test = [o for o in usable if week <= o.observed_at < week_end]

        status = "SKIPPED"
        applied = False
        try:
            candidate = fit(
                segment,
                train,
                current,
                settings,
                acceptance,
                as_of=week,
                version=week_version(segment, week),
            )
            status = "APPLIED" if candidate.improved else "REJECTED"
            if candidate.improved:
                current = candidate.learned
                applied = True
        except InsufficientDataError:
            status = "INSUFFICIENT_DATA"
        except LearningError as e:
            logger.warning(f"Backtest fit failed for {segment} week {week.date()}: {e}")
            status = "FAILED"

        row = {
            "week_start": week.isoformat(),
            "train_size": len(train),
            "test_size": len(test),
            "status": status,
            "applied": applied,
            "static_brier": None,
            "learned_brier": None,
        }
        if test:
            X, y = design_matrix(test)
            row["static_brier"] = round(brier_score(predict_matrix(prior, X, acceptance), y), 6)
            row["learned_brier"] = round(brier_score(predict_matrix(current, X, acceptance), y), 6)
        results.append(row)

    return {
        "segment": segment,
        "results": results,
        "summary": _summary(results, current, timed_out, len(weeks)),
    }


def _summary(results: List[Dict], final: SegmentWeights, timed_out: bool, weeks_total: int) -> Dict:
    scored = [row for row in results if row["test_size"]]
    static = _weighted_mean([(row["static_brier"], row["test_size"]) for row in scored])
    learned = _weighted_mean([(row["learned_brier"], row["test_size"]) for row in scored])
    return {
        "weeks_total": weeks_total,
        "weeks_completed": len(results),
        "weeks_scored": len(scored),
        "updates_applied": sum(1 for row in results if row["applied"]),
        "test_samples": sum(row["test_size"] for row in scored),
        "static_brier": round(static, 6) if static is not None else None,
        "learned_brier": round(learned, 6) if learned is not None else None,
        "improved": bool(static is not None and learned is not None and learned < static),
        "timed_out": timed_out,
        "partial": timed_out,
        "final_weights": final.to_dict(),
    }
