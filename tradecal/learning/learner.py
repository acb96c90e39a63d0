"""
Weight Learner
==============
Periodic per-segment learning of acceptance weights.

``fit`` (see ``tradecal.learning.fitting``) is pure; this module adds the
stateful parts around it:

- reading the baseline and outcomes under the segment lock
- ``commit``: persist only an improved candidate, atomically
- dry runs, rollback of a regressed update, and the weekly multi-segment run

Usage:
    from tradecal.learning import WeightLearner

    learner = WeightLearner(repository, config)
    results = learner.run_weekly()
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
import logging
import time

from tradecal.calibration.metrics import expected_calibration_error
from tradecal.config import Config
from tradecal.constants import ALL_SEGMENTS
from tradecal.exceptions import InsufficientDataError, LearningError
from tradecal.learning.backtest import backtest
from tradecal.learning.fitting import (
    STATUS_APPLIED,
    STATUS_DRY_RUN,
    STATUS_FAILED,
    STATUS_INSUFFICIENT_DATA,
    STATUS_NO_NEW_DATA,
    STATUS_REJECTED,
    STATUS_ROLLED_BACK,
    FitCandidate,
    design_matrix,
    fit,
    predict_matrix,
    usable_outcomes,
    week_version,
)
from tradecal.models.acceptance import DEFAULT_VERSION, default_weights, resolve_weights
from tradecal.models.records import SegmentWeights
from tradecal.ops.metrics import MetricsRecorder, get_metrics_recorder, metric_key
from tradecal.storage.locks import SegmentLockRegistry
from tradecal.storage.repository import TradeRepository

logger = logging.getLogger(__name__)


@dataclass
class LearningResult:
    segment: str
    status: str
    prior: Optional[SegmentWeights] = None
    learned: Optional[SegmentWeights] = None
    proposed_weights: Dict[str, float] = field(default_factory=dict)
    baseline_score: Optional[float] = None
    learned_score: Optional[float] = None
    improved: bool = False
    committed: bool = False
    dry_run: bool = False
    sample_size: int = 0
    version: Optional[str] = None
    message: str = ""
    backtest: Optional[Dict[str, Any]] = None

    @classmethod
    def from_candidate(cls, candidate: FitCandidate, status: str, committed: bool,
                       dry_run: bool, message: str = "") -> "LearningResult":
        return cls(
            segment=candidate.segment,
            status=status,
            prior=candidate.prior,
            learned=candidate.learned,
            proposed_weights=dict(candidate.proposed_weights),
            baseline_score=candidate.baseline_score,
            learned_score=candidate.learned_score,
            improved=candidate.improved,
            committed=committed,
            dry_run=dry_run,
            sample_size=candidate.sample_size,
            version=candidate.learned.version if candidate.learned else None,
            message=message or candidate.message,
        )

    def to_dict(self) -> dict:
        return {
            "segment": self.segment,
            "status": self.status,
            "prior": self.prior.to_dict() if self.prior else None,
            "learned": self.learned.to_dict() if self.learned else None,
            "proposed_weights": dict(self.proposed_weights),
            "baseline_score": self.baseline_score,
            "learned_score": self.learned_score,
            "improved": self.improved,
            "committed": self.committed,
            "dry_run": self.dry_run,
            "sample_size": self.sample_size,
            "version": self.version,
            "message": self.message,
            "backtest": self.backtest,
        }


def unique_version(version: str, taken: Sequence[str]) -> str:
    """``version`` or, if already committed, ``version.2``, ``version.3``..."""
    taken = set(taken)
    if version not in taken:
        return version
    n = 2
    while f"{version}.{n}" in taken:
        n += 1
    return f"{version}.{n}"


def commit(candidate: FitCandidate, repository: TradeRepository) -> bool:
    """Persist a candidate if, and only if, it beat the baseline.

    A second commit in the same ISO week gets a sequence suffix so every
    history row keeps a distinct version.

    Returns:
        True if the weights were written

    Raises:
        PersistenceError: if the repository write fails; the previously
            active weights stay in place
    """
    if not candidate.improved or candidate.learned is None:
        logger.info(f"Not committing {candidate.segment}: no improvement over baseline")
        return False
    taken = [w.version for w in repository.get_weight_history(candidate.segment)]
    version = unique_version(candidate.learned.version, taken)
    if version != candidate.learned.version:
        candidate.learned = replace(candidate.learned, version=version)
    repository.put_weights(candidate.segment, candidate.learned)
    return True


class WeightLearner:
    """Stateful wrapper around ``fit``/``commit`` for one repository."""

    def __init__(
        self,
        repository: TradeRepository,
        config: Optional[Config] = None,
        locks: Optional[SegmentLockRegistry] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.repository = repository
        self.config = config or Config()
        self.locks = locks or SegmentLockRegistry()
        self.metrics = metrics or get_metrics_recorder()

    @property
    def settings(self):
        return self.config.learner

    def _window(self, segment: str, as_of: datetime):
        since = as_of - timedelta(days=self.settings.lookback_days)
        outcomes = self.repository.get_outcomes_for_segment(segment, since)
        return [o for o in outcomes if o.observed_at <= as_of]

    def learn(
        self,
        segment: str,
        as_of: Optional[datetime] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> LearningResult:
        """Run one learning cycle for a segment.

        Args:
            segment: Segment key
            as_of: Logical run time; outcomes after it are ignored
            dry_run: Compute the candidate but never persist
            force: Refit even when no outcome is newer than the active weights

        Returns:
            LearningResult describing the decision
        """
        as_of = as_of or datetime.utcnow()
        with self.locks.hold(segment, self.settings.lock_timeout_seconds):
            result = self._learn_locked(segment, as_of, dry_run, force)
        status_key = f"learning.{result.status.lower()}"
        self.metrics.increment(status_key)
        self.metrics.increment(metric_key(status_key, segment))
        if result.learned_score is not None:
            self.metrics.gauge(metric_key("learning.learned_brier", segment), result.learned_score)
        return result

    def _learn_locked(self, segment: str, as_of: datetime, dry_run: bool, force: bool) -> LearningResult:
        prior, source = resolve_weights(segment, self.repository, self.config.acceptance)
        outcomes = self._window(segment, as_of)

        if source == "learned" and not dry_run:
            rolled_back = self._check_rollback_locked(segment, prior, outcomes)
            if rolled_back is not None:
                return rolled_back

        if source == "learned" and not force and prior.trained_through is not None:
            newer = [o for o in usable_outcomes(outcomes) if o.observed_at > prior.trained_through]
            if not newer:
                logger.info(f"No new outcomes for {segment} since {prior.trained_through}")
                return LearningResult(
                    segment=segment,
                    status=STATUS_NO_NEW_DATA,
                    prior=prior,
                    dry_run=dry_run,
                    sample_size=len(usable_outcomes(outcomes)),
                    version=prior.version,
                    message="no outcomes newer than active weights",
                )

        try:
            candidate = fit(
                segment,
                outcomes,
                prior,
                self.settings,
                self.config.acceptance,
                as_of=as_of,
                version=week_version(segment, as_of),
            )
        except InsufficientDataError as e:
            logger.info(str(e))
            return LearningResult(
                segment=segment,
                status=STATUS_INSUFFICIENT_DATA,
                prior=prior,
                dry_run=dry_run,
                sample_size=e.actual,
                message=str(e),
            )
        except LearningError as e:
            logger.error(f"{e}; keeping weights {prior.version}")
            return LearningResult(
                segment=segment,
                status=STATUS_FAILED,
                prior=prior,
                dry_run=dry_run,
                message=str(e),
            )

        if dry_run:
            return LearningResult.from_candidate(candidate, STATUS_DRY_RUN, committed=False, dry_run=True)

        backtest_report = None
        if candidate.improved and self.settings.require_backtest:
            backtest_report = self._confirm_with_backtest(segment, outcomes, prior, as_of)
            if not backtest_report["summary"]["improved"]:
                result = LearningResult.from_candidate(
                    candidate,
                    STATUS_REJECTED,
                    committed=False,
                    dry_run=False,
                    message="backtest did not confirm improvement",
                )
                result.backtest = backtest_report
                return result

        committed = commit(candidate, self.repository)
        result = LearningResult.from_candidate(
            candidate,
            STATUS_APPLIED if committed else STATUS_REJECTED,
            committed=committed,
            dry_run=False,
        )
        result.backtest = backtest_report
        return result

    def _confirm_with_backtest(self, segment: str, outcomes: Sequence, prior: SegmentWeights,
                               as_of: datetime) -> Dict:
        start = as_of - timedelta(weeks=self.settings.backtest_weeks)
        deadline = time.monotonic() + self.settings.backtest_timeout_seconds
        return backtest(
            segment,
            outcomes,
            prior,
            self.settings,
            self.config.acceptance,
            start=start,
            end=as_of,
            deadline=deadline,
        )

    # Rollback

    def _previous_weights(self, segment: str, active: SegmentWeights) -> SegmentWeights:
        history = self.repository.get_weight_history(segment)
        versions = [w.version for w in history]
        if active.version in versions:
            idx = versions.index(active.version)
            if idx + 1 < len(history):
                return history[idx + 1]
        return default_weights(segment, self.config.acceptance)

    def _check_rollback_locked(self, segment: str, active: SegmentWeights,
                               outcomes: Sequence) -> Optional[LearningResult]:
        applied_ece = active.holdout_metrics.get("ece")
        if applied_ece is None or active.trained_through is None:
            return None
        after = [o for o in usable_outcomes(outcomes) if o.observed_at > active.trained_through]
        if len(after) < self.settings.rollback_min_samples:
            return None
        X, y = design_matrix(after)
        current_ece = expected_calibration_error(predict_matrix(active, X, self.config.acceptance), y)
        if current_ece is None or current_ece - applied_ece <= self.settings.rollback_ece_threshold:
            return None
        previous = self._previous_weights(segment, active)
        self.repository.restore_weights(segment, previous)
        logger.warning(
            f"Rolled back {segment} from {active.version} to {previous.version}: "
            f"ECE {applied_ece:.4f} -> {current_ece:.4f}"
        )
        return LearningResult(
            segment=segment,
            status=STATUS_ROLLED_BACK,
            prior=active,
            learned=previous,
            committed=True,
            sample_size=len(after),
            version=previous.version,
            message=f"ECE rose from {applied_ece:.4f} to {current_ece:.4f}",
        )

    def check_rollback(self, segment: str, as_of: Optional[datetime] = None) -> Optional[LearningResult]:
        """Roll back the active weights if calibration regressed since they were committed.

        Returns None when the active weights stay in place.
        """
        as_of = as_of or datetime.utcnow()
        with self.locks.hold(segment, self.settings.lock_timeout_seconds):
            active, source = resolve_weights(segment, self.repository, self.config.acceptance)
            if source != "learned":
                return None
            result = self._check_rollback_locked(segment, active, self._window(segment, as_of))
        if result is not None:
            self.metrics.increment("learning.rolled_back")
        return result

    def rollback(self, segment: str) -> LearningResult:
        """Restore the weights committed before the active ones (defaults if none)."""
        with self.locks.hold(segment, self.settings.lock_timeout_seconds):
            active = self.repository.get_active_weights(segment)
            if active is None or active.version == DEFAULT_VERSION:
                return LearningResult(
                    segment=segment,
                    status=STATUS_NO_NEW_DATA,
                    message="no learned weights to roll back",
                )
            previous = self._previous_weights(segment, active)
            self.repository.restore_weights(segment, previous)
        self.metrics.increment("learning.rolled_back")
        return LearningResult(
            segment=segment,
            status=STATUS_ROLLED_BACK,
            prior=active,
            learned=previous,
            committed=True,
            version=previous.version,
            message="manual rollback",
        )

    # Batch runs

    def run_weekly(
        self,
        segments: Optional[Sequence[str]] = None,
        force_date: Optional[datetime] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> List[LearningResult]:
        """Learn every segment independently; segments run in parallel.

        ``force_date`` only pins the logical run date (replays and reruns).
        ``force`` refits even if a segment has no outcomes newer than its
        active weights.
        """
        segments = list(segments) if segments else list(ALL_SEGMENTS)
        as_of = force_date or datetime.utcnow()
        workers = max(1, min(self.config.max_workers, len(segments)))
        with self.metrics.timed("learning.weekly_run"):
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [
                    pool.submit(self.learn, segment, as_of, dry_run, force)
                    for segment in segments
                ]
                results = [future.result() for future in futures]
        applied = sum(1 for r in results if r.status == STATUS_APPLIED)
        logger.info(f"Weekly learning finished: {applied}/{len(results)} segments updated")
        return results
