"""
Trade Engine
============
Facade over the pricer, fairness scorer, acceptance predictor, weight
learner, calibration dashboard and drift detector, bound to one repository.

Usage:
    from tradecal.engine import TradeEngine
    from tradecal.storage import JsonFileRepository

    engine = TradeEngine(JsonFileRepository(".tradecal"))
    analysis = engine.analyze_trade(offer)
    engine.record_outcome(offer.offer_id, accepted=True)
    engine.run_weekly_learning()
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import copy
import logging
import time

from tradecal.calibration.dashboard import compute_dashboard, parse_filter_tokens
from tradecal.calibration.isotonic import apply_isotonic_map, fit_isotonic_map
from tradecal.config import Config
from tradecal.constants import ALL_SEGMENTS, SEGMENTS
from tradecal.drift.detector import detect
from tradecal.exceptions import InvalidTradeError, PersistenceError, UnknownSegmentError
from tradecal.learning.backtest import backtest
from tradecal.learning.fitting import design_matrix, predict_matrix, usable_outcomes
from tradecal.learning.learner import LearningResult, WeightLearner
from tradecal.models.acceptance import (
    build_features,
    default_weights,
    explain,
    predict,
    resolve_weights,
)
from tradecal.models.records import (
    AcceptanceFeatures,
    DriftReport,
    IsotonicMap,
    Outcome,
    PredictionRecord,
    SegmentWeights,
    TradeAnalysis,
    TradeOffer,
)
from tradecal.ops.metrics import MetricsRecorder, get_metrics_recorder, metric_key
from tradecal.storage.cache import MemoryCache, fingerprint
from tradecal.storage.locks import SegmentLockRegistry
from tradecal.storage.repository import TradeRepository
from tradecal.valuation.fairness import score
from tradecal.valuation.market import MarketFeed
from tradecal.valuation.pricer import SOURCE_UNRESOLVED, price_side

logger = logging.getLogger(__name__)

CONFIDENCE_HIGH = "high"
CONFIDENCE_LOW = "low"

FilterInput = Union[Mapping[str, Any], Sequence[str], None]


class TradeEngine:
    """Single entry point for analysis, learning and monitoring."""

    def __init__(
        self,
        repository: TradeRepository,
        feed: Optional[MarketFeed] = None,
        config: Optional[Config] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.repository = repository
        self.feed = feed
        self.config = config or Config()
        self.metrics = metrics or get_metrics_recorder()
        self.locks = SegmentLockRegistry()
        self.cache = MemoryCache()
        self.learner = WeightLearner(repository, self.config, self.locks, self.metrics)

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    def _check_segment(self, segment: Optional[str]) -> None:
        if segment is not None and segment not in ALL_SEGMENTS:
            raise UnknownSegmentError(segment)

    def _fingerprint(self, offer: TradeOffer, weights: SegmentWeights,
                     isotonic_map: Optional[IsotonicMap]) -> str:
        context = offer.context
        return fingerprint({
            "side_a": [asset.to_dict() for asset in offer.side_a],
            "side_b": [asset.to_dict() for asset in offer.side_b],
            "segment": offer.segment,
            "as_of": context.as_of.date().isoformat(),
            "liquidity": context.liquidity,
            "needs": dict(context.counterparty_needs),
            "weights_version": weights.version,
            "b0": weights.b0,
            "feature_weights": weights.feature_weights.to_dict(),
            "isotonic": isotonic_map.to_dict() if isotonic_map is not None else None,
        })

    def _isotonic_map(self, segment: str, weights: SegmentWeights) -> Optional[IsotonicMap]:
        """The segment's map if it was fitted against ``weights``; None otherwise."""
        if not self.config.isotonic.enabled:
            return None
        try:
            isotonic_map = self.repository.get_isotonic_map(segment)
        except PersistenceError as e:
            logger.warning(f"Could not read isotonic map for {segment}, using raw probabilities: {e}")
            return None
        if isotonic_map is None or isotonic_map.weights_version != weights.version:
            return None
        return isotonic_map

    def analyze_trade(self, offer: TradeOffer) -> TradeAnalysis:
        """Price both sides, score fairness and predict acceptance.

        When the offer has an id, the prediction is logged so the outcome can
        be joined to it later.

        Raises:
            InvalidTradeError: if every asset on one side is unresolved
            UnknownSegmentError: if the offer names an unknown segment key
        """
        self._check_segment(offer.league_segment)
        segment = offer.segment
        weights, source = resolve_weights(segment, self.repository, self.config.acceptance)
        isotonic_map = self._isotonic_map(segment, weights)
        key = self._fingerprint(offer, weights, isotonic_map)
        self.metrics.increment("engine.analyses")

        cached = self.cache.get(key)
        if cached is not None:
            self.metrics.increment("engine.cache_hits")
            analysis, features = cached
            # callers own the returned containers
            analysis = copy.deepcopy(analysis)
            analysis.offer_id = offer.offer_id
        else:
            analysis, features = self._analyze(offer, segment, weights, source, isotonic_map, key)
            self.cache.set(key, (copy.deepcopy(analysis), features), self.config.cache_ttl_seconds)
            self.metrics.gauge("engine.cache_entries", len(self.cache))

        if offer.offer_id:
            self.repository.record_prediction(PredictionRecord(
                offer_id=offer.offer_id,
                segment=segment,
                offered_at=offer.offered_at,
                predicted_probability=analysis.acceptance_probability,
                features=features,
                weights_source=analysis.weights_source,
                weights_version=analysis.weights_version,
                attributes=offer.attributes(),
            ))
        return analysis

    def _analyze(self, offer: TradeOffer, segment: str, weights, source: str,
                 isotonic_map: Optional[IsotonicMap], key: str) -> Tuple[TradeAnalysis, AcceptanceFeatures]:
        pricing = self.config.pricing
        priced_a = price_side(offer.side_a, offer.context, self.feed, pricing)
        priced_b = price_side(offer.side_b, offer.context, self.feed, pricing)
        for label, priced in (("A", priced_a), ("B", priced_b)):
            if all(p.source == SOURCE_UNRESOLVED for p in priced):
                raise InvalidTradeError(f"no asset on side {label} could be priced", offer.offer_id)

        fairness = score(
            [p.value for p in priced_a],
            [p.value for p in priced_b],
            self.config.fairness,
        )
        features = build_features(offer, priced_a, priced_b, fairness.value_delta_pct, self.config.acceptance)
        raw_probability = predict(features, weights, self.config.acceptance)
        probability = apply_isotonic_map(raw_probability, isotonic_map, self.config.acceptance)
        low_confidence = [p.asset.identity for p in priced_a + priced_b if p.low_confidence]
        confidence = CONFIDENCE_LOW if low_confidence or segment not in SEGMENTS else CONFIDENCE_HIGH

        analysis = TradeAnalysis(
            offer_id=offer.offer_id,
            segment=segment,
            fairness_score=fairness.fairness_score,
            value_delta_pct=round(fairness.value_delta_pct, 6),
            fairness_tier=fairness.tier,
            grade=fairness.grade,
            acceptance_probability=round(probability, 6),
            contributing_features=explain(features, weights),
            weights_source=source,
            weights_version=weights.version,
            confidence=confidence,
            low_confidence_assets=low_confidence,
            side_a=[p.to_dict() for p in priced_a],
            side_b=[p.to_dict() for p in priced_b],
            fingerprint=key,
            raw_acceptance_probability=round(raw_probability, 6),
            isotonic_applied=isotonic_map is not None,
        )
        logger.debug(
            f"Analyzed {offer.offer_id or key[:12]} in {segment}: "
            f"{fairness.tier} p={probability:.3f} raw={raw_probability:.3f} ({source})"
        )
        return analysis, features

    def record_outcome(self, offer_id: str, accepted: bool,
                       observed_at: Optional[datetime] = None) -> Outcome:
        """Record whether an offer was accepted; raises DuplicateOutcomeError on a repeat."""
        outcome = Outcome(
            trade_offer_id=offer_id,
            accepted=bool(accepted),
            observed_at=observed_at or datetime.utcnow(),
        )
        stored = self.repository.record_outcome(outcome)
        self.metrics.increment("engine.outcomes")
        return stored

    # =========================================================================
    # LEARNING
    # =========================================================================

    def _segments(self, segment: Optional[str]) -> List[str]:
        self._check_segment(segment)
        return [segment] if segment else list(ALL_SEGMENTS)

    def run_weekly_learning(
        self,
        segment: Optional[str] = None,
        force_date: Optional[datetime] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> List[LearningResult]:
        """Learn each segment, then refit isotonic maps against the resulting weights."""
        return self._learn(self._segments(segment), force_date, dry_run, force)

    def _learn(self, segments: Sequence[str], force_date: Optional[datetime], dry_run: bool = False,
               force: bool = False) -> List[LearningResult]:
        results = self.learner.run_weekly(segments, force_date=force_date, dry_run=dry_run, force=force)
        if not dry_run and self.config.isotonic.enabled:
            self.refresh_isotonic_maps(segments, as_of=force_date)
        return results

    def refresh_isotonic_maps(
        self,
        segments: Optional[Sequence[str]] = None,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, Optional[IsotonicMap]]:
        """Fit and store one isotonic map per segment.

        Raw probabilities are recomputed from each outcome's feature snapshot
        with the segment's active weights, so the map never sees already
        calibrated values. Segments without enough outcomes keep their
        previous map and report None.
        """
        as_of = as_of or datetime.utcnow()
        since = as_of - timedelta(days=self.config.learner.lookback_days)
        fitted: Dict[str, Optional[IsotonicMap]] = {}
        for key in segments or ALL_SEGMENTS:
            weights, _ = resolve_weights(key, self.repository, self.config.acceptance)
            outcomes = [
                o for o in usable_outcomes(self.repository.get_outcomes_for_segment(key, since))
                if o.observed_at <= as_of
            ]
            X, y = design_matrix(outcomes)
            raw = predict_matrix(weights, X, self.config.acceptance)
            isotonic_map = fit_isotonic_map(key, raw, y, weights.version, self.config.isotonic, as_of)
            if isotonic_map is not None:
                self.repository.put_isotonic_map(isotonic_map)
                self.metrics.gauge(metric_key("isotonic.ece_after", key), isotonic_map.ece_after)
            fitted[key] = isotonic_map
        return fitted

    def rollback_weights(self, segment: str) -> LearningResult:
        self._check_segment(segment)
        return self.learner.rollback(segment)

    def run_backtest(
        self,
        segment: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Replay learning against the static defaults for each segment.

        All segments share one time budget; segments reached after it runs
        out come back empty and flagged partial.
        """
        segments = self._segments(segment)
        budget = timeout_seconds if timeout_seconds is not None else self.config.learner.backtest_timeout_seconds
        deadline = time.monotonic() + budget
        reports: Dict[str, Dict] = {}
        with self.metrics.timed("engine.backtest"):
            for key in segments:
                outcomes = self.repository.get_outcomes_for_segment(key)
                reports[key] = backtest(
                    key,
                    outcomes,
                    default_weights(key, self.config.acceptance),
                    self.config.learner,
                    self.config.acceptance,
                    start=start,
                    end=end,
                    deadline=deadline,
                )
        return {
            "segments": reports,
            "partial": any(r["summary"]["partial"] for r in reports.values()),
        }

    # =========================================================================
    # MONITORING
    # =========================================================================

    def _prediction_rows(self, since: Optional[datetime], until: Optional[datetime]) -> List[Dict[str, Any]]:
        """Logged predictions joined with any recorded outcome."""
        outcomes = {o.trade_offer_id: o for o in self.repository.get_outcomes_for_segment(None)}
        rows = []
        seen = set()
        for record in self.repository.get_predictions(since=since, until=until):
            outcome = outcomes.get(record.offer_id)
            seen.add(record.offer_id)
            rows.append({
                "offer_id": record.offer_id,
                "segment": record.segment,
                "offered_at": record.offered_at,
                "predicted": record.predicted_probability,
                "accepted": outcome.accepted if outcome is not None else None,
                "features": record.features.to_dict(),
                "attributes": dict(record.attributes),
            })
        for offer_id, outcome in outcomes.items():
            if offer_id in seen or not outcome.has_prediction:
                continue
            offered_at = outcome.offered_at or outcome.observed_at
            if (since is not None and offered_at < since) or (until is not None and offered_at > until):
                continue
            rows.append({
                "offer_id": offer_id,
                "segment": outcome.segment,
                "offered_at": offered_at,
                "predicted": outcome.predicted_probability,
                "accepted": outcome.accepted,
                "features": outcome.features.to_dict() if outcome.features else {},
                "attributes": dict(outcome.attributes),
            })
        return rows

    def get_dashboard(
        self,
        window_days: Optional[int] = None,
        filters: FilterInput = None,
        drill_down: Optional[Tuple[str, Optional[str]]] = None,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Calibration dashboard; ``filters`` may be a mapping or tokens like ``["sf", "dynasty"]``."""
        settings = self.config.dashboard
        window_days = window_days or settings.window_days
        as_of = as_of or datetime.utcnow()
        if filters is not None and not isinstance(filters, Mapping):
            filters = parse_filter_tokens(filters)
        rows = self._prediction_rows(as_of - timedelta(days=window_days), as_of)
        with self.metrics.timed("engine.dashboard"):
            return compute_dashboard(rows, window_days, filters, drill_down, as_of, settings)

    def run_drift_detection(self, segment: Optional[str] = None,
                            as_of: Optional[datetime] = None) -> DriftReport:
        """Detect drift, append the report, and optionally re-learn flagged segments."""
        self._check_segment(segment)
        settings = self.config.drift
        as_of = as_of or datetime.utcnow()
        since = as_of - timedelta(days=settings.window_days + settings.reference_days)
        rows = self._prediction_rows(since, as_of)
        history = self.repository.get_drift_history(segment, limit=settings.history_limit)

        with self.metrics.timed("engine.drift"):
            report = detect(rows, segment, as_of, settings, history)
        self.repository.append_drift_report(report)
        self.metrics.increment(f"drift.{report.status}")

        if settings.auto_relearn and report.relearn_segments:
            logger.info(f"Re-learning after drift: {', '.join(report.relearn_segments)}")
            self._learn(report.relearn_segments, force_date=as_of)
        return report

    def get_drift_report(self, segment: Optional[str] = None) -> Optional[DriftReport]:
        """Latest stored report for the scope, or None."""
        history = self.repository.get_drift_history(segment, limit=1)
        return history[0] if history else None
