"""End-to-end tests for the trade engine facade and CLI."""

import json
import tempfile
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import numpy as np
import pytest

from tradecal.calibration.isotonic import apply_isotonic_map
from tradecal.cli import main
from tradecal.config import Config, IsotonicSettings, LearnerSettings
from tradecal.constants import TIER_LEAN_YOU
from tradecal.engine import TradeEngine
from tradecal.exceptions import DuplicateOutcomeError, InvalidTradeError, UnknownSegmentError
from tradecal.models.acceptance import default_weights, predict, resolve_weights
from tradecal.models.records import Asset, LeagueContext, TradeOffer
from tradecal.ops.metrics import InMemoryMetricsRecorder
from tradecal.storage import InMemoryRepository, JsonFileRepository


def _offer(as_of, offer_id=None, wr_value=44.0, superflex=True, dynasty=True, segment=None):
    context = LeagueContext(
        superflex=superflex,
        dynasty=dynasty,
        as_of=as_of,
        liquidity=0.6,
        counterparty_needs={"RB": 0.8, "WR": 0.3},
        attributes={"scoring": "ppr"},
    )
    return TradeOffer(
        side_a=[Asset.player("rb-bijan", "RB", market_value=40.0, age=23)],
        side_b=[
            Asset.player("wr-olave", "WR", market_value=wr_value, age=25),
            Asset.pick(2027, 3, market_value=2.0),
        ],
        context=context,
        offer_id=offer_id,
        league_segment=segment,
    )


@pytest.fixture
def engine():
    return TradeEngine(InMemoryRepository(), metrics=InMemoryMetricsRecorder())


class TestAnalyzeTrade:
    """Tests for single-offer analysis."""

    def test_rb_for_wr_and_pick(self, engine, as_of):
        analysis = engine.analyze_trade(_offer(as_of, "offer-1"))
        assert analysis.segment == "DYN_SF"
        assert analysis.fairness_tier == TIER_LEAN_YOU
        assert analysis.value_delta_pct == pytest.approx(0.15)
        assert analysis.weights_source == "default"
        assert 0.02 <= analysis.acceptance_probability <= 0.95
        assert set(analysis.contributing_features) >= {"value_delta", "liquidity", "intercept"}
        assert analysis.confidence == "high"

    def test_repeat_offer_hits_cache(self, engine, as_of):
        first = engine.analyze_trade(_offer(as_of, "offer-1"))
        second = engine.analyze_trade(_offer(as_of, "offer-2"))

        assert second.offer_id == "offer-2"
        assert second.acceptance_probability == first.acceptance_probability
        counters = engine.metrics.snapshot()["counters"]
        assert counters["engine.analyses"] == 2
        assert counters["engine.cache_hits"] == 1
        assert len(engine.repository.get_predictions()) == 2

    def test_cached_analysis_is_not_shared(self, engine, as_of):
        first = engine.analyze_trade(_offer(as_of, "offer-1"))
        first.contributing_features["value_delta"]["weight"] = 99.0
        first.side_a.clear()
        second = engine.analyze_trade(_offer(as_of, "offer-2"))
        second.side_b.append({"identity": "junk"})

        third = engine.analyze_trade(_offer(as_of, "offer-3"))
        assert third.contributing_features["value_delta"]["weight"] == 0.5
        assert len(third.side_a) == 1
        assert len(third.side_b) == 2
        assert engine.metrics.snapshot()["counters"]["engine.cache_hits"] == 2

    def test_new_coefficients_under_same_version_bypass_cache(self, engine, as_of):
        weights = replace(default_weights("DYN_SF"), version="rw_2026w43_DYN_SF")
        engine.repository.put_weights("DYN_SF", weights)
        before = engine.analyze_trade(_offer(as_of, "offer-1"))

        tuned = replace(weights, b0=weights.b0 + 0.4)
        engine.repository.put_weights("DYN_SF", tuned)
        after = engine.analyze_trade(_offer(as_of, "offer-2"))

        record = next(r for r in engine.repository.get_predictions() if r.offer_id == "offer-2")
        assert after.weights_version == before.weights_version
        assert after.acceptance_probability > before.acceptance_probability
        assert after.acceptance_probability == pytest.approx(predict(record.features, tuned), abs=1e-6)
        assert "engine.cache_hits" not in engine.metrics.snapshot()["counters"]

    def test_unknown_league_traits_lower_confidence(self, engine, as_of):
        analysis = engine.analyze_trade(_offer(as_of, superflex=None))
        assert analysis.segment == "UNK"
        assert analysis.confidence == "low"

    def test_unpriceable_side_rejected(self, engine, as_of):
        offer = TradeOffer(
            side_a=[Asset.player("rb-bijan", "RB", market_value=40.0)],
            side_b=[Asset.player("mystery-wr", "WR")],
            context=LeagueContext(superflex=True, dynasty=True, as_of=as_of),
        )
        with pytest.raises(InvalidTradeError):
            engine.analyze_trade(offer)

    def test_empty_side_rejected(self, as_of):
        with pytest.raises(InvalidTradeError):
            TradeOffer(side_a=[], side_b=[Asset.player("wr", "WR", market_value=10)])

    def test_unknown_segment_rejected(self, engine, as_of):
        with pytest.raises(UnknownSegmentError):
            engine.analyze_trade(_offer(as_of, segment="DYN_TEP"))


class TestOutcomes:
    """Tests for outcome recording through the engine."""

    def test_outcome_joins_prediction(self, engine, as_of):
        analysis = engine.analyze_trade(_offer(as_of, "offer-1"))
        outcome = engine.record_outcome("offer-1", True, as_of + timedelta(days=1))
        assert outcome.segment == "DYN_SF"
        assert outcome.predicted_probability == pytest.approx(analysis.acceptance_probability)
        assert outcome.features is not None

    def test_duplicate_outcome(self, engine, as_of):
        engine.record_outcome("offer-1", True, as_of)
        with pytest.raises(DuplicateOutcomeError):
            engine.record_outcome("offer-1", False, as_of)


def _simulate(engine, as_of, n=150, seed=4):
    """Analyze ``n`` offers spread over the last 50 days and resolve each one."""
    rng = np.random.RandomState(seed)
    for i in range(n):
        created = as_of - timedelta(hours=8 * i)
        offer_id = f"sim-{i}"
        analysis = engine.analyze_trade(_offer(created, offer_id, wr_value=float(rng.uniform(25, 60))))
        gain_for_them = -analysis.value_delta_pct
        accepted = rng.uniform() < 1.0 / (1.0 + np.exp(-(-0.5 + 6.0 * gain_for_them)))
        engine.record_outcome(offer_id, bool(accepted), created + timedelta(hours=2))


class TestLifecycle:
    """Analyze, resolve, learn and monitor against one repository."""

    def test_full_cycle_on_disk(self, as_of):
        config = Config(learner=LearnerSettings(min_improvement=-1.0))
        with tempfile.TemporaryDirectory() as tmpdir:
            engine = TradeEngine(JsonFileRepository(tmpdir), config=config, metrics=InMemoryMetricsRecorder())
            _simulate(engine, as_of - timedelta(hours=3))

            results = engine.run_weekly_learning("DYN_SF", force_date=as_of)
            assert len(results) == 1
            assert results[0].status == "APPLIED"
            assert results[0].version == "rw_2026w43_DYN_SF"

            again = engine.run_weekly_learning("DYN_SF", force_date=as_of)
            assert again[0].status == "NO_NEW_DATA"
            assert len(engine.repository.get_weight_history("DYN_SF")) == 1

            reopened = TradeEngine(JsonFileRepository(tmpdir), config=config)
            learned = reopened.analyze_trade(_offer(as_of, "after-learning"))
            assert learned.weights_source == "learned"
            assert learned.weights_version == "rw_2026w43_DYN_SF"

            dashboard = reopened.get_dashboard(window_days=30, as_of=as_of)
            cards = dashboard["summary_cards"]
            assert cards["offer_count"] == 91
            assert cards["resolved_count"] == 90
            assert [row["segment"] for row in dashboard["segments"]] == ["DYN_SF"]

            report = reopened.run_drift_detection(as_of=as_of)
            assert report.calibration["sample_size"] == 90
            stored = reopened.get_drift_report()
            assert stored.report_id == report.report_id
            assert reopened.get_drift_report("RED_SF") is None

            rolled = reopened.rollback_weights("DYN_SF")
            assert rolled.status == "ROLLED_BACK"
            assert reopened.analyze_trade(_offer(as_of)).weights_source == "default"

    def test_dry_run_and_backtest(self, engine, as_of):
        _simulate(engine, as_of)
        results = engine.run_weekly_learning(force_date=as_of, dry_run=True)
        assert {r.segment for r in results} == {"DYN_SF", "DYN_1QB", "RED_SF", "RED_1QB", "UNK"}
        assert engine.repository.get_active_weights("DYN_SF") is None

        report = engine.run_backtest("DYN_SF")
        assert report["partial"] is False
        assert report["segments"]["DYN_SF"]["summary"]["test_samples"] == 150

    def test_unknown_segment_for_learning(self, engine):
        with pytest.raises(UnknownSegmentError):
            engine.run_weekly_learning("XFL")


class TestIsotonic:
    """Tests for isotonic post-calibration through the engine."""

    def test_weekly_learning_fits_and_applies_map(self, engine, as_of):
        _simulate(engine, as_of - timedelta(hours=3))
        engine.run_weekly_learning("DYN_SF", force_date=as_of)

        weights, _ = resolve_weights("DYN_SF", engine.repository)
        isotonic_map = engine.repository.get_isotonic_map("DYN_SF")
        assert isotonic_map.weights_version == weights.version
        assert isotonic_map.sample_size == 150
        assert engine.repository.get_isotonic_map("RED_SF") is None

        analysis = engine.analyze_trade(_offer(as_of, "after-learning"))
        record = next(r for r in engine.repository.get_predictions() if r.offer_id == "after-learning")
        assert analysis.isotonic_applied is True
        assert analysis.raw_acceptance_probability == pytest.approx(predict(record.features, weights), abs=1e-6)
        assert analysis.acceptance_probability == pytest.approx(
            apply_isotonic_map(analysis.raw_acceptance_probability, isotonic_map), abs=1e-4
        )
        assert record.predicted_probability == analysis.acceptance_probability

    def test_map_for_other_weights_is_not_applied(self, engine, as_of):
        _simulate(engine, as_of - timedelta(hours=3))
        engine.refresh_isotonic_maps(["DYN_SF"], as_of=as_of)
        assert engine.analyze_trade(_offer(as_of)).isotonic_applied is True

        engine.repository.put_weights("DYN_SF", replace(default_weights("DYN_SF"), version="manual", b0=-0.9))
        analysis = engine.analyze_trade(_offer(as_of))
        assert analysis.isotonic_applied is False
        assert analysis.acceptance_probability == analysis.raw_acceptance_probability

    def test_disabled_or_dry_run_fits_nothing(self, as_of):
        config = Config(isotonic=IsotonicSettings(enabled=False))
        engine = TradeEngine(InMemoryRepository(), config=config, metrics=InMemoryMetricsRecorder())
        _simulate(engine, as_of - timedelta(hours=3))
        engine.run_weekly_learning("DYN_SF", force_date=as_of)
        assert engine.repository.get_isotonic_map("DYN_SF") is None

        dry = TradeEngine(InMemoryRepository(), metrics=InMemoryMetricsRecorder())
        _simulate(dry, as_of - timedelta(hours=3))
        dry.run_weekly_learning("DYN_SF", force_date=as_of, dry_run=True)
        assert dry.repository.get_isotonic_map("DYN_SF") is None


class TestCli:
    """Smoke tests for the command line."""

    def test_drift_report_missing(self, monkeypatch):
        with tempfile.TemporaryDirectory() as tmpdir:
            monkeypatch.setenv("TRADECAL_DATA_DIR", tmpdir)
            assert main(["drift-report"]) == 1

    def test_analyze_then_dashboard(self, monkeypatch, capsys, as_of):
        with tempfile.TemporaryDirectory() as tmpdir:
            monkeypatch.setenv("TRADECAL_DATA_DIR", str(Path(tmpdir) / "data"))
            offer_path = Path(tmpdir) / "offer.json"
            offer_path.write_text(json.dumps(_offer(as_of, "cli-1").to_dict()))

            assert main(["analyze", "--offer", str(offer_path)]) == 0
            analysis = json.loads(capsys.readouterr().out)
            assert analysis["fairness_tier"] == TIER_LEAN_YOU

            assert main(["record-outcome", "--offer-id", "cli-1", "--accepted"]) == 0
            capsys.readouterr()
            assert main(["record-outcome", "--offer-id", "cli-1", "--rejected"]) == 2

            out_dir = Path(tmpdir) / "report"
            args = ["dashboard", "--filter", "sf", "--as-of", as_of.isoformat(), "--output-dir", str(out_dir)]
            assert main(args) == 0
            dashboard = json.loads(capsys.readouterr().out)
            assert dashboard["summary_cards"]["offer_count"] == 1
            assert (out_dir / "calibration_dashboard.json").exists()

    def test_learn_accepts_force_flag(self, monkeypatch, capsys, as_of):
        with tempfile.TemporaryDirectory() as tmpdir:
            monkeypatch.setenv("TRADECAL_DATA_DIR", tmpdir)
            args = ["learn", "--segment", "DYN_SF", "--force-date", as_of.isoformat(), "--force"]
            assert main(args) == 0
            results = json.loads(capsys.readouterr().out)
            assert [r["status"] for r in results] == ["INSUFFICIENT_DATA"]
