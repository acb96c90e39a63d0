"""Unit tests for segment weight learning."""

import tempfile
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

import numpy as np
import pytest

from tradecal.config import Config, LearnerSettings
from tradecal.exceptions import InsufficientDataError, PersistenceError, SegmentLockTimeout
from tradecal.learning import WeightLearner, clamped_update, commit, fit, week_version
from tradecal.learning import fitting
from tradecal.learning.fitting import (
    STATUS_APPLIED,
    STATUS_DRY_RUN,
    STATUS_FAILED,
    STATUS_INSUFFICIENT_DATA,
    STATUS_NO_NEW_DATA,
    STATUS_REJECTED,
    STATUS_ROLLED_BACK,
)
from tradecal.learning.learner import unique_version
from tradecal.models.acceptance import default_weights, resolve_weights
from tradecal.models.records import AcceptanceFeatures, FeatureWeights, Outcome, SegmentWeights
from tradecal.storage import InMemoryRepository, JsonFileRepository, SegmentLockRegistry
from tradecal.storage import repository as repository_module


def _repository(outcomes):
    repo = InMemoryRepository()
    for outcome in outcomes:
        repo.record_outcome(outcome)
    return repo


def _learner(repo, **learner_overrides):
    return WeightLearner(repo, Config(learner=LearnerSettings(**learner_overrides)))


class TestClampedUpdate:
    """Tests for the bounded weight step."""

    def test_step_never_exceeds_max_delta(self):
        rng = np.random.RandomState(3)
        for _ in range(300):
            old = rng.uniform(0.0, 3.0, size=4)
            proposed = rng.uniform(-5.0, 8.0, size=4)
            new = np.array(clamped_update(old, proposed, 0.03))
            assert np.all(np.abs(new - old) <= 0.03)
            assert np.all(new >= 0.0)
            assert np.all(new <= 3.0)

    def test_moves_toward_proposal_and_keeps_total(self):
        new = clamped_update([0.5] * 4, [3.0, 0.5, 0.5, 0.5], 0.03)
        assert new[0] > 0.5
        assert sum(new) == pytest.approx(2.0)


class TestFit:
    """Tests for the pure fitting step."""

    def test_insufficient_data_raises(self, make_outcomes):
        with pytest.raises(InsufficientDataError) as excinfo:
            fit("DYN_SF", make_outcomes(n=10), default_weights("DYN_SF"))
        assert excinfo.value.actual == 10

    def test_clamp_holds_for_a_cycle(self, make_outcomes, as_of):
        prior = default_weights("DYN_SF")
        candidate = fit("DYN_SF", make_outcomes(n=240), prior, as_of=as_of)
        old = prior.feature_weights.as_list()
        new = candidate.learned.feature_weights.as_list()
        for before, after in zip(old, new):
            assert abs(after - before) <= 0.03
        assert abs(candidate.learned.b0 - prior.b0) <= 0.60 + 1e-9

    def test_recovers_value_delta_boundary(self, make_outcomes, as_of):
        outcomes = make_outcomes(n=100, boundary=0.10, seed=11)
        prior = default_weights("DYN_SF")
        candidate = fit("DYN_SF", outcomes, prior, as_of=as_of)

        proposed = candidate.proposed_weights
        assert proposed["value_delta"] > prior.feature_weights.value_delta
        assert proposed["value_delta"] == max(proposed.values())
        learned = candidate.learned.feature_weights.to_dict()
        assert learned["value_delta"] == max(learned.values())
        assert learned["value_delta"] >= prior.feature_weights.value_delta

    def test_holdout_metrics_and_version(self, make_outcomes, as_of):
        candidate = fit("DYN_SF", make_outcomes(n=100), default_weights("DYN_SF"), as_of=as_of)
        metrics = candidate.learned.holdout_metrics
        assert metrics["holdout_size"] == 30
        assert set(metrics) >= {"brier", "baseline_brier", "ece", "log_loss"}
        assert candidate.train_size == 70
        assert candidate.learned.version == "rw_2026w43_DYN_SF"
        assert week_version("RED_1QB", as_of) == "rw_2026w43_RED_1QB"

    def test_improvement_threshold(self, make_outcomes, as_of):
        candidate = fit(
            "DYN_SF",
            make_outcomes(n=100),
            default_weights("DYN_SF"),
            LearnerSettings(min_improvement=1.0),
            as_of=as_of,
        )
        assert candidate.improved is False
        assert commit(candidate, InMemoryRepository()) is False


class TestWeightLearner:
    """Tests for the stateful learning cycle."""

    def test_dry_run_never_persists(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150))
        result = _learner(repo).learn("DYN_SF", as_of, dry_run=True)
        assert result.status == STATUS_DRY_RUN
        assert result.committed is False
        assert repo.get_active_weights("DYN_SF") is None

    def test_no_persist_without_improvement(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150))
        result = _learner(repo, min_improvement=1.0).learn("DYN_SF", as_of)
        assert result.status == STATUS_REJECTED
        assert repo.get_active_weights("DYN_SF") is None
        assert repo.get_weight_history("DYN_SF") == []

    def test_second_run_without_new_data_is_a_no_op(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150))
        learner = _learner(repo, min_improvement=-1.0)

        first = learner.learn("DYN_SF", as_of)
        assert first.status == STATUS_APPLIED
        active = repo.get_active_weights("DYN_SF")
        assert active.version == "rw_2026w43_DYN_SF"

        second = learner.learn("DYN_SF", as_of + timedelta(days=7))
        assert second.status == STATUS_NO_NEW_DATA
        assert repo.get_active_weights("DYN_SF").to_dict() == active.to_dict()
        assert len(repo.get_weight_history("DYN_SF")) == 1

    def test_insufficient_data_status(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=12))
        result = _learner(repo).learn("DYN_SF", as_of)
        assert result.status == STATUS_INSUFFICIENT_DATA
        assert result.sample_size == 12

    def test_outcomes_after_run_date_are_ignored(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150, end=as_of + timedelta(days=200)))
        result = _learner(repo).learn("DYN_SF", as_of, dry_run=True)
        assert result.status == STATUS_INSUFFICIENT_DATA

    def test_run_weekly_covers_every_segment(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150, segment="DYN_SF"))
        results = _learner(repo).run_weekly(force_date=as_of)
        by_segment = {r.segment: r for r in results}
        assert set(by_segment) == {"DYN_SF", "DYN_1QB", "RED_SF", "RED_1QB", "UNK"}
        assert by_segment["RED_SF"].status == STATUS_INSUFFICIENT_DATA
        assert by_segment["DYN_SF"].status in (STATUS_APPLIED, STATUS_REJECTED)

    def test_pinned_run_date_is_idempotent(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150))
        learner = _learner(repo, min_improvement=-1.0)

        first = learner.run_weekly(["DYN_SF"], force_date=as_of)
        assert [r.status for r in first] == [STATUS_APPLIED]
        active = repo.get_active_weights("DYN_SF")

        second = learner.run_weekly(["DYN_SF"], force_date=as_of)
        assert [r.status for r in second] == [STATUS_NO_NEW_DATA]
        assert repo.get_active_weights("DYN_SF").to_dict() == active.to_dict()
        assert len(repo.get_weight_history("DYN_SF")) == 1

    def test_explicit_force_refits_without_new_data(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150))
        learner = _learner(repo, min_improvement=-1.0)
        learner.run_weekly(["DYN_SF"], force_date=as_of)

        forced = learner.run_weekly(["DYN_SF"], force_date=as_of, force=True)
        assert forced[0].status == STATUS_APPLIED
        assert forced[0].version == "rw_2026w43_DYN_SF.2"
        assert len(repo.get_weight_history("DYN_SF")) == 2

    def test_optimizer_failure_keeps_prior_weights(self, make_outcomes, as_of, monkeypatch):
        repo = _repository(make_outcomes(n=150))
        learner = _learner(repo, min_improvement=-1.0)
        learner.learn("DYN_SF", as_of)
        active = repo.get_active_weights("DYN_SF")

        def diverged(*args, **kwargs):
            return SimpleNamespace(x=np.full(5, np.nan), fun=np.nan, success=False, message="diverged")

        monkeypatch.setattr(fitting.optimize, "minimize", diverged)
        result = learner.learn("DYN_SF", as_of, force=True)
        assert result.status == STATUS_FAILED
        assert result.committed is False
        assert "non-finite" in result.message
        assert repo.get_active_weights("DYN_SF").to_dict() == active.to_dict()
        assert len(repo.get_weight_history("DYN_SF")) == 1

    def test_failed_write_keeps_previous_weights(self, make_outcomes, as_of, monkeypatch):
        with tempfile.TemporaryDirectory() as tmpdir:
            repo = JsonFileRepository(tmpdir)
            for outcome in make_outcomes(n=150):
                repo.record_outcome(outcome)
            learner = _learner(repo, min_improvement=-1.0)
            learner.learn("DYN_SF", as_of)
            active = repo.get_active_weights("DYN_SF")

            def refuse(src, dst):
                raise OSError("disk full")

            monkeypatch.setattr(repository_module.os, "replace", refuse)
            with pytest.raises(PersistenceError):
                learner.learn("DYN_SF", as_of, force=True)
            monkeypatch.undo()

            reopened = JsonFileRepository(tmpdir)
            assert reopened.get_active_weights("DYN_SF").to_dict() == active.to_dict()
            assert len(reopened.get_weight_history("DYN_SF")) == 1
            assert not list(Path(tmpdir).glob(".*.tmp"))

    def test_lock_timeout(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=20))
        locks = SegmentLockRegistry()
        learner = WeightLearner(repo, Config(learner=LearnerSettings(lock_timeout_seconds=0.01)), locks)
        with locks.hold("DYN_SF"):
            with pytest.raises(SegmentLockTimeout):
                learner.learn("DYN_SF", as_of)


class TestRollback:
    """Tests for restoring earlier weights."""

    def _weights(self, version, value_delta, trained_through=None, ece=None):
        return SegmentWeights(
            segment="DYN_SF",
            b0=-1.10,
            feature_weights=FeatureWeights(value_delta, 0.5, 0.5, 0.5),
            version=version,
            trained_through=trained_through,
            holdout_metrics={"ece": ece} if ece is not None else {},
        )

    def test_manual_rollback_restores_previous(self):
        repo = InMemoryRepository()
        repo.put_weights("DYN_SF", self._weights("rw_2026w41_DYN_SF", 0.53))
        repo.put_weights("DYN_SF", self._weights("rw_2026w42_DYN_SF", 0.56))

        result = _learner(repo).rollback("DYN_SF")
        assert result.status == STATUS_ROLLED_BACK
        assert repo.get_active_weights("DYN_SF").version == "rw_2026w41_DYN_SF"

        _learner(repo).rollback("DYN_SF")
        weights, source = resolve_weights("DYN_SF", repo)
        assert source == "default"

    def test_rollback_without_learned_weights(self):
        result = _learner(InMemoryRepository()).rollback("DYN_SF")
        assert result.status == STATUS_NO_NEW_DATA

    def test_same_week_commits_roll_back_in_order(self, make_outcomes, as_of):
        repo = _repository(make_outcomes(n=150))
        learner = _learner(repo, min_improvement=-1.0)
        learner.learn("DYN_SF", as_of)
        learner.learn("DYN_SF", as_of, force=True)
        versions = [w.version for w in repo.get_weight_history("DYN_SF")]
        assert versions == ["rw_2026w43_DYN_SF.2", "rw_2026w43_DYN_SF"]

        assert learner.rollback("DYN_SF").version == "rw_2026w43_DYN_SF"
        assert learner.rollback("DYN_SF").version == "default"
        assert resolve_weights("DYN_SF", repo)[1] == "default"
        assert learner.rollback("DYN_SF").status == STATUS_NO_NEW_DATA

    def test_unique_version_suffixes(self):
        assert unique_version("rw_2026w43_DYN_SF", []) == "rw_2026w43_DYN_SF"
        taken = ["rw_2026w43_DYN_SF", "rw_2026w43_DYN_SF.2"]
        assert unique_version("rw_2026w43_DYN_SF", taken) == "rw_2026w43_DYN_SF.3"

    def test_calibration_regression_triggers_rollback(self, as_of):
        trained_through = as_of - timedelta(days=20)
        repo = InMemoryRepository()
        repo.put_weights("DYN_SF", self._weights("rw_2026w40_DYN_SF", 0.53, trained_through, ece=0.0))
        for i in range(40):
            repo.record_outcome(Outcome(
                trade_offer_id=f"late-{i}",
                accepted=False,
                observed_at=trained_through + timedelta(hours=i + 1),
                segment="DYN_SF",
                predicted_probability=0.25,
                features=AcceptanceFeatures(),
            ))

        result = _learner(repo).learn("DYN_SF", as_of)
        assert result.status == STATUS_ROLLED_BACK
        assert resolve_weights("DYN_SF", repo)[1] == "default"

    def test_check_rollback_keeps_healthy_weights(self, as_of):
        repo = InMemoryRepository()
        repo.put_weights("DYN_SF", self._weights("rw_2026w40_DYN_SF", 0.53, as_of - timedelta(days=20), ece=0.5))
        assert _learner(repo).check_rollback("DYN_SF", as_of) is None
        assert _learner(InMemoryRepository()).check_rollback("DYN_SF", as_of) is None
        assert repo.get_active_weights("DYN_SF").version == "rw_2026w40_DYN_SF"
