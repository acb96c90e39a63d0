"""Unit tests for configuration loading."""

import json
import tempfile
from pathlib import Path

import pytest

from tradecal.config import Config, FairnessSettings, LearnerSettings
from tradecal.exceptions import ConfigurationError


def test_defaults():
    config = Config()
    assert config.learner.max_weight_delta == pytest.approx(0.03)
    assert config.acceptance.default_b0 == pytest.approx(-1.10)
    assert config.fairness.fair_threshold < config.fairness.slight_threshold < config.fairness.lean_threshold
    assert config.learner.require_backtest is False


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("TRADECAL_LEARNER_MAX_WEIGHT_DELTA", "0.05")
    monkeypatch.setenv("TRADECAL_DRIFT_AUTO_RELEARN", "yes")
    monkeypatch.setenv("TRADECAL_DASHBOARD_N_BUCKETS", "20")
    monkeypatch.setenv("TRADECAL_DASHBOARD_TOP_K_FRACTIONS", "0.1, 0.5")
    monkeypatch.setenv("TRADECAL_DATA_DIR", "/tmp/tradecal-test")

    config = Config.from_env()
    assert config.learner.max_weight_delta == pytest.approx(0.05)
    assert config.drift.auto_relearn is True
    assert config.dashboard.n_buckets == 20
    assert config.dashboard.top_k_fractions == [0.1, 0.5]
    assert config.data_dir == "/tmp/tradecal-test"


def test_bad_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("TRADECAL_LEARNER_MIN_SAMPLES", "many")
    assert Config.from_env().learner.min_samples == LearnerSettings().min_samples


def test_thresholds_must_increase():
    with pytest.raises(ConfigurationError) as excinfo:
        Config(fairness=FairnessSettings(fair_threshold=0.2, slight_threshold=0.1))
    assert excinfo.value.setting == "fairness"


def test_invalid_holdout_rejected():
    with pytest.raises(ConfigurationError):
        Config(learner=LearnerSettings(holdout_fraction=1.5))


class TestConfigFiles:
    """Tests for JSON and dotenv config files."""

    def test_json_file_overrides_env(self, monkeypatch):
        monkeypatch.setenv("TRADECAL_LEARNER_L2", "0.4")
        monkeypatch.setenv("TRADECAL_LEARNER_MIN_SAMPLES", "80")
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "tradecal.json"
            path.write_text(json.dumps({"TRADECAL_LEARNER_MIN_SAMPLES": 100}))
            config = Config.load(str(path))
        assert config.learner.min_samples == 100
        assert config.learner.l2 == pytest.approx(0.4)

    def test_env_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "tradecal.env"
            path.write_text(
                "# engine settings\n"
                "TRADECAL_FAIRNESS_FAIR_THRESHOLD='0.05'\n"
                "TRADECAL_CACHE_TTL=60\n"
                "not a setting\n"
            )
            config = Config.load(str(path))
        assert config.fairness.fair_threshold == pytest.approx(0.05)
        assert config.cache_ttl_seconds == 60

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            Config.load("/nonexistent/tradecal.json")


def test_to_dict_is_json_serialisable():
    data = Config().to_dict()
    assert data["learner"]["min_samples"] == 60
    json.dumps(data)
