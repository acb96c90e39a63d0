"""Configuration for the trade engine."""

from dataclasses import dataclass, field, fields, asdict, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import json
import os

from tradecal.exceptions import ConfigurationError


_ENV_PREFIX = "TRADECAL"

_DEFAULT_DATA_DIR = ".tradecal"
_DEFAULT_CACHE_TTL = 300
_DEFAULT_MAX_WORKERS = 4

# Pricing
_DEFAULT_SUPERFLEX_QB_PREMIUM = 1.30
_DEFAULT_PICK_VALUE_SCALE = 1.0
_DEFAULT_REDRAFT_PICK_MULTIPLIER = 0.5
_DEFAULT_RISK_PENALTY = 0.25

# Fairness tier boundaries (absolute value delta)
_DEFAULT_FAIR_THRESHOLD = 0.06
_DEFAULT_SLIGHT_THRESHOLD = 0.12
_DEFAULT_LEAN_THRESHOLD = 0.20
_DEFAULT_SCORE_SCALE = 0.20

# Acceptance model
_DEFAULT_B0 = -1.10
_DEFAULT_FEATURE_WEIGHT = 0.5
_DEFAULT_PROBABILITY_FLOOR = 0.02
_DEFAULT_PROBABILITY_CEILING = 0.95
_DEFAULT_VALUE_DELTA_SCALE = 0.12

# Weight learning
_DEFAULT_MAX_WEIGHT_DELTA = 0.03
_DEFAULT_MAX_INTERCEPT_DELTA = 0.60
_DEFAULT_INTERCEPT_BAND = 0.60
_DEFAULT_MIN_WEIGHT = 0.0
_DEFAULT_MAX_WEIGHT = 3.0
_DEFAULT_MIN_SAMPLES = 60
_DEFAULT_HOLDOUT_FRACTION = 0.3
_DEFAULT_L2 = 0.1
_DEFAULT_MIN_IMPROVEMENT = 0.0005
_DEFAULT_LOOKBACK_DAYS = 180
_DEFAULT_ROLLBACK_ECE_THRESHOLD = 0.02
_DEFAULT_ROLLBACK_MIN_SAMPLES = 30
_DEFAULT_BACKTEST_WEEKS = 8
_DEFAULT_BACKTEST_TIMEOUT = 60.0
_DEFAULT_LOCK_TIMEOUT = 30.0

# Dashboard
_DEFAULT_DASHBOARD_WINDOW = 30
_DEFAULT_BUCKETS = 10
_DEFAULT_MIN_BUCKET_COUNT = 10
_DEFAULT_AUC_MIN_CLASS = 30
_DEFAULT_TOP_K = [0.05, 0.10, 0.20]
_DEFAULT_ECE_WATCH = 0.08
_DEFAULT_ECE_CRITICAL = 0.12
_DEFAULT_SEGMENT_ECE_WATCH = 0.10
_DEFAULT_SEGMENT_ECE_CRITICAL = 0.15

# Drift
_DEFAULT_DRIFT_WINDOW = 30
_DEFAULT_REFERENCE_DAYS = 90
_DEFAULT_CALIBRATION_WARN = 0.05
_DEFAULT_CALIBRATION_CRITICAL = 0.15
_DEFAULT_MIN_CALIBRATION_SAMPLE = 30
_DEFAULT_RANK_WARN = 0.15
_DEFAULT_RANK_CRITICAL = 0.0
_DEFAULT_MIN_RANK_SAMPLE = 30
_DEFAULT_CONSISTENCY_WARN = 0.50
_DEFAULT_CONSISTENCY_CRITICAL = 0.30
_DEFAULT_SEGMENT_WARN = 0.20
_DEFAULT_SEGMENT_CRITICAL = 0.35
_DEFAULT_SEGMENT_MIN_SAMPLE = 25
_DEFAULT_PSI_WARN = 0.25
_DEFAULT_PSI_CRITICAL = 0.50
_DEFAULT_Z_WARN = 3.0
_DEFAULT_Z_CRITICAL = 5.0
_DEFAULT_PSI_RECORD = 0.10
_DEFAULT_Z_RECORD = 2.0
_DEFAULT_INPUT_MIN_SAMPLE = 30
_DEFAULT_HISTORY_LIMIT = 20

# Isotonic post-calibration
_DEFAULT_ISOTONIC_MIN_SAMPLES = 50
_DEFAULT_ISOTONIC_BINS = 20
_DEFAULT_ISOTONIC_MIN_POINTS = 3


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _coerce_float(value: Optional[str], default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_int(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce_list(value: Optional[str], default: List) -> List:
    if value is None or value == "":
        return list(default)
    if isinstance(value, list):
        items = [str(item).strip() for item in value if str(item).strip()]
    else:
        items = [item.strip() for item in str(value).split(",") if item.strip()]
    if default and isinstance(default[0], float):
        try:
            return [float(item) for item in items]
        except ValueError:
            return list(default)
    return items


def _parse_env_file(path: Path) -> Dict[str, str]:
    data: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key.strip()] = _strip_quotes(value.strip())
    return data


def _load_config_data(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    if path.suffix.lower() == ".json":
        payload = json.loads(path.read_text(encoding="utf-8"))
        return {str(k): v for k, v in payload.items()}
    return _parse_env_file(path)


def _coerce_like(value: Any, default: Any) -> Any:
    # bool before int: bool is an int subclass
    if isinstance(default, bool):
        return _coerce_bool(value, default)
    if isinstance(default, int):
        return _coerce_int(value, default)
    if isinstance(default, float):
        return _coerce_float(value, default)
    if isinstance(default, list):
        return _coerce_list(value, default)
    if value is None or value == "":
        return default
    return str(value)


def _override_section(section: Any, data: Mapping[str, Any], name: str) -> Any:
    """Return a copy of a settings section with ``TRADECAL_<NAME>_<FIELD>`` overrides."""
    updates = {}
    for item in fields(section):
        key = f"{_ENV_PREFIX}_{name}_{item.name}".upper()
        if key in data:
            updates[item.name] = _coerce_like(data[key], getattr(section, item.name))
    if not updates:
        return section
    return replace(section, **updates)


@dataclass
class PricingSettings:
    superflex_qb_premium: float = _DEFAULT_SUPERFLEX_QB_PREMIUM
    pick_value_scale: float = _DEFAULT_PICK_VALUE_SCALE
    redraft_pick_multiplier: float = _DEFAULT_REDRAFT_PICK_MULTIPLIER
    risk_penalty: float = _DEFAULT_RISK_PENALTY


@dataclass
class FairnessSettings:
    fair_threshold: float = _DEFAULT_FAIR_THRESHOLD
    slight_threshold: float = _DEFAULT_SLIGHT_THRESHOLD
    lean_threshold: float = _DEFAULT_LEAN_THRESHOLD
    score_scale: float = _DEFAULT_SCORE_SCALE


@dataclass
class AcceptanceSettings:
    default_b0: float = _DEFAULT_B0
    default_feature_weight: float = _DEFAULT_FEATURE_WEIGHT
    probability_floor: float = _DEFAULT_PROBABILITY_FLOOR
    probability_ceiling: float = _DEFAULT_PROBABILITY_CEILING
    value_delta_scale: float = _DEFAULT_VALUE_DELTA_SCALE


@dataclass
class LearnerSettings:
    max_weight_delta: float = _DEFAULT_MAX_WEIGHT_DELTA
    max_intercept_delta: float = _DEFAULT_MAX_INTERCEPT_DELTA
    intercept_band: float = _DEFAULT_INTERCEPT_BAND
    min_weight: float = _DEFAULT_MIN_WEIGHT
    max_weight: float = _DEFAULT_MAX_WEIGHT
    min_samples: int = _DEFAULT_MIN_SAMPLES
    holdout_fraction: float = _DEFAULT_HOLDOUT_FRACTION
    l2: float = _DEFAULT_L2
    min_improvement: float = _DEFAULT_MIN_IMPROVEMENT
    lookback_days: int = _DEFAULT_LOOKBACK_DAYS
    rollback_ece_threshold: float = _DEFAULT_ROLLBACK_ECE_THRESHOLD
    rollback_min_samples: int = _DEFAULT_ROLLBACK_MIN_SAMPLES
    require_backtest: bool = False
    backtest_weeks: int = _DEFAULT_BACKTEST_WEEKS
    backtest_timeout_seconds: float = _DEFAULT_BACKTEST_TIMEOUT
    lock_timeout_seconds: float = _DEFAULT_LOCK_TIMEOUT


@dataclass
class DashboardSettings:
    window_days: int = _DEFAULT_DASHBOARD_WINDOW
    n_buckets: int = _DEFAULT_BUCKETS
    min_bucket_count: int = _DEFAULT_MIN_BUCKET_COUNT
    auc_min_class_count: int = _DEFAULT_AUC_MIN_CLASS
    top_k_fractions: List[float] = field(default_factory=lambda: list(_DEFAULT_TOP_K))
    ece_watch: float = _DEFAULT_ECE_WATCH
    ece_critical: float = _DEFAULT_ECE_CRITICAL
    segment_ece_watch: float = _DEFAULT_SEGMENT_ECE_WATCH
    segment_ece_critical: float = _DEFAULT_SEGMENT_ECE_CRITICAL


@dataclass
class DriftSettings:
    window_days: int = _DEFAULT_DRIFT_WINDOW
    reference_days: int = _DEFAULT_REFERENCE_DAYS
    calibration_warn: float = _DEFAULT_CALIBRATION_WARN
    calibration_critical: float = _DEFAULT_CALIBRATION_CRITICAL
    min_calibration_sample: int = _DEFAULT_MIN_CALIBRATION_SAMPLE
    rank_warn: float = _DEFAULT_RANK_WARN
    rank_critical: float = _DEFAULT_RANK_CRITICAL
    min_rank_sample: int = _DEFAULT_MIN_RANK_SAMPLE
    consistency_warn: float = _DEFAULT_CONSISTENCY_WARN
    consistency_critical: float = _DEFAULT_CONSISTENCY_CRITICAL
    segment_warn: float = _DEFAULT_SEGMENT_WARN
    segment_critical: float = _DEFAULT_SEGMENT_CRITICAL
    segment_min_sample: int = _DEFAULT_SEGMENT_MIN_SAMPLE
    psi_warn: float = _DEFAULT_PSI_WARN
    psi_critical: float = _DEFAULT_PSI_CRITICAL
    z_warn: float = _DEFAULT_Z_WARN
    z_critical: float = _DEFAULT_Z_CRITICAL
    psi_record: float = _DEFAULT_PSI_RECORD
    z_record: float = _DEFAULT_Z_RECORD
    input_min_sample: int = _DEFAULT_INPUT_MIN_SAMPLE
    history_limit: int = _DEFAULT_HISTORY_LIMIT
    auto_relearn: bool = False


@dataclass
class IsotonicSettings:
    enabled: bool = True
    min_samples: int = _DEFAULT_ISOTONIC_MIN_SAMPLES
    bin_count: int = _DEFAULT_ISOTONIC_BINS
    min_points: int = _DEFAULT_ISOTONIC_MIN_POINTS


_SECTIONS = {
    "pricing": "PRICING",
    "fairness": "FAIRNESS",
    "acceptance": "ACCEPTANCE",
    "learner": "LEARNER",
    "dashboard": "DASHBOARD",
    "drift": "DRIFT",
    "isotonic": "ISOTONIC",
}


@dataclass
class Config:
    data_dir: str = _DEFAULT_DATA_DIR
    cache_ttl_seconds: int = _DEFAULT_CACHE_TTL
    max_workers: int = _DEFAULT_MAX_WORKERS
    pricing: PricingSettings = field(default_factory=PricingSettings)
    fairness: FairnessSettings = field(default_factory=FairnessSettings)
    acceptance: AcceptanceSettings = field(default_factory=AcceptanceSettings)
    learner: LearnerSettings = field(default_factory=LearnerSettings)
    dashboard: DashboardSettings = field(default_factory=DashboardSettings)
    drift: DriftSettings = field(default_factory=DriftSettings)
    isotonic: IsotonicSettings = field(default_factory=IsotonicSettings)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        fair = self.fairness
        if not 0 <= fair.fair_threshold < fair.slight_threshold < fair.lean_threshold:
            raise ConfigurationError(
                "fairness",
                "tier thresholds must be increasing: fair < slight < lean",
            )
        if self.learner.max_weight_delta <= 0:
            raise ConfigurationError("learner.max_weight_delta", "must be positive")
        if not 0 < self.learner.holdout_fraction < 1:
            raise ConfigurationError("learner.holdout_fraction", "must be between 0 and 1")
        if self.learner.min_weight < 0 or self.learner.max_weight <= self.learner.min_weight:
            raise ConfigurationError(
                "learner.min_weight",
                "weight bounds must satisfy 0 <= min_weight < max_weight",
            )
        acc = self.acceptance
        if not 0 <= acc.probability_floor < acc.probability_ceiling <= 1:
            raise ConfigurationError("acceptance.probability_floor", "must satisfy 0 <= floor < ceiling <= 1")
        if self.drift.calibration_warn > self.drift.calibration_critical:
            raise ConfigurationError("drift.calibration_warn", "must not exceed calibration_critical")
        if self.dashboard.n_buckets <= 0:
            raise ConfigurationError("dashboard.n_buckets", "must be positive")
        if self.isotonic.bin_count <= 0:
            raise ConfigurationError("isotonic.bin_count", "must be positive")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base: Optional["Config"] = None) -> "Config":
        base = base or cls()
        sections = {
            attr: _override_section(getattr(base, attr), data, name)
            for attr, name in _SECTIONS.items()
        }
        return cls(
            data_dir=str(data.get(f"{_ENV_PREFIX}_DATA_DIR", base.data_dir)),
            cache_ttl_seconds=_coerce_int(
                data.get(f"{_ENV_PREFIX}_CACHE_TTL"),
                base.cache_ttl_seconds,
            ),
            max_workers=_coerce_int(
                data.get(f"{_ENV_PREFIX}_MAX_WORKERS"),
                base.max_workers,
            ),
            **sections,
        )

    @classmethod
    def from_env(cls) -> "Config":
        return cls.from_mapping(os.environ)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        env_config = cls.from_env()
        if not config_path:
            return env_config
        file_data = _load_config_data(Path(config_path))
        return cls.from_mapping(file_data, base=env_config)

    def to_dict(self) -> dict:
        return asdict(self)
