"""Record types shared across the engine.

Every record that crosses a repository or API boundary has ``to_dict`` and
``from_dict`` so it can be stored as plain JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import uuid

from tradecal.constants import (
    FEATURE_ARCHETYPE_FIT,
    FEATURE_LIQUIDITY,
    FEATURE_NAMES,
    FEATURE_SCARCITY,
    FEATURE_VALUE_DELTA,
    KIND_PICK,
    KIND_PLAYER,
    segment_fields,
    segment_for,
)
from tradecal.exceptions import InvalidTradeError, SchemaVersionError


WEIGHTS_SCHEMA_VERSION = 1


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# ASSETS AND OFFERS
# =============================================================================

def _whole_number(value: Any) -> int:
    return int(float(value))


def _optional_number(data: dict, key: str, cast) -> Any:
    """Numeric field from JSON input; strings like ``"1"`` are accepted."""
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise InvalidTradeError(f"{key} must be numeric, got {value!r}")


@dataclass(frozen=True)
class Asset:
    kind: str
    identity: str = ""
    position: Optional[str] = None
    market_value: float = 0.0
    age: Optional[float] = None
    pick_year: Optional[int] = None
    pick_round: Optional[int] = None
    class_strength: Optional[float] = None

    @classmethod
    def player(cls, identity: str, position: Optional[str] = None, market_value: float = 0.0,
               age: Optional[float] = None) -> "Asset":
        return cls(KIND_PLAYER, identity, position, market_value, age)

    @classmethod
    def pick(cls, year: int, round_number: int, market_value: float = 0.0,
             class_strength: Optional[float] = None, identity: str = "") -> "Asset":
        return cls(
            KIND_PICK,
            identity or f"{year}-{round_number}",
            "PICK",
            market_value,
            pick_year=year,
            pick_round=round_number,
            class_strength=class_strength,
        )

    @property
    def is_pick(self) -> bool:
        return self.kind == KIND_PICK

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "identity": self.identity,
            "position": self.position,
            "market_value": self.market_value,
            "age": self.age,
            "pick_year": self.pick_year,
            "pick_round": self.pick_round,
            "class_strength": self.class_strength,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Asset":
        kind = str(data.get("kind", KIND_PLAYER)).upper()
        position = data.get("position")
        return cls(
            kind=kind,
            identity=str(data.get("identity") or ""),
            position=str(position).upper() if position else ("PICK" if kind == KIND_PICK else None),
            market_value=float(data.get("market_value") or 0.0),
            age=_optional_number(data, "age", float),
            pick_year=_optional_number(data, "pick_year", _whole_number),
            pick_round=_optional_number(data, "pick_round", _whole_number),
            class_strength=_optional_number(data, "class_strength", float),
        )


@dataclass(frozen=True)
class LeagueContext:
    superflex: Optional[bool] = None
    dynasty: Optional[bool] = None
    as_of: datetime = field(default_factory=datetime.utcnow)
    liquidity: float = 0.5
    counterparty_needs: Dict[str, float] = field(default_factory=dict)
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def segment(self) -> str:
        return segment_for(self.dynasty, self.superflex)

    def to_dict(self) -> dict:
        return {
            "superflex": self.superflex,
            "dynasty": self.dynasty,
            "as_of": format_datetime(self.as_of),
            "liquidity": self.liquidity,
            "counterparty_needs": dict(self.counterparty_needs),
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LeagueContext":
        return cls(
            superflex=data.get("superflex"),
            dynasty=data.get("dynasty"),
            as_of=parse_datetime(data.get("as_of")) or datetime.utcnow(),
            liquidity=float(data.get("liquidity", 0.5)),
            counterparty_needs={
                str(k).upper(): float(v) for k, v in (data.get("counterparty_needs") or {}).items()
            },
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
        )


@dataclass(frozen=True)
class TradeOffer:
    side_a: Tuple[Asset, ...]
    side_b: Tuple[Asset, ...]
    context: LeagueContext = field(default_factory=LeagueContext)
    offer_id: Optional[str] = None
    league_segment: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "side_a", tuple(self.side_a))
        object.__setattr__(self, "side_b", tuple(self.side_b))
        if not self.side_a:
            raise InvalidTradeError("side A has no assets", self.offer_id)
        if not self.side_b:
            raise InvalidTradeError("side B has no assets", self.offer_id)

    @property
    def segment(self) -> str:
        return self.league_segment or self.context.segment

    @property
    def offered_at(self) -> datetime:
        return self.created_at or self.context.as_of

    def attributes(self) -> Dict[str, str]:
        attrs = dict(segment_fields(self.segment))
        attrs.update(self.context.attributes)
        return attrs

    def to_dict(self) -> dict:
        return {
            "offer_id": self.offer_id,
            "side_a": [asset.to_dict() for asset in self.side_a],
            "side_b": [asset.to_dict() for asset in self.side_b],
            "context": self.context.to_dict(),
            "league_segment": self.league_segment,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TradeOffer":
        return cls(
            side_a=tuple(Asset.from_dict(item) for item in data.get("side_a") or []),
            side_b=tuple(Asset.from_dict(item) for item in data.get("side_b") or []),
            context=LeagueContext.from_dict(data.get("context") or {}),
            offer_id=data.get("offer_id"),
            league_segment=data.get("league_segment"),
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class PricedAsset:
    asset: Asset
    value: float
    risk_adjusted_value: float
    volatility: float
    source: str
    low_confidence: bool = False

    def to_dict(self) -> dict:
        return {
            "identity": self.asset.identity,
            "kind": self.asset.kind,
            "position": self.asset.position,
            "value": round(self.value, 4),
            "risk_adjusted_value": round(self.risk_adjusted_value, 4),
            "volatility": round(self.volatility, 4),
            "source": self.source,
            "low_confidence": self.low_confidence,
        }


# =============================================================================
# FEATURES AND WEIGHTS
# =============================================================================

@dataclass(frozen=True)
class AcceptanceFeatures:
    value_delta: float = 0.0
    liquidity: float = 0.0
    archetype_fit: float = 0.0
    scarcity: float = 0.0

    def as_list(self) -> List[float]:
        return [getattr(self, name) for name in FEATURE_NAMES]

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in FEATURE_NAMES}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AcceptanceFeatures":
        return cls(**{name: float(data.get(name, 0.0)) for name in FEATURE_NAMES})


@dataclass(frozen=True)
class FeatureWeights:
    value_delta: float
    liquidity: float
    archetype_fit: float
    scarcity: float

    @classmethod
    def uniform(cls, weight: float) -> "FeatureWeights":
        return cls(weight, weight, weight, weight)

    @classmethod
    def from_list(cls, values: List[float]) -> "FeatureWeights":
        return cls(**{name: float(v) for name, v in zip(FEATURE_NAMES, values)})

    def as_list(self) -> List[float]:
        return [getattr(self, name) for name in FEATURE_NAMES]

    def total(self) -> float:
        return sum(self.as_list())

    def to_dict(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in FEATURE_NAMES}


@dataclass(frozen=True)
class SegmentWeights:
    """Acceptance model coefficients for one segment.

    One active row per segment; the repository keeps every committed row in an
    append-only history. ``trained_through`` is the newest outcome timestamp the
    row was fitted on and is how the learner recognises "no new data".
    """

    segment: str
    b0: float
    feature_weights: FeatureWeights
    updated_at: datetime = field(default_factory=datetime.utcnow)
    sample_size: int = 0
    version: str = "default"
    trained_through: Optional[datetime] = None
    holdout_metrics: Dict[str, float] = field(default_factory=dict)
    schema_version: int = WEIGHTS_SCHEMA_VERSION

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "segment": self.segment,
            "b0": self.b0,
            "feature_weights": self.feature_weights.to_dict(),
            "updated_at": format_datetime(self.updated_at),
            "sample_size": self.sample_size,
            "version": self.version,
            "trained_through": format_datetime(self.trained_through),
            "holdout_metrics": dict(self.holdout_metrics),
        }

    @classmethod
    def from_dict(cls, data: dict, default_weight: float = 0.5) -> "SegmentWeights":
        schema_version = int(data.get("schema_version", 0))
        if schema_version > WEIGHTS_SCHEMA_VERSION:
            raise SchemaVersionError(schema_version, WEIGHTS_SCHEMA_VERSION)
        raw_weights = data.get("feature_weights") or {}
        # Rows from before the schema field may be missing features entirely.
        weights = FeatureWeights(**{
            name: float(raw_weights.get(name, default_weight)) for name in FEATURE_NAMES
        })
        return cls(
            segment=str(data["segment"]),
            b0=float(data["b0"]),
            feature_weights=weights,
            updated_at=parse_datetime(data.get("updated_at")) or datetime.utcnow(),
            sample_size=int(data.get("sample_size", 0)),
            version=str(data.get("version", "default")),
            trained_through=parse_datetime(data.get("trained_through")),
            holdout_metrics={str(k): float(v) for k, v in (data.get("holdout_metrics") or {}).items()},
            schema_version=WEIGHTS_SCHEMA_VERSION,
        )


@dataclass(frozen=True)
class IsotonicPoint:
    x: float
    y: float
    count: int

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "count": self.count}


@dataclass(frozen=True)
class IsotonicMap:
    """Monotone map from raw model probability to observed acceptance.

    Fitted against one weights version; a map whose ``weights_version`` no
    longer matches the active weights is stale and is not applied.
    """

    segment: str
    weights_version: str
    points: Tuple[IsotonicPoint, ...]
    sample_size: int
    ece_before: float
    ece_after: float
    computed_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "segment": self.segment,
            "weights_version": self.weights_version,
            "points": [point.to_dict() for point in self.points],
            "sample_size": self.sample_size,
            "ece_before": self.ece_before,
            "ece_after": self.ece_after,
            "computed_at": format_datetime(self.computed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IsotonicMap":
        return cls(
            segment=str(data["segment"]),
            weights_version=str(data["weights_version"]),
            points=tuple(
                IsotonicPoint(float(p["x"]), float(p["y"]), int(p.get("count", 0)))
                for p in data.get("points") or []
            ),
            sample_size=int(data.get("sample_size", 0)),
            ece_before=float(data.get("ece_before", 0.0)),
            ece_after=float(data.get("ece_after", 0.0)),
            computed_at=parse_datetime(data.get("computed_at")) or datetime.utcnow(),
        )


# =============================================================================
# PREDICTIONS AND OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class PredictionRecord:
    offer_id: str
    segment: str
    offered_at: datetime
    predicted_probability: float
    features: AcceptanceFeatures
    weights_source: str
    weights_version: str
    attributes: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "offer_id": self.offer_id,
            "segment": self.segment,
            "offered_at": format_datetime(self.offered_at),
            "predicted_probability": self.predicted_probability,
            "features": self.features.to_dict(),
            "weights_source": self.weights_source,
            "weights_version": self.weights_version,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PredictionRecord":
        return cls(
            offer_id=str(data["offer_id"]),
            segment=str(data["segment"]),
            offered_at=parse_datetime(data["offered_at"]),
            predicted_probability=float(data["predicted_probability"]),
            features=AcceptanceFeatures.from_dict(data.get("features") or {}),
            weights_source=str(data.get("weights_source", "default")),
            weights_version=str(data.get("weights_version", "default")),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
        )


@dataclass(frozen=True)
class Outcome:
    """A resolved offer, joined with the prediction that was made for it."""

    trade_offer_id: str
    accepted: bool
    observed_at: datetime
    segment: Optional[str] = None
    predicted_probability: Optional[float] = None
    features: Optional[AcceptanceFeatures] = None
    offered_at: Optional[datetime] = None
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def has_prediction(self) -> bool:
        return self.features is not None and self.predicted_probability is not None

    def with_prediction(self, record: PredictionRecord) -> "Outcome":
        return Outcome(
            trade_offer_id=self.trade_offer_id,
            accepted=self.accepted,
            observed_at=self.observed_at,
            segment=record.segment,
            predicted_probability=record.predicted_probability,
            features=record.features,
            offered_at=record.offered_at,
            attributes=dict(record.attributes),
        )

    def to_dict(self) -> dict:
        return {
            "trade_offer_id": self.trade_offer_id,
            "accepted": self.accepted,
            "observed_at": format_datetime(self.observed_at),
            "segment": self.segment,
            "predicted_probability": self.predicted_probability,
            "features": self.features.to_dict() if self.features else None,
            "offered_at": format_datetime(self.offered_at),
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Outcome":
        features = data.get("features")
        probability = data.get("predicted_probability")
        return cls(
            trade_offer_id=str(data["trade_offer_id"]),
            accepted=bool(data["accepted"]),
            observed_at=parse_datetime(data["observed_at"]),
            segment=data.get("segment"),
            predicted_probability=float(probability) if probability is not None else None,
            features=AcceptanceFeatures.from_dict(features) if features else None,
            offered_at=parse_datetime(data.get("offered_at")),
            attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
        )


@dataclass
class TradeAnalysis:
    offer_id: Optional[str]
    segment: str
    fairness_score: float
    value_delta_pct: float
    fairness_tier: str
    grade: str
    acceptance_probability: float
    contributing_features: Dict[str, Dict[str, float]]
    weights_source: str
    weights_version: str
    confidence: str
    low_confidence_assets: List[str] = field(default_factory=list)
    side_a: List[Dict] = field(default_factory=list)
    side_b: List[Dict] = field(default_factory=list)
    fingerprint: str = ""
    raw_acceptance_probability: Optional[float] = None
    isotonic_applied: bool = False

    def to_dict(self) -> dict:
        return {
            "offer_id": self.offer_id,
            "segment": self.segment,
            "fairness_score": self.fairness_score,
            "value_delta_pct": self.value_delta_pct,
            "fairness_tier": self.fairness_tier,
            "grade": self.grade,
            "acceptance_probability": self.acceptance_probability,
            "raw_acceptance_probability": self.raw_acceptance_probability,
            "isotonic_applied": self.isotonic_applied,
            "contributing_features": self.contributing_features,
            "weights_source": self.weights_source,
            "weights_version": self.weights_version,
            "confidence": self.confidence,
            "low_confidence_assets": list(self.low_confidence_assets),
            "side_a": list(self.side_a),
            "side_b": list(self.side_b),
            "fingerprint": self.fingerprint,
        }


# =============================================================================
# DRIFT REPORTS
# =============================================================================

SEVERITY_OK = "ok"
SEVERITY_INFO = "info"
SEVERITY_WARN = "warn"
SEVERITY_CRITICAL = "critical"
STATUS_INSUFFICIENT_DATA = "insufficient_data"

SEVERITY_ORDER = {
    SEVERITY_OK: 0,
    SEVERITY_INFO: 1,
    SEVERITY_WARN: 2,
    SEVERITY_CRITICAL: 3,
}


def max_severity(severities: List[str]) -> str:
    result = SEVERITY_OK
    for severity in severities:
        if SEVERITY_ORDER.get(severity, 0) > SEVERITY_ORDER[result]:
            result = severity
    return result


@dataclass(frozen=True)
class DriftAlert:
    severity: str
    category: str
    metric: str
    value: float
    threshold: float
    message: str
    segment: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "severity": self.severity,
            "category": self.category,
            "metric": self.metric,
            "value": self.value,
            "threshold": self.threshold,
            "message": self.message,
            "segment": self.segment,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DriftAlert":
        return cls(
            severity=str(data["severity"]),
            category=str(data["category"]),
            metric=str(data["metric"]),
            value=float(data["value"]),
            threshold=float(data["threshold"]),
            message=str(data["message"]),
            segment=data.get("segment"),
        )


@dataclass
class DriftReport:
    timestamp: datetime
    segment: Optional[str]
    status: str
    overall_severity: str
    calibration: Dict[str, Any]
    rank_order: Dict[str, Any]
    segments: List[Dict[str, Any]]
    input: Dict[str, Any]
    alerts: List[DriftAlert]
    history: List[Dict[str, Any]] = field(default_factory=list)
    relearn_segments: List[str] = field(default_factory=list)
    report_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def summary(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "timestamp": format_datetime(self.timestamp),
            "status": self.status,
            "overall_severity": self.overall_severity,
            "alert_count": len(self.alerts),
            "calibration_gap": self.calibration.get("absolute_gap"),
            "rank_rho": self.rank_order.get("spearman_rho"),
        }

    def to_dict(self) -> dict:
        return {
            "report_id": self.report_id,
            "timestamp": format_datetime(self.timestamp),
            "segment": self.segment,
            "status": self.status,
            "overall_severity": self.overall_severity,
            "calibration": dict(self.calibration),
            "rank_order": dict(self.rank_order),
            "segments": [dict(row) for row in self.segments],
            "input": dict(self.input),
            "alerts": [alert.to_dict() for alert in self.alerts],
            "history": [dict(row) for row in self.history],
            "relearn_segments": list(self.relearn_segments),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DriftReport":
        return cls(
            timestamp=parse_datetime(data["timestamp"]),
            segment=data.get("segment"),
            status=str(data["status"]),
            overall_severity=str(data["overall_severity"]),
            calibration=dict(data.get("calibration") or {}),
            rank_order=dict(data.get("rank_order") or {}),
            segments=[dict(row) for row in data.get("segments") or []],
            input=dict(data.get("input") or {}),
            alerts=[DriftAlert.from_dict(item) for item in data.get("alerts") or []],
            history=[dict(row) for row in data.get("history") or []],
            relearn_segments=list(data.get("relearn_segments") or []),
            report_id=str(data.get("report_id") or uuid.uuid4().hex),
        )
