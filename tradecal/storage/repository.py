"""
Trade Repository
================
Persistence collaborator for predictions, outcomes, segment weights,
isotonic maps and drift reports.

Two implementations share one set of table semantics:

- ``InMemoryRepository`` keeps JSON-shaped tables in memory (tests, single
  process use).
- ``JsonFileRepository`` keeps one JSON file per table and swaps files in
  atomically, so a crash mid-write leaves the previous file intact.

Usage:
    from tradecal.storage import JsonFileRepository

    repo = JsonFileRepository(".tradecal")
    weights = repo.get_active_weights("DYN_SF")
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime

from tradecal.exceptions import DuplicateOutcomeError, PersistenceError
from tradecal.models.records import (
    DriftReport,
    IsotonicMap,
    Outcome,
    PredictionRecord,
    SegmentWeights,
    parse_datetime,
)

logger = logging.getLogger(__name__)

_PREDICTIONS = "predictions"
_OUTCOMES = "outcomes"
_WEIGHTS = "weights"
_DRIFT = "drift_reports"
_ISOTONIC = "isotonic_maps"

_EMPTY_TABLES = {
    _PREDICTIONS: {},
    _OUTCOMES: {},
    _WEIGHTS: {"active": {}, "history": {}},
    _DRIFT: [],
    _ISOTONIC: {},
}


class TradeRepository:
    """Narrow persistence interface consumed by the engine."""

    def record_prediction(self, record: PredictionRecord) -> None:
        raise NotImplementedError

    def record_outcome(self, outcome: Outcome) -> Outcome:
        raise NotImplementedError

    def get_predictions(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        segment: Optional[str] = None,
    ) -> List[PredictionRecord]:
        raise NotImplementedError

    def get_outcomes_for_segment(
        self,
        segment: Optional[str],
        since: Optional[datetime] = None,
    ) -> List[Outcome]:
        raise NotImplementedError

    def get_active_weights(self, segment: str) -> Optional[SegmentWeights]:
        raise NotImplementedError

    def put_weights(self, segment: str, weights: SegmentWeights) -> None:
        raise NotImplementedError

    def restore_weights(self, segment: str, weights: SegmentWeights) -> None:
        raise NotImplementedError

    def get_weight_history(self, segment: str, limit: Optional[int] = None) -> List[SegmentWeights]:
        raise NotImplementedError

    def append_drift_report(self, report: DriftReport) -> None:
        raise NotImplementedError

    def get_drift_history(self, segment: Optional[str] = None, limit: int = 20) -> List[DriftReport]:
        raise NotImplementedError

    def put_isotonic_map(self, isotonic_map: IsotonicMap) -> None:
        raise NotImplementedError

    def get_isotonic_map(self, segment: str) -> Optional[IsotonicMap]:
        raise NotImplementedError


class _TableRepository(TradeRepository):
    """Repository logic over JSON-shaped tables.

    Subclasses provide ``_read_table`` and ``_write_table``. Every mutation
    runs read-modify-write under one lock, and a table is only ever replaced
    as a whole, so readers never observe a half-written weight row.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def _read_table(self, name: str) -> Any:
        raise NotImplementedError

    def _write_table(self, name: str, data: Any) -> None:
        raise NotImplementedError

    # Predictions and outcomes

    def record_prediction(self, record: PredictionRecord) -> None:
        with self._lock:
            table = self._read_table(_PREDICTIONS)
            table[record.offer_id] = record.to_dict()
            self._write_table(_PREDICTIONS, table)

    def record_outcome(self, outcome: Outcome) -> Outcome:
        with self._lock:
            outcomes = self._read_table(_OUTCOMES)
            if outcome.trade_offer_id in outcomes:
                raise DuplicateOutcomeError(outcome.trade_offer_id)
            prediction = self._read_table(_PREDICTIONS).get(outcome.trade_offer_id)
            if prediction is not None and not outcome.has_prediction:
                outcome = outcome.with_prediction(PredictionRecord.from_dict(prediction))
            elif prediction is None:
                logger.debug(f"Outcome for {outcome.trade_offer_id} has no logged prediction")
            outcomes[outcome.trade_offer_id] = outcome.to_dict()
            self._write_table(_OUTCOMES, outcomes)
            return outcome

    def get_predictions(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        segment: Optional[str] = None,
    ) -> List[PredictionRecord]:
        with self._lock:
            rows = list(self._read_table(_PREDICTIONS).values())
        records = [PredictionRecord.from_dict(row) for row in rows]
        if segment is not None:
            records = [r for r in records if r.segment == segment]
        if since is not None:
            records = [r for r in records if r.offered_at >= since]
        if until is not None:
            records = [r for r in records if r.offered_at <= until]
        return sorted(records, key=lambda r: r.offered_at)

    def get_outcomes_for_segment(
        self,
        segment: Optional[str],
        since: Optional[datetime] = None,
    ) -> List[Outcome]:
        """Outcomes for one segment (all segments when ``segment`` is None), oldest first."""
        with self._lock:
            rows = list(self._read_table(_OUTCOMES).values())
        outcomes = [Outcome.from_dict(row) for row in rows]
        if segment is not None:
            outcomes = [o for o in outcomes if o.segment == segment]
        if since is not None:
            outcomes = [o for o in outcomes if o.observed_at >= since]
        return sorted(outcomes, key=lambda o: o.observed_at)

    # Weights

    def get_active_weights(self, segment: str) -> Optional[SegmentWeights]:
        with self._lock:
            row = self._read_table(_WEIGHTS)["active"].get(segment)
        if row is None:
            return None
        return SegmentWeights.from_dict(row)

    def put_weights(self, segment: str, weights: SegmentWeights) -> None:
        """Replace the active row and append it to the segment history in one write."""
        with self._lock:
            table = self._read_table(_WEIGHTS)
            row = weights.to_dict()
            table["active"][segment] = row
            table["history"].setdefault(segment, []).append(row)
            self._write_table(_WEIGHTS, table)
        logger.info(f"Stored weights {weights.version} for {segment}")

    def restore_weights(self, segment: str, weights: SegmentWeights) -> None:
        """Point the active row at an earlier entry without extending history."""
        with self._lock:
            table = self._read_table(_WEIGHTS)
            table["active"][segment] = weights.to_dict()
            self._write_table(_WEIGHTS, table)
        logger.info(f"Restored weights {weights.version} for {segment}")

    def get_weight_history(self, segment: str, limit: Optional[int] = None) -> List[SegmentWeights]:
        """Committed weights for a segment, newest first."""
        with self._lock:
            rows = list(self._read_table(_WEIGHTS)["history"].get(segment, []))
        history = [SegmentWeights.from_dict(row) for row in reversed(rows)]
        if limit is not None:
            history = history[:limit]
        return history

    # Drift reports

    def append_drift_report(self, report: DriftReport) -> None:
        with self._lock:
            reports = self._read_table(_DRIFT)
            reports.append(report.to_dict())
            self._write_table(_DRIFT, reports)

    def get_drift_history(self, segment: Optional[str] = None, limit: int = 20) -> List[DriftReport]:
        """Reports for one scope (``None`` is the global scope), newest first."""
        with self._lock:
            rows = list(self._read_table(_DRIFT))
        matching = [row for row in rows if row.get("segment") == segment]
        matching.sort(key=lambda row: parse_datetime(row["timestamp"]), reverse=True)
        return [DriftReport.from_dict(row) for row in matching[:limit]]

    # Isotonic maps

    def put_isotonic_map(self, isotonic_map: IsotonicMap) -> None:
        """Replace the segment's map; only the latest fit is kept."""
        with self._lock:
            table = self._read_table(_ISOTONIC)
            table[isotonic_map.segment] = isotonic_map.to_dict()
            self._write_table(_ISOTONIC, table)
        logger.info(
            f"Stored isotonic map for {isotonic_map.segment} ({len(isotonic_map.points)} points, "
            f"ECE {isotonic_map.ece_before:.4f} -> {isotonic_map.ece_after:.4f})"
        )

    def get_isotonic_map(self, segment: str) -> Optional[IsotonicMap]:
        with self._lock:
            row = self._read_table(_ISOTONIC).get(segment)
        return IsotonicMap.from_dict(row) if row is not None else None


class InMemoryRepository(_TableRepository):
    def __init__(self) -> None:
        super().__init__()
        self._tables: Dict[str, Any] = copy.deepcopy(_EMPTY_TABLES)

    def _read_table(self, name: str) -> Any:
        return copy.deepcopy(self._tables[name])

    def _write_table(self, name: str, data: Any) -> None:
        self._tables[name] = copy.deepcopy(data)


class JsonFileRepository(_TableRepository):
    def __init__(self, base_dir: Union[str, Path]) -> None:
        super().__init__()
        self._base_dir = Path(base_dir)
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError("init", str(self._base_dir), e)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _path(self, name: str) -> Path:
        return self._base_dir / f"{name}.json"

    def _read_table(self, name: str) -> Any:
        path = self._path(name)
        if not path.exists():
            return copy.deepcopy(_EMPTY_TABLES[name])
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"read {name}", str(path), e)

    def _write_table(self, name: str, data: Any) -> None:
        path = self._path(name)
        tmp_name = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(self._base_dir),
                prefix=f".{name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"write {name}", str(path), e)
