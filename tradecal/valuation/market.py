"""League-data collaborator: market value snapshots."""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import threading

from tradecal.models.records import LeagueContext, parse_datetime


@dataclass(frozen=True)
class MarketValue:
    asset_id: str
    raw_value: float
    as_of: datetime
    superflex: Optional[bool] = None
    dynasty: Optional[bool] = None

    @property
    def format_specific(self) -> bool:
        return self.superflex is not None


class MarketFeed:
    """Point-in-time lookup over market value snapshots.

    A lookup only sees snapshots taken on or before ``context.as_of`` so
    backtests price assets with period-correct values.
    """

    def __init__(self, values: Optional[Iterable[MarketValue]] = None) -> None:
        self._by_asset: Dict[str, List[MarketValue]] = {}
        self._lock = threading.Lock()
        for value in values or []:
            self.add(value)

    @classmethod
    def from_rows(cls, rows: Iterable[Dict]) -> "MarketFeed":
        values = []
        for row in rows:
            raw = row.get("raw_value", row.get("rawValue"))
            if raw in (None, ""):
                continue
            values.append(MarketValue(
                asset_id=str(row.get("asset_id", row.get("assetId"))),
                raw_value=float(raw),
                as_of=parse_datetime(row.get("as_of", row.get("asOf"))) or datetime.utcnow(),
                superflex=row.get("superflex"),
                dynasty=row.get("dynasty"),
            ))
        return cls(values)

    def add(self, value: MarketValue) -> None:
        with self._lock:
            snapshots = self._by_asset.setdefault(value.asset_id, [])
            snapshots.append(value)
            snapshots.sort(key=lambda v: v.as_of)

    def lookup(self, asset_id: str, context: LeagueContext) -> Optional[MarketValue]:
        """Latest snapshot not after ``as_of``, preferring the context's format and mode."""
        with self._lock:
            snapshots = list(self._by_asset.get(asset_id, []))
        eligible = [v for v in snapshots if v.as_of <= context.as_of]
        if not eligible:
            return None

        def rank(value: MarketValue) -> tuple:
            format_match = value.superflex is not None and value.superflex == context.superflex
            mode_match = value.dynasty is not None and value.dynasty == context.dynasty
            format_conflict = value.superflex is not None and value.superflex != context.superflex
            mode_conflict = value.dynasty is not None and value.dynasty != context.dynasty
            return (
                not (format_conflict or mode_conflict),
                format_match + mode_match,
                value.as_of,
            )

        best = max(eligible, key=rank)
        if rank(best)[0] is False:
            return None
        return best

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._by_asset.values())
