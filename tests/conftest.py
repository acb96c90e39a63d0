"""
Pytest configuration and shared fixtures for trade engine tests.
"""

import pytest
import numpy as np
from datetime import datetime, timedelta

from tradecal.constants import segment_fields
from tradecal.models.records import AcceptanceFeatures, Outcome


AS_OF = datetime(2026, 10, 19, 12, 0)


def _sigmoid(z):
    return 1.0 / (1.0 + np.exp(-z))


@pytest.fixture
def as_of():
    """Fixed logical run time (a Monday, ISO week 43 of 2026)."""
    return AS_OF


@pytest.fixture
def make_outcomes():
    """Factory for synthetic resolved outcomes with feature snapshots.

    ``boundary`` switches to a deterministic rule: accepted iff the
    counterparty's value gain exceeds it. Otherwise acceptance is drawn
    from a logistic model driven mostly by value delta.
    """
    def _make(n=120, segment="DYN_SF", seed=7, end=AS_OF, spacing_hours=12, boundary=None):
        rng = np.random.RandomState(seed)
        start = end - timedelta(hours=spacing_hours * n)
        outcomes = []
        for i in range(n):
            gain = rng.uniform(-0.30, 0.30)
            features = AcceptanceFeatures(
                value_delta=float(np.clip(gain / 0.12, -2.0, 2.0)),
                liquidity=float(rng.uniform(-1.0, 1.0)),
                archetype_fit=float(rng.uniform(-1.0, 1.0)),
                scarcity=float(rng.uniform(-1.0, 1.0)),
            )
            if boundary is not None:
                accepted = gain > boundary
            else:
                z = -1.1 + 1.2 * features.value_delta + 0.3 * features.liquidity
                accepted = rng.uniform() < _sigmoid(z)
            observed = start + timedelta(hours=spacing_hours * (i + 1))
            outcomes.append(Outcome(
                trade_offer_id=f"{segment}-{seed}-{i}",
                accepted=bool(accepted),
                observed_at=observed,
                segment=segment,
                predicted_probability=0.3,
                features=features,
                offered_at=observed - timedelta(hours=1),
            ))
        return outcomes
    return _make


@pytest.fixture
def make_rows():
    """Factory for dashboard/drift prediction rows.

    Rows are spread hourly backwards from ``end``; ``resolved_share`` of
    them carry an outcome drawn from the predicted probability.
    """
    def _make(n=200, segments=("DYN_SF", "RED_1QB"), seed=3, end=AS_OF, resolved_share=1.0,
              predicted=None, spacing_hours=1):
        rng = np.random.RandomState(seed)
        rows = []
        for i in range(n):
            segment = segments[i % len(segments)]
            p = float(predicted) if predicted is not None else float(rng.uniform(0.05, 0.90))
            accepted = bool(rng.uniform() < p) if rng.uniform() < resolved_share else None
            attributes = dict(segment_fields(segment))
            attributes["scoring"] = "ppr" if i % 2 == 0 else "half_ppr"
            rows.append({
                "offer_id": f"row-{seed}-{i}",
                "segment": segment,
                "offered_at": end - timedelta(hours=spacing_hours * i),
                "predicted": p,
                "accepted": accepted,
                "features": {
                    "value_delta": float(rng.uniform(-2.0, 2.0)),
                    "liquidity": 0.0,
                    "archetype_fit": 0.0,
                    "scarcity": 0.0,
                },
                "attributes": attributes,
            })
        return rows
    return _make
