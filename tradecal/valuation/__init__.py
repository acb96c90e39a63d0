"""Asset pricing and trade fairness."""

from tradecal.valuation.fairness import FairnessResult, fairness_tier, score, value_delta_pct
from tradecal.valuation.market import MarketFeed, MarketValue
from tradecal.valuation.pricer import price, price_side

__all__ = [
    "FairnessResult",
    "fairness_tier",
    "score",
    "value_delta_pct",
    "MarketFeed",
    "MarketValue",
    "price",
    "price_side",
]
