"""Asset pricing for players and draft picks."""

from typing import Iterable, List, Optional
import logging

from tradecal.config import PricingSettings
from tradecal.constants import AGE_CURVES, DEFAULT_VOLATILITY, POSITION_VOLATILITY
from tradecal.models.records import Asset, LeagueContext, PricedAsset
from tradecal.valuation.market import MarketFeed
from tradecal.valuation.picks import days_to_draft, pick_value, pick_volatility

logger = logging.getLogger(__name__)

SOURCE_FEED = "feed"
SOURCE_EXPLICIT = "explicit"
SOURCE_CURVE = "curve"
SOURCE_UNRESOLVED = "unresolved"

_MIN_VOLATILITY = 0.05
_MAX_VOLATILITY = 0.60


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def player_volatility(position: Optional[str], age: Optional[float], dynasty: bool) -> float:
    pos = (position or "").upper()
    vol = POSITION_VOLATILITY.get(pos, DEFAULT_VOLATILITY)
    if dynasty and age is not None:
        curve = AGE_CURVES.get(pos)
        if curve:
            peak_age, decay = curve
            vol += max(0.0, float(age) - peak_age) * decay
    return _clamp(vol, _MIN_VOLATILITY, _MAX_VOLATILITY)


def _unresolved(asset: Asset, volatility: float) -> PricedAsset:
    logger.debug(f"No value for {asset.kind} {asset.identity or '<unnamed>'}")
    return PricedAsset(asset, 0.0, 0.0, volatility, SOURCE_UNRESOLVED, low_confidence=True)


def _priced(asset: Asset, value: float, volatility: float, source: str,
            settings: PricingSettings) -> PricedAsset:
    risk_adjusted = value * (1.0 - settings.risk_penalty * volatility)
    return PricedAsset(asset, value, risk_adjusted, volatility, source)


def _price_player(asset: Asset, context: LeagueContext, feed: Optional[MarketFeed],
                  settings: PricingSettings) -> PricedAsset:
    volatility = player_volatility(asset.position, asset.age, bool(context.dynasty))
    snapshot = feed.lookup(asset.identity, context) if feed and asset.identity else None
    if snapshot is not None:
        value = snapshot.raw_value
        if not snapshot.format_specific and context.superflex and (asset.position or "").upper() == "QB":
            value *= settings.superflex_qb_premium
        return _priced(asset, value, volatility, SOURCE_FEED, settings)
    if asset.market_value > 0:
        return _priced(asset, asset.market_value, volatility, SOURCE_EXPLICIT, settings)
    return _unresolved(asset, volatility)


def _price_pick(asset: Asset, context: LeagueContext, feed: Optional[MarketFeed],
                settings: PricingSettings) -> PricedAsset:
    years_out = (asset.pick_year - context.as_of.year) if asset.pick_year else 0
    volatility = pick_volatility(years_out)
    snapshot = feed.lookup(asset.identity, context) if feed and asset.identity else None
    if snapshot is not None:
        return _priced(asset, snapshot.raw_value, volatility, SOURCE_FEED, settings)
    if asset.market_value > 0:
        return _priced(asset, asset.market_value, volatility, SOURCE_EXPLICIT, settings)
    if not asset.pick_year or not asset.pick_round:
        return _unresolved(asset, volatility)
    if days_to_draft(asset.pick_year, context.as_of) is None:
        # Draft already happened; the pick is now a player we cannot identify.
        return _unresolved(asset, volatility)
    value = pick_value(asset.pick_round, asset.pick_year, context.as_of, asset.class_strength)
    value *= settings.pick_value_scale
    if context.dynasty is False:
        value *= settings.redraft_pick_multiplier
    return _priced(asset, value, volatility, SOURCE_CURVE, settings)


def price(
    asset: Asset,
    context: LeagueContext,
    feed: Optional[MarketFeed] = None,
    settings: Optional[PricingSettings] = None,
) -> PricedAsset:
    """Price one asset. Never raises: unknown assets come back at 0 with low confidence."""
    settings = settings or PricingSettings()
    if asset.is_pick:
        return _price_pick(asset, context, feed, settings)
    return _price_player(asset, context, feed, settings)


def price_side(
    assets: Iterable[Asset],
    context: LeagueContext,
    feed: Optional[MarketFeed] = None,
    settings: Optional[PricingSettings] = None,
) -> List[PricedAsset]:
    return [price(asset, context, feed, settings) for asset in assets]
