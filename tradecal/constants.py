"""
Constants for tradecal.

Segment keys, positional tables and the acceptance feature names shared by
the pricer, the predictor and the learner.
"""

from typing import Dict, List, Optional, Tuple


# =============================================================================
# SEGMENTS
# =============================================================================

SEGMENT_DYNASTY_SF = "DYN_SF"
SEGMENT_DYNASTY_1QB = "DYN_1QB"
SEGMENT_REDRAFT_SF = "RED_SF"
SEGMENT_REDRAFT_1QB = "RED_1QB"
SEGMENT_UNKNOWN = "UNK"

SEGMENTS: List[str] = [
    SEGMENT_DYNASTY_SF,
    SEGMENT_DYNASTY_1QB,
    SEGMENT_REDRAFT_SF,
    SEGMENT_REDRAFT_1QB,
]

ALL_SEGMENTS: List[str] = SEGMENTS + [SEGMENT_UNKNOWN]

# segment -> (dynasty, superflex)
SEGMENT_TRAITS: Dict[str, Tuple[bool, bool]] = {
    SEGMENT_DYNASTY_SF: (True, True),
    SEGMENT_DYNASTY_1QB: (True, False),
    SEGMENT_REDRAFT_SF: (False, True),
    SEGMENT_REDRAFT_1QB: (False, False),
}


def segment_for(dynasty: Optional[bool], superflex: Optional[bool]) -> str:
    """Map league traits to a segment key."""
    if dynasty is None or superflex is None:
        return SEGMENT_UNKNOWN
    for key, traits in SEGMENT_TRAITS.items():
        if traits == (bool(dynasty), bool(superflex)):
            return key
    return SEGMENT_UNKNOWN


def segment_fields(segment: str) -> Dict[str, str]:
    """Derived filter fields for a segment (mode and format)."""
    traits = SEGMENT_TRAITS.get(segment)
    if traits is None:
        return {"mode": "unknown", "format": "unknown"}
    dynasty, superflex = traits
    return {
        "mode": "dynasty" if dynasty else "redraft",
        "format": "sf" if superflex else "1qb",
    }


# =============================================================================
# ASSETS
# =============================================================================

KIND_PLAYER = "PLAYER"
KIND_PICK = "PICK"

POSITION_VOLATILITY: Dict[str, float] = {
    "QB": 0.12,
    "RB": 0.30,
    "WR": 0.18,
    "TE": 0.22,
}
DEFAULT_VOLATILITY = 0.20

# position -> (peak age, volatility added per year past peak)
AGE_CURVES: Dict[str, Tuple[int, float]] = {
    "QB": (28, 0.015),
    "RB": (24, 0.04),
    "WR": (26, 0.02),
    "TE": (27, 0.02),
}

POSITION_SCARCITY: Dict[str, float] = {
    "QB": 0.65,
    "RB": 0.80,
    "WR": 0.72,
    "TE": 0.60,
    "PICK": 0.50,
}
DEFAULT_SCARCITY = 0.50


# =============================================================================
# ACCEPTANCE FEATURES
# =============================================================================

FEATURE_VALUE_DELTA = "value_delta"
FEATURE_LIQUIDITY = "liquidity"
FEATURE_ARCHETYPE_FIT = "archetype_fit"
FEATURE_SCARCITY = "scarcity"

FEATURE_NAMES: List[str] = [
    FEATURE_VALUE_DELTA,
    FEATURE_LIQUIDITY,
    FEATURE_ARCHETYPE_FIT,
    FEATURE_SCARCITY,
]

FEATURE_BOUND = 2.0

WEIGHTS_SOURCE_DEFAULT = "default"
WEIGHTS_SOURCE_LEARNED = "learned"


# =============================================================================
# FAIRNESS TIERS
# =============================================================================

TIER_FAIR = "FAIR"
TIER_SLIGHT_YOU = "SLIGHT_YOU"
TIER_SLIGHT_THEM = "SLIGHT_THEM"
TIER_LEAN_YOU = "LEAN_YOU"
TIER_LEAN_THEM = "LEAN_THEM"
TIER_FLEECE_THEM = "FLEECE_THEM"
TIER_FLEECE_YOU = "FLEECE_YOU"
