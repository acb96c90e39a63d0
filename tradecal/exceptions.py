"""
Custom exceptions for the trade valuation engine.

Input problems, computation failures and persistence failures each get their
own branch so that callers (the API layer, a batch scheduler) can tell
"rejected", "no signal yet" and "retry later" apart.

Usage:
    from tradecal.exceptions import InvalidTradeError, PersistenceError

    try:
        analysis = engine.analyze_trade(offer)
    except InvalidTradeError as e:
        return {"error": str(e)}
"""


class TradeEngineError(Exception):
    """
    Base exception for all trade engine errors.

    All custom exceptions inherit from this, allowing:
        except TradeEngineError:
            # Catch any engine error
    """
    pass


# =============================================================================
# INPUT ERRORS
# =============================================================================

class InvalidTradeError(TradeEngineError):
    """
    Offer cannot be scored.

    Raised when:
    - One side of the offer has no assets
    - Every asset on a side is unresolvable
    """

    def __init__(self, reason: str, offer_id: str = None):
        self.reason = reason
        self.offer_id = offer_id
        msg = f"Invalid trade offer: {reason}"
        if offer_id:
            msg += f" (offer: {offer_id})"
        super().__init__(msg)


class DuplicateOutcomeError(TradeEngineError):
    """An outcome was already recorded for this offer. Outcomes are immutable."""

    def __init__(self, offer_id: str):
        self.offer_id = offer_id
        super().__init__(f"Outcome already recorded for offer {offer_id}")


class UnknownSegmentError(TradeEngineError):
    """Segment key is not one of the known league-format segments."""

    def __init__(self, segment: str):
        self.segment = segment
        super().__init__(f"Unknown segment: {segment}")


# =============================================================================
# LEARNING ERRORS
# =============================================================================

class InsufficientDataError(TradeEngineError):
    """
    Not enough resolved outcomes to learn from.

    Raised internally by the weight fit; the learner converts it into an
    INSUFFICIENT_DATA status so it never reaches API callers.
    """

    def __init__(self, segment: str, required: int, actual: int):
        self.segment = segment
        self.required = required
        self.actual = actual
        super().__init__(
            f"Insufficient data for {segment}: need {required} outcomes, got {actual}"
        )


class LearningError(TradeEngineError):
    """
    Weight fit failed numerically.

    Raised when:
    - The optimizer does not converge
    - Fitted coefficients are not finite
    """

    def __init__(self, segment: str, message: str = None, original_error: Exception = None):
        self.segment = segment
        self.original_error = original_error
        msg = f"Learning failed for {segment}"
        if message:
            msg += f": {message}"
        if original_error:
            msg += f" (caused by: {type(original_error).__name__}: {original_error})"
        super().__init__(msg)


class SegmentLockTimeout(TradeEngineError):
    """Another learning run holds the segment lock."""

    def __init__(self, segment: str, timeout: float):
        self.segment = segment
        self.timeout = timeout
        super().__init__(f"Could not lock segment {segment} within {timeout:.1f}s")


# =============================================================================
# PERSISTENCE ERRORS
# =============================================================================

class PersistenceError(TradeEngineError):
    """
    Repository write or read failed.

    Previously active weights are left untouched; a scheduler may retry.
    """

    def __init__(self, operation: str, message: str = None, original_error: Exception = None):
        self.operation = operation
        self.original_error = original_error
        msg = f"Persistence failure during {operation}"
        if message:
            msg += f": {message}"
        if original_error:
            msg += f" (caused by: {type(original_error).__name__}: {original_error})"
        super().__init__(msg)


class SchemaVersionError(TradeEngineError):
    """Persisted row was written by a newer schema than this code understands."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Weights schema version {found} is newer than supported version {supported}"
        )


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(TradeEngineError):
    """Invalid or inconsistent configuration value."""

    def __init__(self, setting: str, message: str = None):
        self.setting = setting
        msg = f"Configuration error for '{setting}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)
