"""Trade valuation and acceptance calibration engine."""

__all__ = [
    "cli",
    "config",
    "constants",
    "engine",
    "exceptions",
    "models",
    "valuation",
    "learning",
    "calibration",
    "drift",
    "reporting",
    "ops",
    "storage",
]

__version__ = "0.1.0"
