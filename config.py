"""
Configuration for Debug/Production mode switching and market settings.
"""
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


class Mode(Enum):
    DEBUG = "debug"
    PRODUCTION = "production"


# ============================================================================
# CURRENT MODE (DEBUG raises on an unbalanced settlement, PRODUCTION logs it)
# ============================================================================
CURRENT_MODE = Mode(os.getenv('MARKET_MODE', 'production').lower())


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return int(value)


@dataclass
class MarketSettings:
    """Market parameters, read from the environment at construction."""
    period_minutes: int = field(default_factory=lambda: _env_int('MARKET_PERIOD_MINUTES', 60))
    publication_interval: int = field(
        default_factory=lambda: _env_int('TARIFF_PUBLICATION_INTERVAL', 6))
    publication_offset: int = field(
        default_factory=lambda: _env_int('TARIFF_PUBLICATION_OFFSET', 0))
    publication_fee: Optional[float] = field(
        default_factory=lambda: _env_float('TARIFF_PUBLICATION_FEE', None))
    revocation_fee: Optional[float] = field(
        default_factory=lambda: _env_float('TARIFF_REVOCATION_FEE', None))
    p_plus_prime: float = field(default_factory=lambda: _env_float('BALANCING_PPLUS_PRIME', 0.0))
    p_minus_prime: float = field(default_factory=lambda: _env_float('BALANCING_PMINUS_PRIME', 0.0))
    rm_premium: float = field(default_factory=lambda: _env_float('BALANCING_RM_PREMIUM', 1.1))
    rm_fee: float = field(default_factory=lambda: _env_float('BALANCING_RM_FEE', 0.035))
    default_spot_price: float = field(
        default_factory=lambda: _env_float('BALANCING_DEFAULT_SPOT_PRICE', 30.0))   # per MWh
    seed: int = field(default_factory=lambda: _env_int('MARKET_RANDOM_SEED', 42))


# ============================================================================
# FACTORY FUNCTION
# ============================================================================

def create_market_simulation(start=None, settings=None, **overrides):
    """
    Factory function to create a wired market simulation.

    Args:
        start: First period's start time (defaults to 2024-01-01 00:00 UTC)
        settings: MarketSettings (defaults to values from the environment)
        **overrides: Individual MarketSettings fields to replace

    Returns:
        MarketSimulation instance
    """
    from datetime import datetime, timezone
    from market.simulation import MarketSimulation

    if settings is None:
        settings = MarketSettings()
    for key, value in overrides.items():
        if not hasattr(settings, key):
            raise ValueError(f"Unknown market setting: {key}")
        setattr(settings, key, value)
    if start is None:
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)

    return MarketSimulation(
        start=start,
        period_minutes=settings.period_minutes,
        publication_interval=settings.publication_interval,
        publication_offset=settings.publication_offset,
        publication_fee=settings.publication_fee,
        revocation_fee=settings.revocation_fee,
        p_plus_prime=settings.p_plus_prime,
        p_minus_prime=settings.p_minus_prime,
        rm_premium=settings.rm_premium,
        rm_fee=settings.rm_fee,
        default_spot_price=settings.default_spot_price,
        seed=settings.seed,
        strict=(CURRENT_MODE == Mode.DEBUG),
    )
