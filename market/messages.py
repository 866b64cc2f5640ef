"""
Market Messages

I define the identities and messages exchanged with brokers:
- Broker / CustomerInfo: participants (owned outside the core)
- Inbound tariff updates: TariffExpire, TariffRevoke, VariableRateUpdate,
  EconomicControlEvent, BalancingOrder
- Outbound replies and notices: TariffStatus, BalancingControlEvent,
  BalanceReport
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .tariff import HourlyCharge, PowerType, next_id


@dataclass(eq=False)
class Broker:
    """Accounting unit; compared by identity."""
    username: str
    enabled: bool = True
    wholesale: bool = False
    id: int = field(default_factory=next_id)

    def __repr__(self) -> str:
        return f"Broker({self.username})"


@dataclass(eq=False)
class CustomerInfo:
    """A customer segment: a named population of identical customers."""
    name: str
    population: int
    power_type: PowerType = PowerType.CONSUMPTION
    multi_contracting: bool = False
    id: int = field(default_factory=next_id)


class Status(Enum):
    SUCCESS = "success"
    INVALID_TARIFF = "invalidTariff"
    NO_SUCH_TARIFF = "noSuchTariff"
    INVALID_UPDATE = "invalidUpdate"
    UNSUPPORTED = "unsupported"


@dataclass
class TariffStatus:
    """Reply to a broker's tariff message."""
    broker: Broker
    tariff_id: int
    update_id: int
    status: Status
    message: str = ""

    @property
    def is_success(self) -> bool:
        return self.status is Status.SUCCESS


# ============================================================================
# INBOUND: tariff updates (all refer to a tariff by id)
# ============================================================================

@dataclass(frozen=True)
class TariffUpdate:
    """Broker request against a published tariff; immutable once accepted."""
    broker: Broker
    tariff_id: int
    id: int = field(default_factory=next_id, kw_only=True)


@dataclass(frozen=True)
class TariffExpire(TariffUpdate):
    new_expiration: Optional[datetime] = None


@dataclass(frozen=True)
class TariffRevoke(TariffUpdate):
    pass


@dataclass(frozen=True)
class VariableRateUpdate(TariffUpdate):
    rate_id: int = 0
    hourly_charge: Optional[HourlyCharge] = None


@dataclass(frozen=True)
class EconomicControlEvent(TariffUpdate):
    """Curtail a tariff's customers by a ratio during one period."""
    period: int = 0
    curtailment_ratio: float = 0.0


@dataclass(frozen=True)
class BalancingOrder(TariffUpdate):
    """Offer to curtail a tariff's customers for the balancing market.

    exercise_ratio > 0 offers up-regulation (less consumption),
    exercise_ratio < 0 offers down-regulation. price is per kWh.
    """
    exercise_ratio: float = 0.0
    price: float = 0.0

    @property
    def is_up(self) -> bool:
        return self.exercise_ratio > 0.0


# ============================================================================
# OUTBOUND
# ============================================================================

@dataclass
class BalancingControlEvent:
    """Confirmation that a balancing order was exercised."""
    broker: Broker
    tariff_id: int
    kwh: float
    payment: float
    period: int
    order_id: Optional[int] = None
    id: int = field(default_factory=next_id)


@dataclass
class BalanceReport:
    """Total net imbalance across all brokers for one period."""
    period: int
    net_imbalance: float
