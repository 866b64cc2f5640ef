"""
Interfaces for the Market Core

I define the contracts between the core components and the services that
surround them (accounting, broker messaging, the simulation clock, the
wholesale market). Components receive these interfaces in their
constructors, so each can be tested against mocks.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from .messages import BalancingControlEvent, BalancingOrder, Broker, CustomerInfo
    from .subscription import RegulationCapacity, TransactionType
    from .tariff import PowerType, Tariff


class IAccounting(ABC):
    """Ledger collaborator: tariff, balancing and control transactions."""

    @abstractmethod
    def record_tariff_transaction(self, tx_type: "TransactionType", tariff: "Tariff",
                                  customer: Optional["CustomerInfo"], count: int,
                                  kwh: float, charge: float) -> None:
        """Record a tariff transaction. Positive charge is a credit to the broker."""
        pass

    @abstractmethod
    def record_balancing_transaction(self, broker: "Broker", imbalance: float,
                                     charge: float) -> None:
        """Record a broker's settled balancing charge for the period."""
        pass

    @abstractmethod
    def record_balancing_control(self, event: "BalancingControlEvent") -> None:
        """Record that a balancing order was exercised."""
        pass

    @abstractmethod
    def get_market_balance(self, broker: "Broker") -> float:
        """Return the broker's net energy position (kWh) for the current period.

        Negative means the broker's customers used more than it bought.
        """
        pass


class IBrokerProxy(ABC):
    """Outbound messaging. Delivery failures are the proxy's concern."""

    @abstractmethod
    def send(self, broker: "Broker", message) -> None:
        pass

    @abstractmethod
    def broadcast(self, message) -> None:
        pass


class IClock(ABC):
    """Simulation time, advanced by the coordination loop."""

    @abstractmethod
    def current_time(self) -> datetime:
        pass

    @abstractmethod
    def current_period(self) -> int:
        """Serial number of the current period."""
        pass


class IBrokerRegistry(ABC):
    """Lookup of brokers known to the simulation."""

    @abstractmethod
    def find_retail_brokers(self) -> List["Broker"]:
        pass

    @abstractmethod
    def find_disabled_brokers(self) -> List["Broker"]:
        pass


class ISpotPriceSource(ABC):
    """Wholesale clearing prices (per MWh) for a period, if any cleared."""

    @abstractmethod
    def clearing_prices(self, period: int) -> List[float]:
        pass


class ICapacityControl(ABC):
    """Regulation capacity lookup and exercise for balancing orders."""

    @abstractmethod
    def get_regulation_capacity(self, order: "BalancingOrder") -> "RegulationCapacity":
        pass

    @abstractmethod
    def exercise_balancing_control(self, order: "BalancingOrder", kwh: float,
                                   payment: float) -> None:
        """Curtail the order's tariff by kwh (> 0 is up-regulation) for payment."""
        pass


class ISettlementContext(ABC):
    """Regulating-market price model for one settlement run.

    Prices are per kWh; p_plus applies to deficits (up-regulation) and
    p_minus to surpluses (down-regulation). p_plus is positive and p_minus
    negative; the primed values are slopes with respect to the regulated
    quantity (p_minus_prime <= 0).
    """

    @property
    @abstractmethod
    def p_plus(self) -> float:
        pass

    @property
    @abstractmethod
    def p_plus_prime(self) -> float:
        pass

    @property
    @abstractmethod
    def p_minus(self) -> float:
        pass

    @property
    @abstractmethod
    def p_minus_prime(self) -> float:
        pass


class ITariffMarket(ABC):
    """Customer-facing side of the tariff market."""

    @abstractmethod
    def subscribe_to_tariff(self, tariff: "Tariff", customer: "CustomerInfo",
                            count: int) -> None:
        """Subscribe (count > 0) or unsubscribe (count < 0) customers."""
        pass

    @abstractmethod
    def get_default_tariff(self, power_type: "PowerType") -> Optional["Tariff"]:
        pass

    @abstractmethod
    def get_active_tariff_list(self, power_type: "PowerType") -> List["Tariff"]:
        pass


class INewTariffListener(ABC):
    """Notified once per publication batch with the newly offered tariffs."""

    @abstractmethod
    def publish_new_tariffs(self, tariffs: Iterable["Tariff"]) -> None:
        pass
