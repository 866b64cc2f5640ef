"""
In-process collaborators

I provide simple implementations of the services the core talks to, so a
simulation can run without the surrounding server:
- SimulatedAccounting: ledger of transactions, per-broker cash and energy
- SimulatedBrokerProxy: mailbox per broker plus a broadcast log
- SimulationClock: discrete periods from a start time
- StaticSpotPrices: wholesale clearing prices looked up by period
"""

import logging
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import pandas as pd

from .interfaces import IAccounting, IBrokerProxy, IClock, ISpotPriceSource
from .messages import BalancingControlEvent, Broker
from .subscription import TransactionType

logger = logging.getLogger(__name__)


class SimulatedAccounting(IAccounting):
    """Ledger for a simulation.

    Charges are credits to the broker (negative = broker pays). A broker's
    market balance for the current period is its wholesale position plus
    the net energy its customers delivered (consumption is negative).
    """

    def __init__(self, clock: Optional[IClock] = None):
        self.clock = clock
        self._lock = threading.Lock()
        self._ledger: List[Dict] = []
        self._cash: Dict[int, float] = defaultdict(float)
        self._positions: Dict[int, float] = defaultdict(float)
        self._net_load: Dict[int, float] = defaultdict(float)

    def _period(self) -> Optional[int]:
        return self.clock.current_period() if self.clock is not None else None

    def record_tariff_transaction(self, tx_type, tariff, customer, count, kwh, charge) -> None:
        broker = tariff.broker
        with self._lock:
            self._ledger.append({
                'period': self._period(),
                'type': tx_type.value,
                'broker': broker.username,
                'tariff': tariff.id,
                'customer': customer.name if customer is not None else None,
                'count': count,
                'kwh': kwh,
                'charge': charge,
            })
            self._cash[broker.id] += charge
            if tx_type in (TransactionType.CONSUME, TransactionType.PRODUCE):
                self._net_load[broker.id] += kwh

    def record_balancing_transaction(self, broker: Broker, imbalance: float, charge: float) -> None:
        with self._lock:
            self._ledger.append({
                'period': self._period(),
                'type': 'balancing',
                'broker': broker.username,
                'tariff': None,
                'customer': None,
                'count': 0,
                'kwh': imbalance,
                'charge': charge,
            })
            self._cash[broker.id] += charge

    def record_balancing_control(self, event: BalancingControlEvent) -> None:
        with self._lock:
            self._ledger.append({
                'period': event.period,
                'type': 'balancing_control',
                'broker': event.broker.username,
                'tariff': event.tariff_id,
                'customer': None,
                'count': 0,
                'kwh': event.kwh,
                'charge': event.payment,
            })
            self._cash[event.broker.id] += event.payment

    def set_market_position(self, broker: Broker, kwh: float) -> None:
        """Energy the broker bought (> 0) or sold (< 0) for the current period."""
        with self._lock:
            self._positions[broker.id] = kwh

    def get_market_balance(self, broker: Broker) -> float:
        with self._lock:
            return self._positions[broker.id] + self._net_load[broker.id]

    def get_cash(self, broker: Broker) -> float:
        with self._lock:
            return self._cash[broker.id]

    def new_period(self) -> None:
        with self._lock:
            self._positions.clear()
            self._net_load.clear()

    def transactions_frame(self) -> pd.DataFrame:
        columns = ['period', 'type', 'broker', 'tariff', 'customer', 'count', 'kwh', 'charge']
        with self._lock:
            return pd.DataFrame(list(self._ledger), columns=columns)


class SimulatedBrokerProxy(IBrokerProxy):
    """Collects outbound messages; optional per-broker handlers see them too."""

    def __init__(self):
        self._lock = threading.Lock()
        self.sent: Dict[int, List] = defaultdict(list)
        self.broadcasts: List = []
        self._handlers: Dict[int, Callable] = {}

    def register_handler(self, broker: Broker, handler: Callable) -> None:
        self._handlers[broker.id] = handler

    def send(self, broker: Broker, message) -> None:
        with self._lock:
            self.sent[broker.id].append(message)
        handler = self._handlers.get(broker.id)
        if handler is not None:
            handler(message)

    def broadcast(self, message) -> None:
        with self._lock:
            self.broadcasts.append(message)
        for handler in list(self._handlers.values()):
            handler(message)

    def messages_for(self, broker: Broker, message_type=None) -> List:
        with self._lock:
            messages = list(self.sent[broker.id])
        if message_type is None:
            return messages
        return [m for m in messages if isinstance(m, message_type)]


class SimulationClock(IClock):
    """Period counter starting at `start`."""

    def __init__(self, start: datetime, period_minutes: int = 60):
        self.start = start
        self.period_length = timedelta(minutes=period_minutes)
        self._period = 0

    def current_time(self) -> datetime:
        return self.start + self._period * self.period_length

    def current_period(self) -> int:
        return self._period

    def advance(self, periods: int = 1) -> datetime:
        self._period += periods
        return self.current_time()


class StaticSpotPrices(ISpotPriceSource):
    """Clearing prices (per MWh) keyed by period."""

    def __init__(self, prices: Optional[Dict[int, List[float]]] = None):
        self.prices: Dict[int, List[float]] = dict(prices or {})

    @classmethod
    def from_series(cls, series: pd.Series) -> "StaticSpotPrices":
        """Build from a Series indexed by period (repeated index = several clearings)."""
        prices: Dict[int, List[float]] = defaultdict(list)
        for period, price in series.dropna().items():
            prices[int(period)].append(float(price))
        return cls(prices)

    def set_prices(self, period: int, prices: List[float]) -> None:
        self.prices[period] = list(prices)

    def clearing_prices(self, period: int) -> List[float]:
        return list(self.prices.get(period, []))
