"""
Market Simulation - Composition Root

I wire the market core together and drive it one period at a time:

    sim = MarketSimulation(start=datetime(2024, 1, 1, tzinfo=timezone.utc))
    broker = sim.add_broker("alpha")
    sim.tariff_market.handle_message(spec)
    sim.step()

Each step is one activation:
1. Tariff market flushes queued changes and publishes on schedule
2. Capacity control applies this period's economic controls
3. Period hooks run (customer models report usage here)
4. Balancing market settles the period
5. The clock advances

A step holds the period lock, so the next period cannot start before the
previous settlement has finished.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from .balancing_market import BalancingMarket
from .capacity_control import CapacityControl
from .collaborators import SimulatedAccounting, SimulatedBrokerProxy, SimulationClock, StaticSpotPrices
from .messages import Broker
from .repos import BrokerRepo, TariffRepo, TariffSubscriptionRepo
from .settlement import ChargeInfo, settlement_frame
from .tariff_market import TariffMarket

logger = logging.getLogger(__name__)


class MarketSimulation:
    """Tariff market, capacity control and balancing market on one clock."""

    def __init__(
        self,
        start: datetime,
        period_minutes: int = 60,
        publication_interval: int = 6,
        publication_offset: int = 0,
        publication_fee: Optional[float] = None,
        revocation_fee: Optional[float] = None,
        p_plus_prime: float = 0.0,
        p_minus_prime: float = 0.0,
        rm_premium: float = 1.1,
        rm_fee: float = 0.035,
        default_spot_price: float = 30.0,
        seed: Optional[int] = None,
        strict: bool = False,
    ):
        self.clock = SimulationClock(start, period_minutes)
        self.accounting = SimulatedAccounting(self.clock)
        self.broker_proxy = SimulatedBrokerProxy()
        self.spot_prices = StaticSpotPrices()

        self.broker_repo = BrokerRepo()
        self.tariff_repo = TariffRepo()
        self.subscription_repo = TariffSubscriptionRepo(self.tariff_repo, self.accounting, self.clock)

        self.capacity_control = CapacityControl(self.tariff_repo, self.subscription_repo,
                                                self.accounting, self.broker_proxy, self.clock)
        self.tariff_market = TariffMarket(
            self.tariff_repo, self.subscription_repo, self.capacity_control,
            self.accounting, self.broker_repo, self.broker_proxy, self.clock,
            publication_interval=publication_interval,
            publication_offset=publication_offset,
            period_minutes=period_minutes,
            publication_fee=publication_fee,
            revocation_fee=revocation_fee,
            seed=seed,
        )
        self.balancing_market = BalancingMarket(
            self.tariff_repo, self.capacity_control, self.accounting,
            self.broker_repo, self.broker_proxy, self.clock,
            spot_prices=self.spot_prices,
            p_plus_prime=p_plus_prime,
            p_minus_prime=p_minus_prime,
            rm_premium=rm_premium,
            rm_fee=rm_fee,
            default_spot_price=default_spot_price,
            strict=strict,
        )

        self._period_lock = threading.Lock()
        self._hooks: List[Callable[["MarketSimulation", int], None]] = []
        self.last_settlement: List[ChargeInfo] = []

    def add_broker(self, username: str, wholesale: bool = False) -> Broker:
        return self.broker_repo.add(Broker(username, wholesale=wholesale))

    def register_period_hook(self, hook: Callable[["MarketSimulation", int], None]) -> None:
        """Run hook(sim, period) after the tariff market and before settlement."""
        self._hooks.append(hook)

    def step(self) -> List[ChargeInfo]:
        """Run one period and advance the clock."""
        with self._period_lock:
            period = self.clock.current_period()
            now = self.clock.current_time()
            logger.info(f"period {period} ({now})")

            self.tariff_market.activate(now)
            self.capacity_control.activate(period)
            for hook in self._hooks:
                hook(self, period)
            infos = self.balancing_market.activate(period) or []
            self.last_settlement = infos

            self.accounting.new_period()
            self.clock.advance()
            return infos

    def run(self, periods: int) -> None:
        for _ in range(periods):
            self.step()

    def last_settlement_frame(self):
        """Settlement report of the most recent period, one row per broker."""
        return settlement_frame(self.last_settlement)
