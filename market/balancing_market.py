"""
Balancing Market

I run the settlement processor once per period:
1. Collect each retail broker's net imbalance from accounting
2. Attach the stored balancing orders to their brokers
3. Price the regulating market from the period's spot clearing prices
4. Settle, post P1 charges, and broadcast the total imbalance

Only one settlement may run at a time, and each period is settled at
most once.
"""

import logging
import threading
from typing import Dict, List, Optional

from .interfaces import (
    IAccounting,
    IBrokerProxy,
    IBrokerRegistry,
    IClock,
    ICapacityControl,
    ISettlementContext,
    ISpotPriceSource,
)
from .messages import BalanceReport, Broker
from .repos import TariffRepo
from .settlement import ChargeInfo, MarketBalanceError, SettlementProcessor

logger = logging.getLogger(__name__)


class BalancingMarket(ISettlementContext):
    """Per-period balancing and regulating-market price model.

    Prices are per kWh. Spot prices arrive per MWh and are converted:
        p_plus  = max_spot * rm_premium / 1000 + rm_fee
        p_minus = -min_spot / rm_premium / 1000 - rm_fee
    """

    def __init__(
        self,
        tariff_repo: TariffRepo,
        capacity_control: ICapacityControl,
        accounting: IAccounting,
        broker_registry: IBrokerRegistry,
        broker_proxy: IBrokerProxy,
        clock: IClock,
        spot_prices: Optional[ISpotPriceSource] = None,
        p_plus_prime: float = 0.0,
        p_minus_prime: float = 0.0,
        rm_premium: float = 1.1,
        rm_fee: float = 0.035,
        default_spot_price: float = 30.0,   # per MWh
        strict: bool = False,
    ):
        self.tariff_repo = tariff_repo
        self.accounting = accounting
        self.broker_registry = broker_registry
        self.broker_proxy = broker_proxy
        self.clock = clock
        self.spot_prices = spot_prices
        self._p_plus_prime = p_plus_prime
        self._p_minus_prime = p_minus_prime
        self.rm_premium = rm_premium
        self.rm_fee = rm_fee
        self.default_spot_price = default_spot_price
        self.processor = SettlementProcessor(tariff_repo, capacity_control, strict=strict)

        self._settlement_lock = threading.Lock()
        self._last_settled_period: Optional[int] = None
        self._results: Dict[int, ChargeInfo] = {}
        self.last_report: Optional[BalanceReport] = None

        logger.info(f"balancing market configured: (p_plus', p_minus') = "
                    f"({p_plus_prime}, {p_minus_prime}), premium {rm_premium}, fee {rm_fee}")

    # ------------------------------------------------------------------
    # Price model
    # ------------------------------------------------------------------

    def _clearing_prices(self) -> List[float]:
        if self.spot_prices is None:
            return []
        return [p for p in self.spot_prices.clearing_prices(self.clock.current_period())
                if p is not None]

    @property
    def p_plus(self) -> float:
        prices = self._clearing_prices()
        spot = max(prices) if prices else self.default_spot_price
        return spot * self.rm_premium / 1000.0 + self.rm_fee

    @property
    def p_minus(self) -> float:
        prices = self._clearing_prices()
        spot = min(prices) if prices else self.default_spot_price
        return -spot / self.rm_premium / 1000.0 - self.rm_fee

    @property
    def p_plus_prime(self) -> float:
        return self._p_plus_prime

    @property
    def p_minus_prime(self) -> float:
        return self._p_minus_prime

    # ------------------------------------------------------------------
    # Per-period run
    # ------------------------------------------------------------------

    def activate(self, period: int) -> Optional[List[ChargeInfo]]:
        """Settle one period. Returns None if it was already settled."""
        with self._settlement_lock:
            if self._last_settled_period is not None and period <= self._last_settled_period:
                logger.warning(f"period {period} already settled "
                               f"(last settled {self._last_settled_period})")
                return None
            brokers = self.broker_registry.find_retail_brokers()
            infos = self.balance_period(brokers)
            self._last_settled_period = period

        report = BalanceReport(period=period,
                               net_imbalance=sum(info.imbalance for info in infos))
        self.last_report = report
        self.broker_proxy.broadcast(report)
        return infos

    def balance_period(self, brokers: List[Broker]) -> List[ChargeInfo]:
        info_map: Dict[int, ChargeInfo] = {}
        for broker in brokers:
            imbalance = self.accounting.get_market_balance(broker)
            logger.debug(f"market balance for {broker.username}: {imbalance}")
            info_map[id(broker)] = ChargeInfo(broker, imbalance)

        for order in self.tariff_repo.get_balancing_orders():
            info = info_map.get(id(order.broker))
            if info is None:
                logger.warning(f"balancing order {order.id} from non-retail broker "
                               f"{order.broker.username} ignored")
                continue
            info.add_balancing_order(order)

        infos = list(info_map.values())
        logger.info(f"balancing prices: p_plus={self.p_plus:.5f}, p_minus={self.p_minus:.5f}")
        try:
            self.processor.settle(self, infos)
        except MarketBalanceError:
            raise
        except Exception:
            logger.exception("settlement failed; charges for this period set to zero")
            for info in infos:
                info.reset()

        # P2 amounts were posted when the orders were exercised
        for info in infos:
            if info.p1 != 0.0:
                self.accounting.record_balancing_transaction(info.broker, info.imbalance, info.p1)

        self._results = {id(info.broker): info for info in infos}
        return infos

    def get_regulation(self, broker: Broker) -> float:
        """Curtailment exercised on the broker's orders in the last settlement."""
        info = self._results.get(id(broker))
        if info is None:
            logger.error(f"no balancing result for broker {broker.username}")
            return 0.0
        return info.curtailment

    @property
    def last_settled_period(self) -> Optional[int]:
        return self._last_settled_period
