"""
Settlement Processor - Balancing Charges per Broker

I settle one period's imbalance. Brokers report their net imbalance
(negative = deficit); the regulating market and the brokers' balancing
orders supply the regulation needed to cover the aggregate imbalance.

The walk works in cost space, where every source of regulation has a
per-kWh cost to the balancing pool:
- regulating market: m(q) = base + slope * q, with (p_plus, p_plus_prime)
  for a deficit and (p_minus, -p_minus_prime) for a surplus; p_minus is
  negative, so absorbing a small surplus earns the pool money
- balancing orders: their own price (up orders for a deficit, down orders
  for a surplus)

Orders are taken cheapest first, the market supplies whatever is cheaper
than the next order, and each exercised order is paid the regulating
market's marginal cost at the moment of exercise (never less than its own
price). The total cost is shared by the imbalanced brokers pro rata (P1);
order payments go to the order's broker (P2). The run balances exactly:
sum(P1) + sum(P2) + market cost == 0.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np
import pandas as pd

from .interfaces import ICapacityControl, ISettlementContext
from .messages import BalancingOrder, Broker
from .repos import TariffRepo

logger = logging.getLogger(__name__)

EPSILON = 1e-6
BALANCE_TOLERANCE = 1e-6


class MarketError(Exception):
    """Base class for market core errors."""
    pass


class MarketBalanceError(MarketError):
    """Raised when a settlement run does not balance."""
    pass


@dataclass(eq=False)
class ChargeInfo:
    """Per-broker input and result of one settlement run."""
    broker: Broker
    imbalance: float                          # kWh, negative = deficit
    balancing_orders: List[BalancingOrder] = field(default_factory=list)
    p1: float = 0.0
    p2: float = 0.0
    curtailment: float = 0.0

    def add_balancing_order(self, order: BalancingOrder) -> None:
        self.balancing_orders.append(order)

    @property
    def balance_charge(self) -> float:
        return self.p1 + self.p2

    def energy_equivalent(self, unit_price: float) -> float:
        """Express the balance charge as kWh delivered at unit_price."""
        if unit_price == 0.0:
            return 0.0
        return -self.balance_charge / unit_price

    def reset(self) -> None:
        self.p1 = 0.0
        self.p2 = 0.0
        self.curtailment = 0.0


@dataclass
class SettlementSummary:
    """Aggregate outcome of one settlement run."""
    net_imbalance: float = 0.0
    imbalance_price: Optional[float] = None   # per kWh of imbalance; None if balanced
    market_qty: float = 0.0
    market_cost: float = 0.0
    order_payments: float = 0.0
    exercised_orders: int = 0


@dataclass
class _Candidate:
    order: BalancingOrder
    info: ChargeInfo
    available: float


class SettlementProcessor:
    """Static (single-period) settlement.

    I perform no I/O: regulation is exercised through the capacity control
    collaborator and all results are written into the ChargeInfo list.
    """

    def __init__(self, tariff_repo: TariffRepo, capacity_control: ICapacityControl,
                 strict: bool = False):
        """Initialize the processor.

        Args:
            tariff_repo: Used to check that each order's tariff still exists
            capacity_control: Capacity lookup and exercise of balancing orders
            strict: Raise MarketBalanceError when a run does not balance,
                instead of logging it
        """
        self.tariff_repo = tariff_repo
        self.capacity_control = capacity_control
        self.strict = strict
        self.last_summary: Optional[SettlementSummary] = None

    def settle(self, context: ISettlementContext, infos: List[ChargeInfo]) -> List[ChargeInfo]:
        for info in infos:
            info.reset()
        summary = SettlementSummary()
        self.last_summary = summary

        imbalances = np.array([info.imbalance for info in infos], dtype=float)
        if len(infos) == 0 or float(np.abs(imbalances).sum()) < EPSILON:
            return infos

        net = float(imbalances.sum())
        summary.net_imbalance = net
        if abs(net) < EPSILON:
            # balanced overall: brokers trade with each other at the base prices
            for info in infos:
                if info.imbalance < 0.0:
                    info.p1 = context.p_plus * info.imbalance
                elif info.imbalance > 0.0:
                    info.p1 = -context.p_minus * info.imbalance
            return infos

        deficit = net < 0.0
        sgn = -1.0 if deficit else 1.0
        required = abs(net)
        if deficit:
            base, slope = context.p_plus, context.p_plus_prime
        else:
            base, slope = context.p_minus, -context.p_minus_prime

        def marginal(qty: float) -> float:
            return base + slope * qty

        by_broker = {id(info.broker): info for info in infos}
        market_qty = 0.0
        remaining = required

        for cand in self._candidates(infos, deficit):
            if remaining < EPSILON:
                break
            price = cand.order.price

            # the regulating market supplies whatever is cheaper than this order
            if slope > 0.0:
                take = (price - base) / slope - market_qty
                take = min(max(take, 0.0), remaining)
            elif marginal(market_qty) < price:
                take = remaining
            else:
                take = 0.0
            market_qty += take
            remaining -= take
            if remaining < EPSILON:
                break

            qty = min(remaining, cand.available)
            unit_price = max(price, marginal(market_qty))
            payment = unit_price * qty
            kwh = -sgn * qty
            try:
                self.capacity_control.exercise_balancing_control(cand.order, kwh, payment)
            except Exception:
                logger.exception(f"exercise of balancing order {cand.order.id} failed; "
                                 f"treated as zero")
                continue

            owner = by_broker.get(id(cand.order.broker), cand.info)
            owner.p2 += payment
            owner.curtailment += kwh
            remaining -= qty
            summary.order_payments += payment
            summary.exercised_orders += 1
            logger.debug(f"exercised order {cand.order.id}: {kwh} kWh at {unit_price}")

        if remaining > 0.0:
            market_qty += remaining

        market_cost = marginal(market_qty) * market_qty
        total_cost = market_cost + summary.order_payments
        imbalance_price = -total_cost / net
        for info in infos:
            info.p1 = info.imbalance * imbalance_price

        summary.market_qty = market_qty
        summary.market_cost = market_cost
        summary.imbalance_price = imbalance_price
        logger.info(f"settled net imbalance {net:.3f} kWh: market {market_qty:.3f} kWh, "
                    f"{summary.exercised_orders} orders, price {imbalance_price:.5f}")

        self._check_balance(infos, market_cost)
        return infos

    def _candidates(self, infos: List[ChargeInfo], deficit: bool) -> List[_Candidate]:
        """Usable orders on the right side of the market, cheapest first.

        Ties keep submission order.
        """
        result = []
        for info in infos:
            for order in info.balancing_orders:
                if (order.exercise_ratio > 0.0) != deficit or order.exercise_ratio == 0.0:
                    continue
                if self.tariff_repo.find_tariff_by_id(order.tariff_id) is None:
                    logger.error(f"balancing order {order.id}: unknown tariff {order.tariff_id}")
                    continue
                try:
                    capacity = self.capacity_control.get_regulation_capacity(order)
                except Exception:
                    logger.exception(f"capacity lookup for balancing order {order.id} failed")
                    continue
                available = capacity.up if deficit else -capacity.down
                if available < EPSILON:
                    logger.debug(f"balancing order {order.id} has no capacity")
                    continue
                result.append(_Candidate(order, info, available))
        result.sort(key=lambda c: (c.order.price, c.order.id))
        return result

    def _check_balance(self, infos: List[ChargeInfo], market_cost: float) -> None:
        total = sum(info.p1 + info.p2 for info in infos) + market_cost
        if abs(total) <= BALANCE_TOLERANCE:
            return
        message = f"settlement does not balance: residual {total}"
        if self.strict:
            raise MarketBalanceError(message)
        logger.error(message)


def settlement_frame(infos: List[ChargeInfo]) -> pd.DataFrame:
    """Tabulate a settlement run, one row per broker."""
    rows = [{
        'broker': info.broker.username,
        'imbalance': info.imbalance,
        'p1': info.p1,
        'p2': info.p2,
        'charge': info.balance_charge,
        'curtailment': info.curtailment,
        'orders': len(info.balancing_orders),
    } for info in infos]
    columns = ['broker', 'imbalance', 'p1', 'p2', 'charge', 'curtailment', 'orders']
    return pd.DataFrame(rows, columns=columns).set_index('broker')
