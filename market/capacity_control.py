"""
Capacity Control

I turn balancing and economic controls into per-subscription curtailment:
- get_regulation_capacity: total up/down headroom behind a balancing order
- exercise_balancing_control: split an exercised kWh across a tariff's
  subscriptions in proportion to each one's remaining capacity
- post_economic_control / activate: apply price-ratio controls in the
  period they target
"""

import logging
import threading
from collections import defaultdict
from typing import Dict, List

import numpy as np

from .interfaces import IAccounting, IBrokerProxy, ICapacityControl, IClock
from .messages import BalancingControlEvent, BalancingOrder, EconomicControlEvent
from .repos import TariffRepo, TariffSubscriptionRepo
from .subscription import RegulationCapacity

logger = logging.getLogger(__name__)

EPSILON = 1e-6


class CapacityControl(ICapacityControl):
    """Regulation capacity lookup and curtailment allocation.

    I keep economic controls per target period until that period is
    activated; stale ones are logged and dropped.
    """

    def __init__(self, tariff_repo: TariffRepo, subscription_repo: TariffSubscriptionRepo,
                 accounting: IAccounting, broker_proxy: IBrokerProxy, clock: IClock):
        self.tariff_repo = tariff_repo
        self.subscription_repo = subscription_repo
        self.accounting = accounting
        self.broker_proxy = broker_proxy
        self.clock = clock
        self._lock = threading.Lock()
        self._pending_controls: Dict[int, List[EconomicControlEvent]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Balancing
    # ------------------------------------------------------------------

    def get_regulation_capacity(self, order: BalancingOrder) -> RegulationCapacity:
        tariff = self.tariff_repo.find_tariff_by_id(order.tariff_id)
        if tariff is None:
            logger.warning(f"null tariff {order.tariff_id} for balancing order {order.id}")
            return RegulationCapacity()

        result = RegulationCapacity()
        for sub in self.subscription_repo.find_subscriptions_for_tariff(tariff):
            result.add(sub.remaining_regulation_capacity())
        logger.debug(f"balancing order {order.id} capacity = ({result.up}, {result.down})")
        return result

    def exercise_balancing_control(self, order: BalancingOrder, kwh: float,
                                   payment: float) -> None:
        """Curtail the order's tariff by kwh and tell the broker.

        Args:
            order: The balancing order being exercised
            kwh: Exercised quantity, > 0 for up-regulation, < 0 for down
            payment: Total payment to the broker for the exercise
        """
        if abs(kwh) < EPSILON:
            return
        tariff = self.tariff_repo.find_tariff_by_id(order.tariff_id)
        if tariff is None:
            logger.error(f"null tariff {order.tariff_id} for balancing control")
            return

        subs = [s for s in self.subscription_repo.find_subscriptions_for_tariff(tariff)
                if s.customers_committed > 0]
        if kwh > 0:
            capacities = np.array([s.remaining_regulation_capacity().up for s in subs], dtype=float)
        else:
            capacities = np.array([s.remaining_regulation_capacity().down for s in subs], dtype=float)
        available = float(capacities.sum()) if len(subs) else 0.0
        if abs(available) < EPSILON:
            logger.warning(f"unable to exercise balancing control on tariff {tariff.id}: "
                           f"available == 0")
            return

        # subscriptions take the customer viewpoint: up-regulation is negative usage
        shares = -kwh * capacities / available
        for sub, share in zip(subs, shares):
            sub.post_balancing_control(float(share))
        logger.info(f"exercised {kwh} kWh on tariff {tariff.id} across {len(subs)} "
                    f"subscriptions, payment {payment}")

        event = BalancingControlEvent(broker=tariff.broker, tariff_id=tariff.id,
                                      kwh=kwh, payment=payment,
                                      period=self.clock.current_period(),
                                      order_id=order.id)
        self.accounting.record_balancing_control(event)
        self.broker_proxy.send(tariff.broker, event)

    # ------------------------------------------------------------------
    # Economic control
    # ------------------------------------------------------------------

    def post_economic_control(self, event: EconomicControlEvent) -> bool:
        current = self.clock.current_period()
        if event.period < current:
            logger.warning(f"attempt to save old economic control for period {event.period} "
                           f"during period {current}")
            return False
        with self._lock:
            self._pending_controls[event.period].append(event)
        return True

    def controls_for_period(self, period: int) -> List[EconomicControlEvent]:
        with self._lock:
            return list(self._pending_controls.get(period, []))

    def activate(self, period: int) -> None:
        """Discard stale controls and apply those targeting this period."""
        with self._lock:
            stale = [p for p in self._pending_controls if p < period]
            for p in stale:
                for event in self._pending_controls.pop(p):
                    logger.warning(f"expired economic control, period={p}, "
                                   f"broker={event.broker.username}")
            controls = self._pending_controls.pop(period, [])

        for event in controls:
            tariff = self.tariff_repo.find_tariff_by_id(event.tariff_id)
            if tariff is None:
                logger.warning(f"cannot find tariff {event.tariff_id} in economic control "
                               f"{event.id} from {event.broker.username}")
                continue
            for sub in self.subscription_repo.find_subscriptions_for_tariff(tariff):
                sub.post_ratio_control(event.curtailment_ratio)
