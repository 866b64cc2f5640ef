"""
Tariff & Subscription Store

I hold specifications, tariffs, rates, balancing orders, default tariffs,
subscriptions and brokers, keyed by id. No business rules live here;
the tariff market and capacity control decide what to store and when.

Every method takes the store lock, so readers on broker threads see
consistent maps while the activation phase mutates them.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Set, Tuple

from .interfaces import IBrokerRegistry
from .messages import BalancingOrder, Broker, CustomerInfo
from .subscription import TariffSubscription
from .tariff import PowerType, Rate, Tariff, TariffSpecification, TariffState

if TYPE_CHECKING:
    from .interfaces import IAccounting, IClock

logger = logging.getLogger(__name__)


@dataclass
class BalancingOrderPair:
    """At most one up-regulation and one down-regulation order per tariff."""
    up: Optional[BalancingOrder] = None
    down: Optional[BalancingOrder] = None

    def add(self, order: BalancingOrder) -> None:
        if order.exercise_ratio >= 0.0:
            self.up = order
        else:
            self.down = order

    def orders(self) -> List[BalancingOrder]:
        return [o for o in (self.up, self.down) if o is not None]


class TariffRepo:
    """Specifications, tariffs and balancing orders."""

    def __init__(self):
        self._lock = threading.RLock()
        self._specs: Dict[int, TariffSpecification] = {}
        self._tariffs: Dict[int, Tariff] = {}
        self._rates: Dict[int, Rate] = {}
        self._deleted: Set[int] = set()
        self._defaults: Dict[PowerType, Tariff] = {}
        self._balancing_orders: "OrderedDict[int, BalancingOrderPair]" = OrderedDict()
        self._broker_tariffs: Dict[str, List[Tariff]] = {}

    # ------------------------------------------------------------------
    # Specifications
    # ------------------------------------------------------------------

    def add_specification(self, spec: TariffSpecification) -> bool:
        with self._lock:
            if spec.id in self._deleted or spec.id in self._specs:
                logger.error(f"attempt to insert tariff spec with duplicate id {spec.id}")
                return False
            self._specs[spec.id] = spec
            for rate in spec.rates:
                self._rates[rate.id] = rate
            return True

    def remove_specification(self, spec_id: int) -> None:
        with self._lock:
            spec = self._specs.pop(spec_id, None)
            if spec is not None:
                for rate in spec.rates:
                    self._rates.pop(rate.id, None)

    def find_specification_by_id(self, spec_id: int) -> Optional[TariffSpecification]:
        with self._lock:
            return self._specs.get(spec_id)

    def find_specifications_by_broker(self, broker: Broker) -> List[TariffSpecification]:
        with self._lock:
            return [s for s in self._specs.values() if s.broker is broker]

    def find_specifications_by_power_type(self, power_type: PowerType) -> List[TariffSpecification]:
        with self._lock:
            return [s for s in self._specs.values() if s.power_type.can_use(power_type)]

    def find_rate_by_id(self, rate_id: int) -> Optional[Rate]:
        with self._lock:
            return self._rates.get(rate_id)

    # ------------------------------------------------------------------
    # Tariffs
    # ------------------------------------------------------------------

    def add_tariff(self, tariff: Tariff) -> bool:
        with self._lock:
            if tariff.id in self._deleted or tariff.id in self._tariffs:
                logger.error(f"attempt to insert tariff with duplicate id {tariff.id}")
                return False
            self._tariffs[tariff.id] = tariff
            self._broker_tariffs.setdefault(tariff.broker.username, []).insert(0, tariff)
            return True

    def find_tariff_by_id(self, tariff_id: int) -> Optional[Tariff]:
        """Find a tariff, including one marked deleted but not yet removed."""
        with self._lock:
            return self._tariffs.get(tariff_id)

    def find_all_tariffs(self) -> List[Tariff]:
        with self._lock:
            return list(self._tariffs.values())

    def find_tariffs_by_state(self, state: TariffState) -> List[Tariff]:
        with self._lock:
            return [t for t in self._tariffs.values() if t.state is state]

    def find_tariffs_by_broker(self, broker: Broker) -> List[Tariff]:
        with self._lock:
            return list(self._broker_tariffs.get(broker.username, []))

    def find_active_tariffs(self, power_type: PowerType, now=None) -> List[Tariff]:
        """Subscribable tariffs of exactly this power type."""
        with self._lock:
            return [t for t in self._tariffs.values()
                    if t.power_type is power_type and self._subscribable(t, now)]

    def find_all_active_tariffs(self, power_type: PowerType, now=None) -> List[Tariff]:
        """Subscribable tariffs a customer of power_type may use."""
        with self._lock:
            return [t for t in self._tariffs.values()
                    if power_type.can_use(t.power_type) and self._subscribable(t, now)]

    def find_recent_active_tariffs(self, n: int, power_type: PowerType, now=None) -> List[Tariff]:
        """Up to n most recent subscribable tariffs per broker and power type."""
        result = []
        with self._lock:
            for tariffs in self._broker_tariffs.values():
                counter: Dict[PowerType, int] = {}
                for tariff in tariffs:
                    pt = tariff.power_type
                    if self._subscribable(tariff, now) and power_type.can_use(pt):
                        if counter.get(pt, 0) < n:
                            result.append(tariff)
                            counter[pt] = counter.get(pt, 0) + 1
        return result

    @staticmethod
    def _subscribable(tariff: Tariff, now) -> bool:
        if now is None:
            return tariff.is_active
        return tariff.is_subscribable(now)

    def mark_deleted(self, tariff_id: int) -> None:
        """Soft-delete: the id stays resolvable but can never be published again."""
        with self._lock:
            self._deleted.add(tariff_id)

    def is_removed(self, tariff_id: int) -> bool:
        with self._lock:
            return tariff_id in self._deleted

    def remove_tariff(self, tariff: Tariff) -> None:
        """Drop the tariff, its spec and its balancing orders for good."""
        with self._lock:
            self._tariffs.pop(tariff.id, None)
            self._deleted.add(tariff.id)
            broker_list = self._broker_tariffs.get(tariff.broker.username)
            if broker_list is not None and tariff in broker_list:
                broker_list.remove(tariff)
            self._balancing_orders.pop(tariff.id, None)
            self.remove_specification(tariff.id)

    # ------------------------------------------------------------------
    # Default tariffs
    # ------------------------------------------------------------------

    def set_default_tariff(self, spec: TariffSpecification) -> Tariff:
        with self._lock:
            self.add_specification(spec)
            tariff = Tariff(spec)
            tariff.offer()
            self._defaults[spec.power_type] = tariff
            self._tariffs.setdefault(tariff.id, tariff)
            return tariff

    def get_default_tariff(self, power_type: PowerType) -> Optional[Tariff]:
        with self._lock:
            result = self._defaults.get(power_type)
            if result is None and power_type.generic_type is not None:
                result = self._defaults.get(power_type.generic_type)
        if result is None:
            logger.error(f"cannot find default tariff for power type {power_type.value}")
        return result

    # ------------------------------------------------------------------
    # Balancing orders
    # ------------------------------------------------------------------

    def add_balancing_order(self, order: BalancingOrder) -> bool:
        with self._lock:
            if order.tariff_id not in self._specs:
                logger.warning(f"balancing order {order.id} for unknown spec {order.tariff_id}")
                return False
            self._balancing_orders.setdefault(order.tariff_id, BalancingOrderPair()).add(order)
            return True

    def get_balancing_orders(self) -> List[BalancingOrder]:
        with self._lock:
            return [o for pair in self._balancing_orders.values() for o in pair.orders()]

    def clear(self) -> None:
        with self._lock:
            self._specs.clear()
            self._tariffs.clear()
            self._rates.clear()
            self._deleted.clear()
            self._defaults.clear()
            self._balancing_orders.clear()
            self._broker_tariffs.clear()


class TariffSubscriptionRepo:
    """Subscriptions keyed by (tariff id, customer id), created lazily."""

    def __init__(self, tariff_repo: TariffRepo, accounting: "IAccounting", clock: "IClock"):
        self._lock = threading.RLock()
        self._tariff_repo = tariff_repo
        self._accounting = accounting
        self._clock = clock
        self._subscriptions: "OrderedDict[Tuple[int, int], TariffSubscription]" = OrderedDict()

    def get_subscription(self, customer: CustomerInfo, tariff: Tariff) -> TariffSubscription:
        """Find or create the subscription for this customer and tariff."""
        key = (tariff.id, customer.id)
        with self._lock:
            sub = self._subscriptions.get(key)
            if sub is None:
                sub = TariffSubscription(customer, tariff, self._accounting, self._clock)
                self._subscriptions[key] = sub
            return sub

    def find_subscription(self, customer: CustomerInfo, tariff: Tariff) -> Optional[TariffSubscription]:
        with self._lock:
            return self._subscriptions.get((tariff.id, customer.id))

    def find_subscriptions_for_tariff(self, tariff: Tariff) -> List[TariffSubscription]:
        with self._lock:
            return [s for (tid, _), s in self._subscriptions.items() if tid == tariff.id]

    def find_subscriptions_for_customer(self, customer: CustomerInfo) -> List[TariffSubscription]:
        with self._lock:
            return [s for (_, cid), s in self._subscriptions.items() if cid == customer.id]

    def find_active_subscriptions_for_customer(self, customer: CustomerInfo) -> List[TariffSubscription]:
        return [s for s in self.find_subscriptions_for_customer(customer)
                if s.customers_committed > 0]

    def find_subscriptions_for_broker(self, broker: Broker) -> List[TariffSubscription]:
        with self._lock:
            return [s for s in self._subscriptions.values() if s.tariff.broker is broker]

    def remove_subscriptions_for_tariff(self, tariff: Tariff) -> int:
        with self._lock:
            keys = [k for k in self._subscriptions if k[0] == tariff.id]
            for key in keys:
                del self._subscriptions[key]
            return len(keys)

    def all(self) -> List[TariffSubscription]:
        with self._lock:
            return list(self._subscriptions.values())

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()


class BrokerRepo(IBrokerRegistry):
    """Brokers by username."""

    def __init__(self):
        self._lock = threading.Lock()
        self._brokers: Dict[str, Broker] = {}

    def add(self, broker: Broker) -> Broker:
        with self._lock:
            self._brokers[broker.username] = broker
        return broker

    def find_by_username(self, username: str) -> Optional[Broker]:
        with self._lock:
            return self._brokers.get(username)

    def find_all(self) -> List[Broker]:
        with self._lock:
            return list(self._brokers.values())

    def find_retail_brokers(self) -> List[Broker]:
        return [b for b in self.find_all() if not b.wholesale]

    def find_disabled_brokers(self) -> List[Broker]:
        return [b for b in self.find_all() if not b.enabled]
