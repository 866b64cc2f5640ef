"""
Tests for the tariff, subscription and broker repositories.
"""
import os
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from market.collaborators import SimulationClock
from market.messages import BalancingOrder, Broker, CustomerInfo
from market.repos import BrokerRepo, TariffRepo, TariffSubscriptionRepo
from market.tariff import PowerType, Rate, Tariff, TariffSpecification, TariffState

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_spec(broker, power_type=PowerType.CONSUMPTION, value=-0.1):
    return TariffSpecification(broker, power_type, rates=[Rate(value=value)])


class TestTariffRepo:
    """Test suite for TariffRepo."""

    def setup_method(self):
        self.repo = TariffRepo()
        self.broker = Broker("alpha")

    def test_duplicate_spec_rejected(self):
        spec = make_spec(self.broker)
        assert self.repo.add_specification(spec)
        assert not self.repo.add_specification(spec)

    def test_rates_indexed_with_spec(self):
        spec = make_spec(self.broker)
        self.repo.add_specification(spec)
        assert self.repo.find_rate_by_id(spec.rates[0].id) is spec.rates[0]
        self.repo.remove_specification(spec.id)
        assert self.repo.find_rate_by_id(spec.rates[0].id) is None

    def test_soft_delete(self):
        """I verify a deleted id stays resolvable but can never be added again."""
        spec = make_spec(self.broker)
        tariff = Tariff(spec)
        self.repo.add_specification(spec)
        self.repo.add_tariff(tariff)
        self.repo.mark_deleted(tariff.id)

        assert self.repo.is_removed(tariff.id)
        assert self.repo.find_tariff_by_id(tariff.id) is tariff
        assert not self.repo.add_specification(spec)

    def test_remove_tariff(self):
        spec = make_spec(self.broker)
        tariff = Tariff(spec)
        self.repo.add_specification(spec)
        self.repo.add_tariff(tariff)
        self.repo.add_balancing_order(BalancingOrder(self.broker, spec.id, exercise_ratio=0.5))

        self.repo.remove_tariff(tariff)
        assert self.repo.find_tariff_by_id(tariff.id) is None
        assert self.repo.find_specification_by_id(spec.id) is None
        assert self.repo.find_tariffs_by_broker(self.broker) == []
        assert self.repo.get_balancing_orders() == []
        assert not self.repo.add_tariff(tariff)

    def test_find_active_tariffs(self):
        offered = Tariff(make_spec(self.broker))
        offered.offer()
        pending = Tariff(make_spec(self.broker))
        interruptible = Tariff(make_spec(self.broker, PowerType.INTERRUPTIBLE_CONSUMPTION))
        interruptible.offer()
        for tariff in (offered, pending, interruptible):
            self.repo.add_tariff(tariff)

        assert self.repo.find_active_tariffs(PowerType.CONSUMPTION) == [offered]
        usable = self.repo.find_all_active_tariffs(PowerType.INTERRUPTIBLE_CONSUMPTION, START)
        assert set(t.id for t in usable) == {offered.id, interruptible.id}
        assert self.repo.find_tariffs_by_state(TariffState.PENDING) == [pending]

    def test_find_recent_active_tariffs(self):
        tariffs = [Tariff(make_spec(self.broker)) for _ in range(3)]
        for tariff in tariffs:
            tariff.offer()
            self.repo.add_tariff(tariff)
        recent = self.repo.find_recent_active_tariffs(2, PowerType.CONSUMPTION)
        assert recent == [tariffs[2], tariffs[1]]

    def test_default_tariff_falls_back_to_generic(self):
        house = Broker("default")
        default = self.repo.set_default_tariff(make_spec(house))
        assert default.is_active
        assert self.repo.get_default_tariff(PowerType.INTERRUPTIBLE_CONSUMPTION) is default
        assert self.repo.get_default_tariff(PowerType.PRODUCTION) is None

    def test_balancing_order_requires_spec(self):
        assert not self.repo.add_balancing_order(BalancingOrder(self.broker, 12345))

    def test_balancing_order_pair_replaces_same_direction(self):
        """I verify the last order per tariff and direction wins."""
        spec = make_spec(self.broker)
        self.repo.add_specification(spec)
        first_up = BalancingOrder(self.broker, spec.id, exercise_ratio=0.5, price=0.1)
        second_up = BalancingOrder(self.broker, spec.id, exercise_ratio=0.8, price=0.2)
        down = BalancingOrder(self.broker, spec.id, exercise_ratio=-0.3, price=-0.05)
        for order in (first_up, second_up, down):
            self.repo.add_balancing_order(order)

        orders = self.repo.get_balancing_orders()
        assert len(orders) == 2
        assert orders[0] is second_up
        assert orders[1] is down


class TestTariffSubscriptionRepo:
    """Test suite for TariffSubscriptionRepo."""

    def setup_method(self):
        self.tariff_repo = TariffRepo()
        self.repo = TariffSubscriptionRepo(self.tariff_repo, MagicMock(),
                                           SimulationClock(START))
        self.broker = Broker("alpha")
        self.customer = CustomerInfo("village", 100)
        self.tariff = Tariff(make_spec(self.broker))

    def test_get_subscription_is_lazy_and_stable(self):
        assert self.repo.find_subscription(self.customer, self.tariff) is None
        sub = self.repo.get_subscription(self.customer, self.tariff)
        assert self.repo.get_subscription(self.customer, self.tariff) is sub
        assert sub.customers_committed == 0

    def test_active_subscriptions_need_customers(self):
        sub = self.repo.get_subscription(self.customer, self.tariff)
        assert self.repo.find_active_subscriptions_for_customer(self.customer) == []
        sub.subscribe(5)
        assert self.repo.find_active_subscriptions_for_customer(self.customer) == [sub]
        assert self.repo.find_subscriptions_for_broker(self.broker) == [sub]

    def test_remove_subscriptions_for_tariff(self):
        other = CustomerInfo("town", 50)
        self.repo.get_subscription(self.customer, self.tariff)
        self.repo.get_subscription(other, self.tariff)
        assert self.repo.remove_subscriptions_for_tariff(self.tariff) == 2
        assert self.repo.all() == []


class TestBrokerRepo:
    """Test suite for BrokerRepo."""

    def test_retail_and_disabled(self):
        repo = BrokerRepo()
        alpha = repo.add(Broker("alpha"))
        genco = repo.add(Broker("genco", wholesale=True))
        gone = repo.add(Broker("gone", enabled=False))

        assert repo.find_by_username("genco") is genco
        assert set(b.username for b in repo.find_retail_brokers()) == {"alpha", "gone"}
        assert repo.find_disabled_brokers() == [gone]
        assert alpha in repo.find_all()
