"""
Tests for the TariffMarket coordinator.

I verify message validation and replies, batched subscription changes,
and the activation steps: publication, revocation and removal.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from market.capacity_control import CapacityControl
from market.collaborators import SimulatedAccounting, SimulatedBrokerProxy, SimulationClock
from market.messages import (
    BalancingOrder,
    Broker,
    CustomerInfo,
    EconomicControlEvent,
    Status,
    TariffExpire,
    TariffRevoke,
    TariffStatus,
    VariableRateUpdate,
)
from market.repos import BrokerRepo, TariffRepo, TariffSubscriptionRepo
from market.tariff import (
    HourlyCharge,
    PowerType,
    Rate,
    RegulationRate,
    TariffSpecification,
    TariffState,
)
from market.tariff_market import TariffMarket

# 2024-01-01 00:00 UTC is a multiple of 6 hours since the epoch
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class MarketFixture:
    """A tariff market wired to simulated collaborators."""

    def __init__(self):
        self.clock = SimulationClock(START)
        self.accounting = SimulatedAccounting(self.clock)
        self.proxy = SimulatedBrokerProxy()
        self.brokers = BrokerRepo()
        self.tariff_repo = TariffRepo()
        self.sub_repo = TariffSubscriptionRepo(self.tariff_repo, self.accounting, self.clock)
        self.capacity_control = CapacityControl(self.tariff_repo, self.sub_repo,
                                                self.accounting, self.proxy, self.clock)
        self.market = TariffMarket(self.tariff_repo, self.sub_repo, self.capacity_control,
                                   self.accounting, self.brokers, self.proxy, self.clock,
                                   publication_interval=6, publication_fee=-100.0,
                                   revocation_fee=-200.0)
        self.alpha = self.brokers.add(Broker("alpha"))
        self.beta = self.brokers.add(Broker("beta"))
        self.house = self.brokers.add(Broker("default"))
        self.default = self.market.set_default_tariff(
            TariffSpecification(self.house, PowerType.CONSUMPTION, rates=[Rate(value=-0.5)]))

    def activate(self):
        self.market.activate(self.clock.current_time())

    def advance(self, periods=1):
        self.clock.advance(periods)
        self.activate()

    def publish(self, broker=None, **kwargs):
        kwargs.setdefault('rates', [Rate(value=-0.1)])
        spec = TariffSpecification(broker or self.alpha,
                                   kwargs.pop('power_type', PowerType.CONSUMPTION), **kwargs)
        return spec, self.market.handle_message(spec)


@pytest.fixture
def fx():
    return MarketFixture()


class TestPublication:
    """Test suite for tariff publication."""

    def test_publish_success(self, fx):
        spec, status = fx.publish()
        assert status.status is Status.SUCCESS
        assert fx.tariff_repo.find_tariff_by_id(spec.id).state is TariffState.PENDING
        assert fx.accounting.get_cash(fx.alpha) == pytest.approx(-100.0)
        assert fx.proxy.messages_for(fx.alpha, TariffStatus) == [status]

    def test_duplicate_rejected(self, fx):
        spec, _ = fx.publish()
        status = fx.market.handle_message(spec)
        assert status.status is Status.INVALID_TARIFF
        assert fx.accounting.get_cash(fx.alpha) == pytest.approx(-100.0)

    def test_missing_rates(self, fx):
        _, status = fx.publish(rates=[])
        assert status.status is Status.INVALID_TARIFF
        assert status.message == "missing rates"

    def test_invalid_rate_bounds(self, fx):
        _, status = fx.publish(rates=[Rate(value=-0.1, daily_begin=0, daily_end=24)])
        assert status.status is Status.INVALID_TARIFF
        assert status.message == "spec has invalid rate"

    def test_non_finite_fee(self, fx):
        _, status = fx.publish(signup_payment=float('inf'))
        assert status.status is Status.INVALID_TARIFF

    def test_incomplete_coverage(self, fx):
        _, status = fx.publish(rates=[Rate(value=-0.1, daily_begin=7, daily_end=21)])
        assert status.status is Status.INVALID_TARIFF
        assert "coverage" in status.message

    def test_supersede_checks(self, fx):
        _, status = fx.publish(supersedes=[987654])
        assert status.status is Status.INVALID_TARIFF

        other, _ = fx.publish(broker=fx.beta)
        _, status = fx.publish(supersedes=[other.id])
        assert status.status is Status.INVALID_TARIFF
        assert "invalid supersede" in status.message

    def test_first_activation_publishes(self, fx):
        listener = MagicMock()
        fx.market.register_new_tariff_listener(listener)
        spec, _ = fx.publish()
        fx.activate()

        tariff = fx.tariff_repo.find_tariff_by_id(spec.id)
        assert tariff.state is TariffState.OFFERED
        assert tariff.offer_date == START
        assert spec in fx.proxy.broadcasts
        listener.publish_new_tariffs.assert_called_once_with([tariff])

    def test_publication_waits_for_publication_point(self, fx):
        """I verify tariffs published between batches stay pending until the next batch."""
        fx.activate()
        spec, _ = fx.publish()
        fx.advance()
        tariff = fx.tariff_repo.find_tariff_by_id(spec.id)
        assert tariff.state is TariffState.PENDING
        fx.advance(5)
        assert tariff.state is TariffState.OFFERED

    def test_publication_offset(self, fx):
        fx.market.set_publication_offset(2)
        fx.activate()
        assert not fx.market.is_publication_point(START + timedelta(hours=6))
        assert fx.market.is_publication_point(START + timedelta(hours=8))

    def test_publication_interval_clamped(self, fx):
        fx.market.set_publication_interval(30)
        assert fx.market.publication_interval == 24
        fx.market.set_publication_interval(0)
        assert fx.market.publication_interval == 1
        fx.market.set_publication_interval(6)
        fx.market.set_publication_offset(6)
        assert fx.market.publication_offset == 0

    def test_fees_drawn_when_not_given(self):
        f = MarketFixture()
        market = TariffMarket(f.tariff_repo, f.sub_repo, f.capacity_control, f.accounting,
                              f.brokers, f.proxy, f.clock, seed=3)
        assert -500.0 <= market.publication_fee <= -100.0
        assert -500.0 <= market.revocation_fee <= -100.0

    def test_regulation_rates_create_standing_orders(self, fx):
        spec, status = fx.publish(power_type=PowerType.BATTERY_STORAGE,
                                  regulation_rates=[RegulationRate(0.2, -0.05)])
        assert status.is_success
        orders = fx.tariff_repo.get_balancing_orders()
        assert [(o.exercise_ratio, o.price) for o in orders] == [(2.0, 0.2), (-1.0, -0.05)]

    def test_unsupported_message(self, fx):
        with pytest.raises(TypeError):
            fx.market.handle_message("hello")


class TestSubscriptions:
    """Test suite for batched subscription changes."""

    def setup_method(self):
        self.fx = MarketFixture()
        self.customer = CustomerInfo("village", 100)

    def test_first_subscription_immediate(self):
        self.fx.market.subscribe_to_tariff(self.fx.default, self.customer, 10)
        sub = self.fx.sub_repo.find_subscription(self.customer, self.fx.default)
        assert sub.customers_committed == 10
        assert self.fx.market.pending_subscription_count() == 0

    def test_changes_batched_until_activation(self):
        """I verify unsubscribing 3 then subscribing 5 nets +2 at activation."""
        fx = self.fx
        fx.market.subscribe_to_tariff(fx.default, self.customer, 10)
        fx.market.subscribe_to_tariff(fx.default, self.customer, -3)
        fx.market.subscribe_to_tariff(fx.default, self.customer, 5)

        sub = fx.sub_repo.find_subscription(self.customer, fx.default)
        assert sub.customers_committed == 10
        assert sub.pending_unsubscribe_count == 3
        assert fx.market.pending_subscription_count() == 2

        fx.activate()
        assert sub.customers_committed == 12
        assert sub.pending_unsubscribe_count == 0

    def test_move_between_tariffs(self):
        fx = self.fx
        spec, _ = fx.publish()
        fx.activate()
        tariff = fx.tariff_repo.find_tariff_by_id(spec.id)

        fx.market.subscribe_to_tariff(fx.default, self.customer, 10)
        fx.market.subscribe_to_tariff(fx.default, self.customer, -4)
        fx.market.subscribe_to_tariff(tariff, self.customer, 4)
        fx.advance()

        assert fx.sub_repo.find_subscription(self.customer, fx.default).customers_committed == 6
        assert fx.sub_repo.find_subscription(self.customer, tariff).customers_committed == 4

    def test_subscribe_to_revoked_ignored(self):
        fx = self.fx
        spec, _ = fx.publish()
        fx.activate()
        tariff = fx.tariff_repo.find_tariff_by_id(spec.id)
        tariff.kill()
        fx.market.subscribe_to_tariff(tariff, self.customer, 5)
        assert fx.sub_repo.find_subscription(self.customer, tariff) is None

    def test_active_tariff_list(self):
        fx = self.fx
        spec, _ = fx.publish()
        assert fx.market.get_active_tariff_list(PowerType.CONSUMPTION) == [fx.default]
        fx.activate()
        ids = {t.id for t in fx.market.get_active_tariff_list(PowerType.CONSUMPTION)}
        assert ids == {fx.default.id, spec.id}


class TestRevocation:
    """Test suite for revocation and removal."""

    def setup_method(self):
        self.fx = MarketFixture()
        self.customer = CustomerInfo("village", 100)
        self.spec, _ = self.fx.publish()
        self.fx.activate()
        self.tariff = self.fx.tariff_repo.find_tariff_by_id(self.spec.id)
        self.fx.market.subscribe_to_tariff(self.tariff, self.customer, 10)

    def test_revoke_lifecycle(self):
        """I verify a revoked tariff is killed at one activation and removed at the next."""
        fx = self.fx
        status = fx.market.handle_message(TariffRevoke(fx.alpha, self.spec.id))
        assert status.is_success
        assert self.tariff.state is TariffState.OFFERED

        fx.advance()
        assert self.tariff.state is TariffState.KILLED
        assert fx.tariff_repo.is_removed(self.tariff.id)
        assert any(isinstance(m, TariffRevoke) and m.tariff_id == self.tariff.id
                   for m in fx.proxy.broadcasts)
        assert fx.sub_repo.find_subscriptions_for_tariff(self.tariff) != []
        assert fx.market.revoked_tariffs == [self.tariff]

        fx.advance()
        assert fx.tariff_repo.find_tariff_by_id(self.tariff.id) is None
        assert fx.sub_repo.find_subscriptions_for_tariff(self.tariff) == []

    def test_revoke_fee_charged_once(self):
        fx = self.fx
        fx.market.handle_message(TariffRevoke(fx.alpha, self.spec.id))
        fx.market.handle_message(TariffRevoke(fx.alpha, self.spec.id))
        fx.advance()
        ledger = fx.accounting.transactions_frame()
        revokes = ledger[ledger['type'] == 'revoke']
        assert len(revokes) == 1
        assert revokes['charge'].iloc[0] == pytest.approx(-200.0)

    def test_no_fee_without_customers(self):
        fx = self.fx
        spec, _ = fx.publish()
        fx.market.handle_message(TariffRevoke(fx.alpha, spec.id))
        fx.advance()
        ledger = fx.accounting.transactions_frame()
        assert ledger[ledger['type'] == 'revoke'].empty

    def test_revoked_customers_migrate_to_default(self):
        fx = self.fx
        fx.market.handle_message(TariffRevoke(fx.alpha, self.spec.id))
        fx.advance()
        sub = fx.sub_repo.find_subscription(self.customer, self.tariff)
        assert sub.handle_revoked_tariff(fx.market) is fx.default
        fx.advance()
        default_sub = fx.sub_repo.find_subscription(self.customer, fx.default)
        assert default_sub.customers_committed == 10
        assert fx.sub_repo.find_subscriptions_for_tariff(self.tariff) == []

    def test_revoke_validation(self):
        fx = self.fx
        assert fx.market.handle_message(TariffRevoke(fx.beta, self.spec.id)).status \
            is Status.INVALID_TARIFF
        assert fx.market.handle_message(TariffRevoke(fx.alpha, 424242)).status \
            is Status.NO_SUCH_TARIFF

    def test_supersede_revokes_old_tariff(self):
        fx = self.fx
        new_spec, status = fx.publish(supersedes=[self.spec.id])
        assert status.is_success
        fx.advance(6)
        new_tariff = fx.tariff_repo.find_tariff_by_id(new_spec.id)
        assert new_tariff.state is TariffState.OFFERED
        assert self.tariff.superseded_by is new_tariff

        fx.advance()
        assert self.tariff.is_revoked
        sub = fx.sub_repo.find_subscription(self.customer, self.tariff)
        assert sub.handle_revoked_tariff(fx.market) is new_tariff

    def test_disabled_broker_tariffs_revoked(self):
        fx = self.fx
        fx.alpha.enabled = False
        fx.advance(6)
        assert self.tariff.state is TariffState.KILLED


class TestUpdates:
    """Test suite for expiration, rate updates and controls."""

    def setup_method(self):
        self.fx = MarketFixture()

    def test_expire_in_past_rejected(self):
        fx = self.fx
        spec, _ = fx.publish()
        fx.clock.advance(2)
        status = fx.market.handle_message(TariffExpire(fx.alpha, spec.id,
                                                       new_expiration=START))
        assert status.status is Status.INVALID_UPDATE

    def test_expired_tariff_without_customers_killed(self):
        fx = self.fx
        spec, _ = fx.publish()
        fx.activate()
        status = fx.market.handle_message(
            TariffExpire(fx.alpha, spec.id, new_expiration=START + timedelta(hours=2)))
        assert status.is_success
        tariff = fx.tariff_repo.find_tariff_by_id(spec.id)
        fx.advance()
        assert tariff.state is TariffState.OFFERED
        fx.advance()
        assert tariff.state is TariffState.KILLED

    def test_expired_tariff_with_customers_kept(self):
        fx = self.fx
        spec, _ = fx.publish(expiration=START + timedelta(hours=1))
        fx.activate()
        tariff = fx.tariff_repo.find_tariff_by_id(spec.id)
        fx.market.subscribe_to_tariff(tariff, CustomerInfo("village", 10), 10)
        fx.advance(2)
        assert tariff.state is TariffState.OFFERED
        assert not tariff.is_subscribable(fx.clock.current_time())

    def test_variable_rate_update_applied_at_activation(self):
        fx = self.fx
        rate = Rate(value=-0.05, fixed=False, max_value=-0.2, expected_mean=-0.1)
        spec, _ = fx.publish(rates=[rate])
        fx.activate()
        when = START + timedelta(hours=3)
        vru = VariableRateUpdate(fx.alpha, spec.id, rate_id=rate.id,
                                 hourly_charge=HourlyCharge(when, -0.15))
        assert fx.market.handle_message(vru) is None
        assert rate.get_value(when) == pytest.approx(-0.1)

        fx.advance()
        assert rate.get_value(when) == pytest.approx(-0.15)
        replies = [m for m in fx.proxy.messages_for(fx.alpha, TariffStatus) if m.update_id == vru.id]
        assert len(replies) == 1 and replies[0].is_success

    def test_variable_rate_update_rejected(self):
        fx = self.fx
        fixed = Rate(value=-0.1)
        spec, _ = fx.publish(rates=[fixed])
        other_rate = Rate(value=-0.05, fixed=False, max_value=-0.2, expected_mean=-0.1)
        other_spec, _ = fx.publish(rates=[other_rate])

        on_fixed = VariableRateUpdate(fx.alpha, spec.id, rate_id=fixed.id,
                                      hourly_charge=HourlyCharge(START, -0.1))
        assert fx.market.handle_message(on_fixed).status is Status.INVALID_UPDATE
        wrong_tariff = VariableRateUpdate(fx.alpha, spec.id, rate_id=other_rate.id,
                                          hourly_charge=HourlyCharge(START, -0.1))
        assert fx.market.handle_message(wrong_tariff).message == "rate not associated with tariff"
        missing = VariableRateUpdate(fx.alpha, spec.id, rate_id=13579,
                                     hourly_charge=HourlyCharge(START, -0.1))
        assert fx.market.handle_message(missing).message == "non-existent rate"

    def test_economic_control(self):
        fx = self.fx
        spec, _ = fx.publish(power_type=PowerType.INTERRUPTIBLE_CONSUMPTION,
                             rates=[Rate(value=-0.1, max_curtailment=0.5)])
        fx.clock.advance(3)
        past = EconomicControlEvent(fx.alpha, spec.id, period=1, curtailment_ratio=0.5)
        assert fx.market.handle_message(past).status is Status.INVALID_UPDATE
        current = EconomicControlEvent(fx.alpha, spec.id, period=3, curtailment_ratio=0.5)
        assert fx.market.handle_message(current).is_success
        assert fx.capacity_control.controls_for_period(3) == [current]

    def test_balancing_order_checks(self):
        fx = self.fx
        plain, _ = fx.publish()
        curtailable, _ = fx.publish(power_type=PowerType.INTERRUPTIBLE_CONSUMPTION,
                                    rates=[Rate(value=-0.1, max_curtailment=0.5)])
        storage, _ = fx.publish(power_type=PowerType.BATTERY_STORAGE,
                                rates=[Rate(value=-0.1, max_curtailment=0.5)],
                                regulation_rates=[RegulationRate(0.2, -0.05)])

        def send(spec_id, ratio=1.0):
            order = BalancingOrder(fx.alpha, spec_id, exercise_ratio=ratio, price=0.05)
            return fx.market.handle_message(order).status

        assert send(plain.id) is Status.UNSUPPORTED
        assert send(storage.id) is Status.UNSUPPORTED
        assert send(curtailable.id, ratio=1.5) is Status.UNSUPPORTED
        assert send(curtailable.id) is Status.SUCCESS
        assert any(o.tariff_id == curtailable.id for o in fx.tariff_repo.get_balancing_orders())
