"""
End-to-end tests for MarketSimulation and the configuration factory.
"""
import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

import config
from config import MarketSettings, create_market_simulation
from market import (
    BalanceReport,
    BalancingOrder,
    CustomerInfo,
    EconomicControlEvent,
    MarketSimulation,
    PowerType,
    Rate,
    TariffSpecification,
    TariffState,
)

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestMarketSimulation:
    """Test suite for a small simulated market."""

    def setup_method(self):
        self.sim = MarketSimulation(start=START, publication_fee=-100.0,
                                    revocation_fee=-200.0, strict=True)
        self.house = self.sim.add_broker("default")
        self.alpha = self.sim.add_broker("alpha")
        self.default = self.sim.tariff_market.set_default_tariff(
            TariffSpecification(self.house, PowerType.CONSUMPTION, rates=[Rate(value=-0.5)]))
        self.spec = TariffSpecification(self.alpha, PowerType.INTERRUPTIBLE_CONSUMPTION,
                                        rates=[Rate(value=-0.1, max_curtailment=0.5)])
        self.sim.tariff_market.handle_message(self.spec)
        self.customer = CustomerInfo("heat-pumps", 10, PowerType.INTERRUPTIBLE_CONSUMPTION)
        self.usage = []

    def consume(self, sim, period):
        """Hook: move to alpha's tariff once offered and consume 100 kWh."""
        tariff = sim.tariff_repo.find_tariff_by_id(self.spec.id)
        sub = sim.subscription_repo.find_subscription(self.customer, tariff)
        if sub is None:
            sim.tariff_market.subscribe_to_tariff(tariff, self.customer, 10)
            sub = sim.subscription_repo.find_subscription(self.customer, tariff)
        sub.use_power(100.0)
        self.usage.append(period)

    def test_step_runs_one_period(self):
        self.sim.register_period_hook(self.consume)
        self.sim.run(3)

        assert self.usage == [0, 1, 2]
        assert self.sim.clock.current_period() == 3
        assert self.sim.balancing_market.last_settled_period == 2
        assert {info.broker.username for info in self.sim.last_settlement} == {"default", "alpha"}
        assert self.sim.tariff_repo.find_tariff_by_id(self.spec.id).state is TariffState.OFFERED
        reports = [m for m in self.sim.broker_proxy.broadcasts if isinstance(m, BalanceReport)]
        assert [r.period for r in reports] == [0, 1, 2]

    def test_uncovered_consumption_settled(self):
        """I verify alpha's unhedged consumption is charged at p_plus."""
        self.sim.register_period_hook(self.consume)
        infos = self.sim.step()

        by_name = {info.broker.username: info for info in infos}
        p_plus = 0.030 * 1.1 + 0.035
        assert by_name["alpha"].imbalance == pytest.approx(-100.0)
        assert by_name["alpha"].p1 == pytest.approx(-100.0 * p_plus)
        frame = self.sim.last_settlement_frame()
        assert frame.loc["alpha", "charge"] == pytest.approx(-100.0 * p_plus)

    def test_balancing_order_curtails_customers(self):
        self.sim.register_period_hook(self.consume)
        self.sim.step()
        self.sim.tariff_market.handle_message(
            BalancingOrder(self.alpha, self.spec.id, exercise_ratio=1.0, price=0.01))
        infos = self.sim.step()

        alpha = next(info for info in infos if info.broker is self.alpha)
        assert alpha.curtailment == pytest.approx(50.0)
        assert alpha.p2 > 0.0
        assert self.sim.balancing_market.get_regulation(self.alpha) == pytest.approx(50.0)

    def test_economic_control_applied_before_usage(self):
        self.sim.register_period_hook(self.consume)
        self.sim.step()
        self.sim.tariff_market.handle_message(
            EconomicControlEvent(self.alpha, self.spec.id, period=1, curtailment_ratio=0.4))
        infos = self.sim.step()

        alpha = next(info for info in infos if info.broker is self.alpha)
        assert alpha.imbalance == pytest.approx(-60.0)

    def test_empty_settlement_frame(self):
        assert self.sim.last_settlement_frame().empty


class TestConfig:
    """Test suite for the configuration factory."""

    def test_settings_from_environment(self, monkeypatch):
        monkeypatch.setenv('TARIFF_PUBLICATION_INTERVAL', '12')
        monkeypatch.setenv('BALANCING_RM_FEE', '0.05')
        monkeypatch.delenv('TARIFF_PUBLICATION_FEE', raising=False)
        settings = MarketSettings()
        assert settings.publication_interval == 12
        assert settings.rm_fee == pytest.approx(0.05)
        assert settings.publication_fee is None

    def test_factory_overrides(self, monkeypatch):
        monkeypatch.setattr(config, 'CURRENT_MODE', config.Mode.DEBUG)
        sim = create_market_simulation(publication_interval=4, publication_fee=-150.0)
        assert sim.tariff_market.publication_interval == 4
        assert sim.tariff_market.publication_fee == -150.0
        assert sim.balancing_market.processor.strict
        assert sim.clock.current_time() == START

    def test_factory_rejects_unknown_setting(self):
        with pytest.raises(ValueError):
            create_market_simulation(no_such_setting=1)
