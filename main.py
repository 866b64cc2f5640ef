"""
Retail Market Simulation - Demo Entry Point.

Runs a small market with two retail brokers:
- TariffMarket (publication, batched subscriptions, revocation)
- CapacityControl (curtailment of interruptible customers)
- BalancingMarket (per-period settlement)

Usage:
    python main.py                      # 48 periods, settings from .env
    python main.py --periods 24         # shorter run
    python main.py --debug              # raise on unbalanced settlements
"""
import argparse
import logging
import sys

import numpy as np

sys.path.insert(0, '.')

import config
from config import Mode, create_market_simulation
from market import (
    BalancingOrder,
    CustomerInfo,
    PowerType,
    Rate,
    TariffRevoke,
    TariffSpecification,
)


# ============================================================================
# CONFIGURATION
# ============================================================================
CONFIG = {
    "PERIODS": 48,
    "SEED": 7,

    # Customer segments: (name, population, power type, kWh per member per period)
    "CUSTOMERS": [
        ("village", 200, PowerType.CONSUMPTION, 1.2),
        ("heat-pumps", 60, PowerType.INTERRUPTIBLE_CONSUMPTION, 2.5),
        ("rooftops", 80, PowerType.SOLAR_PRODUCTION, -0.8),
    ],

    # Fraction of expected load each broker buys ahead on the wholesale market
    "HEDGE_RATIO": 0.9,
    "REVOKE_AT_PERIOD": 30,
}


# ============================================================================
# DEMO PARTICIPANTS
# ============================================================================

def publish_demo_tariffs(sim, alpha, beta):
    """Both brokers offer tariffs; beta also offers curtailment to the balancing market."""
    specs = [
        TariffSpecification(alpha, PowerType.CONSUMPTION,
                            rates=[Rate(value=-0.12)], signup_payment=5.0),
        TariffSpecification(alpha, PowerType.PRODUCTION, rates=[Rate(value=0.06)]),
        TariffSpecification(beta, PowerType.CONSUMPTION,
                            rates=[Rate(value=-0.10, daily_begin=7, daily_end=21),
                                   Rate(value=-0.08, daily_begin=22, daily_end=6)],
                            early_withdraw_payment=-10.0,
                            min_duration=sim.clock.period_length * 48),
        TariffSpecification(beta, PowerType.INTERRUPTIBLE_CONSUMPTION,
                            rates=[Rate(value=-0.09, max_curtailment=0.5)]),
    ]
    for spec in specs:
        status = sim.tariff_market.handle_message(spec)
        print(f"   {spec.broker.username:<6} {spec.power_type.value:<26} -> {status.status.value}")
    return specs


class DemoCustomers:
    """Customer segments that pick the cheapest tariff and report noisy usage."""

    def __init__(self, sim, rng):
        self.rng = rng
        self.segments = []
        for name, population, power_type, per_member in CONFIG["CUSTOMERS"]:
            customer = CustomerInfo(name, population, power_type)
            self.segments.append((customer, per_member))
            default = sim.tariff_market.get_default_tariff(power_type)
            if default is not None:
                sim.tariff_market.subscribe_to_tariff(default, customer, population)

    def __call__(self, sim, period):
        market = sim.tariff_market
        now = sim.clock.current_time()
        expected = {}
        for customer, per_member in self.segments:
            subs = sim.subscription_repo.find_active_subscriptions_for_customer(customer)
            for sub in subs:
                if sub.tariff.is_revoked:
                    sub.handle_revoked_tariff(market)
            self._maybe_switch(sim, customer, subs, now)

            for sub in sim.subscription_repo.find_active_subscriptions_for_customer(customer):
                kwh = sub.customers_committed * per_member * self.rng.normal(1.0, 0.15)
                sub.use_power(kwh)
                broker = sub.tariff.broker
                expected[broker.id] = expected.get(broker.id, 0.0) + \
                    sub.customers_committed * per_member

        for broker in sim.broker_repo.find_retail_brokers():
            sim.accounting.set_market_position(broker, CONFIG["HEDGE_RATIO"] *
                                               expected.get(broker.id, 0.0))

    def _maybe_switch(self, sim, customer, subs, now):
        candidates = sim.tariff_repo.find_all_active_tariffs(customer.power_type, now)
        if not candidates or not subs:
            return
        unit = 1.0 if customer.power_type.is_consumption else -1.0
        best = max(candidates, key=lambda t: t.get_usage_charge(now, unit))
        current = subs[0]
        if current.tariff is best or current.tariff.is_revoked or self.rng.random() > 0.2:
            return
        movers = max(1, current.customers_committed // 4)
        sim.tariff_market.subscribe_to_tariff(current.tariff, customer, -movers)
        sim.tariff_market.subscribe_to_tariff(best, customer, movers)


# ============================================================================
# MAIN
# ============================================================================

def main():
    parser = argparse.ArgumentParser(description='Retail Market Simulation')
    parser.add_argument('--periods', type=int, default=None, help='Periods to simulate')
    parser.add_argument('--debug', action='store_true',
                        help='Raise on unbalanced settlements')
    parser.add_argument('--seed', type=int, default=None, help='Demand noise seed')
    args = parser.parse_args()

    if args.periods:
        CONFIG["PERIODS"] = args.periods
    if args.seed is not None:
        CONFIG["SEED"] = args.seed
    if args.debug:
        config.CURRENT_MODE = Mode.DEBUG

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    print("=" * 60)
    print(" Retail Market Simulation")
    print("=" * 60)
    print(f"   Mode:    {config.CURRENT_MODE.value}")
    print(f"   Periods: {CONFIG['PERIODS']}")
    print("=" * 60)

    sim = create_market_simulation()
    house = sim.add_broker("default")
    alpha = sim.add_broker("alpha")
    beta = sim.add_broker("beta")

    sim.tariff_market.set_default_tariff(
        TariffSpecification(house, PowerType.CONSUMPTION, rates=[Rate(value=-0.5)]))
    sim.tariff_market.set_default_tariff(
        TariffSpecification(house, PowerType.PRODUCTION, rates=[Rate(value=0.01)]))

    print("\n Publishing tariffs...")
    specs = publish_demo_tariffs(sim, alpha, beta)
    interruptible = specs[3]

    rng = np.random.default_rng(CONFIG["SEED"])
    sim.register_period_hook(DemoCustomers(sim, rng))

    print("\n Running...")
    for period in range(CONFIG["PERIODS"]):
        if period == 1:
            sim.tariff_market.handle_message(
                BalancingOrder(beta, interruptible.id, exercise_ratio=0.8, price=0.02))
        if period == CONFIG["REVOKE_AT_PERIOD"]:
            sim.tariff_market.handle_message(TariffRevoke(alpha, specs[0].id))
        sim.step()
        summary = sim.balancing_market.processor.last_summary
        if summary is not None and summary.imbalance_price is not None:
            print(f"   period {period:3d}: net {summary.net_imbalance:9.2f} kWh, "
                  f"price {summary.imbalance_price:.4f}, orders {summary.exercised_orders}")

    print("\n" + "=" * 60)
    print(" Last settlement")
    print("=" * 60)
    print(sim.last_settlement_frame().round(4).to_string())

    print("\n" + "=" * 60)
    print(" Ledger by broker and type")
    print("=" * 60)
    ledger = sim.accounting.transactions_frame()
    if not ledger.empty:
        print(ledger.pivot_table(index='broker', columns='type', values='charge',
                                 aggfunc='sum', fill_value=0.0).round(2).to_string())

    print("\n Simulation complete.")


if __name__ == "__main__":
    main()
