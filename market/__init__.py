# Retail Electricity Market Core
# Tariff lifecycle + balancing settlement

"""
Retail Electricity Market Package

I provide the coordination core of a multi-broker electricity market:

Subsystems:
- TariffMarket: validates broker tariff messages, batches subscriptions
- CapacityControl: regulation capacity and curtailment allocation
- SettlementProcessor: per-broker balancing charges from the net imbalance
- BalancingMarket: per-period settlement driver and price model
- TariffRepo / TariffSubscriptionRepo: the shared store

Usage:
    from market import MarketSimulation

    sim = MarketSimulation(start=datetime(2024, 1, 1, tzinfo=timezone.utc))
    broker = sim.add_broker("alpha")
    status = sim.tariff_market.handle_message(spec)

    # once per period
    charges = sim.step()
"""

from .interfaces import (
    IAccounting,
    IBrokerProxy,
    IClock,
    IBrokerRegistry,
    ISpotPriceSource,
    ICapacityControl,
    ISettlementContext,
    ITariffMarket,
    INewTariffListener,
)

from .tariff import (
    PowerType,
    Rate,
    HourlyCharge,
    RegulationRate,
    TariffSpecification,
    TariffState,
    Tariff,
)
from .messages import (
    Broker,
    CustomerInfo,
    Status,
    TariffStatus,
    TariffExpire,
    TariffRevoke,
    VariableRateUpdate,
    EconomicControlEvent,
    BalancingOrder,
    BalancingControlEvent,
    BalanceReport,
)
from .subscription import RegulationCapacity, TariffSubscription, TransactionType
from .repos import TariffRepo, TariffSubscriptionRepo, BrokerRepo
from .capacity_control import CapacityControl
from .settlement import ChargeInfo, SettlementProcessor, MarketError, MarketBalanceError, settlement_frame
from .balancing_market import BalancingMarket
from .tariff_market import TariffMarket
from .collaborators import SimulatedAccounting, SimulatedBrokerProxy, SimulationClock, StaticSpotPrices
from .simulation import MarketSimulation

__all__ = [
    # Tariffs
    'PowerType',
    'Rate',
    'HourlyCharge',
    'RegulationRate',
    'TariffSpecification',
    'TariffState',
    'Tariff',
    # Messages
    'Broker',
    'CustomerInfo',
    'Status',
    'TariffStatus',
    'TariffExpire',
    'TariffRevoke',
    'VariableRateUpdate',
    'EconomicControlEvent',
    'BalancingOrder',
    'BalancingControlEvent',
    'BalanceReport',
    # Subscriptions and store
    'RegulationCapacity',
    'TariffSubscription',
    'TransactionType',
    'TariffRepo',
    'TariffSubscriptionRepo',
    'BrokerRepo',
    # Interfaces
    'IAccounting',
    'IBrokerProxy',
    'IClock',
    'IBrokerRegistry',
    'ISpotPriceSource',
    'ICapacityControl',
    'ISettlementContext',
    'ITariffMarket',
    'INewTariffListener',
    # Components
    'CapacityControl',
    'ChargeInfo',
    'SettlementProcessor',
    'MarketError',
    'MarketBalanceError',
    'settlement_frame',
    'BalancingMarket',
    'TariffMarket',
    # Simulation
    'SimulatedAccounting',
    'SimulatedBrokerProxy',
    'SimulationClock',
    'StaticSpotPrices',
    'MarketSimulation',
]
