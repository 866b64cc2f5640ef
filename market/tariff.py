"""
Tariffs - Retail Contract Definitions

I model what a broker offers to retail customers:
- PowerType: the kind of customer a tariff is meant for
- Rate / HourlyCharge: per-kWh prices, fixed or variable, optionally time-of-use
- RegulationRate: payments for up/down regulation
- TariffSpecification: the immutable contract a broker publishes
- Tariff: the market's view of a spec, with its PENDING -> OFFERED -> KILLED
  state machine and an hour-of-day/week rate map

Times are passed in explicitly; nothing here reads a wall clock.
"""

import itertools
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


def next_id() -> int:
    """Return a process-wide unique id for market objects."""
    return next(_ids)


class PowerType(Enum):
    CONSUMPTION = "CONSUMPTION"
    PRODUCTION = "PRODUCTION"
    STORAGE = "STORAGE"
    INTERRUPTIBLE_CONSUMPTION = "INTERRUPTIBLE_CONSUMPTION"
    THERMAL_STORAGE_CONSUMPTION = "THERMAL_STORAGE_CONSUMPTION"
    SOLAR_PRODUCTION = "SOLAR_PRODUCTION"
    WIND_PRODUCTION = "WIND_PRODUCTION"
    RUN_OF_RIVER_PRODUCTION = "RUN_OF_RIVER_PRODUCTION"
    PUMPED_STORAGE_PRODUCTION = "PUMPED_STORAGE_PRODUCTION"
    CHP_PRODUCTION = "CHP_PRODUCTION"
    FOSSIL_PRODUCTION = "FOSSIL_PRODUCTION"
    BATTERY_STORAGE = "BATTERY_STORAGE"
    ELECTRIC_VEHICLE = "ELECTRIC_VEHICLE"

    @property
    def is_consumption(self) -> bool:
        return self in (PowerType.CONSUMPTION,
                        PowerType.ELECTRIC_VEHICLE,
                        PowerType.INTERRUPTIBLE_CONSUMPTION,
                        PowerType.THERMAL_STORAGE_CONSUMPTION)

    @property
    def is_production(self) -> bool:
        return self in (PowerType.PRODUCTION,
                        PowerType.CHP_PRODUCTION,
                        PowerType.FOSSIL_PRODUCTION,
                        PowerType.RUN_OF_RIVER_PRODUCTION,
                        PowerType.SOLAR_PRODUCTION,
                        PowerType.WIND_PRODUCTION)

    @property
    def is_interruptible(self) -> bool:
        return self in (PowerType.INTERRUPTIBLE_CONSUMPTION,
                        PowerType.THERMAL_STORAGE_CONSUMPTION,
                        PowerType.BATTERY_STORAGE,
                        PowerType.ELECTRIC_VEHICLE)

    @property
    def is_storage(self) -> bool:
        return self in (PowerType.STORAGE,
                        PowerType.THERMAL_STORAGE_CONSUMPTION,
                        PowerType.BATTERY_STORAGE,
                        PowerType.ELECTRIC_VEHICLE,
                        PowerType.PUMPED_STORAGE_PRODUCTION)

    @property
    def generic_type(self) -> Optional["PowerType"]:
        if self.is_storage:
            return PowerType.STORAGE
        if self.is_consumption:
            return PowerType.CONSUMPTION
        if self.is_production:
            return PowerType.PRODUCTION
        return None

    def can_use(self, tariff_type: "PowerType") -> bool:
        """True if a customer of this type may subscribe to a tariff of tariff_type."""
        return (self is tariff_type
                or (self.is_consumption and tariff_type is PowerType.CONSUMPTION)
                or (self.is_production and tariff_type is PowerType.PRODUCTION)
                or (self.is_storage and tariff_type is PowerType.STORAGE)
                or (self.is_interruptible
                    and tariff_type is PowerType.INTERRUPTIBLE_CONSUMPTION))


@dataclass
class HourlyCharge:
    """A variable-rate price announcement for one hour."""
    at_time: datetime
    value: float
    rate_id: Optional[int] = None
    id: int = field(default_factory=next_id)


NO_TIME = -1
MIN_HOUR, MAX_HOUR = 0, 23
MIN_DAY, MAX_DAY = 1, 7


@dataclass(eq=False)
class Rate:
    """One price component of a tariff.

    A fixed rate charges `value` per kWh. A variable rate charges the most
    recent HourlyCharge announced for the hour, or `expected_mean` when
    none has been announced. Daily/weekly windows restrict when the rate
    applies; NO_TIME means "always".
    """
    value: float = 0.0
    fixed: bool = True
    max_value: float = 0.0
    expected_mean: float = 0.0
    daily_begin: int = NO_TIME
    daily_end: int = NO_TIME
    weekly_begin: int = NO_TIME
    weekly_end: int = NO_TIME
    notice_interval: int = 0          # hours of warning required for updates
    max_curtailment: float = 0.0      # fraction of usage that may be curtailed
    tier_threshold: float = 0.0
    id: int = field(default_factory=next_id)
    history: List[HourlyCharge] = field(default_factory=list)

    def __post_init__(self):
        if not math.isnan(self.max_curtailment):
            self.max_curtailment = min(1.0, max(0.0, self.max_curtailment))

    @property
    def min_value(self) -> float:
        return self.value

    @property
    def is_time_of_use(self) -> bool:
        return self.daily_begin >= 0 or self.weekly_begin >= 0

    def has_valid_bounds(self) -> bool:
        """Daily bounds in [0, 24), weekly bounds in [1, 7] (or unset)."""
        for hour in (self.daily_begin, self.daily_end):
            if hour != NO_TIME and not (MIN_HOUR <= hour <= MAX_HOUR):
                return False
        for day in (self.weekly_begin, self.weekly_end):
            if day != NO_TIME and not (MIN_DAY <= day <= MAX_DAY):
                return False
        return True

    def is_valid(self, power_type: PowerType) -> bool:
        """Numeric and structural sanity checks for a published rate."""
        values = (self.value, self.max_value, self.expected_mean)
        if any(math.isnan(v) or math.isinf(v) for v in values):
            logger.warning(f"rate {self.id}: non-finite value in {values}")
            return False
        if math.isnan(self.max_curtailment) or not 0.0 <= self.max_curtailment <= 1.0:
            logger.warning(f"rate {self.id}: curtailment ratio {self.max_curtailment} out of range")
            return False
        if not self.has_valid_bounds():
            logger.warning(f"rate {self.id}: daily/weekly bounds out of range")
            return False
        if (self.daily_begin == NO_TIME) != (self.daily_end == NO_TIME):
            logger.warning(f"rate {self.id}: inconsistent daily begin/end "
                           f"{self.daily_begin}, {self.daily_end}")
            return False
        if (self.weekly_begin == NO_TIME) != (self.weekly_end == NO_TIME):
            logger.warning(f"rate {self.id}: inconsistent weekly begin/end "
                           f"{self.weekly_begin}, {self.weekly_end}")
            return False
        if self.fixed:
            return True

        # Consumption prices are negative (customer pays), so flip before comparing
        sgn = -1.0 if power_type.is_consumption else 1.0
        if sgn * self.max_value < sgn * self.value:
            logger.warning(f"rate {self.id}: max value {self.max_value} out of range")
            return False
        if not (sgn * self.value <= sgn * self.expected_mean <= sgn * self.max_value):
            logger.warning(f"rate {self.id}: expected mean {self.expected_mean} out of range")
            return False
        return True

    def applies(self, when: datetime) -> bool:
        day = when.isoweekday()
        if self.weekly_begin == NO_TIME or self.weekly_end == NO_TIME:
            weekly = True
        elif self.weekly_end >= self.weekly_begin:
            weekly = self.weekly_begin <= day <= self.weekly_end
        else:
            weekly = day >= self.weekly_begin or day <= self.weekly_end

        hour = when.hour
        if self.daily_begin == NO_TIME or self.daily_end == NO_TIME:
            daily = True
        elif self.daily_end > self.daily_begin:
            daily = self.daily_begin <= hour <= self.daily_end
        else:
            # window spans midnight
            daily = hour >= self.daily_begin or hour <= self.daily_end
        return weekly and daily

    def charge_in_bounds(self, value: float) -> bool:
        sgn = math.copysign(1.0, self.max_value) if self.max_value != 0.0 else 1.0
        return sgn * self.value <= sgn * value <= sgn * self.max_value

    def add_hourly_charge(self, charge: HourlyCharge, now: datetime,
                          publish: bool = False) -> bool:
        """Record a new price for a variable rate.

        Returns False (and leaves the history alone) if the rate is fixed,
        the announcement is too late for the notice interval, or the value
        is out of bounds. A charge for an hour that already has one replaces it.
        """
        if self.fixed:
            logger.warning(f"cannot change fixed rate {self.id}")
            return False
        warning = charge.at_time - now
        if warning < timedelta(hours=self.notice_interval) and not publish:
            logger.warning(f"too late ({now}) to change rate {self.id} for {charge.at_time}")
            return False
        if not self.charge_in_bounds(charge.value):
            logger.warning(f"charge {charge.value} outside [{self.value}, {self.max_value}] "
                           f"for rate {self.id}")
            return False

        self.history = [c for c in self.history if c.at_time != charge.at_time]
        charge.rate_id = self.id
        self.history.append(charge)
        self.history.sort(key=lambda c: c.at_time)
        logger.info(f"added hourly charge {charge.value} at {charge.at_time} to rate {self.id}")
        return True

    def get_value(self, when: datetime) -> float:
        if self.fixed:
            return self.value
        for charge in reversed(self.history):
            if charge.at_time == when:
                return charge.value
            if charge.at_time < when:
                break
        return self.expected_mean


@dataclass
class RegulationRate:
    """Payments to the customer for regulation (positive up, negative down)."""
    up_regulation_payment: float = 0.0
    down_regulation_payment: float = 0.0


@dataclass(eq=False)
class TariffSpecification:
    """The contract a broker publishes. Never mutated after acceptance."""
    broker: "Broker"
    power_type: PowerType
    rates: List[Rate] = field(default_factory=list)
    signup_payment: float = 0.0
    periodic_payment: float = 0.0        # per day
    early_withdraw_payment: float = 0.0
    min_duration: timedelta = timedelta(0)
    expiration: Optional[datetime] = None
    supersedes: List[int] = field(default_factory=list)
    regulation_rates: List[RegulationRate] = field(default_factory=list)
    id: int = field(default_factory=next_id)

    def add_rate(self, rate: Rate) -> "TariffSpecification":
        self.rates.append(rate)
        return self

    @property
    def has_regulation_rate(self) -> bool:
        return len(self.regulation_rates) > 0


class TariffState(Enum):
    PENDING = "pending"
    OFFERED = "offered"
    KILLED = "killed"


class Tariff:
    """Market-side wrapper around a TariffSpecification.

    I hold the lifecycle state, the (mutable) expiration date, usage
    statistics and a rate map indexed by hour of day, or hour of week when
    any rate has a weekly window.
    """

    def __init__(self, spec: TariffSpecification, offer_date: Optional[datetime] = None):
        self.spec = spec
        self.state = TariffState.PENDING
        self.expiration = spec.expiration
        self.offer_date = offer_date
        self.superseded_by: Optional["Tariff"] = None
        self.total_cost = 0.0
        self.total_usage = 0.0
        self._rates_by_id: Dict[int, Rate] = {r.id: r for r in spec.rates}
        self.regulation_rate: Optional[RegulationRate] = None
        for reg_rate in spec.regulation_rates:
            if self.regulation_rate is not None:
                logger.warning(f"multiple regulation rates on tariff {spec.id}, extras ignored")
                break
            self.regulation_rate = reg_rate
        self.is_weekly = any(r.weekly_begin >= 0 for r in spec.rates)
        self._rate_map: List[Optional[Rate]] = self._analyze()

    # ------------------------------------------------------------------
    # Identity and spec delegation
    # ------------------------------------------------------------------

    @property
    def id(self) -> int:
        return self.spec.id

    @property
    def broker(self):
        return self.spec.broker

    @property
    def power_type(self) -> PowerType:
        return self.spec.power_type

    @property
    def min_duration(self) -> timedelta:
        return self.spec.min_duration

    @property
    def signup_payment(self) -> float:
        return self.spec.signup_payment

    @property
    def early_withdraw_payment(self) -> float:
        return self.spec.early_withdraw_payment

    @property
    def periodic_payment(self) -> float:
        return self.spec.periodic_payment

    def has_regulation_rate(self) -> bool:
        return self.regulation_rate is not None

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state is TariffState.OFFERED

    @property
    def is_revoked(self) -> bool:
        return self.state is TariffState.KILLED

    def is_expired(self, now: datetime) -> bool:
        return self.expiration is not None and now >= self.expiration

    def is_subscribable(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)

    def offer(self) -> None:
        if self.state is not TariffState.PENDING:
            logger.warning(f"tariff {self.id} offered from state {self.state.value}")
            return
        self.state = TariffState.OFFERED

    def kill(self) -> None:
        self.state = TariffState.KILLED

    # ------------------------------------------------------------------
    # Rate structure
    # ------------------------------------------------------------------

    def _analyze(self) -> List[Optional[Rate]]:
        slots = 24 * (7 if self.is_weekly else 1)
        rate_map: List[Optional[Rate]] = [None] * slots

        # Lowest-priority rates (earliest start) are written first so that
        # later, more specific windows overwrite them.
        def sort_key(rate: Rate) -> int:
            value = max(rate.daily_begin, 0)
            if rate.weekly_begin >= 0:
                value += rate.weekly_begin * 24
            return value

        for rate in sorted(self.spec.rates, key=sort_key):
            if self.is_weekly:
                days = self._span(rate.weekly_begin - 1 if rate.weekly_begin >= 0 else 0,
                                  rate.weekly_end - 1 if rate.weekly_end >= 0 else 6, 7)
            else:
                days = [0]
            if rate.daily_begin >= 0 and rate.daily_end >= 0:
                hours = self._span(rate.daily_begin, rate.daily_end, 24)
            else:
                hours = range(24)
            for day in days:
                for hour in hours:
                    rate_map[day * 24 + hour] = rate
        return rate_map

    @staticmethod
    def _span(first: int, last: int, modulus: int) -> List[int]:
        """Inclusive index range that wraps around the modulus."""
        if last >= first:
            return list(range(first, last + 1))
        return list(range(first, modulus)) + list(range(0, last + 1))

    def is_covered(self) -> bool:
        return all(rate is not None for rate in self._rate_map)

    def _time_index(self, when: datetime) -> int:
        index = when.hour
        if self.is_weekly:
            index += 24 * (when.isoweekday() - 1)
        return index

    def find_rate(self, when: datetime) -> Optional[Rate]:
        rate = self._rate_map[self._time_index(when)]
        if rate is None:
            logger.error(f"tariff {self.id}: no rate for {when}")
        return rate

    def find_rate_by_id(self, rate_id: int) -> Optional[Rate]:
        return self._rates_by_id.get(rate_id)

    @property
    def is_variable_rate(self) -> bool:
        return any(not r.fixed for r in self.spec.rates)

    @property
    def is_interruptible(self) -> bool:
        return (self.power_type.is_interruptible
                and any(r.max_curtailment > 0.0 for r in self.spec.rates))

    def add_hourly_charge(self, charge: HourlyCharge, rate_id: int, now: datetime) -> bool:
        rate = self._rates_by_id.get(rate_id)
        if rate is None:
            logger.warning(f"tariff {self.id}: no rate {rate_id} for hourly charge")
            return False
        return rate.add_hourly_charge(charge, now)

    def get_usage_charge(self, when: datetime, kwh: float, record_usage: bool = False) -> float:
        """Charge for kwh at time when, in the customer's sign convention.

        Consumption is kwh > 0 with rate < 0, production kwh < 0 with
        rate > 0. The result is from the customer viewpoint: negative means
        the customer pays.
        """
        rate = self.find_rate(when)
        if rate is None:
            return 0.0
        sign = -1.0 if self.power_type.is_production else 1.0
        amount = sign * kwh * rate.get_value(when)
        if record_usage:
            self.total_usage += kwh
            self.total_cost += amount
        return amount

    def get_regulation_charge(self, when: datetime, kwh: float, record_usage: bool = False) -> float:
        if self.regulation_rate is None:
            return self.get_usage_charge(when, kwh, record_usage)
        if kwh < 0.0:
            return -kwh * self.regulation_rate.up_regulation_payment
        if kwh > 0.0:
            return kwh * self.regulation_rate.down_regulation_payment
        return 0.0

    def get_max_up_regulation(self, when: datetime, kwh: float) -> float:
        if not self.power_type.is_interruptible:
            return 0.0
        rate = self.find_rate(when)
        if rate is None:
            return 0.0
        return kwh * rate.max_curtailment

    @property
    def realized_price(self) -> float:
        if self.total_usage == 0.0:
            return 0.0
        sign = -1.0 if self.power_type.is_production else 1.0
        return sign * self.total_cost / self.total_usage

    def __repr__(self) -> str:
        return f"Tariff(id={self.id}, broker={self.broker.username}, state={self.state.value})"
