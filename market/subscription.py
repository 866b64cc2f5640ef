"""
Tariff Subscriptions

I track one customer segment's commitment to one tariff:
- committed population and min-duration expiration records
- signup / withdraw / refund / usage / periodic transactions
- economic (ratio) control and balancing (kWh) control
- remaining regulation capacity for the balancing market
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from .tariff import Tariff

if TYPE_CHECKING:
    from .interfaces import IAccounting, IClock, ITariffMarket
    from .messages import CustomerInfo

logger = logging.getLogger(__name__)


class TransactionType(Enum):
    PUBLISH = "publish"
    PRODUCE = "produce"
    CONSUME = "consume"
    PERIODIC = "periodic"
    SIGNUP = "signup"
    WITHDRAW = "withdraw"
    REVOKE = "revoke"
    REFUND = "refund"
    REGULATION = "regulation"


class RegulationCapacity:
    """An (up, down) kWh pair with up >= 0 >= down.

    Values smaller than EPSILON are treated as zero; attempts to push either
    side across zero are logged and ignored.
    """

    EPSILON = 1e-4

    def __init__(self, up: float = 0.0, down: float = 0.0):
        if up < 0.0:
            if up < -1e-12:
                logger.warning(f"up-regulation capacity {up} < 0")
            up = 0.0
        if down > 0.0:
            if down > 1e-12:
                logger.warning(f"down-regulation capacity {down} > 0")
            down = 0.0
        self._up = up
        self._down = down

    @classmethod
    def _filter(cls, value: float) -> float:
        return 0.0 if abs(value) < cls.EPSILON else value

    @property
    def up(self) -> float:
        return self._up

    @up.setter
    def up(self, value: float):
        value = self._filter(value)
        if value < 0.0:
            logger.warning(f"attempt to set negative up-regulation capacity {value}")
            return
        self._up = value

    @property
    def down(self) -> float:
        return self._down

    @down.setter
    def down(self, value: float):
        value = self._filter(value)
        if value > 0.0:
            logger.warning(f"attempt to set positive down-regulation capacity {value}")
            return
        self._down = value

    def add(self, other: "RegulationCapacity") -> "RegulationCapacity":
        self.up = self._up + other.up
        self.down = self._down + other.down
        return self

    def scaled(self, ratio: float) -> "RegulationCapacity":
        return RegulationCapacity(self._up * ratio, self._down * ratio)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RegulationCapacity):
            return NotImplemented
        return self._up == other.up and self._down == other.down

    def __repr__(self) -> str:
        return f"RegulationCapacity(up={self._up}, down={self._down})"


@dataclass
class ExpirationRecord:
    horizon: object      # datetime at which these customers may leave freely
    count: int


class TariffSubscription:
    """A (tariff, customer) pair with its committed population.

    Population changes arrive only through subscribe()/deferred_unsubscribe(),
    which the tariff market calls while flushing its batched events.
    """

    def __init__(self, customer: "CustomerInfo", tariff: Tariff,
                 accounting: "IAccounting", clock: "IClock"):
        self.customer = customer
        self.tariff = tariff
        self.accounting = accounting
        self.clock = clock
        self.customers_committed = 0
        self.pending_unsubscribe_count = 0
        self.expirations: List[ExpirationRecord] = []
        self.regulation_capacity = RegulationCapacity()
        self._regulation = 0.0
        self._pending_ratio = 0.0
        self._original_kwh = 0.0
        self._lock = threading.Lock()

    @property
    def tariff_id(self) -> int:
        return self.tariff.id

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------

    def subscribe(self, count: int) -> None:
        self.customers_committed += count
        horizon = self.clock.current_time() + self.tariff.min_duration
        if self.expirations and self.expirations[-1].horizon == horizon:
            self.expirations[-1].count += count
        else:
            self.expirations.append(ExpirationRecord(horizon, count))

        if self.tariff.signup_payment != 0.0:
            logger.debug(f"signup bonus: {count} customers, "
                         f"total = {count * self.tariff.signup_payment}")
        # a positive signup payment is a bonus, i.e. a debit for the broker
        self.accounting.record_tariff_transaction(
            TransactionType.SIGNUP, self.tariff, self.customer,
            count, 0.0, count * -self.tariff.signup_payment)

    def note_pending_unsubscribe(self, count: int) -> None:
        self.pending_unsubscribe_count += count

    def expired_customer_count(self) -> int:
        now = self.clock.current_time()
        return sum(rec.count for rec in self.expirations if rec.horizon <= now)

    def deferred_unsubscribe(self, count: int) -> bool:
        """Remove count customers, charging penalties for early withdrawal.

        Returns False without changing anything if count exceeds the
        committed population.
        """
        self.pending_unsubscribe_count = 0
        if count > self.customers_committed:
            logger.error(f"tariff {self.tariff.id} customer {self.customer.name}: "
                         f"attempt to unsubscribe {count} from subscription "
                         f"of {self.customers_committed}")
            return False

        penalty_count = max(count - self.expired_customer_count(), 0)

        remaining = count
        while remaining > 0 and self.expirations:
            head = self.expirations[0]
            if head.count <= remaining:
                remaining -= head.count
                self.expirations.pop(0)
            else:
                head.count -= remaining
                remaining = 0

        self.customers_committed -= count
        if self.customers_committed == 0:
            self.regulation_capacity = RegulationCapacity()
            self._regulation = 0.0

        withdraw_payment = 0.0 if self.tariff.is_revoked else -self.tariff.early_withdraw_payment
        self.accounting.record_tariff_transaction(
            TransactionType.WITHDRAW, self.tariff, self.customer,
            count, 0.0, penalty_count * withdraw_payment)
        if self.tariff.signup_payment < 0.0:
            self.accounting.record_tariff_transaction(
                TransactionType.REFUND, self.tariff, self.customer,
                count, 0.0, count * self.tariff.signup_payment)
        return True

    def handle_revoked_tariff(self, tariff_market: "ITariffMarket") -> Optional[Tariff]:
        """Move this subscription's customers off a revoked tariff.

        The superseding tariff is preferred, then the default tariff for the
        power type, then the default for its generic type.
        """
        if not self.tariff.is_revoked:
            logger.warning(f"tariff {self.tariff.id} is not revoked")
            return self.tariff
        if self.customers_committed == 0:
            return None

        new_tariff = self.tariff.superseded_by
        if new_tariff is None or not new_tariff.is_active:
            power_type = self.tariff.power_type
            new_tariff = tariff_market.get_default_tariff(power_type)
            if new_tariff is None and power_type.generic_type is not None:
                new_tariff = tariff_market.get_default_tariff(power_type.generic_type)
        if new_tariff is None:
            logger.error(f"no replacement for revoked tariff {self.tariff.id}")
            return None

        count = self.customers_committed
        tariff_market.subscribe_to_tariff(self.tariff, self.customer, -count)
        tariff_market.subscribe_to_tariff(new_tariff, self.customer, count)
        logger.info(f"tariff {self.tariff.id} replaced by {new_tariff.id} for {count} customers")
        return new_tariff

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def use_power(self, kwh: float) -> None:
        """Record kwh of usage for the whole subscription this period.

        Positive kwh is consumption, negative is production.
        """
        now = self.clock.current_time()
        actual = kwh - self._economic_regulation(kwh, now)
        self._original_kwh = actual
        logger.debug(f"use_power {kwh}, actual {actual}, customer={self.customer.name}")

        tx_type = TransactionType.PRODUCE if actual < 0 else TransactionType.CONSUME
        charge = self.tariff.get_usage_charge(now, actual, record_usage=True)
        self.accounting.record_tariff_transaction(
            tx_type, self.tariff, self.customer, self.customers_committed,
            -actual, -charge)

        if self.tariff.periodic_payment != 0.0:
            self.accounting.record_tariff_transaction(
                TransactionType.PERIODIC, self.tariff, self.customer,
                self.customers_committed, 0.0,
                self.customers_committed * -self.tariff.periodic_payment / 24.0)

    def _economic_regulation(self, proposed: float, now) -> float:
        with self._lock:
            ratio = self._pending_ratio
            self._pending_ratio = 0.0
            self._regulation = 0.0
        cap = self.regulation_capacity

        result = 0.0
        if self.tariff.has_regulation_rate():
            if ratio < 0.0:
                result = -ratio * cap.down
                cap.down = cap.down - result
            elif ratio > 1.0:
                # discharge between proposed usage and up capacity
                if cap.up > proposed:
                    excess = cap.up - proposed
                    result = proposed + (ratio - 1.0) * excess
                    cap.up = cap.up - result
            else:
                result = ratio * cap.up
                cap.up = cap.up - result
        else:
            max_up = self.tariff.get_max_up_regulation(now, proposed)
            result = min(proposed * ratio, max_up)
            cap.up = max_up - result

        if result != 0.0:
            logger.info(f"economic control of {self.customer.name} by {result}")
        with self._lock:
            self._regulation += result
        return result

    # ------------------------------------------------------------------
    # Demand response
    # ------------------------------------------------------------------

    def post_ratio_control(self, ratio: float) -> None:
        with self._lock:
            self._pending_ratio = ratio

    def post_balancing_control(self, kwh: float) -> None:
        """Apply a balancing curtailment of kwh (customer viewpoint).

        Negative kwh is up-regulation (less consumption), positive is down.
        """
        with self._lock:
            now = self.clock.current_time()
            correction = 0.0
            if (self.tariff.has_regulation_rate()
                    and _sign(kwh) != _sign(self._original_kwh)):
                correction = -self.tariff.get_usage_charge(now, kwh, record_usage=True)
                logger.info(f"regulation charge adjustment = {correction}")
            reg_charge = -self.tariff.get_regulation_charge(now, kwh, record_usage=True)
            self.accounting.record_tariff_transaction(
                TransactionType.REGULATION, self.tariff, self.customer,
                self.customers_committed, -kwh, -(reg_charge - correction))

            self._regulation += kwh
            cap = self.regulation_capacity
            if kwh <= 0.0:
                cap.up = cap.up + kwh
            else:
                cap.down = cap.down + kwh

    def set_regulation_capacity(self, capacity: RegulationCapacity) -> None:
        self.regulation_capacity = RegulationCapacity(capacity.up, capacity.down)

    def remaining_regulation_capacity(self) -> RegulationCapacity:
        """Capacity still available, scaled down by pending unsubscribes."""
        if self.customers_committed == 0:
            return RegulationCapacity()
        cap = self.regulation_capacity
        if self.pending_unsubscribe_count == 0:
            return RegulationCapacity(cap.up, cap.down)
        ratio = max(self.customers_committed - self.pending_unsubscribe_count, 0) \
            / self.customers_committed
        logger.debug(f"regulation capacity for {self.customer.name}:{self.tariff.id} "
                     f"reduced by {ratio}")
        return cap.scaled(ratio)

    def get_regulation(self) -> float:
        """Return and reset the regulation applied since the last call."""
        with self._lock:
            result = self._regulation
            self._regulation = 0.0
        return result

    def __repr__(self) -> str:
        return (f"TariffSubscription(tariff={self.tariff.id}, "
                f"customer={self.customer.name}, committed={self.customers_committed})")


def _sign(value: float) -> float:
    if value > 0.0:
        return 1.0
    if value < 0.0:
        return -1.0
    return 0.0
