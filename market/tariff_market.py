"""
Tariff Market Coordinator

I validate and apply broker tariff messages and run the per-period
activation that makes their structural effects visible:

Broker messages (any thread, any time):
- TariffSpecification: validate, store as PENDING, charge the publication fee
- TariffExpire: applied immediately
- TariffRevoke / VariableRateUpdate: queued for the next activation
- EconomicControlEvent: forwarded to capacity control
- BalancingOrder: stored for the balancing market

Activation (once per period, exclusive):
1. apply queued rate updates
2. flush queued subscription changes in submission order
3. remove tariffs killed at the previous activation
4. kill revoked and abandoned expired tariffs
5. at publication points, offer PENDING tariffs and broadcast them
"""

import logging
import math
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from functools import singledispatchmethod
from typing import List, Optional, Set

import numpy as np

from .capacity_control import CapacityControl
from .interfaces import (
    IAccounting,
    IBrokerProxy,
    IBrokerRegistry,
    IClock,
    INewTariffListener,
    ITariffMarket,
)
from .messages import (
    BalancingOrder,
    CustomerInfo,
    EconomicControlEvent,
    Status,
    TariffExpire,
    TariffRevoke,
    TariffStatus,
    TariffUpdate,
    VariableRateUpdate,
)
from .repos import TariffRepo, TariffSubscriptionRepo
from .subscription import TransactionType
from .tariff import PowerType, Tariff, TariffSpecification, TariffState

logger = logging.getLogger(__name__)

MAX_PUBLICATION_INTERVAL = 24


@dataclass
class PendingSubscription:
    tariff: Tariff
    customer: CustomerInfo
    count: int


class TariffMarket(ITariffMarket):
    """Tariff Market Coordinator.

    Broker-facing handlers only validate and enqueue; the store is mutated
    structurally by activate(), which holds the activation lock for its
    whole run, and by the first-subscription fast path under the same lock.
    """

    def __init__(
        self,
        tariff_repo: TariffRepo,
        subscription_repo: TariffSubscriptionRepo,
        capacity_control: CapacityControl,
        accounting: IAccounting,
        broker_registry: IBrokerRegistry,
        broker_proxy: IBrokerProxy,
        clock: IClock,
        publication_interval: int = 6,
        publication_offset: int = 0,
        period_minutes: int = 60,
        publication_fee: Optional[float] = None,
        revocation_fee: Optional[float] = None,
        min_publication_fee: float = -100.0,
        max_publication_fee: float = -500.0,
        min_revocation_fee: float = -100.0,
        max_revocation_fee: float = -500.0,
        seed: Optional[int] = None,
    ):
        """Initialize the tariff market.

        Args:
            publication_interval: Periods between publication batches (at most 24)
            publication_offset: Period within the interval at which batches run
            period_minutes: Length of one period
            publication_fee: Fixed fee per published tariff (negative = broker pays);
                drawn from [min, max] when not given
            revocation_fee: Fixed fee per revoked tariff with customers; drawn
                from [min, max] when not given
            seed: Seed for the fee draws
        """
        self.tariff_repo = tariff_repo
        self.subscription_repo = subscription_repo
        self.capacity_control = capacity_control
        self.accounting = accounting
        self.broker_registry = broker_registry
        self.broker_proxy = broker_proxy
        self.clock = clock
        self.period_minutes = period_minutes

        self.publication_interval = 6
        self.publication_offset = 0
        self.set_publication_interval(publication_interval)
        self.set_publication_offset(publication_offset)

        rng = np.random.default_rng(seed)
        if publication_fee is None:
            publication_fee = float(rng.uniform(min_publication_fee, max_publication_fee))
        if revocation_fee is None:
            revocation_fee = float(rng.uniform(min_revocation_fee, max_revocation_fee))
        self.publication_fee = publication_fee
        self.revocation_fee = revocation_fee

        self._activation_lock = threading.RLock()
        self._pending_subscriptions: "queue.SimpleQueue[PendingSubscription]" = queue.SimpleQueue()
        self._pending_revokes: "queue.SimpleQueue[Tariff]" = queue.SimpleQueue()
        self._pending_vrus: "queue.SimpleQueue[VariableRateUpdate]" = queue.SimpleQueue()
        self._revoked_tariffs: List[Tariff] = []
        self._disabled_brokers: Set[int] = set()
        self._listeners: List[INewTariffListener] = []
        self._first_publication_done = False

        logger.info(f"tariff market: publication every {self.publication_interval} periods "
                    f"(offset {self.publication_offset}), fees {self.publication_fee:.2f} / "
                    f"{self.revocation_fee:.2f}")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_publication_interval(self, interval: int) -> None:
        if interval > MAX_PUBLICATION_INTERVAL:
            logger.error(f"tariff publication interval {interval} > {MAX_PUBLICATION_INTERVAL}")
            interval = MAX_PUBLICATION_INTERVAL
        if interval < 1:
            logger.error(f"tariff publication interval {interval} < 1")
            interval = 1
        self.publication_interval = interval

    def set_publication_offset(self, offset: int) -> None:
        if offset >= self.publication_interval or offset < 0:
            logger.error(f"tariff publication offset {offset} outside "
                         f"[0, {self.publication_interval})")
            return
        self.publication_offset = offset

    def register_new_tariff_listener(self, listener: INewTariffListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Broker messages
    # ------------------------------------------------------------------

    @singledispatchmethod
    def handle_message(self, msg) -> Optional[TariffStatus]:
        raise TypeError(f"unsupported message type {type(msg).__name__}")

    @handle_message.register
    def _(self, spec: TariffSpecification) -> Optional[TariffStatus]:
        return self.publish(spec)

    @handle_message.register
    def _(self, update: TariffExpire) -> Optional[TariffStatus]:
        return self.expire(update)

    @handle_message.register
    def _(self, update: TariffRevoke) -> Optional[TariffStatus]:
        return self.revoke(update)

    @handle_message.register
    def _(self, update: VariableRateUpdate) -> Optional[TariffStatus]:
        return self.vary_rate(update)

    @handle_message.register
    def _(self, msg: EconomicControlEvent) -> Optional[TariffStatus]:
        return self.economic_control(msg)

    @handle_message.register
    def _(self, msg: BalancingOrder) -> Optional[TariffStatus]:
        return self.balancing_order(msg)

    def publish(self, spec: TariffSpecification) -> TariffStatus:
        broker = spec.broker
        if self.tariff_repo.find_specification_by_id(spec.id) is not None \
                or self.tariff_repo.is_removed(spec.id):
            return self._reject_spec(spec, f"duplicate tariff spec {spec.id}")
        if not spec.rates:
            return self._reject_spec(spec, "missing rates")
        for rate in spec.rates:
            if not rate.has_valid_bounds():
                return self._reject_spec(spec, "spec has invalid rate")
        if not all(rate.is_valid(spec.power_type) for rate in spec.rates) \
                or not self._finite_fees(spec):
            return self._reject_spec(spec, "spec fails validity test")
        for superseded in spec.supersedes:
            other = self.tariff_repo.find_specification_by_id(superseded)
            if other is None:
                return self._reject_spec(spec, f"non-existent supersede {superseded}")
            if other.broker is not broker:
                return self._reject_spec(spec, f"invalid supersede {superseded}")

        tariff = Tariff(spec)
        if not tariff.is_covered():
            return self._reject_spec(spec, "incomplete coverage in multi-rate tariff")

        self.tariff_repo.add_specification(spec)
        self.tariff_repo.add_tariff(tariff)
        self._add_regulation_orders(spec)
        logger.info(f"new tariff {spec.id} from {broker.username} ({spec.power_type.value})")
        self.accounting.record_tariff_transaction(TransactionType.PUBLISH, tariff, None,
                                                  0, 0.0, self.publication_fee)
        return self._send(TariffStatus(broker, spec.id, spec.id, Status.SUCCESS))

    @staticmethod
    def _finite_fees(spec: TariffSpecification) -> bool:
        fees = (spec.signup_payment, spec.periodic_payment, spec.early_withdraw_payment)
        return all(math.isfinite(fee) for fee in fees)

    def _reject_spec(self, spec: TariffSpecification, message: str) -> TariffStatus:
        logger.warning(f"spec {spec.id} from {spec.broker.username} rejected: {message}")
        return self._send(TariffStatus(spec.broker, spec.id, spec.id,
                                       Status.INVALID_TARIFF, message))

    def _add_regulation_orders(self, spec: TariffSpecification) -> None:
        """Regulation rates on curtailable tariffs imply standing balancing orders."""
        power_type = spec.power_type
        if not (power_type.is_interruptible or power_type.is_storage):
            return
        for reg_rate in spec.regulation_rates:
            if reg_rate.up_regulation_payment != 0.0:
                ratio = 2.0 if power_type.is_storage else 1.0
                self.tariff_repo.add_balancing_order(BalancingOrder(
                    spec.broker, spec.id, exercise_ratio=ratio,
                    price=reg_rate.up_regulation_payment))
            if reg_rate.down_regulation_payment != 0.0:
                self.tariff_repo.add_balancing_order(BalancingOrder(
                    spec.broker, spec.id, exercise_ratio=-1.0,
                    price=reg_rate.down_regulation_payment))

    def _validate_update(self, update: TariffUpdate):
        """Resolve the update's tariff; returns (tariff, reply-on-failure)."""
        tariff = self.tariff_repo.find_tariff_by_id(update.tariff_id)
        if tariff is None:
            logger.warning(f"update - no such tariff {update.tariff_id}, "
                           f"broker {update.broker.username}")
            return None, TariffStatus(update.broker, update.tariff_id, update.id,
                                      Status.NO_SUCH_TARIFF)
        if tariff.broker is not update.broker:
            logger.warning(f"update - attempt by {update.broker.username} to modify "
                           f"{tariff.broker.username}'s tariff {tariff.id}")
            return None, TariffStatus(update.broker, update.tariff_id, update.id,
                                      Status.INVALID_TARIFF)
        return tariff, None

    def expire(self, update: TariffExpire) -> TariffStatus:
        tariff, failure = self._validate_update(update)
        if tariff is None:
            return self._send(failure)
        new_exp = update.new_expiration
        if new_exp is not None and new_exp < self.clock.current_time():
            logger.warning(f"attempt to set expiration for tariff {tariff.id} in the past: {new_exp}")
            return self._update_status(update, Status.INVALID_UPDATE,
                                       "attempt to set expiration in the past")
        tariff.expiration = new_exp
        logger.info(f"tariff {tariff.id} now expires at {new_exp}")
        return self._update_status(update, Status.SUCCESS)

    def revoke(self, update: TariffRevoke) -> TariffStatus:
        tariff, failure = self._validate_update(update)
        if tariff is None:
            return self._send(failure)
        self._pending_revokes.put(tariff)
        return self._update_status(update, Status.SUCCESS)

    def vary_rate(self, update: VariableRateUpdate) -> Optional[TariffStatus]:
        """Queue a variable-rate charge; the reply is sent when it is applied."""
        tariff, failure = self._validate_update(update)
        if tariff is None:
            return self._send(failure)
        rate = self.tariff_repo.find_rate_by_id(update.rate_id)
        if rate is None:
            return self._update_status(update, Status.INVALID_UPDATE, "non-existent rate")
        if tariff.find_rate_by_id(update.rate_id) is not rate:
            return self._update_status(update, Status.INVALID_UPDATE,
                                       "rate not associated with tariff")
        charge = update.hourly_charge
        if charge is None or rate.fixed or not rate.charge_in_bounds(charge.value):
            return self._update_status(update, Status.INVALID_UPDATE, "invalid charge")
        self._pending_vrus.put(update)
        return None

    def economic_control(self, msg: EconomicControlEvent) -> TariffStatus:
        tariff, failure = self._validate_update(msg)
        if tariff is None:
            return self._send(failure)
        current = self.clock.current_period()
        if msg.period < current:
            logger.warning(f"curtailment requested in period {current} for past period {msg.period}")
            return self._update_status(msg, Status.INVALID_UPDATE,
                                       "control: specified period in the past")
        self.capacity_control.post_economic_control(msg)
        return self._update_status(msg, Status.SUCCESS)

    def balancing_order(self, msg: BalancingOrder) -> TariffStatus:
        tariff, failure = self._validate_update(msg)
        if tariff is None:
            return self._send(failure)
        if tariff.has_regulation_rate():
            return self._update_status(msg, Status.UNSUPPORTED,
                                       "cannot use balancing order with regulation rate")
        if not any(rate.max_curtailment > 0.0 for rate in tariff.spec.rates):
            return self._update_status(msg, Status.UNSUPPORTED,
                                       "cannot use balancing order without curtailment")
        if msg.exercise_ratio <= 0.0 or msg.exercise_ratio > 1.0:
            return self._update_status(msg, Status.UNSUPPORTED,
                                       f"exercise ratio {msg.exercise_ratio} out of range")
        self.tariff_repo.add_balancing_order(msg)
        return self._update_status(msg, Status.SUCCESS)

    def _update_status(self, update: TariffUpdate, status: Status,
                       message: str = "") -> TariffStatus:
        if status is not Status.SUCCESS:
            logger.warning(f"update {update.id} on tariff {update.tariff_id} from "
                           f"{update.broker.username}: {status.value} {message}")
        return self._send(TariffStatus(update.broker, update.tariff_id, update.id,
                                       status, message))

    def _send(self, status: TariffStatus) -> TariffStatus:
        self.broker_proxy.send(status.broker, status)
        return status

    # ------------------------------------------------------------------
    # Customer side
    # ------------------------------------------------------------------

    def subscribe_to_tariff(self, tariff: Tariff, customer: CustomerInfo, count: int) -> None:
        """Queue a subscription change; count < 0 unsubscribes.

        A customer with no subscriptions at all gets its change applied
        right away so it is never left without a tariff for a period.
        """
        if count == 0:
            return
        if count > 0 and (tariff.is_revoked or tariff.is_expired(self.clock.current_time())):
            logger.warning(f"attempt to subscribe {customer.name} to "
                           f"{'revoked' if tariff.is_revoked else 'expired'} tariff {tariff.id}")
            return

        event = PendingSubscription(tariff, customer, count)
        with self._activation_lock:
            if not self.subscription_repo.find_subscriptions_for_customer(customer):
                self._apply_subscription(event)
                return
        if count < 0:
            sub = self.subscription_repo.find_subscription(customer, tariff)
            if sub is not None:
                sub.note_pending_unsubscribe(-count)
        self._pending_subscriptions.put(event)

    def _apply_subscription(self, event: PendingSubscription) -> None:
        if event.count < 0 and self.subscription_repo.find_subscription(
                event.customer, event.tariff) is None:
            logger.warning(f"unsubscribe of {event.customer.name} from tariff "
                           f"{event.tariff.id} without a subscription")
            return
        sub = self.subscription_repo.get_subscription(event.customer, event.tariff)
        if event.count > 0:
            sub.subscribe(event.count)
        else:
            sub.deferred_unsubscribe(-event.count)

    def get_default_tariff(self, power_type: PowerType) -> Optional[Tariff]:
        return self.tariff_repo.get_default_tariff(power_type)

    def set_default_tariff(self, spec: TariffSpecification) -> Tariff:
        return self.tariff_repo.set_default_tariff(spec)

    def get_active_tariff_list(self, power_type: PowerType) -> List[Tariff]:
        return self.tariff_repo.find_active_tariffs(power_type, self.clock.current_time())

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def is_publication_point(self, time: datetime) -> bool:
        if not self._first_publication_done:
            return True
        period_index = int(time.timestamp() // (self.period_minutes * 60))
        return period_index % self.publication_interval == self.publication_offset

    def activate(self, time: datetime, phase: int = 1) -> None:
        """Flush this period's queued changes as one exclusive step."""
        with self._activation_lock:
            logger.info(f"tariff market activate at {time}, phase {phase}")
            self._process_pending_vrus(time)
            self._process_pending_subscriptions()
            self._remove_revoked_tariffs()
            publication = self.is_publication_point(time)
            if publication:
                self._revoke_tariffs_for_disabled_brokers()
            self._update_revoked_tariffs(time)
            if publication:
                self._publish_tariffs()
                self._first_publication_done = True

    def _drain(self, pending: queue.SimpleQueue) -> list:
        items = []
        while True:
            try:
                items.append(pending.get_nowait())
            except queue.Empty:
                return items

    def _process_pending_vrus(self, now: datetime) -> None:
        for vru in self._drain(self._pending_vrus):
            tariff = self.tariff_repo.find_tariff_by_id(vru.tariff_id)
            if tariff is not None and tariff.add_hourly_charge(vru.hourly_charge, vru.rate_id, now):
                self._update_status(vru, Status.SUCCESS)
            else:
                self._update_status(vru, Status.INVALID_UPDATE,
                                    "update: could not add hourly charge")

    def _remove_revoked_tariffs(self) -> None:
        for tariff in self._revoked_tariffs:
            removed = self.subscription_repo.remove_subscriptions_for_tariff(tariff)
            self.tariff_repo.remove_tariff(tariff)
            logger.info(f"removed tariff {tariff.id} and {removed} subscriptions")
        self._revoked_tariffs = []

    def _revoke_tariffs_for_disabled_brokers(self) -> None:
        for broker in self.broker_registry.find_disabled_brokers():
            if broker.id in self._disabled_brokers:
                continue
            self._disabled_brokers.add(broker.id)
            for tariff in self.tariff_repo.find_tariffs_by_broker(broker):
                if tariff.state is not TariffState.KILLED:
                    logger.info(f"revoking tariff {tariff.id} from disabled broker "
                                f"{broker.username}")
                    self._pending_revokes.put(tariff)

    def _update_revoked_tariffs(self, now: datetime) -> None:
        killed: List[Tariff] = []
        for tariff in self._drain(self._pending_revokes):
            if tariff.is_revoked:
                continue
            tariff.kill()
            self.tariff_repo.mark_deleted(tariff.id)
            killed.append(tariff)
            logger.info(f"revoke tariff {tariff.id}")
            self.broker_proxy.broadcast(TariffRevoke(tariff.broker, tariff.id))
            active = [s for s in self.subscription_repo.find_subscriptions_for_tariff(tariff)
                      if s.customers_committed > 0]
            if active:
                logger.info(f"revoked tariff {tariff.id} has {len(active)} active subscriptions")
                self.accounting.record_tariff_transaction(TransactionType.REVOKE, tariff, None,
                                                          0, 0.0, self.revocation_fee)

        for tariff in self.tariff_repo.find_tariffs_by_state(TariffState.OFFERED):
            if not tariff.is_expired(now) or tariff in killed:
                continue
            if any(s.customers_committed > 0
                   for s in self.subscription_repo.find_subscriptions_for_tariff(tariff)):
                continue
            logger.info(f"expired tariff {tariff.id} has no customers, killing it")
            tariff.kill()
            self.tariff_repo.mark_deleted(tariff.id)
            killed.append(tariff)

        self._revoked_tariffs = killed

    def _publish_tariffs(self) -> None:
        published = self.tariff_repo.find_tariffs_by_state(TariffState.PENDING)
        logger.info(f"publishing {len(published)} new tariffs")
        for tariff in published:
            tariff.offer()
            tariff.offer_date = self.clock.current_time()
            for superseded_id in tariff.spec.supersedes:
                old = self.tariff_repo.find_tariff_by_id(superseded_id)
                if old is not None and not old.is_revoked:
                    old.superseded_by = tariff
                    self._pending_revokes.put(old)
        for listener in self._listeners:
            listener.publish_new_tariffs(published)
        for tariff in published:
            self.broker_proxy.broadcast(tariff.spec)

    def _process_pending_subscriptions(self) -> None:
        for event in self._drain(self._pending_subscriptions):
            self._apply_subscription(event)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def revoked_tariffs(self) -> List[Tariff]:
        """Tariffs killed at the last activation, removed at the next one."""
        return list(self._revoked_tariffs)

    def pending_subscription_count(self) -> int:
        return self._pending_subscriptions.qsize()
