import datetime
import logging
from typing import Any, Dict, List, Optional, Union

from subscription_sync_svc import lifecycle
from subscription_sync_svc.events import BillingEvents, EventDispatcher
from subscription_sync_svc.exceptions import (
    DuplicatePriceError,
    EmptySubscriptionError,
    ItemNotFoundError,
    LastPriceError,
    SubscriptionNotResumableError,
)
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.payment import Payment
from subscription_sync_svc.payment_guard import PaymentGuard
from subscription_sync_svc.policies import BillingPolicy, ProrationBehavior
from subscription_sync_svc.reconcile import current_period_end, reconcile_subscription
from subscription_sync_svc.store import SubscriptionStore
from subscription_sync_svc.swap_planner import SwapPrices, TaxRateResolver, is_metered, plan_swap
from subscription_sync_svc.timeutils import from_timestamp, to_naive_utc, to_timestamp, utcnow

LATEST_PAYMENT = ['latest_invoice.payment_intent']


class SubscriptionManager:
    """
    Commands that change a mirrored subscription.

    Every command calls Stripe first and only writes locally after Stripe
    answered, recomputing the local record from the returned snapshot.
    """

    def __init__(
        self,
        subscription: Subscription,
        gateway,
        store: SubscriptionStore,
        policy: Optional[BillingPolicy] = None,
        events: Optional[EventDispatcher] = None,
        guard: Optional[PaymentGuard] = None,
        tax_rates: Optional[TaxRateResolver] = None,
    ) -> None:
        self.subscription = subscription
        self.gateway = gateway
        self.store = store
        self.policy = policy or BillingPolicy()
        self.events = events or EventDispatcher()
        self.guard = guard or PaymentGuard(gateway, store, self.events)
        self.tax_rates = tax_rates or (lambda price: None)
        self.billing_cycle_anchor: Optional[Union[str, int]] = None

    # Remote access

    def as_stripe_subscription(self, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return self.gateway.retrieve_subscription(self.subscription.stripe_id, expand=expand)

    def update_stripe_subscription(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return self.gateway.update_subscription(self.subscription.stripe_id, params)

    def _sync(self, remote: Dict[str, Any], **changes: Any) -> None:
        with self.store.transaction():
            reconcile_subscription(self.store, self.subscription, remote)
            for key, value in changes.items():
                setattr(self.subscription, key, value)

    def _find_item_or_fail(self, price: str):
        item = self.subscription.find_item(price)
        if item is None:
            raise ItemNotFoundError.for_price(self.subscription, price)
        return item

    # Quantities

    def increment_quantity(self, count: int = 1, price: Optional[str] = None) -> "SubscriptionManager":
        lifecycle.guard_against_incomplete(self.subscription)
        return self.update_quantity(self._current_quantity(price) + count, price)

    def increment_and_invoice(self, count: int = 1, price: Optional[str] = None) -> "SubscriptionManager":
        lifecycle.guard_against_incomplete(self.subscription)
        self.policy.always_invoice()
        return self.increment_quantity(count, price)

    def decrement_quantity(self, count: int = 1, price: Optional[str] = None) -> "SubscriptionManager":
        lifecycle.guard_against_incomplete(self.subscription)
        return self.update_quantity(self._current_quantity(price) - count, price)

    def decrement_and_invoice(self, count: int = 1, price: Optional[str] = None) -> "SubscriptionManager":
        lifecycle.guard_against_incomplete(self.subscription)
        self.policy.always_invoice()
        return self.decrement_quantity(count, price)

    def _current_quantity(self, price: Optional[str]) -> int:
        if price:
            return self._find_item_or_fail(price).quantity or 0
        lifecycle.guard_against_multiple_prices(self.subscription)
        return self.subscription.quantity or 0

    def update_quantity(self, quantity: int, price: Optional[str] = None) -> "SubscriptionManager":
        lifecycle.guard_against_incomplete(self.subscription)
        if quantity < 0:
            raise ValueError('A subscription quantity cannot be negative.')

        if price:
            item = self._find_item_or_fail(price)
            self.gateway.update_item(item.stripe_id, {
                'quantity': quantity,
                'payment_behavior': self.policy.payment_behavior(),
                'proration_behavior': self.policy.proration_behavior(),
            })
            remote = self.as_stripe_subscription()
        else:
            lifecycle.guard_against_multiple_prices(self.subscription)
            current = self.as_stripe_subscription()
            item_id = current['items']['data'][0]['id']
            remote = self.update_stripe_subscription({
                'payment_behavior': self.policy.payment_behavior(),
                'proration_behavior': self.policy.proration_behavior(),
                'expand': LATEST_PAYMENT,
                'items': [{'id': item_id, 'quantity': quantity}],
            })

        self._sync(remote)
        self.events.emit(BillingEvents.SUBSCRIPTION_UPDATED, self.subscription)
        self.guard.handle_payment_failure(self.subscription, self.policy)
        return self

    # Prices

    def anchor_billing_cycle_on(self, date: Union[str, int, datetime.datetime] = 'unchanged') -> "SubscriptionManager":
        self.billing_cycle_anchor = date if isinstance(date, str) else to_timestamp(date)
        return self

    def swap(self, prices: SwapPrices, params: Optional[Dict[str, Any]] = None) -> "SubscriptionManager":
        """
        Swap the subscription to new prices.

        Items whose price is not requested are deleted on Stripe and the
        local items are reconciled with the returned subscription.
        """
        if not isinstance(prices, str) and len(prices) == 0:
            raise EmptySubscriptionError('Please provide at least one price when swapping.')

        lifecycle.guard_against_incomplete(self.subscription)

        current = self.as_stripe_subscription()
        payload = plan_swap(
            self.subscription,
            prices,
            current['items']['data'],
            self.policy,
            params,
            self.billing_cycle_anchor,
            self.tax_rates,
        )
        remote = self.update_stripe_subscription(payload)

        self._sync(remote, ends_at=None)
        logging.info(f"Subscription {self.subscription.stripe_id} swapped to {[i.stripe_price for i in self.subscription.items]}.")
        self.events.emit(BillingEvents.SUBSCRIPTION_UPDATED, self.subscription)
        self.guard.handle_payment_failure(self.subscription, self.policy)
        return self

    def swap_and_invoice(self, prices: SwapPrices, params: Optional[Dict[str, Any]] = None) -> "SubscriptionManager":
        self.policy.always_invoice()
        return self.swap(prices, params)

    def swap_item(self, price: str, new_price: str, params: Optional[Dict[str, Any]] = None) -> "SubscriptionManager":
        """Swap a single item of the subscription to another price."""
        lifecycle.guard_against_incomplete(self.subscription)
        item = self._find_item_or_fail(price)

        payload = {
            'price': new_price,
            'quantity': item.quantity,
            'payment_behavior': self.policy.payment_behavior(),
            'proration_behavior': self.policy.proration_behavior(),
            'tax_rates': self.tax_rates(new_price),
        }
        payload.update(params or {})
        self.gateway.update_item(item.stripe_id, {k: v for k, v in payload.items() if v is not None})

        self._sync(self.as_stripe_subscription())
        self.events.emit(BillingEvents.SUBSCRIPTION_UPDATED, self.subscription)
        self.guard.handle_payment_failure(self.subscription, self.policy)
        return self

    def add_price(self, price: str, quantity: Optional[int] = 1, params: Optional[Dict[str, Any]] = None) -> "SubscriptionManager":
        lifecycle.guard_against_incomplete(self.subscription)

        if self.subscription.find_item(price) is not None:
            raise DuplicatePriceError.for_price(self.subscription, price)

        payload = {
            'price': price,
            'quantity': quantity,
            'tax_rates': self.tax_rates(price),
            'payment_behavior': self.policy.payment_behavior(),
            'proration_behavior': self.policy.proration_behavior(),
        }
        payload.update(params or {})
        self.gateway.create_item(self.subscription.stripe_id, {k: v for k, v in payload.items() if v is not None})

        self._sync(self.as_stripe_subscription())
        self.events.emit(BillingEvents.SUBSCRIPTION_UPDATED, self.subscription)
        self.guard.handle_payment_failure(self.subscription, self.policy)
        return self

    def add_price_and_invoice(self, price: str, quantity: Optional[int] = 1, params: Optional[Dict[str, Any]] = None) -> "SubscriptionManager":
        self.policy.always_invoice()
        return self.add_price(price, quantity, params)

    def add_metered_price(self, price: str, params: Optional[Dict[str, Any]] = None) -> "SubscriptionManager":
        return self.add_price(price, None, params)

    def add_metered_price_and_invoice(self, price: str, params: Optional[Dict[str, Any]] = None) -> "SubscriptionManager":
        return self.add_price_and_invoice(price, None, params)

    def remove_price(self, price: str) -> "SubscriptionManager":
        if lifecycle.has_single_price(self.subscription) or len(self.subscription.items) < 2:
            raise LastPriceError.for_subscription(self.subscription)

        item = self._find_item_or_fail(price)
        remote_item = self.gateway.retrieve_item(item.stripe_id)
        params = {'proration_behavior': self.policy.proration_behavior()}
        if is_metered(remote_item['price']):
            params['clear_usage'] = True
        self.gateway.delete_item(remote_item['id'], params)

        self._sync(self.as_stripe_subscription())
        self.events.emit(BillingEvents.SUBSCRIPTION_UPDATED, self.subscription)
        return self

    # Metered usage

    def _usage_item(self, price: Optional[str]):
        if not price:
            lifecycle.guard_against_multiple_prices(self.subscription)
        return self._find_item_or_fail(price or self.subscription.stripe_price)

    def report_usage(
        self,
        quantity: int = 1,
        timestamp: Optional[Union[datetime.datetime, int]] = None,
        price: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Report usage for a metered price.

        Without a timestamp the usage is added to the current period; with
        one, it replaces the usage recorded at that moment.
        """
        item = self._usage_item(price)
        return self.gateway.create_usage_record(item.stripe_id, {
            'quantity': quantity,
            'action': 'set' if timestamp is not None else 'increment',
            'timestamp': to_timestamp(timestamp if timestamp is not None else utcnow()),
        })

    def report_usage_for(
        self,
        price: str,
        quantity: int = 1,
        timestamp: Optional[Union[datetime.datetime, int]] = None,
    ) -> Dict[str, Any]:
        return self.report_usage(quantity, timestamp, price)

    def usage_records(self, params: Optional[Dict[str, Any]] = None, price: Optional[str] = None) -> List[Dict[str, Any]]:
        item = self._usage_item(price)
        return self.gateway.list_usage_record_summaries(item.stripe_id, params or {})['data']

    def usage_records_for(self, price: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return self.usage_records(params, price)

    # Cancellation

    def cancel(self) -> "SubscriptionManager":
        """Cancel the subscription at the end of the billing period."""
        remote = self.update_stripe_subscription({'cancel_at_period_end': True})

        with self.store.transaction():
            self.subscription.stripe_status = remote.get('status') or self.subscription.stripe_status
            if self.subscription.on_trial():
                self.subscription.ends_at = self.subscription.trial_ends_at
            else:
                self.subscription.ends_at = from_timestamp(current_period_end(remote))

        self.events.emit(BillingEvents.SUBSCRIPTION_CANCELED, self.subscription)
        return self

    def cancel_at(self, date: Union[datetime.datetime, int]) -> "SubscriptionManager":
        remote = self.update_stripe_subscription({
            'cancel_at': to_timestamp(date),
            'proration_behavior': self.policy.proration_behavior(),
        })

        with self.store.transaction():
            self.subscription.stripe_status = remote.get('status') or self.subscription.stripe_status
            self.subscription.ends_at = from_timestamp(remote.get('cancel_at'))

        self.events.emit(BillingEvents.SUBSCRIPTION_CANCELED, self.subscription)
        return self

    def cancel_now(self) -> "SubscriptionManager":
        """Cancel the subscription immediately without invoicing."""
        self.gateway.cancel_subscription(self.subscription.stripe_id, {
            'prorate': self.policy.proration.behavior == ProrationBehavior.CREATE_PRORATIONS,
        })
        return self.mark_as_canceled()

    def cancel_now_and_invoice(self) -> "SubscriptionManager":
        self.gateway.cancel_subscription(self.subscription.stripe_id, {
            'invoice_now': True,
            'prorate': self.policy.proration.behavior == ProrationBehavior.CREATE_PRORATIONS,
        })
        return self.mark_as_canceled()

    def mark_as_canceled(self) -> "SubscriptionManager":
        with self.store.transaction():
            self.subscription.stripe_status = lifecycle.CANCELED
            self.subscription.ends_at = utcnow()
        self.events.emit(BillingEvents.SUBSCRIPTION_CANCELED, self.subscription)
        return self

    def resume(self) -> "SubscriptionManager":
        if not self.subscription.on_grace_period():
            raise SubscriptionNotResumableError()

        remote = self.update_stripe_subscription({
            'cancel_at_period_end': False,
            'trial_end': to_timestamp(self.subscription.trial_ends_at) if self.subscription.on_trial() else 'now',
        })

        with self.store.transaction():
            self.subscription.stripe_status = remote.get('status') or self.subscription.stripe_status
            self.subscription.ends_at = None

        self.events.emit(BillingEvents.SUBSCRIPTION_RESUMED, self.subscription)
        return self

    # Trials

    def skip_trial(self) -> "SubscriptionManager":
        self.subscription.skip_trial()
        return self

    def end_trial(self) -> "SubscriptionManager":
        if self.subscription.trial_ends_at is None:
            return self

        self.update_stripe_subscription({
            'trial_end': 'now',
            'proration_behavior': self.policy.proration_behavior(),
        })

        with self.store.transaction():
            self.subscription.trial_ends_at = None
        return self

    def extend_trial(self, date: datetime.datetime) -> "SubscriptionManager":
        date = to_naive_utc(date)
        if date < utcnow():
            raise ValueError("Extending a subscription's trial requires a date in the future.")

        self.update_stripe_subscription({
            'trial_end': to_timestamp(date),
            'proration_behavior': self.policy.proration_behavior(),
        })

        with self.store.transaction():
            self.subscription.trial_ends_at = date
        return self

    # Status and payments

    def sync_stripe_status(self) -> "SubscriptionManager":
        remote = self.as_stripe_subscription()
        with self.store.transaction():
            self.subscription.stripe_status = remote['status']
        return self

    def pending(self) -> bool:
        """Determine if the subscription has pending updates."""
        return bool(self.as_stripe_subscription().get('pending_update'))

    def latest_payment(self) -> Optional[Payment]:
        return self.guard.latest_payment(self.subscription)

    # Discounts

    def apply_coupon(self, coupon: str) -> None:
        self.update_stripe_subscription({'coupon': coupon})

    def apply_promotion_code(self, promotion_code: str) -> None:
        self.update_stripe_subscription({'promotion_code': promotion_code})
