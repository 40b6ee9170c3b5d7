import datetime
import logging
from typing import Any, Dict, List, Optional, Union

from subscription_sync_svc.events import BillingEvents
from subscription_sync_svc.exceptions import AmbiguousPriceError, EmptySubscriptionError
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.payment_guard import PaymentGuard, PaymentMethod
from subscription_sync_svc.policies import BillingPolicy
from subscription_sync_svc.reconcile import create_from_remote, trial_end_from_remote
from subscription_sync_svc.timeutils import to_naive_utc, to_timestamp, utcnow


class SubscriptionBuilder:
    """
    Accumulates the composition of a new subscription and creates it on Stripe.

    Obtain one from ``CustomerBilling.new_subscription``.
    """

    def __init__(self, billing, type: str, prices: Optional[List[str]] = None, policy: Optional[BillingPolicy] = None) -> None:
        self.billing = billing
        self.type = type
        self.policy = policy or BillingPolicy()
        self.items: List[Dict[str, Any]] = []
        self.trial_expires: Optional[datetime.datetime] = None
        self._skip_trial = False
        self.billing_cycle_anchor: Optional[int] = None
        self.metadata: Dict[str, str] = {}

        for price in prices or []:
            self.price(price)

    def price(self, price: Union[str, Dict[str, Any]], quantity: Optional[int] = 1) -> "SubscriptionBuilder":
        """
        Set a price on the builder; an item with the same price is replaced.

        ``price`` is either a price id or an item dict such as ``{"price_data": {...}}``.
        """
        if isinstance(price, str):
            options = {'price': price, 'tax_rates': self.billing.price_tax_rates().get(price)}
        else:
            options = dict(price)
        options['quantity'] = quantity
        options = {key: value for key, value in options.items() if value is not None}

        if options.get('price'):
            for index, item in enumerate(self.items):
                if item.get('price') == options['price']:
                    self.items[index] = options
                    return self
        self.items.append(options)
        return self

    def metered_price(self, price: str) -> "SubscriptionBuilder":
        return self.price(price, None)

    def quantity(self, quantity: Optional[int], price: Optional[str] = None) -> "SubscriptionBuilder":
        if price is None:
            priced = [item for item in self.items if item.get('price')]
            if len(priced) != 1:
                raise AmbiguousPriceError('Price is required when creating subscriptions with multiple prices.')
            price = priced[0]['price']
        return self.price(price, quantity)

    def trial_days(self, days: int) -> "SubscriptionBuilder":
        self.trial_expires = utcnow() + datetime.timedelta(days=days)
        return self

    def trial_until(self, date: datetime.datetime) -> "SubscriptionBuilder":
        self.trial_expires = to_naive_utc(date)
        return self

    def skip_trial(self) -> "SubscriptionBuilder":
        self._skip_trial = True
        return self

    def anchor_billing_cycle_on(self, date: Union[datetime.datetime, int]) -> "SubscriptionBuilder":
        self.billing_cycle_anchor = to_timestamp(date)
        return self

    def with_metadata(self, metadata: Dict[str, str]) -> "SubscriptionBuilder":
        self.metadata = dict(metadata)
        return self

    def with_coupon(self, coupon_id: str) -> "SubscriptionBuilder":
        self.policy.with_coupon(coupon_id)
        return self

    def with_promotion_code(self, promotion_code_id: str) -> "SubscriptionBuilder":
        self.policy.with_promotion_code(promotion_code_id)
        return self

    def trial_end_for_payload(self) -> Optional[Union[str, int]]:
        if self._skip_trial:
            return 'now'
        if self.trial_expires:
            return to_timestamp(self.trial_expires)
        return None

    def build_payload(self) -> Dict[str, Any]:
        metadata = dict(self.metadata)
        if self.type:
            metadata.setdefault('type', self.type)
            metadata.setdefault('name', self.type)

        payload = {
            'billing_cycle_anchor': self.billing_cycle_anchor,
            'coupon': self.policy.coupon.coupon_id,
            'default_tax_rates': self.billing.tax_rates() or None,
            'expand': ['latest_invoice.payment_intent'],
            'metadata': metadata,
            'items': self.items,
            'payment_behavior': self.policy.payment_behavior(),
            'promotion_code': self.policy.coupon.promotion_code_id,
            'proration_behavior': self.policy.proration_behavior(),
            'trial_end': self.trial_end_for_payload(),
            'off_session': True,
        }
        return {key: value for key, value in payload.items() if value is not None}

    def add(self, customer_params: Optional[Dict[str, Any]] = None, subscription_params: Optional[Dict[str, Any]] = None) -> Subscription:
        return self.create(None, customer_params, subscription_params)

    def create_and_send_invoice(
        self,
        customer_params: Optional[Dict[str, Any]] = None,
        subscription_params: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        params = {'days_until_due': 30, 'collection_method': 'send_invoice'}
        params.update(subscription_params or {})
        return self.create(None, customer_params, params)

    def create(
        self,
        payment_method: PaymentMethod = None,
        customer_params: Optional[Dict[str, Any]] = None,
        subscription_params: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """
        Create the subscription on Stripe and mirror it locally.

        :param payment_method: Payment method id (or object) to attach and make default.
        :raises EmptySubscriptionError: when no price was added.
        :raises IncompletePayment: when the first payment needs customer attention.
        """
        if not self.items:
            raise EmptySubscriptionError()

        customer = self.billing.create_or_get_stripe_customer(customer_params)
        if payment_method:
            self.billing.update_default_payment_method(payment_method)

        payload = self.build_payload()
        payload.update(subscription_params or {})
        remote = self.billing.gateway.create_subscription(customer['id'], payload)

        subscription = self.create_subscription(remote)

        guard = PaymentGuard(self.billing.gateway, self.billing.store, self.billing.events)
        guard.handle_payment_failure(subscription, self.policy, payment_method)
        return subscription

    def create_subscription(self, remote: Dict[str, Any]) -> Subscription:
        """
        Mirror a freshly created Stripe subscription, reusing an existing mirror.
        """
        store = self.billing.store
        # Stripe's own trial end wins over the requested one
        trial_ends_at = None if self._skip_trial else (trial_end_from_remote(remote) or self.trial_expires)
        try:
            with store.transaction():
                subscription = create_from_remote(store, self.billing.owner, remote, self.type, trial_ends_at)
        except Exception:
            logging.error(
                f"Subscription {remote['id']} exists on Stripe without a local record; "
                f"the next subscription webhook will create it."
            )
            raise

        logging.info(f"Subscription {subscription.stripe_id} ({self.type}) mirrored for customer {self.billing.owner.id}.")
        self.billing.events.emit(BillingEvents.SUBSCRIPTION_CREATED, subscription)
        return subscription
