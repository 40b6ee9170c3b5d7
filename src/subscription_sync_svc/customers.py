import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

from subscription_sync_svc import lifecycle
from subscription_sync_svc.builder import SubscriptionBuilder
from subscription_sync_svc.events import EventDispatcher
from subscription_sync_svc.models.customer import Customer
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.payment_guard import PaymentMethod, payment_method_id
from subscription_sync_svc.policies import BillingPolicy
from subscription_sync_svc.store import SubscriptionStore
from subscription_sync_svc.subscriptions import SubscriptionManager
from subscription_sync_svc.timeutils import utcnow


class CustomerBilling:
    """
    Billing operations and subscription queries for one owner.

    The gateway, store and event dispatcher are passed in explicitly; tax
    rate ids are supplied by the caller, globally and per price.
    """

    def __init__(
        self,
        owner: Customer,
        gateway,
        store: SubscriptionStore,
        events: Optional[EventDispatcher] = None,
        activation: lifecycle.ActivationPolicy = lifecycle.DEFAULT_ACTIVATION_POLICY,
        tax_rates: Optional[List[str]] = None,
        price_tax_rates: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self.owner = owner
        self.gateway = gateway
        self.store = store
        self.events = events or EventDispatcher()
        self.activation = activation
        self._tax_rates = list(tax_rates or [])
        self._price_tax_rates = dict(price_tax_rates or {})

    # Taxes

    def tax_rates(self) -> List[str]:
        return self._tax_rates

    def price_tax_rates(self) -> Dict[str, List[str]]:
        return self._price_tax_rates

    # Stripe customer

    def create_as_stripe_customer(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self.owner.has_stripe_id():
            raise ValueError(f"Customer {self.owner.id} is already a Stripe customer with ID {self.owner.stripe_id}.")

        payload = {'email': self.owner.email, 'name': self.owner.name}
        payload.update(params or {})
        customer = self.gateway.create_customer({k: v for k, v in payload.items() if v is not None})

        with self.store.transaction():
            self.owner.stripe_id = customer['id']
        logging.info(f"Created Stripe customer {customer['id']} for customer {self.owner.id}.")
        return customer

    def create_or_get_stripe_customer(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if self.owner.has_stripe_id():
            return self.gateway.retrieve_customer(self.owner.stripe_id)
        return self.create_as_stripe_customer(params)

    def update_default_payment_method(self, payment_method: PaymentMethod) -> Dict[str, Any]:
        method_id = payment_method_id(payment_method)
        customer = self.create_or_get_stripe_customer()
        if isinstance(payment_method, str) or payment_method.get('customer') != customer['id']:
            self.gateway.attach_payment_method(method_id, customer['id'])
        return self.gateway.update_customer(customer['id'], {
            'invoice_settings': {'default_payment_method': method_id},
        })

    # Subscriptions

    def new_subscription(self, type: str = 'default', prices: Optional[Iterable[str]] = None) -> SubscriptionBuilder:
        if isinstance(prices, str):
            prices = [prices]
        return SubscriptionBuilder(self, type, list(prices or []))

    def manage(self, subscription: Subscription, policy: Optional[BillingPolicy] = None) -> SubscriptionManager:
        return SubscriptionManager(
            subscription,
            self.gateway,
            self.store,
            policy=policy,
            events=self.events,
            tax_rates=lambda price: self._price_tax_rates.get(price),
        )

    def subscription(self, type: Optional[str] = 'default') -> Optional[Subscription]:
        return self.store.find_subscription(self.owner, type)

    def subscribed(self, type: Optional[str] = 'default', price: Optional[str] = None) -> bool:
        subscription = self.subscription(type)
        if subscription is None or not subscription.valid(self.activation):
            return False
        return price is None or subscription.has_price(price)

    def subscribed_to_product(self, products: Iterable[str], type: Optional[str] = 'default') -> bool:
        subscription = self.subscription(type)
        if subscription is None or not subscription.valid(self.activation):
            return False
        return any(subscription.has_product(product) for product in products)

    def subscribed_to_price(self, prices: Iterable[str], type: Optional[str] = 'default') -> bool:
        subscription = self.subscription(type)
        if subscription is None or not subscription.valid(self.activation):
            return False
        return any(subscription.has_price(price) for price in prices)

    def on_product(self, product: str) -> bool:
        return any(s.valid(self.activation) and s.has_product(product) for s in self.owner.subscriptions)

    def on_price(self, price: str) -> bool:
        return any(s.valid(self.activation) and s.has_price(price) for s in self.owner.subscriptions)

    # Trials

    def on_trial(self, type: str = 'default', price: Optional[str] = None) -> bool:
        if type == 'default' and self.on_generic_trial():
            return True

        subscription = self.subscription(type)
        if subscription is None or not subscription.on_trial():
            return False
        return price is None or subscription.has_price(price)

    def has_expired_trial(self, type: str = 'default', price: Optional[str] = None) -> bool:
        if type == 'default' and self.has_expired_generic_trial():
            return True

        subscription = self.subscription(type)
        if subscription is None or not subscription.has_expired_trial():
            return False
        return price is None or subscription.has_price(price)

    def on_generic_trial(self) -> bool:
        return self.owner.trial_ends_at is not None and self.owner.trial_ends_at > utcnow()

    def has_expired_generic_trial(self) -> bool:
        return self.owner.trial_ends_at is not None and self.owner.trial_ends_at < utcnow()

    def trial_ends_at(self, type: str = 'default') -> Optional[datetime.datetime]:
        if type == 'default' and self.on_generic_trial():
            return self.owner.trial_ends_at

        subscription = self.subscription(type)
        return subscription.trial_ends_at if subscription is not None else self.owner.trial_ends_at
