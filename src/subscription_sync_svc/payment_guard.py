import logging
from typing import Any, Dict, Optional, Union

import stripe

from subscription_sync_svc.events import BillingEvents, EventDispatcher
from subscription_sync_svc.exceptions import IncompletePayment, IncompletePaymentReason
from subscription_sync_svc.payment import Payment
from subscription_sync_svc.policies import BillingPolicy
from subscription_sync_svc.store import SubscriptionStore

PaymentMethod = Union[str, Dict[str, Any], None]


def payment_method_id(payment_method: PaymentMethod) -> Optional[str]:
    if payment_method is None:
        return None
    if isinstance(payment_method, str):
        return payment_method
    return payment_method.get('id')


class PaymentGuard:
    """
    Surfaces incomplete payments left behind by a subscription operation.

    After ``handle_payment_failure`` returns, the subscription either needs no
    further payment action, or an ``IncompletePayment`` has been raised.
    """

    def __init__(self, gateway, store: SubscriptionStore, events: Optional[EventDispatcher] = None) -> None:
        self.gateway = gateway
        self.store = store
        self.events = events or EventDispatcher()

    def latest_payment(self, subscription) -> Optional[Payment]:
        remote = self.gateway.retrieve_subscription(subscription.stripe_id, expand=['latest_invoice.payment_intent'])
        invoice = remote.get('latest_invoice')
        if not isinstance(invoice, dict):
            return None
        payment_intent = invoice.get('payment_intent')
        if not isinstance(payment_intent, dict):
            return None
        return Payment(payment_intent, self.gateway)

    def handle_payment_failure(self, subscription, policy: BillingPolicy, payment_method: PaymentMethod = None) -> None:
        try:
            if policy.confirmation.confirm_incomplete_payment and subscription.has_incomplete_payment():
                payment = self.latest_payment(subscription)
                if payment is not None:
                    try:
                        payment.validate()
                    except IncompletePayment as e:
                        if e.reason != IncompletePaymentReason.NEEDS_CONFIRMATION:
                            raise
                        self._confirm(subscription, payment, policy, payment_method)
        except IncompletePayment as e:
            logging.info(
                f"Subscription {subscription.stripe_id} has an incomplete payment ({e.reason.value}) on {e.payment.id}."
            )
            self.events.emit(BillingEvents.PAYMENT_INCOMPLETE, subscription, payment=e.payment, reason=e.reason)
            raise
        finally:
            policy.reset_confirmation()

    def _confirm(self, subscription, payment: Payment, policy: BillingPolicy, payment_method: PaymentMethod) -> None:
        params = dict(policy.confirmation.options)
        params['expand'] = ['invoice.subscription']
        method_id = payment_method_id(payment_method)
        if method_id:
            params['payment_method'] = method_id

        try:
            payment.confirm(params)
        except stripe.CardError as e:
            logging.info(f"Confirmation of payment {payment.id} was declined: {e}")
            payment.refresh(expand=['invoice.subscription'])

        status = payment.subscription_status()
        if status:
            with self.store.transaction():
                subscription.stripe_status = status

        if subscription.has_incomplete_payment():
            payment.validate()
