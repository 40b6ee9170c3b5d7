from typing import Any, Dict, List, Optional

from subscription_sync_svc.exceptions import IncompletePayment


class Payment:
    """
    Wrapper around a Stripe PaymentIntent.
    """

    def __init__(self, payment_intent: Dict[str, Any], gateway=None) -> None:
        self.payment_intent = payment_intent
        self.gateway = gateway

    @property
    def id(self) -> str:
        return self.payment_intent['id']

    @property
    def status(self) -> Optional[str]:
        return self.payment_intent.get('status')

    def raw_amount(self) -> int:
        return self.payment_intent.get('amount', 0)

    def client_secret(self) -> Optional[str]:
        return self.payment_intent.get('client_secret')

    def requires_payment_method(self) -> bool:
        return self.status == 'requires_payment_method'

    def requires_action(self) -> bool:
        return self.status == 'requires_action'

    def requires_confirmation(self) -> bool:
        return self.status == 'requires_confirmation'

    def requires_capture(self) -> bool:
        return self.status == 'requires_capture'

    def is_canceled(self) -> bool:
        return self.status == 'canceled'

    def is_succeeded(self) -> bool:
        return self.status == 'succeeded'

    def is_processing(self) -> bool:
        return self.status == 'processing'

    def validate(self) -> bool:
        """
        Validate that the payment went through.

        :raises IncompletePayment: when the payment needs a new payment method,
            a customer action, or a confirmation.
        """
        if self.requires_payment_method():
            raise IncompletePayment.payment_method_required(self)
        if self.requires_action():
            raise IncompletePayment.requires_action(self)
        if self.requires_confirmation():
            raise IncompletePayment.requires_confirmation(self)
        return True

    def confirm(self, params: Optional[Dict[str, Any]] = None) -> "Payment":
        self.payment_intent = self.gateway.confirm_payment_intent(self.id, params or {})
        return self

    def refresh(self, expand: Optional[List[str]] = None) -> "Payment":
        self.payment_intent = self.gateway.retrieve_payment_intent(self.id, expand=expand)
        return self

    def subscription_status(self) -> Optional[str]:
        """Status of the subscription reached through an expanded ``invoice.subscription``."""
        invoice = self.payment_intent.get('invoice')
        if not isinstance(invoice, dict):
            return None
        subscription = invoice.get('subscription')
        if not isinstance(subscription, dict):
            return None
        return subscription.get('status')

    def __repr__(self) -> str:
        return f"<Payment(id={self.payment_intent.get('id')}, status={self.status})>"
