import time
import uuid
import logging
from typing import Any, Callable, Dict, List, Optional

import stripe

from subscription_sync_svc.settings import Settings, get_settings

# Configure logging
logging.basicConfig(level=logging.INFO)


class StripeIntegration:
    """
    This class encapsulates the integration with the Stripe API: customers,
    subscriptions, subscription items, usage records, payment intents and
    webhook event verification.

    Each instance talks to Stripe through its own client, so its API key and
    timeout never leak into other instances. Transient connection failures
    are retried with the same idempotency key, so a retried mutation is never
    applied twice by Stripe. Every other Stripe error is propagated to the
    caller unchanged.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.api_key = api_key or settings.stripe_api_key
        if not self.api_key:
            raise EnvironmentError('Stripe API key (STRIPE_API_KEY) not set in environment variables.')
        self.max_retries = max_retries if max_retries is not None else settings.stripe_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.stripe_retry_delay
        self.timeout = timeout if timeout is not None else settings.stripe_timeout
        self.http_client = stripe.RequestsClient(timeout=self.timeout)
        # Retries are handled by _request
        self.client = stripe.StripeClient(self.api_key, http_client=self.http_client, max_network_retries=0)

    def _request(self, description: str, func: Callable[..., Any], *args: Any, idempotent: bool = False, **params: Any) -> Any:
        """
        Call a Stripe service method with the retry mechanism.

        :param description: Short description used in log messages.
        :param func: The StripeClient service method.
        :param idempotent: Attach an idempotency key shared by all attempts.
        :return: The Stripe object returned by the SDK.
        :raises stripe.StripeError: on non-transient failures, or once retries are exhausted.
        """
        params = {key: value for key, value in params.items() if value is not None}
        options = {}
        if idempotent:
            options['idempotency_key'] = str(uuid.uuid4())

        attempt = 0
        while True:
            try:
                return func(*args, params=params, options=options)
            except stripe.APIConnectionError as e:
                attempt += 1
                logging.error(f"Error during {description} (attempt {attempt}): {e}", exc_info=True)
                if attempt >= self.max_retries:
                    raise
                time.sleep(self.retry_delay)
            except Exception as e:
                logging.error(f"General error during {description}: {e}", exc_info=True)
                raise

    # Customers

    def create_customer(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request('customer creation', self.client.customers.create, idempotent=True, **(params or {}))

    def retrieve_customer(self, customer_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return self._request('customer retrieval', self.client.customers.retrieve, customer_id, expand=expand)

    def update_customer(self, customer_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._request('customer update', self.client.customers.update, customer_id, idempotent=True, **params)

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> Dict[str, Any]:
        return self._request(
            'payment method attachment',
            self.client.payment_methods.attach,
            payment_method_id,
            idempotent=True,
            customer=customer_id,
        )

    # Subscriptions

    def create_subscription(self, customer_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a subscription for a customer.

        :param customer_id: The ID of the customer in Stripe.
        :param payload: Subscription creation parameters (items, trial_end, ...).
        :return: The created subscription.
        """
        return self._request(
            'subscription creation', self.client.subscriptions.create, idempotent=True, customer=customer_id, **payload
        )

    def update_subscription(self, subscription_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update an existing subscription.

        :param subscription_id: The ID of the subscription to update.
        :param payload: A dictionary of parameters to update.
        :return: The updated subscription.
        """
        return self._request(
            'subscription update', self.client.subscriptions.update, subscription_id, idempotent=True, **payload
        )

    def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        if not subscription_id or not subscription_id.strip():
            raise ValueError('subscription_id cannot be empty')
        return self._request('subscription retrieval', self.client.subscriptions.retrieve, subscription_id, expand=expand)

    def cancel_subscription(self, subscription_id: str, opts: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Cancel an existing subscription immediately.

        :param subscription_id: The ID of the subscription to cancel.
        :param opts: Cancellation options such as ``invoice_now`` and ``prorate``.
        :return: The canceled subscription.
        """
        return self._request(
            'subscription cancellation', self.client.subscriptions.cancel, subscription_id, idempotent=True, **(opts or {})
        )

    # Subscription items

    def create_item(self, subscription_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            'subscription item creation',
            self.client.subscription_items.create,
            idempotent=True,
            subscription=subscription_id,
            **params,
        )

    def retrieve_item(self, item_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return self._request('subscription item retrieval', self.client.subscription_items.retrieve, item_id, expand=expand)

    def update_item(self, item_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            'subscription item update', self.client.subscription_items.update, item_id, idempotent=True, **params
        )

    def delete_item(self, item_id: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request(
            'subscription item deletion', self.client.subscription_items.delete, item_id, idempotent=True, **(params or {})
        )

    # Usage records

    def create_usage_record(self, item_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Report usage on a metered subscription item.

        :param item_id: The ID of the subscription item.
        :param params: ``quantity``, ``timestamp`` and ``action`` (``increment`` or ``set``).
        :return: The created usage record.
        """
        return self._request(
            'usage record creation', self.client.subscription_items.usage_records.create, item_id, idempotent=True, **params
        )

    def list_usage_record_summaries(self, item_id: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request(
            'usage record listing', self.client.subscription_items.usage_record_summaries.list, item_id, **(params or {})
        )

    # Payment intents

    def retrieve_payment_intent(self, payment_intent_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return self._request(
            'payment intent retrieval', self.client.payment_intents.retrieve, payment_intent_id, expand=expand
        )

    def confirm_payment_intent(self, payment_intent_id: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request(
            'payment intent confirmation',
            self.client.payment_intents.confirm,
            payment_intent_id,
            idempotent=True,
            **(params or {}),
        )

    # Webhooks

    def process_webhook_event(self, payload: str, sig_header: str, endpoint_secret: str) -> Dict[str, Any]:
        """
        Process and validate a webhook event from Stripe.

        :param payload: The raw payload from the webhook.
        :param sig_header: The Stripe-Signature header from the webhook.
        :param endpoint_secret: The webhook endpoint secret used for signature verification.
        :return: The reconstructed event from Stripe as a dictionary.
        :raises ValueError: if signature verification fails.
        """
        try:
            event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
            return event
        except stripe.SignatureVerificationError as e:
            logging.error(f'Webhook signature verification failed: {e}', exc_info=True)
            raise ValueError('Invalid signature.') from e
        except Exception as e:
            logging.error(f'General error processing webhook event: {e}', exc_info=True)
            raise
