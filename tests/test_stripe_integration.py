from types import SimpleNamespace

import stripe
import pytest

from subscription_sync_svc.stripe_integration import StripeIntegration


class FakeService:
    """A fake StripeClient service to simulate API calls."""

    def __init__(self, failures=0, error=None):
        self.call_count = 0
        self.failures = failures
        self.error = error or stripe.APIConnectionError('Simulated connection error')
        self.calls = []

    def _call(self, args, params, options):
        self.call_count += 1
        self.calls.append((args, params or {}, options or {}))
        if self.call_count <= self.failures:
            raise self.error

    def create(self, *args, params=None, options=None):
        self._call(args, params, options)
        params = params or {}
        if args:
            return {"id": "mbur_123", "subscription_item": args[0], **params}
        return {"id": "sub_123", "customer": params.get("customer"), "items": params.get("items")}

    def update(self, subscription_id, params=None, options=None):
        self._call((subscription_id,), params, options)
        updated = {"id": subscription_id}
        updated.update(params or {})
        return updated

    def retrieve(self, subscription_id, params=None, options=None):
        self._call((subscription_id,), params, options)
        return {"id": subscription_id, "status": "active"}

    def cancel(self, subscription_id, params=None, options=None):
        self._call((subscription_id,), params, options)
        return {"id": subscription_id, "status": "canceled"}

    def list(self, item_id, params=None, options=None):
        self._call((item_id,), params, options)
        return {"object": "list", "data": [{"subscription_item": item_id, "total_usage": 12}]}


class FakeWebhook:
    @staticmethod
    def construct_event(payload, sig_header, endpoint_secret):
        if sig_header != 'valid_signature':
            raise stripe.SignatureVerificationError('Invalid signature', sig_header)
        return {"id": "evt_123", "payload": payload}


@pytest.fixture
def stripe_integration():
    # Create an instance of StripeIntegration with lower retry settings for tests
    return StripeIntegration(max_retries=3, retry_delay=0)


def use_subscriptions(stripe_integration, fake):
    stripe_integration.client = SimpleNamespace(subscriptions=fake)


def test_create_subscription_retries_connection_errors(stripe_integration):
    fake_service = FakeService(failures=2)
    use_subscriptions(stripe_integration, fake_service)

    result = stripe_integration.create_subscription('cus_test', {"items": [{"price": "price_test"}]})
    assert result["id"] == "sub_123"
    assert result["customer"] == "cus_test"
    assert fake_service.call_count == 3


def test_retried_mutation_reuses_idempotency_key(stripe_integration):
    fake_service = FakeService(failures=2)
    use_subscriptions(stripe_integration, fake_service)

    stripe_integration.update_subscription('sub_test', {"metadata": {"key": "value"}})
    keys = {options['idempotency_key'] for _, _, options in fake_service.calls}
    assert len(keys) == 1
    assert all('idempotency_key' not in params for _, params, _ in fake_service.calls)


def test_retries_exhausted(stripe_integration):
    fake_service = FakeService(failures=10)
    use_subscriptions(stripe_integration, fake_service)

    with pytest.raises(stripe.APIConnectionError):
        stripe_integration.update_subscription('sub_test', {"metadata": {"key": "value"}})
    assert fake_service.call_count == 3


def test_non_transient_error_is_not_retried(stripe_integration):
    fake_service = FakeService(failures=1, error=stripe.AuthenticationError('Simulated authentication error'))
    use_subscriptions(stripe_integration, fake_service)

    with pytest.raises(stripe.AuthenticationError):
        stripe_integration.update_subscription('sub_test', {"metadata": {"key": "value"}})
    assert fake_service.call_count == 1


def test_update_subscription_drops_empty_params(stripe_integration):
    fake_service = FakeService()
    use_subscriptions(stripe_integration, fake_service)

    result = stripe_integration.update_subscription('sub_test', {"metadata": {"key": "value"}, "coupon": None})
    assert result["id"] == "sub_test"
    assert result["metadata"]["key"] == "value"
    assert "coupon" not in result


def test_retrieve_subscription_requires_id(stripe_integration):
    with pytest.raises(ValueError, match="subscription_id cannot be empty"):
        stripe_integration.retrieve_subscription('  ')


def test_retrieve_subscription_is_not_idempotency_keyed(stripe_integration):
    fake_service = FakeService()
    use_subscriptions(stripe_integration, fake_service)

    result = stripe_integration.retrieve_subscription('sub_test', expand=['latest_invoice.payment_intent'])
    assert result["status"] == "active"
    _, params, options = fake_service.calls[0]
    assert 'idempotency_key' not in options
    assert params['expand'] == ['latest_invoice.payment_intent']


def test_cancel_subscription_success(stripe_integration):
    fake_service = FakeService()
    use_subscriptions(stripe_integration, fake_service)

    result = stripe_integration.cancel_subscription('sub_cancel', {"invoice_now": True, "prorate": False})
    assert result["id"] == "sub_cancel"
    assert result["status"] == "canceled"
    _, params, _ = fake_service.calls[0]
    assert params["invoice_now"] is True
    assert params["prorate"] is False


def test_create_usage_record_is_idempotency_keyed(stripe_integration):
    fake_service = FakeService(failures=1)
    stripe_integration.client = SimpleNamespace(subscription_items=SimpleNamespace(usage_records=fake_service))

    record = stripe_integration.create_usage_record('si_1', {"quantity": 4, "action": "increment", "timestamp": 1700000000})
    assert record["subscription_item"] == 'si_1'
    assert record["quantity"] == 4
    assert fake_service.call_count == 2
    assert len({options['idempotency_key'] for _, _, options in fake_service.calls}) == 1


def test_list_usage_record_summaries(stripe_integration):
    fake_service = FakeService()
    stripe_integration.client = SimpleNamespace(subscription_items=SimpleNamespace(usage_record_summaries=fake_service))

    summaries = stripe_integration.list_usage_record_summaries('si_1', {"limit": 5})
    assert summaries["data"][0]["total_usage"] == 12
    args, params, options = fake_service.calls[0]
    assert args == ('si_1',)
    assert params == {"limit": 5}
    assert options == {}


def test_each_instance_keeps_its_own_timeout():
    default_http_client = stripe.default_http_client

    first = StripeIntegration(timeout=5)
    second = StripeIntegration(timeout=80)

    assert first.http_client is not second.http_client
    assert first.client is not second.client
    assert first.http_client._timeout == 5
    assert second.http_client._timeout == 80
    assert stripe.default_http_client is default_http_client


def test_missing_api_key(monkeypatch):
    monkeypatch.delenv('STRIPE_API_KEY', raising=False)
    with pytest.raises(EnvironmentError):
        StripeIntegration()


def test_process_webhook_event_success(monkeypatch, stripe_integration):
    monkeypatch.setattr(stripe, 'Webhook', FakeWebhook)

    payload = '{"data": "test"}'
    result = stripe_integration.process_webhook_event(payload, 'valid_signature', 'secret')
    assert result["id"] == "evt_123"
    assert result["payload"] == payload


def test_process_webhook_event_invalid_signature(monkeypatch, stripe_integration):
    monkeypatch.setattr(stripe, 'Webhook', FakeWebhook)

    with pytest.raises(ValueError) as excinfo:
        stripe_integration.process_webhook_event('{"data": "test"}', 'invalid_signature', 'secret')
    assert 'Invalid signature' in str(excinfo.value)
