import inspect

from fakes import remote_subscription, stripe_event
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.routers import stripe_router


def create(client, customer, prices=("price_basic",), **extra):
    payload = {"customer_id": customer.id, "prices": list(prices)}
    payload.update(extra)
    return client.post("/api/stripe/subscription", json=payload)


def test_create_subscription_success(client, customer):
    response = create(client, customer, quantity=2)
    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["subscription"]["status"] == "active"
    assert data["subscription"]["price"] == "price_basic"
    assert data["subscription"]["quantity"] == 2
    assert data["subscription"]["valid"] is True


def test_create_subscription_with_trial(client, customer):
    response = create(client, customer, trial_days=7)
    assert response.status_code == 201
    data = response.json()
    assert data["subscription"]["status"] == "trialing"
    assert data["subscription"]["trial_ends_at"] is not None


def test_create_subscription_unknown_customer(client, customer):
    response = client.post("/api/stripe/subscription", json={"customer_id": customer.id + 100, "prices": ["price_basic"]})
    assert response.status_code == 404


def test_create_subscription_without_prices(client, customer):
    response = create(client, customer, prices=())
    assert response.status_code == 400
    assert "At least one price is required" in response.json()["detail"]


def test_create_subscription_payment_requires_action(client, customer, gateway, db_session):
    gateway.next_status = 'incomplete'
    gateway.next_payment_intent_status = 'requires_action'

    response = create(client, customer)
    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["reason"] == "needs_action"
    assert detail["payment_intent"].startswith("pi_")
    # The incomplete subscription is still mirrored so a later webhook can finish it
    assert db_session.query(Subscription).count() == 1


def test_process_webhook_success(client, customer, gateway, db_session, monkeypatch):
    gateway.webhook_event = stripe_event('customer.subscription.created', remote_subscription('sub_123'), event_id='evt_test')
    monkeypatch.setenv("STRIPE_ENDPOINT_SECRET", "secret_test")

    headers = {"Stripe-Signature": "valid_signature"}
    response = client.post("/api/stripe/webhook", content='{"test": "data"}', headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["event_id"] == "evt_test"
    assert data["type"] == "customer.subscription.created"
    assert db_session.query(Subscription).filter(Subscription.stripe_id == 'sub_123').count() == 1
    assert gateway.called('process_webhook_event') == [
        ('process_webhook_event', '{"test": "data"}', 'valid_signature', 'secret_test')
    ]


def test_process_webhook_missing_signature(client, gateway):
    response = client.post("/api/stripe/webhook", content='{"test": "data"}')
    assert response.status_code == 400
    data = response.json()
    assert "Missing Stripe-Signature header" in data["detail"]
    assert gateway.called('process_webhook_event') == []


def test_process_webhook_invalid_signature(client, monkeypatch):
    monkeypatch.setenv("STRIPE_ENDPOINT_SECRET", "secret_test")

    response = client.post("/api/stripe/webhook", content='{"test": "data"}', headers={"Stripe-Signature": "bad"})
    assert response.status_code == 400
    assert "Invalid signature" in response.json()["detail"]


def test_process_webhook_missing_endpoint_secret(client, monkeypatch):
    monkeypatch.delenv("STRIPE_ENDPOINT_SECRET", raising=False)
    response = client.post("/api/stripe/webhook", content='{"test": "data"}', headers={"Stripe-Signature": "sig"})
    assert response.status_code == 500


def test_process_webhook_processor_failure(client, gateway, monkeypatch):
    gateway.webhook_event = stripe_event('customer.subscription.updated', remote_subscription('sub_fail'), event_id='evt_fail')

    def failing_process_event(event, db, events=None):
        raise Exception("Processor error")

    monkeypatch.setattr('subscription_sync_svc.routers.stripe_router.process_event', failing_process_event)
    monkeypatch.setenv("STRIPE_ENDPOINT_SECRET", "secret_test")

    headers = {"Stripe-Signature": "valid_signature"}
    response = client.post("/api/stripe/webhook", content='{"test": "data"}', headers=headers)
    assert response.status_code == 500
    data = response.json()
    assert "Error processing webhook event" in data["detail"]


def test_get_subscription_success(client, customer):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]

    response = client.get(f"/api/stripe/subscription/{stripe_id}")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["subscription"]["stripe_id"] == stripe_id
    assert len(data["subscription"]["items"]) == 1


def test_get_subscription_failure(client):
    response = client.get("/api/stripe/subscription/   ")
    assert response.status_code == 400
    data = response.json()
    assert "subscription_id cannot be empty" in data["detail"]


def test_get_subscription_not_found(client):
    response = client.get("/api/stripe/subscription/sub_missing")
    assert response.status_code == 404


def test_swap_subscription_success(client, customer):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]

    response = client.put(f"/api/stripe/subscription/{stripe_id}", json={"prices": ["price_pro"]})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["subscription"]["price"] == "price_pro"
    assert [item["price"] for item in data["subscription"]["items"]] == ["price_pro"]


def test_swap_subscription_and_invoice(client, customer, gateway):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]

    response = client.put(f"/api/stripe/subscription/{stripe_id}", json={"prices": ["price_pro"], "invoice_now": True})
    assert response.status_code == 200
    _, _, payload = gateway.called('update_subscription')[-1]
    assert payload["proration_behavior"] == "always_invoice"


def test_swap_subscription_failure(client, customer):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]

    response = client.put(f"/api/stripe/subscription/{stripe_id}", json={"prices": []})
    assert response.status_code == 400
    assert "at least one price" in response.json()["detail"]


def test_delete_subscription_at_period_end(client, customer):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]

    response = client.delete(f"/api/stripe/subscription/{stripe_id}")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["subscription"]["status"] == "active"
    assert data["subscription"]["ends_at"] is not None
    assert data["subscription"]["valid"] is True


def test_delete_subscription_now(client, customer):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]

    response = client.delete(f"/api/stripe/subscription/{stripe_id}", params={"now": True})
    assert response.status_code == 200
    data = response.json()
    assert data["subscription"]["status"] == "canceled"
    assert data["subscription"]["valid"] is False


def test_resume_subscription(client, customer):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]
    client.delete(f"/api/stripe/subscription/{stripe_id}")

    response = client.post(f"/api/stripe/subscription/{stripe_id}/resume")
    assert response.status_code == 200
    assert response.json()["subscription"]["ends_at"] is None


def test_resume_subscription_not_on_grace_period(client, customer):
    stripe_id = create(client, customer).json()["subscription"]["stripe_id"]

    response = client.post(f"/api/stripe/subscription/{stripe_id}/resume")
    assert response.status_code == 400
    assert "grace period" in response.json()["detail"]


def test_blocking_handlers_are_served_from_the_threadpool():
    # Sync handlers keep Stripe calls and lock waits off the event loop
    for handler in (
        stripe_router.create_subscription,
        stripe_router.get_subscription,
        stripe_router.swap_subscription,
        stripe_router.cancel_subscription,
        stripe_router.resume_subscription,
    ):
        assert not inspect.iscoroutinefunction(handler)
