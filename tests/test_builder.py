import datetime

import pytest

from fakes import Recorder
from subscription_sync_svc.customers import CustomerBilling
from subscription_sync_svc.events import BillingEvents
from subscription_sync_svc.exceptions import AmbiguousPriceError, EmptySubscriptionError
from subscription_sync_svc.models.customer import Customer
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.timeutils import from_timestamp, to_timestamp, utcnow


def test_create_without_prices(billing, gateway):
    with pytest.raises(EmptySubscriptionError):
        billing.new_subscription('default').create()
    assert gateway.calls == []


def test_quantity_needs_price_with_multiple_prices(billing):
    builder = billing.new_subscription('default', ['price_a', 'price_b'])
    with pytest.raises(AmbiguousPriceError):
        builder.quantity(3)

    builder.quantity(3, 'price_b')
    assert builder.items == [{'price': 'price_a', 'quantity': 1}, {'price': 'price_b', 'quantity': 3}]


def test_same_price_replaces_item(billing):
    builder = billing.new_subscription('default', 'price_a').price('price_a', 4)
    assert builder.items == [{'price': 'price_a', 'quantity': 4}]


def test_build_payload(customer, gateway, store):
    billing = CustomerBilling(customer, gateway, store, tax_rates=['txr_global'], price_tax_rates={'price_a': ['txr_a']})
    trial_until = utcnow() + datetime.timedelta(days=3)

    payload = (
        billing.new_subscription('main', ['price_a'])
        .trial_until(trial_until)
        .with_coupon('coupon_10')
        .with_metadata({'source': 'signup'})
        .build_payload()
    )

    assert payload['items'] == [{'price': 'price_a', 'tax_rates': ['txr_a'], 'quantity': 1}]
    assert payload['metadata'] == {'source': 'signup', 'type': 'main', 'name': 'main'}
    assert payload['trial_end'] == to_timestamp(trial_until)
    assert payload['coupon'] == 'coupon_10'
    assert payload['default_tax_rates'] == ['txr_global']
    assert payload['payment_behavior'] == 'default_incomplete'
    assert payload['off_session'] is True
    assert 'promotion_code' not in payload
    assert 'billing_cycle_anchor' not in payload


def test_skip_trial_payload(billing):
    payload = billing.new_subscription('default', ['price_a']).trial_days(5).skip_trial().build_payload()
    assert payload['trial_end'] == 'now'


def test_create_mirrors_subscription(billing, gateway, events, db_session):
    recorder = Recorder(events, BillingEvents.SUBSCRIPTION_CREATED)

    subscription = billing.new_subscription('main', ['price_a', 'price_b']).create()

    assert subscription.stripe_id in gateway.subscriptions
    assert subscription.type == 'main'
    assert subscription.stripe_status == 'active'
    assert subscription.has_multiple_prices()
    assert sorted(item.stripe_price for item in subscription.items) == ['price_a', 'price_b']
    assert db_session.query(Subscription).count() == 1
    assert recorder.calls[0][1] is subscription
    _, customer_id, _ = gateway.called('create_subscription')[0]
    assert customer_id == 'cus_local'


def test_create_with_trial(billing):
    subscription = billing.new_subscription('default', ['price_a']).trial_days(7).create()

    assert subscription.on_trial()
    assert subscription.stripe_status == 'trialing'
    assert subscription.trial_ends_at > utcnow() + datetime.timedelta(days=6)


def test_create_registers_stripe_customer(db_session, gateway, store):
    owner = Customer(email='sam@example.com', name='Sam')
    db_session.add(owner)
    db_session.commit()
    billing = CustomerBilling(owner, gateway, store)

    subscription = billing.new_subscription('default', ['price_a']).create('pm_card')

    assert owner.stripe_id.startswith('cus_')
    assert subscription.customer_id == owner.id
    assert gateway.called('attach_payment_method') == [('attach_payment_method', 'pm_card', owner.stripe_id)]
    _, _, params = gateway.called('update_customer')[0]
    assert params == {'invoice_settings': {'default_payment_method': 'pm_card'}}


def test_create_and_send_invoice(billing, gateway):
    billing.new_subscription('default', ['price_a']).create_and_send_invoice()

    _, _, payload = gateway.called('create_subscription')[0]
    assert payload['collection_method'] == 'send_invoice'
    assert payload['days_until_due'] == 30


def test_create_subscription_reuses_existing_mirror(billing, gateway, db_session):
    builder = billing.new_subscription('default', ['price_a'])
    remote = gateway.add_subscription('cus_local', [('price_a', 1)])

    first = builder.create_subscription(remote)
    second = builder.create_subscription(remote)

    assert first.id == second.id
    assert db_session.query(Subscription).count() == 1


def test_trial_until_with_aware_datetime(billing, gateway):
    pacific = datetime.timezone(datetime.timedelta(hours=-8))
    trial_end = datetime.datetime.now(pacific) + datetime.timedelta(hours=2)

    subscription = billing.new_subscription('default', ['price_a']).trial_until(trial_end).create()

    remote = gateway.subscriptions[subscription.stripe_id]
    assert remote['trial_end'] == int(trial_end.timestamp())
    assert subscription.trial_ends_at == from_timestamp(remote['trial_end'])
    assert subscription.trial_ends_at.tzinfo is None
    assert subscription.on_trial()
