import logging
import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from subscription_sync_svc.events import BillingEvents, EventDispatcher
from subscription_sync_svc.lifecycle import CANCELED, INCOMPLETE_EXPIRED
from subscription_sync_svc.locks import KeyedLock
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.reconcile import (
    create_from_remote,
    current_period_end,
    reconcile_subscription,
    trial_end_from_remote,
    type_from_metadata,
)
from subscription_sync_svc.store import SubscriptionStore
from subscription_sync_svc.timeutils import from_timestamp, utcnow

SUBSCRIPTION_CREATED = 'customer.subscription.created'
SUBSCRIPTION_UPDATED = 'customer.subscription.updated'
SUBSCRIPTION_DELETED = 'customer.subscription.deleted'

# Deliveries for the same subscription are applied one at a time
subscription_locks = KeyedLock()


class WebhookReconciler:
    """
    Applies Stripe subscription events to the local mirror.

    Handlers are idempotent: a duplicate delivery leaves the same state as a
    single one, and an event for a customer unknown to this application is a
    no-op.
    """

    def __init__(self, store: SubscriptionStore, events: Optional[EventDispatcher] = None) -> None:
        self.store = store
        self.events = events or EventDispatcher()

    def handle_subscription_created(self, data: Mapping[str, Any]) -> None:
        owner = self.store.find_owner_by_stripe_id(data.get('customer'))
        if owner is None:
            logging.info(f"No local customer for {data.get('customer')}; subscription {data['id']} ignored.")
            return

        created = self.store.find_subscription_by_stripe_id(data['id']) is None
        with self.store.transaction():
            subscription = create_from_remote(
                self.store,
                owner,
                data,
                type_from_metadata(data),
                trial_end_from_remote(data),
            )
            if owner.trial_ends_at is not None:
                owner.trial_ends_at = None

        if created:
            self.events.emit(BillingEvents.SUBSCRIPTION_CREATED, subscription)

    def handle_subscription_updated(self, data: Mapping[str, Any]) -> None:
        owner = self.store.find_owner_by_stripe_id(data.get('customer'))
        if owner is None:
            logging.info(f"No local customer for {data.get('customer')}; subscription {data['id']} ignored.")
            return

        subscription = self.store.find_subscription_by_stripe_id(data['id'])

        if data.get('status') == INCOMPLETE_EXPIRED:
            if subscription is not None:
                with self.store.transaction():
                    self.store.delete_subscription(subscription)
                self.events.emit(BillingEvents.SUBSCRIPTION_DELETED, None, stripe_id=data['id'])
            return

        with self.store.transaction():
            if subscription is None:
                # "updated" arrived before a "created" we never saw
                subscription = Subscription(customer=owner, stripe_id=data['id'])
                self.store.add(subscription)

            subscription.type = subscription.type or type_from_metadata(data)

            # A locally known trial end is never overwritten
            trial_end = trial_end_from_remote(data)
            if trial_end is not None and subscription.trial_ends_at is None:
                subscription.trial_ends_at = trial_end

            if data.get('cancel_at_period_end'):
                if subscription.on_trial():
                    subscription.ends_at = subscription.trial_ends_at
                else:
                    subscription.ends_at = from_timestamp(current_period_end(data))
            elif data.get('cancel_at') or data.get('canceled_at'):
                subscription.ends_at = from_timestamp(data.get('cancel_at') or data.get('canceled_at'))
            else:
                subscription.ends_at = None

            reconcile_subscription(self.store, subscription, data)

        self.events.emit(BillingEvents.SUBSCRIPTION_UPDATED, subscription)

    def handle_subscription_deleted(self, data: Mapping[str, Any]) -> None:
        owner = self.store.find_owner_by_stripe_id(data.get('customer'))
        if owner is None:
            logging.info(f"No local customer for {data.get('customer')}; subscription {data['id']} ignored.")
            return

        subscription = self.store.find_subscription_by_stripe_id(data['id'])
        if subscription is None:
            return

        with self.store.transaction():
            subscription.skip_trial()
            subscription.stripe_status = CANCELED
            subscription.ends_at = utcnow()

        self.events.emit(BillingEvents.SUBSCRIPTION_CANCELED, subscription)


HANDLERS: Dict[str, Callable[[WebhookReconciler, Mapping[str, Any]], None]] = {
    SUBSCRIPTION_CREATED: WebhookReconciler.handle_subscription_created,
    SUBSCRIPTION_UPDATED: WebhookReconciler.handle_subscription_updated,
    SUBSCRIPTION_DELETED: WebhookReconciler.handle_subscription_deleted,
}


def process_event(event: dict, db: Session, events: Optional[EventDispatcher] = None) -> None:
    """
    Process a Stripe event and update subscription records accordingly.

    :param event: Dictionary representing the Stripe event payload.
    :param db: SQLAlchemy Session instance.
    :param events: Dispatcher notified after each committed change.
    :raises ValueError: when the event is malformed.
    :raises Exception: on any processing or commit failures.
    """
    try:
        event_type = event.get('type')
        if not event_type:
            error_msg = "Missing 'type' in event payload"
            logging.error(error_msg)
            raise ValueError(error_msg)

        event_id = event.get('id', 'N/A')
        timestamp = event.get('created', datetime.datetime.now(datetime.timezone.utc).timestamp())

        handler = HANDLERS.get(event_type)
        if handler is None:
            logging.info(f"Unhandled event type: {event_type} for event {event_id} at {timestamp}. No action taken.")
            return

        data = event.get('data', {}).get('object', {})
        sub_id = data.get('id')
        if not sub_id:
            error_msg = f"Missing subscription id in {event_type} event"
            logging.error(error_msg)
            raise ValueError(error_msg)

        reconciler = WebhookReconciler(SubscriptionStore(db), events)
        with subscription_locks.hold(sub_id):
            handler(reconciler, data)
        logging.info(f"Event {event_id} at {timestamp}: {event_type} processed for subscription {sub_id}.")

    except Exception as e:
        logging.error(e, exc_info=True)
        raise
