"""
Shared reconciliation steps used by the command path and the webhook path.

Each step recomputes local state from a Stripe subscription snapshot, so
applying it twice with the same snapshot gives the same result.
"""
from typing import Any, List, Mapping, Optional

from subscription_sync_svc import lifecycle
from subscription_sync_svc.models.subscription import Subscription
from subscription_sync_svc.store import SubscriptionStore
from subscription_sync_svc.timeutils import from_timestamp, to_naive_utc


def remote_items(remote: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    items = remote.get('items') or {}
    return list(items.get('data') or [])


def current_period_end(remote: Mapping[str, Any]) -> Optional[int]:
    # Newer API versions only report the period on the items
    if remote.get('current_period_end'):
        return remote['current_period_end']
    for item in remote_items(remote):
        if item.get('current_period_end'):
            return item['current_period_end']
    return None


def type_from_metadata(remote: Mapping[str, Any]) -> str:
    metadata = remote.get('metadata') or {}
    return metadata.get('type') or metadata.get('name') or 'default'


def reconcile_subscription(store: SubscriptionStore, subscription: Subscription, remote: Mapping[str, Any]) -> None:
    """
    Copy status, price composition and items of ``remote`` onto ``subscription``.

    Must run inside ``store.transaction()`` so the parent and its items commit together.
    """
    items = remote_items(remote)
    lifecycle.apply_composition(subscription, lifecycle.composition_from_remote(items))
    subscription.stripe_status = remote.get('status') or subscription.stripe_status
    store.sync_items(subscription, items)


def create_from_remote(
    store: SubscriptionStore,
    owner,
    remote: Mapping[str, Any],
    type: str,
    trial_ends_at=None,
) -> Subscription:
    """
    Return the local mirror of ``remote``, creating it with its items when missing.
    """
    subscription = store.find_subscription_by_stripe_id(remote['id'])
    if subscription is not None:
        return subscription

    subscription = Subscription(
        customer=owner,
        type=type,
        stripe_id=remote['id'],
        trial_ends_at=to_naive_utc(trial_ends_at),
        ends_at=None,
    )
    store.add(subscription)
    reconcile_subscription(store, subscription, remote)
    return subscription


def trial_end_from_remote(remote: Mapping[str, Any]):
    return from_timestamp(remote.get('trial_end'))
