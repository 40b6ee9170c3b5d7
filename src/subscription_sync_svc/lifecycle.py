"""
Pure lifecycle rules for mirrored subscriptions.

Nothing in this module performs I/O. Every predicate takes the subscription
record and an optional ``now`` so callers and tests can pin the clock.
"""
import datetime
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from subscription_sync_svc.exceptions import AmbiguousPriceError, IncompleteSubscriptionError
from subscription_sync_svc.timeutils import utcnow

INCOMPLETE = 'incomplete'
INCOMPLETE_EXPIRED = 'incomplete_expired'
TRIALING = 'trialing'
ACTIVE = 'active'
PAST_DUE = 'past_due'
CANCELED = 'canceled'
UNPAID = 'unpaid'
PAUSED = 'paused'

STATUSES = (INCOMPLETE, INCOMPLETE_EXPIRED, TRIALING, ACTIVE, PAST_DUE, CANCELED, UNPAID, PAUSED)


@dataclass(frozen=True)
class ActivationPolicy:
    """Which otherwise-live statuses should count as inactive."""

    deactivate_incomplete: bool = False
    deactivate_past_due: bool = False

    @classmethod
    def from_settings(cls, settings) -> "ActivationPolicy":
        return cls(
            deactivate_incomplete=settings.deactivate_incomplete,
            deactivate_past_due=settings.deactivate_past_due,
        )

    def deactivating_statuses(self) -> Tuple[str, ...]:
        statuses = [UNPAID]
        if self.deactivate_incomplete:
            statuses.append(INCOMPLETE)
        if self.deactivate_past_due:
            statuses.append(PAST_DUE)
        return tuple(statuses)


DEFAULT_ACTIVATION_POLICY = ActivationPolicy()


def _now(now: Optional[datetime.datetime]) -> datetime.datetime:
    return now if now is not None else utcnow()


def on_trial(subscription, now=None) -> bool:
    return subscription.trial_ends_at is not None and subscription.trial_ends_at > _now(now)


def has_expired_trial(subscription, now=None) -> bool:
    return subscription.trial_ends_at is not None and subscription.trial_ends_at < _now(now)


def on_grace_period(subscription, now=None) -> bool:
    return subscription.ends_at is not None and subscription.ends_at > _now(now)


def canceled(subscription) -> bool:
    return subscription.ends_at is not None


def ended(subscription, now=None) -> bool:
    return canceled(subscription) and not on_grace_period(subscription, now)


def active(subscription, policy: ActivationPolicy = DEFAULT_ACTIVATION_POLICY, now=None) -> bool:
    return not ended(subscription, now) and subscription.stripe_status not in policy.deactivating_statuses()


def recurring(subscription, now=None) -> bool:
    return not on_trial(subscription, now) and not canceled(subscription)


def valid(subscription, policy: ActivationPolicy = DEFAULT_ACTIVATION_POLICY, now=None) -> bool:
    return active(subscription, policy, now) or on_trial(subscription, now) or on_grace_period(subscription, now)


def incomplete(subscription) -> bool:
    return subscription.stripe_status == INCOMPLETE


def past_due(subscription) -> bool:
    return subscription.stripe_status == PAST_DUE


def has_incomplete_payment(subscription) -> bool:
    return incomplete(subscription) or past_due(subscription)


# Price composition: a subscription either carries exactly one price (mirrored
# on the record itself) or several, in which case only the items know them.

@dataclass(frozen=True)
class SinglePrice:
    price: str
    quantity: Optional[int] = None


@dataclass(frozen=True)
class MultiPrice:
    prices: Tuple[str, ...] = field(default_factory=tuple)


Composition = Union[SinglePrice, MultiPrice]


def composition(subscription) -> Composition:
    if subscription.stripe_price:
        return SinglePrice(subscription.stripe_price, subscription.quantity)
    return MultiPrice(tuple(item.stripe_price for item in subscription.items))


def composition_from_remote(remote_items: List[dict]) -> Composition:
    if len(remote_items) == 1:
        item = remote_items[0]
        return SinglePrice(item['price']['id'], item.get('quantity') or None)
    return MultiPrice(tuple(item['price']['id'] for item in remote_items))


def apply_composition(subscription, tag: Composition) -> None:
    if isinstance(tag, SinglePrice):
        subscription.stripe_price = tag.price
        subscription.quantity = tag.quantity
    else:
        subscription.stripe_price = None
        subscription.quantity = None


def has_single_price(subscription) -> bool:
    return isinstance(composition(subscription), SinglePrice)


def has_multiple_prices(subscription) -> bool:
    return not has_single_price(subscription)


def guard_against_incomplete(subscription) -> None:
    """Make sure a subscription is not incomplete when performing changes."""
    if incomplete(subscription):
        raise IncompleteSubscriptionError.for_subscription(subscription)


def guard_against_multiple_prices(subscription) -> None:
    if has_multiple_prices(subscription):
        raise AmbiguousPriceError()
