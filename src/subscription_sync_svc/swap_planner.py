"""
Planning of price swaps.

A swap sends Stripe the full desired item list: the requested prices plus a
deletion entry for every current item whose price is no longer wanted.
"""
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from subscription_sync_svc import lifecycle
from subscription_sync_svc.exceptions import EmptySubscriptionError
from subscription_sync_svc.policies import BillingPolicy, PaymentBehavior
from subscription_sync_svc.timeutils import to_timestamp

SwapPrices = Union[str, Sequence[Union[str, Dict[str, Any]]], Mapping[str, Union[str, Dict[str, Any]]]]
TaxRateResolver = Callable[[str], Optional[List[str]]]


def _no_tax_rates(price: str) -> Optional[List[str]]:
    return None


def is_metered(price: Mapping[str, Any]) -> bool:
    recurring = price.get('recurring') or {}
    return recurring.get('usage_type') == 'metered'


def _entries(prices: SwapPrices):
    if isinstance(prices, str):
        return [(prices, {})]
    if isinstance(prices, Mapping):
        return [(price, {} if isinstance(options, str) else dict(options)) for price, options in prices.items()]

    entries = []
    for index, value in enumerate(prices):
        if isinstance(value, str):
            entries.append((value, {}))
        else:
            options = dict(value)
            entries.append((options.get('price') or f'price_data_{index}', options))
    return entries


def parse_swap_prices(
    subscription,
    prices: SwapPrices,
    tax_rates: TaxRateResolver = _no_tax_rates,
) -> "OrderedDict[str, Dict[str, Any]]":
    """
    Turn the requested prices into item payloads keyed by price.

    The current quantity is carried over only when a single-price
    subscription is swapped to exactly one other price.
    """
    entries = _entries(prices)
    if not entries:
        raise EmptySubscriptionError('Please provide at least one price when swapping.')

    single_price_swap = lifecycle.has_single_price(subscription) and len(entries) == 1

    output: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for price, options in entries:
        payload: Dict[str, Any] = {}
        rates = tax_rates(price)
        if rates is not None:
            payload['tax_rates'] = rates
        if 'price_data' not in options:
            payload['price'] = price
        if single_price_swap and subscription.quantity:
            payload['quantity'] = subscription.quantity
        payload.update(options)
        output[price] = payload
    return output


def merge_items_deleted_during_swap(
    items: "OrderedDict[str, Dict[str, Any]]",
    remote_items: Sequence[Mapping[str, Any]],
) -> "OrderedDict[str, Dict[str, Any]]":
    """
    Attach current Stripe item ids to the payload and mark unwanted items as deleted.

    Metered items that get deleted also clear their usage so no stray usage
    records are billed.
    """
    merged = OrderedDict(items)
    for remote in remote_items:
        price = remote['price']
        entry = dict(merged.get(price['id'], {}))
        if price['id'] not in merged:
            entry['deleted'] = True
            if is_metered(price):
                entry['clear_usage'] = True
        entry['id'] = remote['id']
        merged[price['id']] = entry
    return merged


def swap_options(
    subscription,
    items: "OrderedDict[str, Dict[str, Any]]",
    policy: BillingPolicy,
    params: Optional[Dict[str, Any]] = None,
    billing_cycle_anchor: Optional[Any] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        'items': list(items.values()),
        'payment_behavior': policy.payment_behavior(),
        'proration_behavior': policy.proration_behavior(),
        'promotion_code': policy.coupon.promotion_code_id,
        'expand': ['latest_invoice.payment_intent'],
    }

    if policy.payment.behavior != PaymentBehavior.PENDING_IF_INCOMPLETE:
        payload['cancel_at_period_end'] = False

    payload.update(params or {})
    payload['billing_cycle_anchor'] = billing_cycle_anchor
    # The locally known trial end is always sent, even if Stripe has another one
    payload['trial_end'] = to_timestamp(subscription.trial_ends_at) if lifecycle.on_trial(subscription) else 'now'

    return {key: value for key, value in payload.items() if value is not None}


def plan_swap(
    subscription,
    prices: SwapPrices,
    remote_items: Sequence[Mapping[str, Any]],
    policy: BillingPolicy,
    params: Optional[Dict[str, Any]] = None,
    billing_cycle_anchor: Optional[Any] = None,
    tax_rates: TaxRateResolver = _no_tax_rates,
) -> Dict[str, Any]:
    items = merge_items_deleted_during_swap(parse_swap_prices(subscription, prices, tax_rates), remote_items)
    return swap_options(subscription, items, policy, params, billing_cycle_anchor)
