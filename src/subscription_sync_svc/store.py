import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from subscription_sync_svc.models.customer import Customer
from subscription_sync_svc.models.subscription import Subscription, SubscriptionItem


class SubscriptionStore:
    """
    Repository for the mirrored subscription graph.

    All writes made inside ``transaction()`` are committed together or rolled
    back together, which keeps a subscription and its items consistent.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        try:
            yield self.db
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logging.error(e, exc_info=True)
            raise

    def find_owner_by_stripe_id(self, stripe_customer_id: Optional[str]) -> Optional[Customer]:
        if not stripe_customer_id:
            return None
        return self.db.query(Customer).filter(Customer.stripe_id == stripe_customer_id).first()

    def find_subscription_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.stripe_id == stripe_subscription_id).first()

    def find_subscription(self, owner: Customer, type: Optional[str] = None) -> Optional[Subscription]:
        """Latest subscription of the owner, optionally restricted to a type."""
        query = self.db.query(Subscription).filter(Subscription.customer_id == owner.id)
        if type:
            query = query.filter(Subscription.type == type)
        return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).first()

    def find_item(self, subscription: Subscription, price: str) -> Optional[SubscriptionItem]:
        return subscription.find_item(price)

    def add(self, instance) -> None:
        self.db.add(instance)

    def delete_subscription(self, subscription: Subscription) -> None:
        """Delete a subscription together with its items."""
        state = inspect(subscription)
        if state.persistent:
            self.db.delete(subscription)
        elif state.pending:
            self.db.expunge(subscription)

    def sync_items(self, subscription: Subscription, remote_items: Iterable[dict]) -> None:
        """
        Make the local items of ``subscription`` match ``remote_items`` exactly.

        Items are upserted by Stripe id and any local item whose Stripe id is
        missing from ``remote_items`` is deleted.
        """
        existing = {item.stripe_id: item for item in subscription.items}
        seen = set()
        for remote in remote_items:
            item = existing.get(remote['id'])
            if item is None:
                item = self.db.query(SubscriptionItem).filter(SubscriptionItem.stripe_id == remote['id']).first()
                if item is None:
                    item = SubscriptionItem(stripe_id=remote['id'])
                subscription.items.append(item)
            price = remote['price']
            product = price.get('product')
            item.stripe_product = product.get('id') if isinstance(product, dict) else product
            item.stripe_price = price['id']
            item.quantity = remote.get('quantity')
            seen.add(remote['id'])

        for stripe_id, item in existing.items():
            if stripe_id not in seen:
                subscription.items.remove(item)
