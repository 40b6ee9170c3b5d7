from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from subscription_sync_svc import lifecycle
from subscription_sync_svc.models.base import Base
from subscription_sync_svc.models.customer import Customer  # noqa: F401
from subscription_sync_svc.timeutils import utcnow


class Subscription(Base):
    """
    Local mirror of a Stripe subscription.
    """
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True)
    customer_id = Column(Integer, ForeignKey('customers.id'), nullable=False, index=True)
    type = Column(String, nullable=False, default='default')
    stripe_id = Column(String, unique=True, nullable=True, index=True)
    stripe_status = Column(String, nullable=True)
    stripe_price = Column(String, nullable=True)
    quantity = Column(Integer, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)
    ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    customer = relationship("Customer", back_populates="subscriptions")
    items = relationship(
        "SubscriptionItem",
        back_populates="subscription",
        cascade="all, delete-orphan",
        order_by="SubscriptionItem.id",
    )

    def valid(self, policy=lifecycle.DEFAULT_ACTIVATION_POLICY) -> bool:
        return lifecycle.valid(self, policy)

    def active(self, policy=lifecycle.DEFAULT_ACTIVATION_POLICY) -> bool:
        return lifecycle.active(self, policy)

    def on_trial(self) -> bool:
        return lifecycle.on_trial(self)

    def has_expired_trial(self) -> bool:
        return lifecycle.has_expired_trial(self)

    def on_grace_period(self) -> bool:
        return lifecycle.on_grace_period(self)

    def canceled(self) -> bool:
        return lifecycle.canceled(self)

    def ended(self) -> bool:
        return lifecycle.ended(self)

    def recurring(self) -> bool:
        return lifecycle.recurring(self)

    def incomplete(self) -> bool:
        return lifecycle.incomplete(self)

    def past_due(self) -> bool:
        return lifecycle.past_due(self)

    def has_incomplete_payment(self) -> bool:
        return lifecycle.has_incomplete_payment(self)

    def has_single_price(self) -> bool:
        return lifecycle.has_single_price(self)

    def has_multiple_prices(self) -> bool:
        return lifecycle.has_multiple_prices(self)

    def has_price(self, price: str) -> bool:
        if self.has_multiple_prices():
            return any(item.stripe_price == price for item in self.items)
        return self.stripe_price == price

    def has_product(self, product: str) -> bool:
        return any(item.stripe_product == product for item in self.items)

    def find_item(self, price: str):
        for item in self.items:
            if item.stripe_price == price:
                return item
        return None

    def skip_trial(self) -> "Subscription":
        """Force the trial to end immediately; combine with resume, swap or cancellation."""
        self.trial_ends_at = None
        return self

    def __repr__(self) -> str:
        return f"<Subscription(id={self.stripe_id}, status={self.stripe_status})>"


class SubscriptionItem(Base):
    """
    Local mirror of one Stripe subscription line item.
    """
    __tablename__ = 'subscription_items'

    id = Column(Integer, primary_key=True)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id'), nullable=False, index=True)
    stripe_id = Column(String, unique=True, nullable=False, index=True)
    stripe_product = Column(String, nullable=True)
    stripe_price = Column(String, nullable=False)
    quantity = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="items")

    def __repr__(self) -> str:
        return f"<SubscriptionItem(id={self.stripe_id}, price={self.stripe_price}, quantity={self.quantity})>"
