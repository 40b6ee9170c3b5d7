from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from subscription_sync_svc.models.base import Base
from subscription_sync_svc.timeutils import utcnow


class Customer(Base):
    """
    The billable party owning subscriptions, linked to a Stripe customer by stripe_id.
    """
    __tablename__ = 'customers'

    id = Column(Integer, primary_key=True)
    email = Column(String, nullable=True)
    name = Column(String, nullable=True)
    stripe_id = Column(String, unique=True, nullable=True, index=True)
    # Generic trial granted without a subscription
    trial_ends_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    subscriptions = relationship(
        "Subscription",
        back_populates="customer",
        cascade="all, delete-orphan",
        order_by="Subscription.id.desc()",
    )

    def has_stripe_id(self) -> bool:
        return bool(self.stripe_id)

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, stripe_id={self.stripe_id})>"
