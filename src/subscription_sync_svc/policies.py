"""
Per-operation billing policies.

Builders and subscription commands hold a ``BillingPolicy`` and delegate the
payment-behavior, proration, coupon and confirmation decisions to it.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class PaymentBehavior(str, Enum):
    DEFAULT_INCOMPLETE = 'default_incomplete'
    ALLOW_INCOMPLETE = 'allow_incomplete'
    PENDING_IF_INCOMPLETE = 'pending_if_incomplete'
    ERROR_IF_INCOMPLETE = 'error_if_incomplete'


class ProrationBehavior(str, Enum):
    NONE = 'none'
    CREATE_PRORATIONS = 'create_prorations'
    ALWAYS_INVOICE = 'always_invoice'


@dataclass
class PaymentBehaviorPolicy:
    behavior: PaymentBehavior = PaymentBehavior.DEFAULT_INCOMPLETE


@dataclass
class ProrationPolicy:
    behavior: ProrationBehavior = ProrationBehavior.CREATE_PRORATIONS


@dataclass
class CouponPolicy:
    coupon_id: Optional[str] = None
    promotion_code_id: Optional[str] = None


@dataclass
class PaymentConfirmationPolicy:
    # Confirm incomplete payments automatically after an operation
    confirm_incomplete_payment: bool = True
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BillingPolicy:
    payment: PaymentBehaviorPolicy = field(default_factory=PaymentBehaviorPolicy)
    proration: ProrationPolicy = field(default_factory=ProrationPolicy)
    coupon: CouponPolicy = field(default_factory=CouponPolicy)
    confirmation: PaymentConfirmationPolicy = field(default_factory=PaymentConfirmationPolicy)

    # Payment behavior

    def default_incomplete(self) -> "BillingPolicy":
        self.payment.behavior = PaymentBehavior.DEFAULT_INCOMPLETE
        return self

    def allow_payment_failures(self) -> "BillingPolicy":
        self.payment.behavior = PaymentBehavior.ALLOW_INCOMPLETE
        return self

    def pending_if_payment_fails(self) -> "BillingPolicy":
        self.payment.behavior = PaymentBehavior.PENDING_IF_INCOMPLETE
        return self

    def error_if_payment_fails(self) -> "BillingPolicy":
        self.payment.behavior = PaymentBehavior.ERROR_IF_INCOMPLETE
        return self

    def payment_behavior(self) -> str:
        return self.payment.behavior.value

    # Proration

    def no_prorate(self) -> "BillingPolicy":
        self.proration.behavior = ProrationBehavior.NONE
        return self

    def prorate(self) -> "BillingPolicy":
        self.proration.behavior = ProrationBehavior.CREATE_PRORATIONS
        return self

    def always_invoice(self) -> "BillingPolicy":
        self.proration.behavior = ProrationBehavior.ALWAYS_INVOICE
        return self

    def proration_behavior(self) -> str:
        return self.proration.behavior.value

    # Coupons

    def with_coupon(self, coupon_id: str) -> "BillingPolicy":
        self.coupon.coupon_id = coupon_id
        return self

    def with_promotion_code(self, promotion_code_id: str) -> "BillingPolicy":
        self.coupon.promotion_code_id = promotion_code_id
        return self

    # Payment confirmation

    def ignore_incomplete_payments(self) -> "BillingPolicy":
        self.confirmation.confirm_incomplete_payment = False
        return self

    def with_payment_confirmation_options(self, options: Dict[str, Any]) -> "BillingPolicy":
        self.confirmation.options = dict(options)
        return self

    def reset_confirmation(self) -> None:
        """Confirmation tweaks apply to a single operation."""
        self.confirmation = PaymentConfirmationPolicy()
