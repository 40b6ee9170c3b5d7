from enum import Enum


class SubscriptionError(Exception):
    """
    Base class for errors raised by subscription operations.
    """


class IncompleteSubscriptionError(SubscriptionError):
    """Raised when a mutation is attempted on a subscription whose first payment never completed."""

    @classmethod
    def for_subscription(cls, subscription) -> "IncompleteSubscriptionError":
        return cls(
            f"The subscription '{subscription.stripe_id}' cannot be updated because its payment is incomplete."
        )


class AmbiguousPriceError(SubscriptionError):
    """Raised when a price argument is required because several prices are attached."""

    def __init__(self, message: str = "This method requires a price argument since the subscription has multiple prices.") -> None:
        super().__init__(message)


class LastPriceError(SubscriptionError):
    """Raised when removing the only remaining price of a subscription."""

    @classmethod
    def for_subscription(cls, subscription) -> "LastPriceError":
        return cls(f"The last price of subscription '{subscription.stripe_id}' cannot be removed.")


class EmptySubscriptionError(SubscriptionError):
    def __init__(self, message: str = "At least one price is required when starting subscriptions.") -> None:
        super().__init__(message)


class DuplicatePriceError(SubscriptionError):
    @classmethod
    def for_price(cls, subscription, price: str) -> "DuplicatePriceError":
        return cls(f'The price "{price}" is already attached to subscription "{subscription.stripe_id}".')


class SubscriptionNotResumableError(SubscriptionError):
    def __init__(self, message: str = "Unable to resume subscription that is not within grace period.") -> None:
        super().__init__(message)


class SubscriptionNotFoundError(SubscriptionError):
    pass


class ItemNotFoundError(SubscriptionError):
    @classmethod
    def for_price(cls, subscription, price: str) -> "ItemNotFoundError":
        return cls(f'The price "{price}" is not attached to subscription "{subscription.stripe_id}".')


class IncompletePaymentReason(str, Enum):
    NEEDS_METHOD = "needs_method"
    NEEDS_ACTION = "needs_action"
    NEEDS_CONFIRMATION = "needs_confirmation"


class IncompletePayment(SubscriptionError):
    """
    Raised when the latest payment of a subscription needs the customer's attention.

    :param payment: the Payment wrapping the Stripe PaymentIntent.
    :param reason: which kind of follow-up the payment needs.
    """

    def __init__(self, payment, reason: IncompletePaymentReason, message: str) -> None:
        super().__init__(message)
        self.payment = payment
        self.reason = reason

    @classmethod
    def payment_method_required(cls, payment) -> "IncompletePayment":
        return cls(
            payment,
            IncompletePaymentReason.NEEDS_METHOD,
            "The payment attempt failed because of an invalid payment method.",
        )

    @classmethod
    def requires_action(cls, payment) -> "IncompletePayment":
        return cls(
            payment,
            IncompletePaymentReason.NEEDS_ACTION,
            "The payment attempt failed because additional action is required before it can be completed.",
        )

    @classmethod
    def requires_confirmation(cls, payment) -> "IncompletePayment":
        return cls(
            payment,
            IncompletePaymentReason.NEEDS_CONFIRMATION,
            "The payment attempt failed because it needs to be confirmed before it can be completed.",
        )
