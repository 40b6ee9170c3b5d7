import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List


class BillingEvents:
    """Event names emitted after a reconciliation step has been committed."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_RESUMED = "subscription.resumed"
    PAYMENT_INCOMPLETE = "payment.incomplete"


Listener = Callable[..., Any]


class EventDispatcher:
    """
    In-process observer hook for the surrounding application.

    Listeners are called synchronously with the subscription and keyword data.
    A failing listener propagates its exception to the emitter.
    """

    def __init__(self) -> None:
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)

    def on(self, name: str, listener: Listener) -> Listener:
        self._listeners[name].append(listener)
        return listener

    def off(self, name: str, listener: Listener) -> None:
        if listener in self._listeners[name]:
            self._listeners[name].remove(listener)

    def emit(self, name: str, subscription: Any, **data: Any) -> None:
        listeners = list(self._listeners.get(name, ()))
        if not listeners:
            return
        logging.info(f"Emitting {name} to {len(listeners)} listener(s).")
        for listener in listeners:
            listener(subscription, **data)
