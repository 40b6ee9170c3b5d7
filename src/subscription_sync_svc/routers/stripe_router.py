import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from subscription_sync_svc.customers import CustomerBilling
from subscription_sync_svc.events import EventDispatcher
from subscription_sync_svc.exceptions import IncompletePayment, SubscriptionError, SubscriptionNotFoundError
from subscription_sync_svc.lifecycle import ActivationPolicy
from subscription_sync_svc.models.base import get_db
from subscription_sync_svc.models.customer import Customer
from subscription_sync_svc.settings import get_settings
from subscription_sync_svc.store import SubscriptionStore
from subscription_sync_svc.stripe_event_processor import process_event
from subscription_sync_svc.stripe_integration import StripeIntegration

router = APIRouter()


def get_gateway() -> StripeIntegration:
    return StripeIntegration()


def get_events(request: Request) -> EventDispatcher:
    events = getattr(request.app.state, "events", None)
    return events if events is not None else EventDispatcher()


class SubscriptionRequest(BaseModel):
    customer_id: int
    prices: List[str]
    type: str = "default"
    quantity: Optional[int] = None
    trial_days: Optional[int] = None
    payment_method: Optional[str] = None


class SwapRequest(BaseModel):
    prices: List[str]
    invoice_now: bool = False


def serialize_subscription(subscription) -> dict:
    return {
        "id": subscription.id,
        "stripe_id": subscription.stripe_id,
        "type": subscription.type,
        "status": subscription.stripe_status,
        "price": subscription.stripe_price,
        "quantity": subscription.quantity,
        "trial_ends_at": subscription.trial_ends_at.isoformat() if subscription.trial_ends_at else None,
        "ends_at": subscription.ends_at.isoformat() if subscription.ends_at else None,
        "valid": subscription.valid(),
        "items": [
            {"stripe_id": item.stripe_id, "price": item.stripe_price, "product": item.stripe_product, "quantity": item.quantity}
            for item in subscription.items
        ],
    }


def raise_http_error(e: Exception):
    logging.error(e, exc_info=True)
    if isinstance(e, IncompletePayment):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": str(e), "reason": e.reason.value, "payment_intent": e.payment.id},
        )
    if isinstance(e, SubscriptionNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (SubscriptionError, ValueError)):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def _billing(owner, gateway, db, events) -> CustomerBilling:
    return CustomerBilling(owner, gateway, SubscriptionStore(db), events, ActivationPolicy.from_settings(get_settings()))


def _find_subscription(db, subscription_id: str):
    if not subscription_id or not subscription_id.strip():
        raise ValueError('subscription_id cannot be empty')
    subscription = SubscriptionStore(db).find_subscription_by_stripe_id(subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found.")
    return subscription


@router.post("/subscription", status_code=201)
def create_subscription(
    subscription_request: SubscriptionRequest,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    events=Depends(get_events),
):
    try:
        owner = db.get(Customer, subscription_request.customer_id)
        if owner is None:
            raise SubscriptionNotFoundError(f"Customer {subscription_request.customer_id} not found.")
        builder = _billing(owner, gateway, db, events).new_subscription(subscription_request.type, subscription_request.prices)
        if subscription_request.quantity is not None:
            builder.quantity(subscription_request.quantity)
        if subscription_request.trial_days:
            builder.trial_days(subscription_request.trial_days)
        subscription = builder.create(subscription_request.payment_method)
        return {"success": True, "subscription": serialize_subscription(subscription)}
    except Exception as e:
        raise_http_error(e)


@router.post("/webhook", status_code=200)
async def process_webhook(
    request: Request,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    events=Depends(get_events),
):
    payload_bytes = await request.body()
    payload = payload_bytes.decode('utf-8')
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")
    endpoint_secret = get_settings().stripe_endpoint_secret
    if not endpoint_secret:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe endpoint secret not configured")
    try:
        event = await run_in_threadpool(gateway.process_webhook_event, payload, sig_header, endpoint_secret)
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    # Processing blocks on the per-subscription lock and the database
    try:
        await run_in_threadpool(process_event, event, db, events)
    except Exception as e:
        logging.error(e, exc_info=True)
        # A 5xx makes Stripe deliver the event again later
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error processing webhook event")

    return {"success": True, "event_id": event.get('id'), "type": event.get('type')}


@router.get("/subscription/{subscription_id}", status_code=200)
def get_subscription(subscription_id: str, db=Depends(get_db)):
    try:
        subscription = _find_subscription(db, subscription_id)
        return {"success": True, "subscription": serialize_subscription(subscription)}
    except Exception as e:
        raise_http_error(e)


@router.put("/subscription/{subscription_id}", status_code=200)
def swap_subscription(
    subscription_id: str,
    swap_request: SwapRequest,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    events=Depends(get_events),
):
    try:
        subscription = _find_subscription(db, subscription_id)
        manager = _billing(subscription.customer, gateway, db, events).manage(subscription)
        if swap_request.invoice_now:
            manager.swap_and_invoice(swap_request.prices)
        else:
            manager.swap(swap_request.prices)
        return {"success": True, "subscription": serialize_subscription(subscription)}
    except Exception as e:
        raise_http_error(e)


@router.delete("/subscription/{subscription_id}", status_code=200)
def cancel_subscription(
    subscription_id: str,
    now: bool = False,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    events=Depends(get_events),
):
    try:
        subscription = _find_subscription(db, subscription_id)
        manager = _billing(subscription.customer, gateway, db, events).manage(subscription)
        if now:
            manager.cancel_now()
        else:
            manager.cancel()
        return {"success": True, "subscription": serialize_subscription(subscription)}
    except Exception as e:
        raise_http_error(e)


@router.post("/subscription/{subscription_id}/resume", status_code=200)
def resume_subscription(
    subscription_id: str,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    events=Depends(get_events),
):
    try:
        subscription = _find_subscription(db, subscription_id)
        _billing(subscription.customer, gateway, db, events).manage(subscription).resume()
        return {"success": True, "subscription": serialize_subscription(subscription)}
    except Exception as e:
        raise_http_error(e)
