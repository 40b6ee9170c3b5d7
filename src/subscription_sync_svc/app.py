from contextlib import asynccontextmanager

from fastapi import FastAPI

from subscription_sync_svc.events import EventDispatcher
from subscription_sync_svc.models.base import Base, engine
from subscription_sync_svc.routers import stripe_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(debug=True, lifespan=lifespan)

# Listeners registered here are notified after every committed subscription change
app.state.events = EventDispatcher()

# Include the Stripe router under the '/api/stripe' prefix
app.include_router(stripe_router.router, prefix="/api/stripe")
