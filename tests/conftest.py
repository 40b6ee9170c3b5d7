import os
os.environ['STRIPE_API_KEY'] = 'sk_test_dummy'
os.environ['DATABASE_URL'] = 'sqlite://'

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fakes import FakeGateway
from subscription_sync_svc.app import app
from subscription_sync_svc.customers import CustomerBilling
from subscription_sync_svc.events import EventDispatcher
from subscription_sync_svc.models.base import Base, get_db
from subscription_sync_svc.models.customer import Customer
from subscription_sync_svc.models.subscription import Subscription, SubscriptionItem  # noqa: F401
from subscription_sync_svc.routers.stripe_router import get_events, get_gateway
from subscription_sync_svc.store import SubscriptionStore


@pytest.fixture
def db_session():
    # A single in-memory connection shared by the test and the app threads
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def events():
    return EventDispatcher()


@pytest.fixture
def store(db_session):
    return SubscriptionStore(db_session)


@pytest.fixture
def customer(db_session):
    owner = Customer(email='taylor@example.com', name='Taylor', stripe_id='cus_local')
    db_session.add(owner)
    db_session.commit()
    return owner


@pytest.fixture
def billing(customer, gateway, store, events):
    return CustomerBilling(customer, gateway, store, events)


@pytest.fixture
def client(db_session, gateway, events):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_events] = lambda: events
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
