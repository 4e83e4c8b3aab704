import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import random

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from delivery_service.app import models
from delivery_service.app.clients import OrderDetails, RestaurantDetails
from delivery_service.app.couriers import CourierRegistry
from delivery_service.app.database import Base, get_db
from delivery_service.app.deliveries import DeliveryStore
from delivery_service.app.dependencies import get_order_client, get_publisher, get_restaurant_client
from delivery_service.app.exceptions import CollaboratorUnavailable, EventPublishError, NotFound
from delivery_service.app.fulfillment import FulfillmentOrchestrator
from delivery_service.app.geo import Point
from delivery_service.app.schemas import DeliveryCreate, DeliveryItem


class RecordingPublisher:
    """Publisher that keeps every event in memory instead of sending it."""

    def __init__(self):
        self.published = []
        self.fail = False

    async def publish(self, event):
        await self.publish_raw(event.routing_key, event.to_payload())

    async def publish_raw(self, routing_key, payload):
        if self.fail:
            raise EventPublishError(routing_key, "broker unavailable")
        self.published.append((routing_key, payload))

    def routing_keys(self):
        return [key for key, _ in self.published]

    def payloads(self, routing_key):
        return [payload for key, payload in self.published if key == routing_key]


class FakeOrderClient:
    def __init__(self):
        self.orders = {}
        self.unavailable = False
        self.calls = []

    def add(self, order_id, status="confirmed", restaurant_id="rest-1", **kwargs):
        self.orders[order_id] = OrderDetails(
            id=order_id,
            order_number=kwargs.get("order_number", f"ORD-{order_id}"),
            status=status,
            restaurant_id=restaurant_id,
            items=kwargs.get("items", [DeliveryItem(name="Pizza", quantity=1)]),
            customer_name=kwargs.get("customer_name", "Anna"),
            customer_phone=kwargs.get("customer_phone", "+10000000000"),
            delivery_address=kwargs.get("delivery_address", "1 Main St"),
            dropoff=kwargs.get("dropoff", Point(0.01, 0.01)),
        )
        return self.orders[order_id]

    def set_status(self, order_id, status):
        self.orders[order_id] = self.orders[order_id]._replace(status=status)

    async def get_order(self, order_id, authorization=None):
        self.calls.append((order_id, authorization))
        if self.unavailable:
            raise CollaboratorUnavailable("order-service", "connection refused")
        if order_id not in self.orders:
            raise NotFound("Order", order_id)
        return self.orders[order_id]


class FakeRestaurantClient:
    def __init__(self):
        self.restaurants = {}
        self.unavailable = False

    def add(self, restaurant_id="rest-1", name="Pizza Place", location=Point(0.0, 0.0)):
        self.restaurants[restaurant_id] = RestaurantDetails(
            id=restaurant_id, name=name, address="5 Market St", location=location
        )
        return self.restaurants[restaurant_id]

    async def get_restaurant(self, restaurant_id, authorization=None):
        if self.unavailable:
            raise CollaboratorUnavailable("restaurant-service", "connection refused")
        if restaurant_id not in self.restaurants:
            raise NotFound("Restaurant", restaurant_id)
        return self.restaurants[restaurant_id]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def orders():
    return FakeOrderClient()


@pytest.fixture
def restaurants():
    client = FakeRestaurantClient()
    client.add()
    return client


@pytest.fixture
def orchestrator(db, publisher, orders, restaurants):
    return FulfillmentOrchestrator(db, publisher, orders, restaurants, rng=random.Random(7))


@pytest.fixture
def make_courier(db):
    counter = {"n": 0}

    def factory(location=None, available=True, verified=True, complete=True, active=True, name=None):
        counter["n"] += 1
        courier, _ = CourierRegistry(db).register(
            f"user-{counter['n']}", name or f"Courier {counter['n']}", f"c{counter['n']}@example.com", "+15550000"
        )
        courier.is_available = available
        courier.is_verified = verified
        courier.is_profile_complete = complete
        courier.is_active = active
        if location is not None:
            courier.latitude, courier.longitude = location
            courier.location_updated_at = models.utcnow()
        db.commit()
        db.refresh(courier)
        return courier

    return factory


@pytest.fixture
def make_delivery(db):
    counter = {"n": 0}

    def factory(order_id=None, pickup=Point(0.0, 0.0), dropoff=Point(0.01, 0.01)):
        counter["n"] += 1
        facts = DeliveryCreate(
            order_id=order_id or f"order-{counter['n']}",
            order_number=f"ORD-{counter['n']}",
            restaurant_id="rest-1",
            restaurant_name="Pizza Place",
            pickup_address="5 Market St",
            pickup_latitude=pickup.latitude if pickup else None,
            pickup_longitude=pickup.longitude if pickup else None,
            dropoff_address="1 Main St",
            dropoff_latitude=dropoff.latitude if dropoff else None,
            dropoff_longitude=dropoff.longitude if dropoff else None,
            customer_name="Anna",
            items=[DeliveryItem(name="Pizza", quantity=2)],
        )
        delivery, _ = DeliveryStore(db).create(facts)
        return delivery

    return factory


@pytest.fixture
def client(session_factory, publisher, orders, restaurants):
    from delivery_service.app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_order_client] = lambda: orders
    app.dependency_overrides[get_restaurant_client] = lambda: restaurants
    # Not used as a context manager: startup would connect to RabbitMQ.
    yield TestClient(app)
    app.dependency_overrides.clear()
