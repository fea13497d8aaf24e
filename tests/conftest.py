import os

# must be set before order_service.main creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal
from types import SimpleNamespace

import pytest

from order_service.collaborators import InMemoryEventPublisher, PaymentGateway, PushNotifier
from order_service.config import Settings
from order_service.coordinator import StatusCoordinator
from order_service.db import init_db, make_engine, make_session_factory
from order_service.lifecycle import Actor
from order_service.models import Driver, MenuItem, Restaurant, Role, UserContact
from order_service.schemas import CreateOrderRequest
from order_service.services import OrderService

KM_PER_DEGREE = 6371.0 * 3.141592653589793 / 180

CUSTOMER = Actor(1, Role.CUSTOMER)
OTHER_CUSTOMER = Actor(2, Role.CUSTOMER)
OWNER = Actor(100, Role.RESTAURANT)
OTHER_OWNER = Actor(101, Role.RESTAURANT)
DRIVER = Actor(300, Role.DRIVER)
OTHER_DRIVER = Actor(301, Role.DRIVER)
ADMIN = Actor(900, Role.ADMIN)


# ── Stub collaborators ─────────────────────────────────────────


class RecordingNotifier(PushNotifier):
    def __init__(self):
        self.sent = []

    def send(self, device_token, title, body, data):
        self.sent.append({"token": device_token, "title": title, "body": body, "data": data})


class StubPaymentGateway(PaymentGateway):
    def __init__(self):
        self.calls = []
        self.confirm_status = "succeeded"

    def authorize(self, amount, order_ref):
        self.calls.append(("authorize", amount, order_ref))
        return f"txn_{order_ref}"

    def confirm(self, transaction_ref):
        self.calls.append(("confirm", transaction_ref))
        return self.confirm_status

    def refund(self, transaction_ref, amount=None):
        self.calls.append(("refund", transaction_ref, amount))
        return "re_1"


# ── Database ───────────────────────────────────────────────────


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_sess(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def payments():
    return StubPaymentGateway()


@pytest.fixture
def coordinator(publisher, notifier):
    return StatusCoordinator(publisher, notifier)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def make_service(coordinator, payments, settings):
    def _make(session):
        return OrderService(session, coordinator, payments, settings)

    return _make


@pytest.fixture
def service(db_sess, make_service):
    return make_service(db_sess)


@pytest.fixture
def marketplace(db_sess):
    """One open restaurant at the origin with a small menu, two drivers."""
    restaurant = Restaurant(
        restaurant_id=10,
        owner_id=OWNER.user_id,
        name="Nile Grill",
        delivery_fee=Decimal("3.00"),
        minimum_order=Decimal("10.00"),
        latitude=0.0,
        longitude=0.0,
    )
    other = Restaurant(
        restaurant_id=11,
        owner_id=OTHER_OWNER.user_id,
        name="Blue Kitchen",
        delivery_fee=Decimal("2.00"),
        minimum_order=Decimal("0.00"),
        latitude=0.0,
        longitude=0.0,
    )
    burger = MenuItem(
        item_id=1,
        restaurant_id=10,
        name="Burger",
        price=Decimal("8.00"),
        customizations=[
            {"name": "Extras", "options": [{"name": "Cheese", "price": "1.00"}, {"name": "Bacon", "price": "1.50"}]}
        ],
    )
    fries = MenuItem(item_id=2, restaurant_id=10, name="Fries", price=Decimal("3.50"))
    soup = MenuItem(item_id=3, restaurant_id=10, name="Soup", price=Decimal("6.00"), is_available=False)
    salad = MenuItem(item_id=4, restaurant_id=11, name="Salad", price=Decimal("7.00"))
    db_sess.add_all(
        [
            restaurant,
            other,
            burger,
            fries,
            soup,
            salad,
            Driver(driver_id=DRIVER.user_id, is_available=True, latitude=0.0, longitude=0.0),
            Driver(driver_id=OTHER_DRIVER.user_id, is_available=True, latitude=0.0, longitude=0.0),
            UserContact(user_id=CUSTOMER.user_id, role="customer", name="Amal", device_token="tok-customer"),
            UserContact(user_id=OTHER_CUSTOMER.user_id, role="customer", name="Omar"),
            UserContact(user_id=OWNER.user_id, role="restaurant", name="Owner", device_token="tok-owner"),
            UserContact(user_id=DRIVER.user_id, role="driver", name="Driver", device_token="tok-driver"),
        ]
    )
    db_sess.commit()
    return SimpleNamespace(restaurant_id=10, other_restaurant_id=11)


def order_request(items=((1, 2),), restaurant_id=10, payment_method="card", is_surge_time=False, **extra):
    return CreateOrderRequest(
        restaurant_id=restaurant_id,
        items=[{"item_id": item_id, "quantity": qty} for item_id, qty in items],
        delivery_address={"address": "12 Palm Street", "latitude": 0.01, "longitude": 0.01},
        payment_method=payment_method,
        is_surge_time=is_surge_time,
        **extra,
    )


def advance_to_ready(service, order):
    for status in ("confirmed", "preparing", "ready"):
        order = service.update_status(OWNER, order.order_id, status)
    return order


def deliver(service, order, driver=DRIVER):
    order = advance_to_ready(service, order)
    order = service.accept_order(driver, order.order_id)
    order = service.pickup_order(driver, order.order_id)
    return service.complete_delivery(driver, order.order_id)


def place_restaurant_at(db_sess, restaurant_id, distance_km, owner_id=100):
    """Restaurant due north of the origin at ``distance_km``."""
    restaurant = Restaurant(
        restaurant_id=restaurant_id,
        owner_id=owner_id,
        name=f"R{restaurant_id}",
        delivery_fee=Decimal("2.00"),
        minimum_order=Decimal("0.00"),
        latitude=distance_km / KM_PER_DEGREE,
        longitude=0.0,
    )
    db_sess.add(restaurant)
    db_sess.add(MenuItem(item_id=restaurant_id * 100, restaurant_id=restaurant_id, name="Dish", price=Decimal("12.00")))
    db_sess.commit()
    return restaurant

