import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from .errors import AlreadyAssigned, BusinessRuleViolation, NotFound, NotReady
from .lifecycle import record_status
from .models import Driver, Order, OrderStatus, Restaurant, utcnow

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass
class Candidate:
    order: Order
    distance_km: float


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in kilometers."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    d_lat = math.radians(b.latitude - a.latitude)
    d_lon = math.radians(b.longitude - a.longitude)

    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def find_candidate_orders(
    db_sess: Session,
    location: GeoPoint,
    radius_km: float,
    limit: Optional[int] = None,
) -> List[Candidate]:
    """Ready, unassigned orders whose restaurant lies within ``radius_km``.

    Nearest first; equidistant orders keep placement order.
    """
    rows = db_sess.execute(
        select(Order, Restaurant.latitude, Restaurant.longitude)
        .options(selectinload(Order.items), selectinload(Order.status_history))
        .join(Restaurant, Order.restaurant_id == Restaurant.restaurant_id)
        .where(Order.status == OrderStatus.READY.value, Order.driver_id.is_(None))
    ).all()

    candidates = []
    for order, lat, lng in rows:
        distance = haversine_km(location, GeoPoint(lat, lng))
        if distance <= radius_km:
            candidates.append(Candidate(order=order, distance_km=distance))

    candidates.sort(key=lambda c: (c.distance_km, c.order.created_at, c.order.order_id))
    if limit is not None:
        candidates = candidates[:limit]
    return candidates


def assign(db_sess: Session, order_id: int, driver_id: int, now: Optional[datetime] = None) -> Order:
    """Atomically hand a ready order to one driver.

    Both guards live in UPDATE WHERE clauses: the driver must still be
    available, and the order must still be ready and unassigned. Of two
    racing accepts only one statement matches a row, whether they race for
    the same order or the same driver. Does not commit.
    """
    claimed = db_sess.execute(
        update(Driver)
        .where(Driver.driver_id == driver_id, Driver.is_available.is_(True))
        .values(is_available=False)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        if db_sess.execute(select(Driver.driver_id).where(Driver.driver_id == driver_id)).first() is None:
            raise NotFound(f"Driver {driver_id} not found")
        current = db_sess.execute(
            select(Order.status, Order.driver_id).where(Order.order_id == order_id)
        ).first()
        if current is not None and current.driver_id == driver_id and current.status == OrderStatus.ASSIGNED.value:
            # retried accept from the winning driver
            return db_sess.get(Order, order_id, populate_existing=True)
        raise BusinessRuleViolation("Driver must be available to accept orders")

    now = now or utcnow()
    result = db_sess.execute(
        update(Order)
        .where(
            Order.order_id == order_id,
            Order.status == OrderStatus.READY.value,
            Order.driver_id.is_(None),
        )
        .values(
            driver_id=driver_id,
            status=OrderStatus.ASSIGNED.value,
            version=Order.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        current = db_sess.execute(
            select(Order.status, Order.driver_id).where(Order.order_id == order_id)
        ).first()
        if current is None:
            raise NotFound(f"Order {order_id} not found")
        if current.driver_id is not None:
            raise AlreadyAssigned(f"Order {order_id} was already accepted by another driver")
        raise NotReady(f"Order {order_id} is not ready for pickup (status: {current.status})")

    db_sess.get(Driver, driver_id, populate_existing=True)
    order = db_sess.get(Order, order_id, populate_existing=True)
    record_status(order, OrderStatus.ASSIGNED, now)
    return order
