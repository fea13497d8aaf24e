"""Order state machine.

Every status change goes through :func:`transition` (or :func:`cancel`), which
checks who is acting, checks the move is legal, stamps milestones and writes
exactly one status-history row. Nothing here commits; the caller owns the
session.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import true

from .errors import Forbidden, InvalidTransition
from .models import (
    Driver,
    Order,
    OrderStatus,
    PaymentStatus,
    Restaurant,
    Role,
    StatusHistory,
    utcnow,
)

S = OrderStatus

ALLOWED_TRANSITIONS = {
    S.PENDING: {S.CONFIRMED, S.REJECTED, S.CANCELLED},
    S.CONFIRMED: {S.PREPARING, S.CANCELLED},
    S.PREPARING: {S.READY, S.CANCELLED},
    S.READY: {S.ASSIGNED, S.CANCELLED},
    S.ASSIGNED: {S.PICKED_UP, S.CANCELLED},
    # on-the-way is an optional checkpoint, drivers may go straight to delivered
    S.PICKED_UP: {S.ON_THE_WAY, S.DELIVERED, S.CANCELLED},
    S.ON_THE_WAY: {S.DELIVERED, S.CANCELLED},
    S.DELIVERED: set(),
    S.CANCELLED: set(),
    S.REJECTED: set(),
}

TERMINAL_STATUSES = {S.DELIVERED, S.CANCELLED, S.REJECTED}
ACTIVE_STATUSES = [s for s in S if s not in TERMINAL_STATUSES]

RESTAURANT_TARGETS = {S.CONFIRMED, S.PREPARING, S.READY, S.REJECTED}
DRIVER_TARGETS = {S.ASSIGNED, S.PICKED_UP, S.ON_THE_WAY, S.DELIVERED}

MILESTONES = {
    S.CONFIRMED: "accepted_at",
    S.READY: "prepared_at",
    S.PICKED_UP: "picked_up_at",
    S.DELIVERED: "delivered_at",
}


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def is_restaurant_owner(order: Order, actor: Actor) -> bool:
    return actor.role == Role.RESTAURANT and order.restaurant.owner_id == actor.user_id


def is_assigned_driver(order: Order, actor: Actor) -> bool:
    return actor.role == Role.DRIVER and order.driver_id is not None and order.driver_id == actor.user_id


def is_customer(order: Order, actor: Actor) -> bool:
    return actor.role == Role.CUSTOMER and order.customer_id == actor.user_id


def can_view(order: Order, actor: Actor) -> bool:
    return (
        actor.is_admin
        or is_customer(order, actor)
        or is_restaurant_owner(order, actor)
        or is_assigned_driver(order, actor)
    )


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[OrderStatus(current)]


def authorize(order: Order, target: OrderStatus, actor: Actor) -> None:
    if target in RESTAURANT_TARGETS:
        allowed = is_restaurant_owner(order, actor)
    elif target in DRIVER_TARGETS:
        if order.driver_id is None:
            # nobody can act as the driver before dispatch, the order isn't there yet
            raise InvalidTransition(
                f"Cannot move order from {order.status} to {target.value} before a driver is assigned"
            )
        allowed = is_assigned_driver(order, actor)
    elif target == S.CANCELLED:
        allowed = cancelled_by(order, actor) is not None
    else:
        allowed = False
    if not allowed:
        raise Forbidden(f"Not authorized to set order {order.order_number} to {target.value}")


def cancelled_by(order: Order, actor: Actor) -> Optional[str]:
    if is_customer(order, actor):
        return Role.CUSTOMER.value
    if is_restaurant_owner(order, actor):
        return Role.RESTAURANT.value
    if actor.is_admin:
        return Role.ADMIN.value
    return None


def record_status(order: Order, status: OrderStatus, now: datetime, note: Optional[str] = None) -> None:
    order.status_history.append(StatusHistory(status=status.value, timestamp=now, note=note))


def transition(
    order: Order,
    target: OrderStatus,
    actor: Actor,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Move ``order`` to ``target``.

    Returns False when the order is already in ``target`` (a retried request),
    in which case nothing is written. Raises :class:`Forbidden` before
    :class:`InvalidTransition` so callers never learn about orders they can't
    touch.
    """
    target = OrderStatus(target)
    authorize(order, target, actor)

    current = OrderStatus(order.status)
    if current == target and target != S.CANCELLED:
        return False
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move order from {current.value} to {target.value}")

    now = now or utcnow()
    order.status = target.value
    milestone = MILESTONES.get(target)
    if milestone:
        setattr(order, milestone, now)
    if target == S.DELIVERED:
        _settle_delivery(order, now)
    record_status(order, target, now, note)
    return True


def cancel(order: Order, actor: Actor, reason: Optional[str], now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    transition(order, S.CANCELLED, actor, note=reason, now=now)
    order.cancel_reason = reason
    order.cancelled_by = cancelled_by(order, actor)
    order.cancelled_at = now
    _release_driver(order)


def _release_driver(order: Order) -> None:
    if order.driver is not None:
        # SQL-side so a stale in-memory flag still gets written
        order.driver.is_available = true()


def _settle_delivery(order: Order, now: datetime) -> None:
    order.payment_status = PaymentStatus.COMPLETED.value
    order.paid_at = now
    # SQL-side increments, concurrent deliveries for the same restaurant must not lose counts
    restaurant = order.restaurant
    restaurant.total_orders = Restaurant.total_orders + 1
    restaurant.total_revenue = Restaurant.total_revenue + order.restaurant_earnings
    driver = order.driver
    if driver is not None:
        driver.total_deliveries = Driver.total_deliveries + 1
    _release_driver(order)
