"""Read-only views over the order table: scoped listing and rollups.

Nothing in this module writes. Money is summed as Decimal in Python after
selecting only the rows inside the requested window, which keeps the numbers
identical across database backends.
"""
import math
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from .errors import ValidationError
from .lifecycle import ACTIVE_STATUSES, Actor
from .models import (
    Driver,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Restaurant,
    Role,
    UserContact,
    utcnow,
)
from .pricing import ZERO, to_money

MAX_PAGE_SIZE = 100
TOP_ITEMS_LIMIT = 5

PERIODS = {
    # period -> (lookback days, bucket format)
    "week": (7, "%Y-%m-%d"),
    "month": (30, "%Y-%m-%d"),
    "year": (365, "%Y-%m"),
}


@dataclass
class Page:
    data: List[Order]
    total: int
    page: int
    limit: int

    @property
    def count(self) -> int:
        return len(self.data)

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class DriverEarnings:
    total_earnings: Decimal
    total_deliveries: int
    average_earning: Decimal
    orders: List[Order]


@dataclass
class TopItem:
    item_id: int
    name: str
    total_quantity: int
    total_revenue: Decimal


@dataclass
class DailyStat:
    day: date
    orders: int = 0
    revenue: Decimal = ZERO


@dataclass
class RestaurantAnalytics:
    total_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    top_items: List[TopItem]
    daily_stats: List[DailyStat]


@dataclass
class RevenueTotals:
    total_revenue: Decimal = ZERO
    platform_commission: Decimal = ZERO
    restaurant_earnings: Decimal = ZERO
    driver_earnings: Decimal = ZERO
    average_order_value: Decimal = ZERO


@dataclass
class PlatformStats:
    total_customers: int
    total_restaurants: int
    total_drivers: int
    active_drivers: int
    total_orders: int
    completed_orders: int
    cancelled_orders: int
    active_orders: int
    by_status: Dict[str, int]
    revenue: RevenueTotals


@dataclass
class RevenueBucket:
    bucket: str
    revenue: Decimal = ZERO
    orders: int = 0
    average_order_value: Decimal = ZERO
    _gross: Decimal = field(default=ZERO, repr=False)


@dataclass
class RevenueAnalytics:
    period: str
    data: List[RevenueBucket]


# ----- Helpers -----


def _average(total: Decimal, count: int) -> Decimal:
    return to_money(total / count) if count else ZERO


def as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    # timestamps are stored naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _in_window(stmt, column, start: Optional[datetime], end: Optional[datetime]):
    if start is not None:
        stmt = stmt.where(column >= as_utc_naive(start))
    if end is not None:
        stmt = stmt.where(column <= as_utc_naive(end))
    return stmt


def _count(db_sess: Session, stmt) -> int:
    return db_sess.scalar(select(func.count()).select_from(stmt.subquery()))


def check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be 1 or greater")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def visible_orders(actor: Actor):
    """Base statement restricted to the orders ``actor`` may see."""
    stmt = select(Order)
    if actor.role == Role.CUSTOMER:
        stmt = stmt.where(Order.customer_id == actor.user_id)
    elif actor.role == Role.RESTAURANT:
        owned = select(Restaurant.restaurant_id).where(Restaurant.owner_id == actor.user_id)
        stmt = stmt.where(Order.restaurant_id.in_(owned))
    elif actor.role == Role.DRIVER:
        stmt = stmt.where(Order.driver_id == actor.user_id)
    return stmt


def _paginate(db_sess: Session, stmt, page: int, limit: int) -> Page:
    check_paging(page, limit)
    total = _count(db_sess, stmt)
    skip = (page - 1) * limit
    rows = db_sess.scalars(
        stmt.options(selectinload(Order.items), selectinload(Order.status_history))
        .order_by(Order.created_at.desc(), Order.order_id.desc())
        .offset(skip)
        .limit(limit)
    ).all()
    return Page(data=list(rows), total=total, page=page, limit=limit)


# ----- Listing -----


def list_orders(
    db_sess: Session,
    actor: Actor,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Page:
    stmt = visible_orders(actor)
    if status:
        try:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}")
    return _paginate(db_sess, stmt, page, limit)


def payment_history(db_sess: Session, customer_id: int, page: int = 1, limit: int = 20) -> Page:
    stmt = select(Order).where(
        Order.customer_id == customer_id,
        Order.payment_status.in_([PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value]),
    )
    return _paginate(db_sess, stmt, page, limit)


# ----- Rollups -----


def driver_earnings(
    db_sess: Session,
    driver_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> DriverEarnings:
    stmt = select(Order).where(Order.driver_id == driver_id, Order.status == OrderStatus.DELIVERED.value)
    stmt = _in_window(stmt, Order.delivered_at, start, end)
    orders = list(
        db_sess.scalars(
            stmt.options(selectinload(Order.items), selectinload(Order.status_history)).order_by(
                Order.delivered_at.desc()
            )
        ).all()
    )

    total = sum((o.driver_earnings for o in orders), ZERO)
    return DriverEarnings(
        total_earnings=to_money(total),
        total_deliveries=len(orders),
        average_earning=_average(total, len(orders)),
        orders=orders,
    )


def restaurant_analytics(
    db_sess: Session,
    restaurant_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> RestaurantAnalytics:
    now = now or utcnow()
    base = _in_window(select(Order).where(Order.restaurant_id == restaurant_id), Order.created_at, start, end)

    total_orders = _count(db_sess, base)
    completed = _count(db_sess, base.where(Order.status == OrderStatus.DELIVERED.value))
    cancelled = _count(db_sess, base.where(Order.status == OrderStatus.CANCELLED.value))

    earnings_stmt = _in_window(
        select(Order.restaurant_earnings).where(
            Order.restaurant_id == restaurant_id,
            Order.status == OrderStatus.DELIVERED.value,
        ),
        Order.created_at,
        start,
        end,
    )
    earnings = list(db_sess.scalars(earnings_stmt).all())
    revenue = sum(earnings, ZERO)

    items_stmt = (
        select(
            OrderItem.item_id,
            func.min(OrderItem.name),
            func.sum(OrderItem.quantity),
            func.sum(OrderItem.subtotal),
        )
        .join(Order, OrderItem.order_id == Order.order_id)
        .where(
            Order.restaurant_id == restaurant_id,
            Order.status.notin_([OrderStatus.CANCELLED.value, OrderStatus.REJECTED.value]),
        )
        .group_by(OrderItem.item_id)
        .order_by(func.sum(OrderItem.quantity).desc(), OrderItem.item_id)
        .limit(TOP_ITEMS_LIMIT)
    )
    items_stmt = _in_window(items_stmt, Order.created_at, start, end)
    top_items = [
        TopItem(item_id=item_id, name=name, total_quantity=int(qty), total_revenue=to_money(rev))
        for item_id, name, qty, rev in db_sess.execute(items_stmt).all()
    ]

    # daily chart: the requested window, or the last seven days
    day_start = start or (now - timedelta(days=7))
    day_end = end or now
    daily_stmt = _in_window(
        select(Order.created_at, Order.status, Order.restaurant_earnings).where(
            Order.restaurant_id == restaurant_id
        ),
        Order.created_at,
        day_start,
        day_end,
    )
    daily: Dict[date, DailyStat] = OrderedDict()
    for created_at, status, earned in db_sess.execute(daily_stmt.order_by(Order.created_at)).all():
        stat = daily.setdefault(created_at.date(), DailyStat(day=created_at.date()))
        stat.orders += 1
        if status == OrderStatus.DELIVERED.value:
            stat.revenue = to_money(stat.revenue + earned)

    return RestaurantAnalytics(
        total_orders=total_orders,
        completed_orders=completed,
        cancelled_orders=cancelled,
        total_revenue=to_money(revenue),
        average_order_value=_average(revenue, len(earnings)),
        top_items=top_items,
        daily_stats=list(daily.values()),
    )


def platform_stats(
    db_sess: Session,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> PlatformStats:
    base = _in_window(select(Order), Order.created_at, start, end)

    by_status = {
        status: count
        for status, count in db_sess.execute(
            _in_window(
                select(Order.status, func.count()).group_by(Order.status),
                Order.created_at,
                start,
                end,
            )
        ).all()
    }

    delivered = db_sess.execute(
        _in_window(
            select(
                Order.total,
                Order.platform_commission,
                Order.restaurant_earnings,
                Order.driver_earnings,
            ).where(Order.status == OrderStatus.DELIVERED.value),
            Order.created_at,
            start,
            end,
        )
    ).all()
    revenue = RevenueTotals()
    for total, commission, restaurant_share, driver_share in delivered:
        revenue.total_revenue += total
        revenue.platform_commission += commission
        revenue.restaurant_earnings += restaurant_share
        revenue.driver_earnings += driver_share
    revenue.average_order_value = _average(revenue.total_revenue, len(delivered))

    return PlatformStats(
        total_customers=_count(db_sess, select(UserContact).where(UserContact.role == Role.CUSTOMER.value)),
        total_restaurants=_count(db_sess, select(Restaurant)),
        total_drivers=_count(db_sess, select(Driver)),
        active_drivers=_count(db_sess, select(Driver).where(Driver.is_available.is_(True))),
        total_orders=_count(db_sess, base),
        completed_orders=by_status.get(OrderStatus.DELIVERED.value, 0),
        cancelled_orders=by_status.get(OrderStatus.CANCELLED.value, 0),
        # live workload, independent of the reporting window
        active_orders=_count(db_sess, select(Order).where(Order.status.in_([s.value for s in ACTIVE_STATUSES]))),
        by_status=by_status,
        revenue=revenue,
    )


def revenue_analytics(db_sess: Session, period: str = "week", now: Optional[datetime] = None) -> RevenueAnalytics:
    if period not in PERIODS:
        raise ValidationError(f"period must be one of: {', '.join(PERIODS)}")
    days, fmt = PERIODS[period]
    now = now or utcnow()

    rows = db_sess.execute(
        select(Order.created_at, Order.platform_commission, Order.total)
        .where(Order.status == OrderStatus.DELIVERED.value, Order.created_at >= now - timedelta(days=days))
        .order_by(Order.created_at)
    ).all()

    buckets: Dict[str, RevenueBucket] = OrderedDict()
    for created_at, commission, total in rows:
        key = created_at.strftime(fmt)
        bucket = buckets.setdefault(key, RevenueBucket(bucket=key))
        bucket.revenue += commission
        bucket.orders += 1
        bucket._gross += total
    for bucket in buckets.values():
        bucket.average_order_value = _average(bucket._gross, bucket.orders)

    return RevenueAnalytics(period=period, data=list(buckets.values()))
