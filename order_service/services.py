import json
import logging
import secrets
import string
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from . import dispatch, lifecycle, reporting
from .collaborators import PaymentGateway, verify_webhook
from .config import Settings
from .coordinator import OrderEvent, StatusCoordinator
from .dispatch import GeoPoint
from .errors import (
    AlreadyAssigned,
    BusinessRuleViolation,
    ConcurrencyConflict,
    Forbidden,
    InvalidSignature,
    NotFound,
    ValidationError,
)
from .lifecycle import Actor
from .metrics import ASSIGNMENT_CONFLICTS, ORDER_TRANSITIONS, ORDERS_CREATED
from .models import (
    Driver,
    MenuItem,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Restaurant,
    Role,
    UserContact,
    utcnow,
)
from .pricing import LineItem, compute_pricing, to_money
from .schemas import CreateOrderRequest

logger = logging.getLogger("order-service.orders")

_BASE36 = string.digits + string.ascii_uppercase


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
    return out or "0"


def generate_order_number() -> str:
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
    return f"ORD-{stamp}-{suffix}"


def run_inline(fn, *args):
    fn(*args)


class OrderService:
    """Use cases behind the HTTP surface.

    One instance per request. ``schedule`` runs coordinator deliveries after
    the response; it defaults to running them inline, which is what tests and
    scripts want.
    """

    def __init__(
        self,
        db_sess: Session,
        coordinator: StatusCoordinator,
        payments: PaymentGateway,
        settings: Settings,
        schedule: Callable = run_inline,
        cid: str = "-",
    ):
        self.db = db_sess
        self.coordinator = coordinator
        self.payments = payments
        self.settings = settings
        self.schedule = schedule
        self.cid = cid

    # ----- Helpers -----

    def _log(self, message: str):
        logger.info(message, extra={"correlation_id": self.cid})

    def _require_role(self, actor: Actor, *roles: Role):
        if actor.role not in roles:
            raise Forbidden("Not authorized for this action")

    def _load_order(self, order_id: int) -> Order:
        order = self.db.scalars(
            select(Order)
            .options(selectinload(Order.items), selectinload(Order.status_history))
            .where(Order.order_id == order_id)
            .execution_options(populate_existing=True)
        ).first()
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        return order

    def _driver_profile(self, actor: Actor) -> Driver:
        self._require_role(actor, Role.DRIVER)
        driver = self.db.get(Driver, actor.user_id)
        if driver is None:
            raise NotFound("Driver profile not found")
        return driver

    def _commit(self):
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConcurrencyConflict("Order was modified concurrently, reload and retry")

    def _tokens(self, *user_ids) -> Dict[int, str]:
        ids = [u for u in user_ids if u is not None]
        if not ids:
            return {}
        rows = self.db.execute(
            select(UserContact.user_id, UserContact.device_token).where(UserContact.user_id.in_(ids))
        ).all()
        return {user_id: token for user_id, token in rows if token}

    def _announce(self, order: Order, reason: Optional[str] = None):
        event = OrderEvent.from_order(order, reason=reason)
        tokens = self._tokens(event.customer_id, event.driver_id)
        self.schedule(self.coordinator.deliver, self.coordinator.status_changed(event, tokens), self.cid)

    def _insert_with_order_number(self, order: Order, attempts: int = 2):
        for attempt in range(1, attempts + 1):
            order.order_number = generate_order_number()
            self.db.add(order)
            try:
                self.db.flush()
                return
            except IntegrityError:
                self.db.rollback()
                if attempt == attempts:
                    raise ConcurrencyConflict("Could not allocate an order number, retry")
                logger.warning(
                    f"Order number {order.order_number} already taken, regenerating",
                    extra={"correlation_id": self.cid},
                )

    # ----- Placement -----

    def place_order(self, actor: Actor, payload: CreateOrderRequest) -> Order:
        self._require_role(actor, Role.CUSTOMER)

        try:
            method = PaymentMethod(payload.payment_method)
        except ValueError:
            valid = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError(f"Invalid payment method: {payload.payment_method}. Valid methods are: {valid}")
        if not payload.items:
            raise ValidationError("Order must contain at least one item")

        restaurant = self.db.get(Restaurant, payload.restaurant_id)
        if restaurant is None:
            raise NotFound(f"Restaurant {payload.restaurant_id} not found")
        if not (restaurant.is_active and restaurant.is_open):
            raise BusinessRuleViolation("Restaurant is not available for orders")

        line_items: List[LineItem] = []
        order_items: List[OrderItem] = []
        for requested in payload.items:
            menu_item = self.db.get(MenuItem, requested.item_id)
            if menu_item is None or menu_item.restaurant_id != restaurant.restaurant_id:
                raise NotFound(f"Menu item {requested.item_id} not found")
            if not menu_item.is_available:
                raise BusinessRuleViolation(f"Menu item {menu_item.name} is not available")

            selections = []
            option_prices = []
            for group in requested.customizations:
                chosen = []
                for option in group.selected_options:
                    price = menu_item.option_price(group.name, option)
                    if price is None:
                        raise ValidationError(f"Unknown customization {group.name}/{option} for {menu_item.name}")
                    chosen.append({"name": option, "price": str(price)})
                    option_prices.append(price)
                selections.append({"name": group.name, "selected_options": chosen})

            line = LineItem(unit_price=menu_item.price, quantity=requested.quantity, option_prices=tuple(option_prices))
            line_items.append(line)
            order_items.append(
                OrderItem(
                    item_id=menu_item.item_id,
                    name=menu_item.name,
                    price=menu_item.price,
                    quantity=requested.quantity,
                    customizations=selections,
                    special_instructions=requested.special_instructions,
                    subtotal=line.subtotal(),
                )
            )

        pricing = compute_pricing(
            line_items,
            restaurant.delivery_fee,
            is_surge_time=payload.is_surge_time,
            config=self.settings.pricing,
            commission_rate=restaurant.commission_rate,
        )
        if pricing.subtotal < restaurant.minimum_order:
            raise BusinessRuleViolation(f"Minimum order amount is {to_money(restaurant.minimum_order)}")

        now = utcnow()
        address = payload.delivery_address
        order = Order(
            customer_id=actor.user_id,
            restaurant_id=restaurant.restaurant_id,
            status=OrderStatus.PENDING.value,
            is_surge_time=payload.is_surge_time,
            surge_multiplier=pricing.surge_multiplier,
            delivery_label=address.label,
            delivery_address=address.address,
            delivery_latitude=address.latitude,
            delivery_longitude=address.longitude,
            delivery_instructions=address.instructions,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            payment_method=method.value,
            payment_status=PaymentStatus.PENDING.value,
            estimated_delivery_time=now + timedelta(minutes=restaurant.max_delivery_minutes),
            created_at=now,
            **pricing.as_dict(),
        )
        order.restaurant = restaurant
        order.items = order_items
        lifecycle.record_status(order, OrderStatus.PENDING, now)
        self._insert_with_order_number(order)

        for line in order_items:
            self.db.execute(
                update(MenuItem)
                .where(MenuItem.item_id == line.item_id)
                .values(total_orders=MenuItem.total_orders + line.quantity)
                .execution_options(synchronize_session=False)
            )

        self.db.commit()
        ORDERS_CREATED.labels(method.value).inc()
        self._log(f"Order {order.order_number} placed, total {pricing.total}")

        event = OrderEvent.from_order(order)
        tokens = self._tokens(restaurant.owner_id)
        self.schedule(self.coordinator.deliver, self.coordinator.order_placed(event, tokens), self.cid)
        return order

    # ----- Reads -----

    def get_order(self, actor: Actor, order_id: int) -> Order:
        order = self._load_order(order_id)
        if not lifecycle.can_view(order, actor):
            raise Forbidden("Not authorized to view this order")
        return order

    def list_orders(self, actor: Actor, status: Optional[str] = None, page: int = 1, limit: int = 20):
        return reporting.list_orders(self.db, actor, status=status, page=page, limit=limit)

    # ----- Transitions -----

    def update_status(self, actor: Actor, order_id: int, status: str, note: Optional[str] = None) -> Order:
        try:
            target = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown order status: {status}")

        if target == OrderStatus.ASSIGNED:
            return self.accept_order(actor, order_id)
        if target == OrderStatus.CANCELLED:
            return self.cancel_order(actor, order_id, note)
        return self._transition(actor, order_id, target, note)

    def _transition(self, actor: Actor, order_id: int, target: OrderStatus, note: Optional[str] = None) -> Order:
        order = self._load_order(order_id)
        if not lifecycle.transition(order, target, actor, note=note):
            self._log(f"Order {order.order_number} already {target.value}, nothing to do")
            return order

        self._commit()
        ORDER_TRANSITIONS.labels(target.value).inc()
        self._log(f"Order {order.order_number} moved to {target.value}")
        self._announce(order)
        return order

    def cancel_order(self, actor: Actor, order_id: int, reason: Optional[str] = None) -> Order:
        order = self._load_order(order_id)
        lifecycle.cancel(order, actor, reason)
        self._commit()
        ORDER_TRANSITIONS.labels(OrderStatus.CANCELLED.value).inc()
        self._log(f"Order {order.order_number} cancelled by {order.cancelled_by}")
        self._announce(order, reason=reason)
        return order

    # ----- Dispatch -----

    def available_orders(
        self,
        actor: Actor,
        latitude: float,
        longitude: float,
        radius_km: Optional[float] = None,
    ) -> List[dispatch.Candidate]:
        driver = self._driver_profile(actor)
        if not driver.is_available:
            raise BusinessRuleViolation("Please mark yourself as available first")
        radius = self.settings.dispatch_radius_km if radius_km is None else radius_km
        if radius <= 0:
            raise ValidationError("radius_km must be positive")

        candidates = dispatch.find_candidate_orders(
            self.db,
            GeoPoint(latitude, longitude),
            radius,
            limit=self.settings.dispatch_max_candidates,
        )
        return candidates

    def accept_order(self, actor: Actor, order_id: int) -> Order:
        self._require_role(actor, Role.DRIVER)
        try:
            dispatch.assign(self.db, order_id, actor.user_id)
            self._commit()
        except ConcurrencyConflict as e:
            self.db.rollback()
            ASSIGNMENT_CONFLICTS.inc()
            logger.info(f"Driver {actor.user_id} lost order {order_id}: {e.message}", extra={"correlation_id": self.cid})
            if isinstance(e, AlreadyAssigned):
                raise
            raise AlreadyAssigned(f"Order {order_id} was already accepted by another driver")
        except Exception:
            self.db.rollback()
            raise

        order = self._load_order(order_id)
        ORDER_TRANSITIONS.labels(OrderStatus.ASSIGNED.value).inc()
        self._log(f"Order {order.order_number} assigned to driver {actor.user_id}")
        self._announce(order)
        return order

    def pickup_order(self, actor: Actor, order_id: int) -> Order:
        return self._transition(actor, order_id, OrderStatus.PICKED_UP)

    def start_delivery(self, actor: Actor, order_id: int) -> Order:
        return self._transition(actor, order_id, OrderStatus.ON_THE_WAY)

    def complete_delivery(self, actor: Actor, order_id: int) -> Order:
        return self._transition(actor, order_id, OrderStatus.DELIVERED)

    def update_location(self, actor: Actor, latitude: float, longitude: float) -> Optional[Order]:
        driver = self._driver_profile(actor)
        driver.latitude = latitude
        driver.longitude = longitude

        active = self.db.scalars(
            select(Order).where(
                Order.driver_id == driver.driver_id,
                Order.status.in_([OrderStatus.PICKED_UP.value, OrderStatus.ON_THE_WAY.value]),
            )
        ).first()
        self.db.commit()

        if active is not None:
            notices = self.coordinator.driver_location(active.order_id, latitude, longitude, utcnow())
            self.schedule(self.coordinator.deliver, notices, self.cid)
        return active

    def toggle_availability(self, actor: Actor) -> Driver:
        driver = self._driver_profile(actor)
        driver.is_available = not driver.is_available
        self.db.commit()
        self._log(f"Driver {driver.driver_id} is now {'available' if driver.is_available else 'unavailable'}")
        return driver

    # ----- Payments -----

    def _payable_order(self, actor: Actor, order_id: int) -> Order:
        order = self._load_order(order_id)
        if not (actor.is_admin or lifecycle.is_customer(order, actor)):
            # same answer as a missing order, customers can't probe other ids
            raise NotFound(f"Order {order_id} not found")
        return order

    def authorize_payment(self, actor: Actor, order_id: int) -> Order:
        order = self._payable_order(actor, order_id)
        if order.payment_method == PaymentMethod.CASH.value:
            raise BusinessRuleViolation("Cash orders are paid on delivery")
        if order.payment_status != PaymentStatus.PENDING.value:
            raise BusinessRuleViolation(f"Payment is already {order.payment_status}")
        if order.payment_transaction_id:
            raise BusinessRuleViolation("Payment was already authorized")
        if order.status in (OrderStatus.CANCELLED.value, OrderStatus.REJECTED.value):
            raise BusinessRuleViolation("Order is no longer payable")

        order.payment_transaction_id = self.payments.authorize(order.total, order.order_number)
        self._commit()
        self._log(f"Payment authorized for {order.order_number}")
        return order

    def confirm_payment(self, actor: Actor, order_id: int) -> Order:
        order = self._payable_order(actor, order_id)
        if not order.payment_transaction_id:
            raise BusinessRuleViolation("No payment transaction found for this order")
        if order.payment_status == PaymentStatus.COMPLETED.value:
            return order

        status = self.payments.confirm(order.payment_transaction_id)
        if status != "succeeded":
            raise BusinessRuleViolation("Payment not successful")
        order.payment_status = PaymentStatus.COMPLETED.value
        order.paid_at = utcnow()
        self._commit()
        self._log(f"Payment confirmed for {order.order_number}")
        return order

    def refund_payment(self, actor: Actor, order_id: int, amount: Optional[Decimal] = None):
        self._require_role(actor, Role.ADMIN)
        order = self._load_order(order_id)
        if not order.payment_transaction_id:
            raise BusinessRuleViolation("No payment transaction found for this order")
        if order.payment_status == PaymentStatus.REFUNDED.value:
            raise BusinessRuleViolation("Payment was already refunded")
        if amount is not None and to_money(amount) > order.total:
            raise ValidationError("Refund amount exceeds order total")

        refund_ref = self.payments.refund(order.payment_transaction_id, amount)
        order.payment_status = PaymentStatus.REFUNDED.value
        self._commit()
        self._log(f"Refund {refund_ref} issued for {order.order_number}")
        return order, refund_ref

    def receive_payment_webhook(self, body: bytes, signature: Optional[str]) -> bool:
        """Verify a raw webhook from the payment gateway, then apply it."""
        if not verify_webhook(self.settings.payment_webhook_secret, body, signature):
            logger.warning("Payment webhook with a bad signature rejected", extra={"correlation_id": self.cid})
            raise InvalidSignature("Webhook signature verification failed")
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        return self.apply_payment_event(payload)

    def apply_payment_event(self, payload: dict) -> bool:
        """Apply a gateway webhook. Returns False for events that were ignored."""
        try:
            event_type = payload["type"]
            transaction_id = payload["data"]["object"]["id"]
        except (KeyError, TypeError):
            logger.warning("Malformed payment webhook ignored", extra={"correlation_id": self.cid})
            return False

        new_status = {
            "payment_intent.succeeded": PaymentStatus.COMPLETED,
            "payment_intent.payment_failed": PaymentStatus.FAILED,
        }.get(event_type)
        if new_status is None:
            logger.info(f"Unhandled payment event {event_type}", extra={"correlation_id": self.cid})
            return False

        order = self.db.scalars(
            select(Order)
            .where(Order.payment_transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        ).first()
        if order is None:
            logger.warning(f"Payment event for unknown transaction {transaction_id}", extra={"correlation_id": self.cid})
            return False

        current = order.payment_status
        retried_capture = current == PaymentStatus.FAILED.value and new_status == PaymentStatus.COMPLETED
        if current != PaymentStatus.PENDING.value and not retried_capture:
            logger.info(
                f"Payment event {event_type} ignored, {order.order_number} is already {current}",
                extra={"correlation_id": self.cid},
            )
            return False

        order.payment_status = new_status.value
        if new_status == PaymentStatus.COMPLETED:
            order.paid_at = utcnow()
        self._commit()
        self._log(f"Payment for {order.order_number} marked {new_status.value}")
        return True

    def payment_history(self, actor: Actor, page: int = 1, limit: int = 20):
        self._require_role(actor, Role.CUSTOMER)
        return reporting.payment_history(self.db, actor.user_id, page=page, limit=limit)

    # ----- Reporting -----

    def driver_earnings(
        self,
        actor: Actor,
        driver_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        if actor.role == Role.DRIVER:
            if driver_id is not None and driver_id != actor.user_id:
                raise Forbidden("Drivers can only see their own earnings")
            driver_id = actor.user_id
        elif actor.is_admin:
            if driver_id is None:
                raise ValidationError("driver_id is required")
        else:
            raise Forbidden("Not authorized for this action")
        return reporting.driver_earnings(self.db, driver_id, start=start, end=end)

    def restaurant_analytics(
        self,
        actor: Actor,
        restaurant_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        restaurant = self.db.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFound(f"Restaurant {restaurant_id} not found")
        is_owner = actor.role == Role.RESTAURANT and restaurant.owner_id == actor.user_id
        if not (is_owner or actor.is_admin):
            raise Forbidden("Not authorized to view analytics for this restaurant")
        return reporting.restaurant_analytics(self.db, restaurant_id, start=start, end=end)

    def platform_stats(self, actor: Actor, start: Optional[datetime] = None, end: Optional[datetime] = None):
        self._require_role(actor, Role.ADMIN)
        return reporting.platform_stats(self.db, start=start, end=end)

    def revenue_analytics(self, actor: Actor, period: str = "week"):
        self._require_role(actor, Role.ADMIN)
        return reporting.revenue_analytics(self.db, period=period)
