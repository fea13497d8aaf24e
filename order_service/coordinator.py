"""Fan-out of committed order changes to the realtime channel and push.

Planning (which topics, which recipients, which text) is separated from
delivery so the service can plan inside a request and deliver afterwards in
a background task. Delivery failures are logged and counted, never raised.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Union

from .collaborators import EventPublisher, PushNotifier
from .metrics import NOTIFICATION_FAILURES
from .models import Order, OrderStatus, utcnow

logger = logging.getLogger("order-service.coordinator")

CUSTOMER_MESSAGES = {
    OrderStatus.CONFIRMED.value: "Order confirmed! Your food is being prepared.",
    OrderStatus.PREPARING.value: "Your order is being prepared.",
    OrderStatus.READY.value: "Your order is ready for pickup!",
    OrderStatus.PICKED_UP.value: "Driver picked up your order!",
    OrderStatus.ON_THE_WAY.value: "Your order is on the way!",
    OrderStatus.DELIVERED.value: "Your order has been delivered! Enjoy!",
    OrderStatus.CANCELLED.value: "Your order has been cancelled.",
    OrderStatus.REJECTED.value: "The restaurant could not accept your order.",
}
DEFAULT_CUSTOMER_MESSAGE = "Order status updated"

NEW_ORDER_TITLE = "New Order!"
NEW_ORDER_BODY = "You have received a new order. Tap to view details."
DRIVER_ASSIGNED_TITLE = "New Delivery Request"

# order-room events beyond the generic orderStatusUpdate
STATUS_EVENTS = {
    OrderStatus.ASSIGNED.value: "driverAssigned",
    OrderStatus.PICKED_UP.value: "orderPickedUp",
    OrderStatus.DELIVERED.value: "orderDelivered",
    OrderStatus.CANCELLED.value: "orderCancelled",
}


def order_topic(order_id: int) -> str:
    return f"order:{order_id}"


def user_topic(user_id: int) -> str:
    return f"user:{user_id}"


@dataclass(frozen=True)
class OrderEvent:
    """Plain snapshot of an order, safe to hand to a background task."""

    order_id: int
    order_number: str
    status: str
    customer_id: int
    owner_id: int
    driver_id: Optional[int]
    total: Decimal
    item_count: int
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_order(cls, order: Order, reason: Optional[str] = None) -> "OrderEvent":
        return cls(
            order_id=order.order_id,
            order_number=order.order_number,
            status=order.status,
            customer_id=order.customer_id,
            owner_id=order.restaurant.owner_id,
            driver_id=order.driver_id,
            total=order.total,
            item_count=len(order.items),
            reason=reason,
        )


@dataclass(frozen=True)
class Broadcast:
    topic: str
    event: str
    payload: dict


@dataclass(frozen=True)
class Push:
    device_token: str
    title: str
    body: str
    data: dict


Notice = Union[Broadcast, Push]


class StatusCoordinator:
    def __init__(self, publisher: EventPublisher, notifier: PushNotifier):
        self.publisher = publisher
        self.notifier = notifier

    # ----- Planning -----

    def order_placed(self, event: OrderEvent, tokens: Dict[int, str]) -> List[Notice]:
        notices: List[Notice] = [
            Broadcast(
                user_topic(event.owner_id),
                "newOrder",
                {
                    "orderId": event.order_id,
                    "orderNumber": event.order_number,
                    "items": event.item_count,
                    "total": str(event.total),
                },
            )
        ]
        token = tokens.get(event.owner_id)
        if token:
            notices.append(Push(token, NEW_ORDER_TITLE, NEW_ORDER_BODY, {"type": "new_order", "screen": "orders"}))
        return notices

    def status_changed(self, event: OrderEvent, tokens: Dict[int, str]) -> List[Notice]:
        topic = order_topic(event.order_id)
        notices: List[Notice] = [
            Broadcast(
                topic,
                "orderStatusUpdate",
                {"orderId": event.order_id, "status": event.status, "timestamp": event.timestamp.isoformat()},
            ),
        ]

        specific = STATUS_EVENTS.get(event.status)
        if specific == "driverAssigned":
            notices.append(Broadcast(topic, specific, {"orderId": event.order_id, "driverId": event.driver_id}))
        elif specific == "orderCancelled":
            notices.append(Broadcast(topic, specific, {"orderId": event.order_id, "reason": event.reason}))
        elif specific:
            notices.append(Broadcast(topic, specific, {"orderId": event.order_id, "timestamp": event.timestamp.isoformat()}))

        notices.append(
            Broadcast(user_topic(event.customer_id), "orderUpdate", {"orderId": event.order_id, "status": event.status})
        )

        if event.status == OrderStatus.ASSIGNED.value:
            driver_token = tokens.get(event.driver_id)
            if driver_token:
                notices.append(
                    Push(
                        driver_token,
                        DRIVER_ASSIGNED_TITLE,
                        f"Order {event.order_number} has been assigned to you.",
                        {"type": "delivery_assigned", "screen": "active_delivery"},
                    )
                )
            return notices

        customer_token = tokens.get(event.customer_id)
        if customer_token:
            notices.append(
                Push(
                    customer_token,
                    f"Order {event.order_number}",
                    CUSTOMER_MESSAGES.get(event.status, DEFAULT_CUSTOMER_MESSAGE),
                    {"type": "order_status", "status": event.status, "screen": "order_tracking"},
                )
            )
        return notices

    def driver_location(self, order_id: int, latitude: float, longitude: float, timestamp: datetime) -> List[Notice]:
        return [
            Broadcast(
                order_topic(order_id),
                "driverLocation",
                {"latitude": latitude, "longitude": longitude, "timestamp": timestamp.isoformat()},
            )
        ]

    # ----- Delivery -----

    def deliver(self, notices: List[Notice], cid: str = "-") -> None:
        for notice in notices:
            try:
                if isinstance(notice, Broadcast):
                    self.publisher.publish(notice.topic, notice.event, notice.payload)
                else:
                    self.notifier.send(notice.device_token, notice.title, notice.body, notice.data)
            except Exception as e:
                channel = "pubsub" if isinstance(notice, Broadcast) else "push"
                NOTIFICATION_FAILURES.labels(channel).inc()
                logger.warning(f"Failed to deliver {channel} notice: {e}", extra={"correlation_id": cid})
