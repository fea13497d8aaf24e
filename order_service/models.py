from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    inspect,
)
from sqlalchemy.orm import declarative_base, relationship, validates

Base = declarative_base()

Money = Numeric(10, 2)


def utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"
    PICKED_UP = "picked-up"
    ON_THE_WAY = "on-the-way"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"
    WALLET = "wallet"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Role(str, Enum):
    CUSTOMER = "customer"
    RESTAURANT = "restaurant"
    DRIVER = "driver"
    ADMIN = "admin"


# ----- Collaborator read models -----


class UserContact(Base):
    __tablename__ = "users"

    user_id = Column(Integer, primary_key=True, index=True)
    role = Column(String(20), nullable=False, default=Role.CUSTOMER.value)
    name = Column(String(120), nullable=False, default="")
    phone = Column(String(40), nullable=True)
    device_token = Column(String(255), nullable=True)


class Restaurant(Base):
    __tablename__ = "restaurants"

    restaurant_id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String(120), nullable=False)
    delivery_fee = Column(Money, nullable=False, default=Decimal("0.00"))
    minimum_order = Column(Money, nullable=False, default=Decimal("0.00"))
    commission_rate = Column(Numeric(5, 4), nullable=True)  # None -> platform default
    is_open = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    max_delivery_minutes = Column(Integer, nullable=False, default=45)
    total_orders = Column(Integer, nullable=False, default=0)
    total_revenue = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    menu_items = relationship("MenuItem", back_populates="restaurant")


class MenuItem(Base):
    __tablename__ = "menu_items"

    item_id = Column(Integer, primary_key=True, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    price = Column(Money, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    # [{"name": "Size", "options": [{"name": "Large", "price": "1.50"}]}]
    customizations = Column(JSON, nullable=False, default=list)
    total_orders = Column(Integer, nullable=False, default=0)

    restaurant = relationship("Restaurant", back_populates="menu_items")

    def option_price(self, group: str, option: str):
        for g in self.customizations or []:
            if g.get("name") != group:
                continue
            for o in g.get("options", []):
                if o.get("name") == option:
                    return Decimal(str(o.get("price", "0")))
        return None


class Driver(Base):
    __tablename__ = "drivers"

    driver_id = Column(Integer, primary_key=True, autoincrement=False)  # same id as the user
    is_available = Column(Boolean, nullable=False, default=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    total_deliveries = Column(Integer, nullable=False, default=0)


# ----- Order aggregate -----


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(32), nullable=False, unique=True, index=True)
    customer_id = Column(Integer, nullable=False, index=True)
    restaurant_id = Column(Integer, ForeignKey("restaurants.restaurant_id"), nullable=False, index=True)
    driver_id = Column(Integer, ForeignKey("drivers.driver_id"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)

    # pricing snapshot, written once at placement
    subtotal = Column(Money, nullable=False)
    delivery_fee = Column(Money, nullable=False)
    service_fee = Column(Money, nullable=False)
    tax = Column(Money, nullable=False)
    discount = Column(Money, nullable=False)
    total = Column(Money, nullable=False)
    platform_commission = Column(Money, nullable=False)
    restaurant_earnings = Column(Money, nullable=False)
    driver_earnings = Column(Money, nullable=False)
    is_surge_time = Column(Boolean, nullable=False, default=False)
    surge_multiplier = Column(Numeric(4, 2), nullable=False, default=Decimal("1.00"))

    delivery_label = Column(String(60), nullable=True)
    delivery_address = Column(Text, nullable=False)
    delivery_latitude = Column(Float, nullable=False)
    delivery_longitude = Column(Float, nullable=False)
    delivery_instructions = Column(Text, nullable=True)
    customer_name = Column(String(120), nullable=True)
    customer_phone = Column(String(40), nullable=True)

    payment_method = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_transaction_id = Column(String(120), nullable=True, index=True)
    paid_at = Column(DateTime, nullable=True)

    estimated_delivery_time = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    prepared_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    cancel_reason = Column(Text, nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    restaurant = relationship("Restaurant")
    driver = relationship("Driver")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    status_history = relationship(
        "StatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="StatusHistory.history_id",
    )

    @validates(
        "order_number",
        "subtotal",
        "delivery_fee",
        "service_fee",
        "tax",
        "discount",
        "total",
        "platform_commission",
        "restaurant_earnings",
        "driver_earnings",
    )
    def _write_once(self, key, value):
        # free to change until the row exists
        if inspect(self).has_identity and getattr(self, key) is not None:
            raise ValueError(f"Order.{key} is immutable once set")
        return value

    @property
    def pricing(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "delivery_fee": self.delivery_fee,
            "service_fee": self.service_fee,
            "tax": self.tax,
            "discount": self.discount,
            "total": self.total,
            "platform_commission": self.platform_commission,
            "restaurant_earnings": self.restaurant_earnings,
            "driver_earnings": self.driver_earnings,
        }

    @property
    def payment(self) -> dict:
        return {
            "method": self.payment_method,
            "status": self.payment_status,
            "transaction_id": self.payment_transaction_id,
            "paid_at": self.paid_at,
        }

    @property
    def cancellation(self):
        if self.cancelled_at is None:
            return None
        return {
            "reason": self.cancel_reason,
            "cancelled_by": self.cancelled_by,
            "cancelled_at": self.cancelled_at,
        }

    @property
    def address(self) -> dict:
        return {
            "label": self.delivery_label,
            "address": self.delivery_address,
            "latitude": self.delivery_latitude,
            "longitude": self.delivery_longitude,
            "instructions": self.delivery_instructions,
        }


class OrderItem(Base):
    __tablename__ = "order_items"

    order_item_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    item_id = Column(Integer, nullable=False)
    name = Column(String(120), nullable=False)  # snapshot of name at order time
    price = Column(Money, nullable=False)  # snapshot of price at order time
    quantity = Column(Integer, nullable=False)
    customizations = Column(JSON, nullable=False, default=list)
    special_instructions = Column(Text, nullable=True)
    subtotal = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")


class StatusHistory(Base):
    __tablename__ = "order_status_history"

    history_id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.order_id"), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    note = Column(Text, nullable=True)

    order = relationship("Order", back_populates="status_history")
