from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ----- Requests -----


class CustomizationSelection(BaseModel):
    name: str
    selected_options: List[str] = []


class OrderItemRequest(BaseModel):
    item_id: int
    quantity: int = Field(ge=1)
    customizations: List[CustomizationSelection] = []
    special_instructions: Optional[str] = None


class DeliveryAddress(BaseModel):
    label: Optional[str] = None
    address: str = Field(min_length=1)
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    instructions: Optional[str] = None


class CreateOrderRequest(BaseModel):
    restaurant_id: int
    items: List[OrderItemRequest]
    delivery_address: DeliveryAddress
    payment_method: str = "card"
    is_surge_time: bool = False
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: str
    note: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class LocationUpdateRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None


# ----- Responses -----


class SelectedOptionRead(BaseModel):
    name: str
    price: Decimal


class CustomizationRead(BaseModel):
    name: str
    selected_options: List[SelectedOptionRead]


class OrderItemRead(BaseModel):
    order_item_id: int
    item_id: int
    name: str
    price: Decimal
    quantity: int
    customizations: List[CustomizationRead]
    special_instructions: Optional[str]
    subtotal: Decimal

    class Config:
        from_attributes = True


class PricingRead(BaseModel):
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    platform_commission: Decimal
    restaurant_earnings: Decimal
    driver_earnings: Decimal


class PaymentRead(BaseModel):
    method: str
    status: str
    transaction_id: Optional[str]
    paid_at: Optional[datetime]


class CancellationRead(BaseModel):
    reason: Optional[str]
    cancelled_by: Optional[str]
    cancelled_at: datetime


class AddressRead(BaseModel):
    label: Optional[str]
    address: str
    latitude: float
    longitude: float
    instructions: Optional[str]


class StatusHistoryRead(BaseModel):
    status: str
    timestamp: datetime
    note: Optional[str]

    class Config:
        from_attributes = True


class OrderRead(BaseModel):
    order_id: int
    order_number: str
    customer_id: int
    restaurant_id: int
    driver_id: Optional[int]
    status: str
    items: List[OrderItemRead]
    pricing: PricingRead
    payment: PaymentRead
    address: AddressRead
    status_history: List[StatusHistoryRead]
    cancellation: Optional[CancellationRead]
    is_surge_time: bool
    surge_multiplier: Decimal
    estimated_delivery_time: Optional[datetime]
    accepted_at: Optional[datetime]
    prepared_at: Optional[datetime]
    picked_up_at: Optional[datetime]
    delivered_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class OrderPage(BaseModel):
    count: int
    total: int
    page: int
    pages: int
    data: List[OrderRead]


class CandidateRead(BaseModel):
    order: OrderRead
    distance_km: float

    class Config:
        from_attributes = True


class AvailabilityRead(BaseModel):
    driver_id: int
    is_available: bool

    class Config:
        from_attributes = True


class PaymentAuthorizationRead(BaseModel):
    order_id: int
    transaction_id: str


class RefundRead(BaseModel):
    order_id: int
    refund_id: str
    amount: Optional[Decimal]
    payment_status: str


class DriverEarningsRead(BaseModel):
    total_earnings: Decimal
    total_deliveries: int
    average_earning: Decimal
    orders: List[OrderRead]

    class Config:
        from_attributes = True


class TopItemRead(BaseModel):
    item_id: int
    name: str
    total_quantity: int
    total_revenue: Decimal

    class Config:
        from_attributes = True


class DailyStatRead(BaseModel):
    day: date
    orders: int
    revenue: Decimal

    class Config:
        from_attributes = True


class RestaurantAnalyticsRead(BaseModel):
    total_orders: int
    completed_orders: int
    cancelled_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    top_items: List[TopItemRead]
    daily_stats: List[DailyStatRead]

    class Config:
        from_attributes = True


class RevenueTotalsRead(BaseModel):
    total_revenue: Decimal
    platform_commission: Decimal
    restaurant_earnings: Decimal
    driver_earnings: Decimal
    average_order_value: Decimal

    class Config:
        from_attributes = True


class PlatformStatsRead(BaseModel):
    total_customers: int
    total_restaurants: int
    total_drivers: int
    active_drivers: int
    total_orders: int
    completed_orders: int
    cancelled_orders: int
    active_orders: int
    by_status: Dict[str, int]
    revenue: RevenueTotalsRead

    class Config:
        from_attributes = True


class RevenueBucketRead(BaseModel):
    bucket: str
    revenue: Decimal
    orders: int
    average_order_value: Decimal

    class Config:
        from_attributes = True


class RevenueAnalyticsRead(BaseModel):
    period: str
    data: List[RevenueBucketRead]

    class Config:
        from_attributes = True
