"""Order pricing and commission split.

Everything here is pure: no I/O, no clock, no globals. Rates come in through
``PricingConfig`` so callers decide where they are loaded from.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from .config import PricingConfig

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineItem:
    unit_price: Decimal
    quantity: int
    option_prices: Sequence[Decimal] = field(default_factory=tuple)

    def subtotal(self) -> Decimal:
        # customizations are charged per unit, same as the base price
        per_unit = self.unit_price + sum(self.option_prices, Decimal("0"))
        return to_money(per_unit * self.quantity)


@dataclass(frozen=True)
class PricingSnapshot:
    subtotal: Decimal
    delivery_fee: Decimal
    service_fee: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    platform_commission: Decimal
    restaurant_earnings: Decimal
    driver_earnings: Decimal
    surge_multiplier: Decimal

    def as_dict(self) -> dict:
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


def compute_pricing(
    items: List[LineItem],
    delivery_fee: Decimal,
    is_surge_time: bool = False,
    config: PricingConfig = PricingConfig(),
    commission_rate: Optional[Decimal] = None,
) -> PricingSnapshot:
    """Price a basket.

    ``commission_rate`` overrides ``config.commission_rate`` for restaurants
    that negotiated their own rate.
    """
    rate = config.commission_rate if commission_rate is None else Decimal(commission_rate)
    multiplier = config.surge_multiplier if is_surge_time else Decimal("1.0")

    subtotal = to_money(sum((item.subtotal() for item in items), Decimal("0")))
    service_fee = to_money(subtotal * config.service_fee_rate)
    adjusted_delivery_fee = to_money(Decimal(delivery_fee) * multiplier)
    tax = ZERO
    discount = ZERO
    total = subtotal + adjusted_delivery_fee + service_fee + tax - discount

    commission_share = to_money(subtotal * rate)
    return PricingSnapshot(
        subtotal=subtotal,
        delivery_fee=adjusted_delivery_fee,
        service_fee=service_fee,
        tax=tax,
        discount=discount,
        total=total,
        platform_commission=commission_share + service_fee,
        restaurant_earnings=subtotal - commission_share,
        driver_earnings=adjusted_delivery_fee,
        surge_multiplier=multiplier,
    )
