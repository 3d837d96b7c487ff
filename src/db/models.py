# provide dataclass models

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

PaymentMethod = Literal["bank", "card", "paypal"]
PaymentStatus = Literal["pending", "completed", "refunded", "failed"]
OrderStatus = Literal[
    "pending_payment", "pending", "processing", "shipped", "completed", "cancelled"
]

PAYMENT_METHODS = ("bank", "card", "paypal")
PAYMENT_STATUSES = ("pending", "completed", "refunded", "failed")
ORDER_STATUSES = (
    "pending_payment",
    "pending",
    "processing",
    "shipped",
    "completed",
    "cancelled",
)


@dataclass(frozen=True)
class User:
    id: str
    email: str
    full_name: Optional[str]
    role: str  # "customer" or "admin"
    payback_balance: Decimal

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    brand: Optional[str]
    category: Optional[str]
    description: Optional[str]
    scent_notes: List[str]
    seasons: List[str]
    occasions: List[str]
    is_active: bool


@dataclass(frozen=True)
class Variant:
    id: str
    product_id: Optional[str]  # orphaned variants are tolerated
    name: str
    size: Optional[str]
    price: Decimal
    original_price: Optional[Decimal]
    stock: int
    is_active: bool


@dataclass(frozen=True)
class ProductWithVariants:
    product: Product
    variants: List[Variant]


@dataclass(frozen=True)
class Partner:
    id: str
    user_id: Optional[str]
    partner_code: str
    status: str  # "pending", "approved", "rejected", "suspended"
    commission_rate: Decimal


@dataclass(frozen=True)
class Coupon:
    id: str
    code: str
    discount_type: str  # "percentage" or "fixed"
    discount_value: Decimal
    min_order_amount: Decimal
    max_uses: Optional[int]
    current_uses: int
    is_active: bool
    expires_at: Optional[datetime]


@dataclass(frozen=True)
class Order:
    id: str
    order_number: str
    user_id: Optional[str]
    status: str
    payment_status: str
    payment_method: str
    subtotal: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    currency: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    customer_phone: Optional[str]
    shipping_address_data: Optional[Dict[str, Any]]
    billing_address_data: Optional[Dict[str, Any]]
    partner_id: Optional[str]
    coupon_code: Optional[str]
    stripe_session_id: Optional[str]
    paypal_order_id: Optional[str]
    tracking_number: Optional[str]
    notes: Optional[str]
    admin_notes: Optional[str]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class OrderItem:
    id: str
    order_id: str
    line_no: int
    product_id: Optional[str]
    variant_id: Optional[str]
    name: Optional[str]
    quantity: int
    unit_price: Decimal  # frozen at time of order
    total_price: Decimal  # frozen at time of order


@dataclass(frozen=True)
class OrderEvent:
    order_id: str
    type: str
    detail: Optional[str]
    occurred_at: datetime


@dataclass(frozen=True)
class OrderWithItems:
    order: Order
    items: List[OrderItem] = field(default_factory=list)
