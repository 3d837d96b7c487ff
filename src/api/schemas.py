"""
Request and response bodies for the HTTP API.

JSON uses camelCase keys; money is serialized as decimal strings ("104.97").
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
        extra="ignore",
    )


# ---------------------------
# Catalog
# ---------------------------


class VariantOut(CamelModel):
    id: str
    product_id: Optional[str] = None
    name: str
    size: Optional[str] = None
    price: Decimal
    original_price: Optional[Decimal] = None
    stock: int
    is_active: bool


class ProductOut(CamelModel):
    id: str
    name: str
    brand: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    scent_notes: List[str] = []
    seasons: List[str] = []
    occasions: List[str] = []
    is_active: bool
    variants: List[VariantOut] = []


# ---------------------------
# Orders
# ---------------------------


class CartItemIn(CamelModel):
    # anything else a client sends for a line (price, total, ...) is ignored
    variant_id: str = ""
    quantity: int = 0


class OrderCreate(CamelModel):
    items: List[CartItemIn] = []
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: Optional[str] = None
    shipping_address_data: Optional[Dict[str, Any]] = None
    billing_address_data: Optional[Dict[str, Any]] = None
    payment_method: str = ""
    discount_code: Optional[str] = None
    referral_code: Optional[str] = None
    shipping_option_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class OrderItemOut(CamelModel):
    id: str
    line_no: int
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderOut(CamelModel):
    id: str
    order_number: str
    user_id: Optional[str] = None
    status: str
    payment_status: str
    payment_method: str
    subtotal: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    currency: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address_data: Optional[Dict[str, Any]] = None
    billing_address_data: Optional[Dict[str, Any]] = None
    partner_id: Optional[str] = None
    coupon_code: Optional[str] = None
    stripe_session_id: Optional[str] = None
    paypal_order_id: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemOut] = []


class BankInstructionsOut(CamelModel):
    recipient: str
    iban: Optional[str] = None
    bic: Optional[str] = None
    reference: str
    amount: Decimal
    currency: str


class CheckoutOut(CamelModel):
    order: OrderOut
    redirect_url: Optional[str] = None
    approval_url: Optional[str] = None
    bank_instructions: Optional[BankInstructionsOut] = None


class OrderPage(CamelModel):
    orders: List[OrderOut]
    total: int
    page: int
    page_size: int


class RefundOut(CamelModel):
    success: bool
    stripe_refund_id: Optional[str] = None
    paypal_refund_id: Optional[str] = None
    refund_amount: Decimal
    manual_reconciliation: bool = False
    order: Optional[OrderOut] = None


# camelCase names accepted by PATCH /orders/{id}
PATCH_FIELD_NAMES = {
    "status": "status",
    "paymentStatus": "payment_status",
    "trackingNumber": "tracking_number",
    "adminNotes": "admin_notes",
}


def patch_changes(body: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a PATCH body to column names; unknown keys pass through to be rejected."""
    return {PATCH_FIELD_NAMES.get(key, key): value for key, value in body.items()}
