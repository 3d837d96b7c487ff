"""Checkout: turns a cart into a persisted order and starts the payment.

Validation happens before anything is written. Once the order row exists a
provider failure leaves it ``pending`` for later reconciliation instead of
deleting it.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from email_validator import EmailNotValidError, validate_email

from db import crud
from db.models import PAYMENT_METHODS, Order, OrderItem
from notify.mailer import BankInstructions, Notifier, best_effort, build_notifier
from payments.paypal import PayPalClient, approval_link
from payments.stripe import StripeClient
from shop.errors import (
    EmptyCart,
    InvalidCustomer,
    InvalidPaymentMethod,
    InvalidShippingOption,
    ProviderUnavailable,
    RefundError,
)
from shop.money import ZERO
from shop.pricing import CartLine, OrderTotals, compute_order_totals, coupon_discount, validate_line
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)

REQUIRED_ADDRESS_FIELDS = ("street", "city", "postalCode")


@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class CheckoutRequest:
    items: Sequence[CartLine]
    customer: Customer
    shipping_address: Optional[Dict[str, Any]]
    payment_method: str
    billing_address: Optional[Dict[str, Any]] = None
    discount_code: Optional[str] = None
    referral_code: Optional[str] = None
    shipping_option_id: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    items: List[OrderItem] = field(default_factory=list)
    redirect_url: Optional[str] = None
    approval_url: Optional[str] = None
    bank_instructions: Optional[BankInstructions] = None


def validate_customer(customer: Customer, address: Optional[Dict[str, Any]]) -> None:
    if not customer.name or not customer.name.strip():
        raise InvalidCustomer("Customer name is required.")
    try:
        validate_email((customer.email or "").strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise InvalidCustomer(f"A valid customer email is required: {exc}") from exc
    if not isinstance(address, dict):
        raise InvalidCustomer("Shipping address is required.")
    missing = [
        key
        for key in REQUIRED_ADDRESS_FIELDS
        if not isinstance(address.get(key), str) or not address[key].strip()
    ]
    if missing:
        raise InvalidCustomer(f"Shipping address is missing: {', '.join(missing)}.")


class CheckoutService:
    def __init__(
        self,
        card: Optional[StripeClient] = None,
        paypal: Optional[PayPalClient] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.card = card
        self.paypal = paypal
        self.notifier = notifier or build_notifier(self.settings)

    # ---------------------------
    # Validation helpers
    # ---------------------------

    def _shipping_cost(self, option_id: Optional[str]) -> Decimal:
        option = option_id or self.settings.default_shipping_option
        try:
            return self.settings.shipping_options[option]
        except KeyError:
            raise InvalidShippingOption(f"Unknown shipping option '{option}'.") from None

    async def _partner_id(self, referral_code: Optional[str]) -> Optional[str]:
        # unknown or unapproved codes never block a checkout
        if not referral_code or not referral_code.strip():
            return None
        partner = await crud.get_partner_by_code(referral_code)
        if partner is None or partner.status != "approved":
            _logger.info(f"Ignoring referral code {referral_code!r}")
            return None
        return partner.id

    async def _price(self, request: CheckoutRequest, shipping: Decimal):
        variants = await crud.get_variants(line.variant_id for line in request.items)
        totals = compute_order_totals(request.items, variants, shipping_cost=shipping)
        coupon = None
        if request.discount_code and request.discount_code.strip():
            coupon = await crud.get_coupon_by_code(request.discount_code)
            discount = coupon_discount(coupon, totals.subtotal)
            totals = compute_order_totals(request.items, variants, discount, shipping)
        return totals, coupon

    # ---------------------------
    # Submit
    # ---------------------------

    async def submit_order(self, request: CheckoutRequest) -> CheckoutResult:
        if not request.items:
            raise EmptyCart()
        for line in request.items:
            validate_line(line)
        if request.payment_method not in PAYMENT_METHODS:
            raise InvalidPaymentMethod(
                f"Unsupported payment method '{request.payment_method}'."
            )
        validate_customer(request.customer, request.shipping_address)
        shipping = self._shipping_cost(request.shipping_option_id)

        partner_id = await self._partner_id(request.referral_code)
        totals, coupon = await self._price(request, shipping)
        header = self._order_header(request, totals, partner_id, coupon.code if coupon else None)
        header["order_number"] = await crud.generate_order_number()

        created = await crud.create_order_with_items(
            header,
            [
                {
                    "product_id": line.product_id,
                    "variant_id": line.variant_id,
                    "name": line.name,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "total_price": line.total_price,
                }
                for line in totals.lines
            ],
        )
        order = created.order
        log_ctx = {"order_id": order.id, "order_number": order.order_number}
        _logger.info(
            f"Created {order.payment_method} order for {order.total_amount} {order.currency}",
            extra=log_ctx,
        )
        if coupon is not None and not await crud.increment_coupon_use(coupon.id):
            _logger.warning(f"Coupon {coupon.code} was used up concurrently", extra=log_ctx)

        result = await self._start_payment(order, created.items, totals)

        if await best_effort(
            self.notifier.send_order_confirmation,
            result.order,
            result.items,
            result.bank_instructions,
            order_id=order.id,
        ):
            await crud.record_order_event(order.id, "email_sent")
        return result

    def _order_header(
        self,
        request: CheckoutRequest,
        totals: OrderTotals,
        partner_id: Optional[str],
        coupon_code: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "user_id": request.user_id,
            "status": "pending_payment" if request.payment_method == "bank" else "pending",
            "payment_status": "pending",
            "payment_method": request.payment_method,
            "subtotal": totals.subtotal,
            "discount_amount": totals.discount_amount,
            "shipping_cost": totals.shipping_cost,
            "total_amount": totals.total,
            "currency": self.settings.currency,
            "customer_name": request.customer.name.strip(),
            "customer_email": request.customer.email.strip(),
            "customer_phone": request.customer.phone,
            "shipping_address_data": request.shipping_address,
            "billing_address_data": request.billing_address or request.shipping_address,
            "partner_id": partner_id,
            "coupon_code": coupon_code,
            "notes": request.notes,
        }

    async def _start_payment(
        self, order: Order, items: List[OrderItem], totals: OrderTotals
    ) -> CheckoutResult:
        if order.total_amount == ZERO:
            # nothing to collect
            paid = await crud.update_order(
                order.id, payment_status="completed", status="processing"
            )
            return CheckoutResult(order=paid, items=items)

        if order.payment_method == "bank":
            return CheckoutResult(
                order=order,
                items=items,
                bank_instructions=BankInstructions(
                    recipient=self.settings.bank_recipient,
                    iban=self.settings.bank_iban,
                    bic=self.settings.bank_bic,
                    reference=order.order_number,
                    amount=order.total_amount,
                    currency=order.currency,
                ),
            )

        try:
            if order.payment_method == "card":
                return await self._start_card(order, items, totals)
            return await self._start_paypal(order, items)
        except RefundError as exc:
            _logger.error(
                f"Payment session could not be created: {exc.message}",
                extra={"order_id": order.id, "provider": order.payment_method},
            )
            raise ProviderUnavailable(
                f"Order {order.order_number} was saved but the payment could not be "
                f"started: {exc.message}"
            ) from exc

    async def _start_card(
        self, order: Order, items: List[OrderItem], totals: OrderTotals
    ) -> CheckoutResult:
        if self.card is None:
            raise ProviderUnavailable("Card payments are not configured.")
        session = await self.card.create_checkout_session(
            order,
            totals.lines,
            success_url=self.settings.checkout_success_url.format(order_id=order.id),
            cancel_url=self.settings.checkout_cancel_url.format(order_id=order.id),
        )
        order = await crud.update_order(order.id, stripe_session_id=session["id"])
        return CheckoutResult(order=order, items=items, redirect_url=session.get("url"))

    async def _start_paypal(self, order: Order, items: List[OrderItem]) -> CheckoutResult:
        if self.paypal is None:
            raise ProviderUnavailable("PayPal is not configured.")
        created = await self.paypal.create_order(order)
        order = await crud.update_order(order.id, paypal_order_id=created["id"])
        return CheckoutResult(order=order, items=items, approval_url=approval_link(created))
