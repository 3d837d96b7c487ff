"""Stripe card payments over the REST API.

Stripe takes form-encoded bodies with bracketed keys for nested values
(``line_items[0][price_data][unit_amount]``); ``encode_form`` builds those.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import httpx

from db.models import Order
from payments.base import (
    PaymentState,
    ProviderClient,
    ProviderRefund,
    RefundProvider,
    refund_lookup,
)
from shop.errors import NoPaymentReference, ProviderRefundFailed, ProviderRejected
from shop.money import ZERO, from_cents, to_cents
from shop.pricing import PricedLine
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)


def encode_form(params: Dict[str, Any], prefix: str = "") -> List[tuple]:
    """Flatten nested dicts/lists into Stripe's bracket notation."""
    pairs: List[tuple] = []
    for key, value in params.items():
        full = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, full))
        elif isinstance(value, (list, tuple)):
            for i, entry in enumerate(value):
                if isinstance(entry, dict):
                    pairs.extend(encode_form(entry, f"{full}[{i}]"))
                else:
                    pairs.append((f"{full}[{i}]", str(entry)))
        elif isinstance(value, bool):
            pairs.append((full, "true" if value else "false"))
        else:
            pairs.append((full, str(value)))
    return pairs


class StripeClient(ProviderClient):
    name = "stripe"

    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.stripe.com",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, transport)
        self.secret_key = secret_key

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "StripeClient":
        settings = settings or get_settings()
        return cls(
            settings.stripe_secret_key,
            base_url=settings.stripe_api_base,
            timeout=settings.provider_timeout,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    async def _post(
        self, path: str, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> dict:
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return await self._send(
            "POST", path, data=dict(encode_form(params)), headers=headers
        )

    async def _get(self, path: str) -> dict:
        return await self._send(
            "GET", path, headers={"Authorization": f"Bearer {self.secret_key}"}
        )

    async def create_coupon(
        self, amount: Decimal, currency: str, order_number: str, order_id: str
    ) -> dict:
        """Single-use fixed amount coupon carrying an order's discount, keyed per order."""
        return await self._post(
            "/v1/coupons",
            {
                "amount_off": to_cents(amount),
                "currency": currency.lower(),
                "duration": "once",
                "max_redemptions": 1,
                "name": f"Discount {order_number}",
            },
            idempotency_key=f"coupon-{order_id}",
        )

    async def create_checkout_session(
        self,
        order: Order,
        lines: Sequence[PricedLine],
        success_url: str,
        cancel_url: str,
    ) -> dict:
        """
        Hosted checkout for ``order``. Amounts come from the priced lines plus
        the order's shipping and discount, so the session total is the order total.
        """
        currency = order.currency.lower()
        line_items: List[Dict[str, Any]] = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": line.name},
                    "unit_amount": to_cents(line.unit_price),
                },
                "quantity": line.quantity,
            }
            for line in lines
        ]
        if order.shipping_cost > ZERO:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": "Shipping"},
                        "unit_amount": to_cents(order.shipping_cost),
                    },
                    "quantity": 1,
                }
            )

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "customer_email": order.customer_email,
            "client_reference_id": order.id,
            "metadata": {"order_id": order.id, "order_number": order.order_number},
            "payment_intent_data": {"metadata": {"order_id": order.id}},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if order.discount_amount > ZERO:
            coupon = await self.create_coupon(
                order.discount_amount, order.currency, order.order_number, order.id
            )
            params["discounts"] = [{"coupon": coupon["id"]}]

        session = await self._post(
            "/v1/checkout/sessions", params, idempotency_key=f"session-{order.id}"
        )
        _logger.info(
            f"Created checkout session {session.get('id')}",
            extra={"order_id": order.id, "provider": self.name},
        )
        return session

    async def retrieve_session(self, session_id: str) -> dict:
        return await self._get(f"/v1/checkout/sessions/{session_id}")

    async def create_refund(self, payment_intent: str, order_id: str) -> dict:
        """Full refund of a payment intent. Keyed per order so a retry never pays out twice."""
        return await self._post(
            "/v1/refunds",
            {
                "payment_intent": payment_intent,
                "reason": "requested_by_customer",
                "metadata": {"order_id": order_id},
            },
            idempotency_key=f"refund-{order_id}",
        )


class CardRefundProvider(RefundProvider):
    name = "stripe"

    def __init__(self, client: StripeClient):
        self.client = client

    async def _payment_intent(self, order: Order) -> str:
        if not order.stripe_session_id:
            raise NoPaymentReference("No Stripe checkout session stored for this order.")
        session = await refund_lookup(
            self.client.retrieve_session(order.stripe_session_id),
            "Stripe",
            order.stripe_session_id,
        )
        intent = session.get("payment_intent")
        if isinstance(intent, dict):
            intent = intent.get("id")
        if not intent:
            raise NoPaymentReference(
                f"Stripe session {order.stripe_session_id} has no payment intent."
            )
        return intent

    async def refund(self, order: Order) -> ProviderRefund:
        intent = await self._payment_intent(order)
        try:
            refund = await self.client.create_refund(intent, order.id)
        except ProviderRejected as exc:
            raise ProviderRefundFailed(f"Stripe refund failed: {exc.message}") from exc
        if refund.get("status") in ("failed", "canceled"):
            raise ProviderRefundFailed(
                f"Stripe refund {refund.get('id')} ended with status {refund.get('status')}."
            )
        amount = refund.get("amount")
        return ProviderRefund(
            provider=self.name,
            refund_id=refund.get("id"),
            amount=from_cents(amount) if amount is not None else order.total_amount,
        )

    async def payment_state(self, order: Order) -> Optional[PaymentState]:
        if not order.stripe_session_id:
            return None
        session = await self.client.retrieve_session(order.stripe_session_id)
        if session.get("payment_status") == "paid":
            return "paid"
        # an expired session can no longer be paid
        if session.get("status") == "expired":
            return "failed"
        return "pending"
