# PayPal Orders v2 / Payments v2 over REST
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from db.models import Order
from payments.base import (
    PaymentState,
    ProviderClient,
    ProviderRefund,
    RefundProvider,
    refund_lookup,
)
from shop.errors import (
    NoPaymentReference,
    NoRefundableCapture,
    ProviderRefundFailed,
    ProviderRejected,
)
from shop.money import money_str, to_money
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)


def find_refundable_capture(paypal_order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """First capture with status COMPLETED across all purchase units, or None."""
    for unit in paypal_order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        for capture in captures:
            if capture.get("status") == "COMPLETED" and capture.get("id"):
                return capture
    return None


def approval_link(paypal_order: Dict[str, Any]) -> Optional[str]:
    for link in paypal_order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href")
    return None


class PayPalClient(ProviderClient):
    name = "paypal"

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        base_url: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url, timeout, transport)
        self.client_id = client_id
        self.client_secret = client_secret
        self._token: Optional[str] = None
        self._token_expires = 0.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "PayPalClient":
        settings = settings or get_settings()
        return cls(
            settings.paypal_client_id,
            settings.paypal_client_secret,
            base_url=settings.paypal_api_base,
            timeout=settings.provider_timeout,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def _access_token(self) -> str:
        # refresh a minute before PayPal expires it
        if self._token and time.monotonic() < self._token_expires - 60:
            return self._token
        body = await self._send(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        self._token = body["access_token"]
        self._token_expires = time.monotonic() + float(body.get("expires_in", 300))
        return self._token

    async def _call(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        request_id: Optional[str] = None,
    ) -> dict:
        headers = {"Authorization": f"Bearer {await self._access_token()}"}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return await self._send(method, path, json=json, headers=headers)

    async def create_order(self, order: Order) -> dict:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.order_number,
                    "custom_id": order.id,
                    "amount": {
                        "currency_code": order.currency,
                        "value": money_str(order.total_amount),
                    },
                }
            ],
        }
        created = await self._call(
            "POST", "/v2/checkout/orders", json=body, request_id=f"order-{order.id}"
        )
        _logger.info(
            f"Created PayPal order {created.get('id')}",
            extra={"order_id": order.id, "provider": self.name},
        )
        return created

    async def get_order(self, paypal_order_id: str) -> dict:
        return await self._call("GET", f"/v2/checkout/orders/{paypal_order_id}")

    async def capture_order(self, paypal_order_id: str) -> dict:
        return await self._call(
            "POST",
            f"/v2/checkout/orders/{paypal_order_id}/capture",
            json={},
            request_id=f"capture-{paypal_order_id}",
        )

    async def refund_capture(self, capture_id: str, order_id: str) -> dict:
        """Refund the whole capture; PayPal refunds the full amount when none is given."""
        return await self._call(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json={},
            request_id=f"refund-{order_id}",
        )


class PayPalRefundProvider(RefundProvider):
    name = "paypal"

    def __init__(self, client: PayPalClient):
        self.client = client

    async def refund(self, order: Order) -> ProviderRefund:
        if not order.paypal_order_id:
            raise NoPaymentReference("No PayPal order stored for this order.")
        details = await refund_lookup(
            self.client.get_order(order.paypal_order_id), "PayPal", order.paypal_order_id
        )
        capture = find_refundable_capture(details)
        if capture is None:
            raise NoRefundableCapture()

        _logger.info(
            f"Refunding capture {capture['id']}",
            extra={"order_id": order.id, "provider_ref": order.paypal_order_id},
        )
        try:
            refund = await self.client.refund_capture(capture["id"], order.id)
        except ProviderRejected as exc:
            raise ProviderRefundFailed(f"PayPal refund failed: {exc.message}") from exc
        if refund.get("status") in ("CANCELLED", "FAILED"):
            raise ProviderRefundFailed(
                f"PayPal refund {refund.get('id')} ended with status {refund.get('status')}."
            )

        value = (refund.get("amount") or {}).get("value") or (
            capture.get("amount") or {}
        ).get("value")
        return ProviderRefund(
            provider=self.name,
            refund_id=refund.get("id"),
            amount=to_money(Decimal(value)) if value else order.total_amount,
        )

    async def payment_state(self, order: Order) -> Optional[PaymentState]:
        if not order.paypal_order_id:
            return None
        status = (await self.client.get_order(order.paypal_order_id)).get("status")
        if status == "COMPLETED":
            return "paid"
        if status == "VOIDED":
            return "failed"
        return "pending"
