# shared pieces for the payment provider integrations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Literal, Optional

import httpx

from db.models import Order
from shop.errors import (
    NoPaymentReference,
    ProviderRefundFailed,
    ProviderRejected,
    ProviderUnavailable,
)
from utils.logger import get_logger

_logger = get_logger(__name__)

PaymentState = Literal["paid", "failed", "pending"]


async def refund_lookup(call: Awaitable[dict], provider: str, reference: str) -> dict:
    """Await a provider lookup made on the way to a refund, mapping rejections to refund errors."""
    try:
        return await call
    except ProviderRejected as exc:
        if exc.http_status == 404:
            raise NoPaymentReference(
                f"{provider} does not know payment reference {reference}."
            ) from exc
        raise ProviderRefundFailed(f"{provider} refund failed: {exc.message}") from exc


@dataclass(frozen=True)
class ProviderRefund:
    """What a provider confirmed for a refund."""

    provider: str
    refund_id: Optional[str]
    amount: Decimal
    manual: bool = False


class RefundProvider(ABC):
    """One arm of the refund dispatch, keyed on the order's payment method."""

    name = "provider"

    @abstractmethod
    async def refund(self, order: Order) -> ProviderRefund:
        """Refund the full captured amount of ``order``. Raises a RefundError on failure."""

    async def payment_state(self, order: Order) -> Optional[PaymentState]:
        """Ask the provider how payment for ``order`` stands; None when it cannot tell."""
        return None


class ManualRefundProvider(RefundProvider):
    """Bank transfers: no API to call, money goes back by hand."""

    name = "manual"

    async def refund(self, order: Order) -> ProviderRefund:
        return ProviderRefund(
            provider=self.name, refund_id=None, amount=order.total_amount, manual=True
        )


class ProviderClient:
    """Thin httpx wrapper shared by the Stripe and PayPal clients."""

    name = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return True

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> dict:
        if not self.configured:
            raise ProviderUnavailable(f"{self.name} is not configured.")
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(f"{self.name} did not answer in time.") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"{self.name} is not reachable: {exc}") from exc

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            _logger.warning(
                f"{self.name} answered {resp.status_code} for {method} {path}: {detail}",
                extra={"provider": self.name},
            )
            raise ProviderRejected(
                f"{self.name} rejected the request: {detail}", http_status=resp.status_code
            )
        return resp.json() if resp.content else {}


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return err["message"]
        for key in ("message", "error_description", "error"):
            if isinstance(body.get(key), str):
                return body[key]
        details = body.get("details")
        if isinstance(details, list) and details and isinstance(details[0], dict):
            return details[0].get("description") or details[0].get("issue") or str(body)
    return str(body)[:200]
