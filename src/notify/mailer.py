"""Transactional customer emails.

``Notifier`` renders the messages; subclasses decide how they leave the
building. Sending is always best effort: callers go through ``best_effort``
so a mail failure never undoes an order or a refund.
"""

from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import Any, Awaitable, Callable, Deque, Optional, Sequence

import httpx

from db.models import Order, OrderItem
from shop.money import money_str
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)


class NotificationError(Exception):
    pass


@dataclass(frozen=True)
class Email:
    to: str
    subject: str
    html: str


@dataclass(frozen=True)
class BankInstructions:
    recipient: str
    iban: Optional[str]
    bic: Optional[str]
    reference: str
    amount: Decimal
    currency: str


def _amount(value: Decimal, currency: str) -> str:
    return f"{money_str(value)} {currency}"


def _items_table(items: Sequence[OrderItem], currency: str) -> str:
    rows = "".join(
        f"<tr><td>{escape(item.name or '')}</td><td>{item.quantity}</td>"
        f"<td>{_amount(item.unit_price, currency)}</td>"
        f"<td>{_amount(item.total_price, currency)}</td></tr>"
        for item in items
    )
    return (
        "<table><tr><th>Item</th><th>Qty</th><th>Price</th><th>Total</th></tr>"
        f"{rows}</table>"
    )


class Notifier(ABC):
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @abstractmethod
    async def send(self, email: Email) -> None:
        """Deliver one email. Raises NotificationError when it cannot."""

    def _wrap(self, order: Order, body: str) -> str:
        name = escape(order.customer_name or "customer")
        return (
            f"<h2>{escape(self.settings.store_name)}</h2>"
            f"<p>Hello {name},</p>{body}"
            f"<p>Questions? Write to {escape(self.settings.support_email)}.</p>"
        )

    async def send_order_confirmation(
        self,
        order: Order,
        items: Sequence[OrderItem],
        bank: Optional[BankInstructions] = None,
    ) -> None:
        c = order.currency
        body = (
            f"<p>Thank you for your order <b>{escape(order.order_number)}</b>.</p>"
            f"{_items_table(items, c)}"
            f"<p>Subtotal: {_amount(order.subtotal, c)}<br>"
            f"Discount: -{_amount(order.discount_amount, c)}<br>"
            f"Shipping: {_amount(order.shipping_cost, c)}<br>"
            f"<b>Total: {_amount(order.total_amount, c)}</b></p>"
        )
        if bank is not None:
            body += (
                "<p>Please transfer the total to:<br>"
                f"Recipient: {escape(bank.recipient)}<br>"
                f"IBAN: {escape(bank.iban or '-')}<br>"
                f"BIC: {escape(bank.bic or '-')}<br>"
                f"Reference: {escape(bank.reference)}</p>"
            )
        await self.send(
            Email(
                to=order.customer_email,
                subject=f"Order confirmation {order.order_number} - {self.settings.store_name}",
                html=self._wrap(order, body),
            )
        )

    async def send_shipping_notice(self, order: Order) -> None:
        body = (
            f"<p>Your order <b>{escape(order.order_number)}</b> is on its way.</p>"
            f"<p>Tracking number: {escape(order.tracking_number or '-')}</p>"
        )
        await self.send(
            Email(
                to=order.customer_email,
                subject=f"Your order {order.order_number} has shipped",
                html=self._wrap(order, body),
            )
        )

    async def send_cancellation_notice(self, order: Order) -> None:
        body = f"<p>Your order <b>{escape(order.order_number)}</b> has been cancelled.</p>"
        await self.send(
            Email(
                to=order.customer_email,
                subject=f"Your order {order.order_number} was cancelled",
                html=self._wrap(order, body),
            )
        )

    async def send_refund_notice(self, order: Order, amount: Decimal) -> None:
        body = (
            f"<p>Your order <b>{escape(order.order_number)}</b> has been cancelled and "
            f"{_amount(amount, order.currency)} will be refunded to your original "
            "payment method.</p>"
        )
        await self.send(
            Email(
                to=order.customer_email,
                subject=f"Refund for order {order.order_number}",
                html=self._wrap(order, body),
            )
        )


class ResendNotifier(Notifier):
    """Delivers through the Resend HTTP API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(settings)
        self._transport = transport

    async def send(self, email: Email) -> None:
        if not email.to:
            raise NotificationError("order has no customer email")
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.resend_api_base,
                timeout=self.settings.provider_timeout,
                transport=self._transport,
            ) as client:
                resp = await client.post(
                    "/emails",
                    json={
                        "from": self.settings.mail_from,
                        "to": [email.to],
                        "subject": email.subject,
                        "html": email.html,
                    },
                    headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                )
        except httpx.HTTPError as exc:
            raise NotificationError(f"email service not reachable: {exc}") from exc
        if resp.status_code >= 400:
            raise NotificationError(f"email service answered {resp.status_code}: {resp.text[:200]}")
        _logger.debug(f"Sent '{email.subject}' to {email.to}")


class LogNotifier(Notifier):
    """Used when no email service is configured; keeps the last few messages it would have sent."""

    def __init__(self, settings: Optional[Settings] = None, keep: int = 50):
        super().__init__(settings)
        self.outbox: Deque[Email] = deque(maxlen=keep)

    async def send(self, email: Email) -> None:
        self.outbox.append(email)
        _logger.info(f"Email not configured, skipping '{email.subject}' to {email.to}")


def build_notifier(settings: Optional[Settings] = None) -> Notifier:
    settings = settings or get_settings()
    if settings.resend_api_key:
        return ResendNotifier(settings)
    return LogNotifier(settings)


async def best_effort(
    send: Callable[..., Awaitable[None]], *args: Any, order_id: Optional[str] = None
) -> bool:
    """Run a notifier call; failures are logged and reported as False."""
    try:
        await send(*args)
    except Exception:
        _logger.exception(
            f"Sending {getattr(send, '__name__', 'email')} failed",
            extra={"order_id": order_id},
        )
        return False
    return True
