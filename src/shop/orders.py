# admin order updates and the rewards booked when an order completes
from decimal import Decimal
from typing import Any, Mapping, Optional

from db import crud
from db.models import ORDER_STATUSES, PAYMENT_STATUSES, Order
from notify.mailer import Notifier, best_effort, build_notifier
from shop.errors import ForbiddenField, InvalidStatus, OrderNotFound
from shop.money import ZERO, to_money
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)

ADMIN_FIELDS = ("status", "payment_status", "tracking_number", "admin_notes")


def validate_admin_changes(changes: Mapping[str, Any]) -> dict:
    """Check an admin patch against the allow-list; unknown fields are rejected, not dropped."""
    forbidden = sorted(set(changes) - set(ADMIN_FIELDS))
    if forbidden:
        raise ForbiddenField(f"Field(s) may not be updated: {', '.join(forbidden)}.")
    if "status" in changes and changes["status"] not in ORDER_STATUSES:
        raise InvalidStatus(f"Invalid order status '{changes['status']}'.")
    if "payment_status" in changes and changes["payment_status"] not in PAYMENT_STATUSES:
        raise InvalidStatus(f"Invalid payment status '{changes['payment_status']}'.")
    for key in ("tracking_number", "admin_notes"):
        value = changes.get(key)
        if value is not None and not isinstance(value, str):
            raise InvalidStatus(f"{key} must be text.")
    return dict(changes)


async def update_order_admin(
    order_id: str,
    changes: Mapping[str, Any],
    notifier: Optional[Notifier] = None,
    settings: Optional[Settings] = None,
) -> Order:
    settings = settings or get_settings()
    fields = validate_admin_changes(changes)
    if await crud.get_order(order_id) is None:
        raise OrderNotFound()

    order = await crud.update_order(order_id, **fields)
    _logger.info(f"Admin update {sorted(fields)}", extra={"order_id": order_id})

    if order.status == "shipped" and order.tracking_number:
        await _send_shipping_notice(order, notifier or build_notifier(settings))
    if order.status == "completed" and ("status" in fields or "payment_status" in fields):
        await award_rewards(order, settings)
    return order


async def _send_shipping_notice(order: Order, notifier: Notifier) -> None:
    if await crud.has_order_event(order.id, "shipping_email_sent"):
        return
    if await best_effort(notifier.send_shipping_notice, order, order_id=order.id):
        await crud.record_order_event(order.id, "shipping_email_sent", order.tracking_number)


def _percent_of(amount: Decimal, percent: Decimal) -> Decimal:
    return to_money(amount * percent / 100)


async def award_rewards(order: Order, settings: Optional[Settings] = None) -> None:
    """Customer cashback and partner commission for a completed order, each booked once."""
    settings = settings or get_settings()
    if order.payment_status != "completed":
        _logger.info(
            f"No rewards for unpaid order (payment {order.payment_status})",
            extra={"order_id": order.id},
        )
        return
    base = order.total_amount - order.shipping_cost
    if base <= ZERO:
        return

    if order.user_id:
        cashback = _percent_of(base, settings.cashback_percent)
        if cashback > ZERO and await crud.record_order_event(
            order.id, "cashback_awarded", str(cashback)
        ):
            await crud.award_payback(order.user_id, order.id, cashback, settings.cashback_percent)
            _logger.info(f"Cashback {cashback} awarded", extra={"order_id": order.id})

    if order.partner_id:
        partner = await crud.get_partner(order.partner_id)
        if partner is None:
            return
        commission = _percent_of(base, partner.commission_rate)
        if commission > ZERO and await crud.record_order_event(
            order.id, "partner_commission", str(commission)
        ):
            await crud.record_partner_sale(partner.id, order.id, commission)
            _logger.info(
                f"Commission {commission} booked for partner {partner.partner_code}",
                extra={"order_id": order.id},
            )
