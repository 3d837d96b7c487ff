"""Cancel-and-refund and payment reconciliation.

The local order only changes after the provider has confirmed the refund
(or after deciding no money has to move). A failed or timed out provider
call leaves the order exactly as it was, so the admin can simply retry.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Optional

from db import crud
from db.models import Order
from notify.mailer import Notifier, best_effort, build_notifier
from payments.base import ManualRefundProvider, ProviderRefund, RefundProvider
from payments.paypal import PayPalRefundProvider
from shop.errors import (
    AlreadyCancelled,
    AlreadyRefunded,
    NoPaymentReference,
    OrderNotFound,
    ProviderUnavailable,
    RefundError,
    RefundInProgress,
)
from shop.money import ZERO, money_str
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)

REFUND_CLAIM = "refund_in_progress"


@dataclass(frozen=True)
class RefundOutcome:
    success: bool
    order_id: str
    provider: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Decimal = ZERO
    manual_reconciliation: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    order: Optional[Order] = None

    @classmethod
    def failed(cls, order_id: str, error: RefundError) -> "RefundOutcome":
        return cls(
            success=False,
            order_id=order_id,
            error_code=error.code,
            error_message=error.message,
        )

    @property
    def stripe_refund_id(self) -> Optional[str]:
        return self.refund_id if self.provider == "stripe" else None

    @property
    def paypal_refund_id(self) -> Optional[str]:
        return self.refund_id if self.provider == "paypal" else None


def _stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class RefundService:
    def __init__(
        self,
        providers: Optional[Dict[str, RefundProvider]] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.providers = dict(providers or {})
        self.manual = ManualRefundProvider()
        self.notifier = notifier or build_notifier(self.settings)

    def _provider_for(self, order: Order) -> RefundProvider:
        if order.payment_method in ("card", "paypal"):
            provider = self.providers.get(order.payment_method)
            if provider is None:
                raise ProviderUnavailable(
                    f"No refund provider configured for {order.payment_method} payments."
                )
            return provider
        return self.manual

    async def cancel_and_refund(self, order_id: str) -> RefundOutcome:
        """
        Cancel ``order_id`` and give the money back through the provider that took it.

        Raises OrderNotFound; every other failure comes back as an unsuccessful
        RefundOutcome carrying the error code and message.
        """
        order = await crud.get_order(order_id)
        if order is None:
            raise OrderNotFound()
        if order.payment_status == "refunded":
            return RefundOutcome.failed(order.id, AlreadyRefunded())
        if order.status == "cancelled" and order.payment_status != "completed":
            return RefundOutcome.failed(order.id, AlreadyCancelled())

        ttl = timedelta(seconds=self.settings.refund_claim_ttl_seconds)
        if not await crud.claim_order_event(order.id, REFUND_CLAIM, ttl):
            return RefundOutcome.failed(order.id, RefundInProgress())
        try:
            return await self._cancel_and_refund(order)
        except RefundError as exc:
            _logger.error(
                f"Refund failed [{exc.code}]: {exc.message}",
                extra={
                    "order_id": order.id,
                    "provider": order.payment_method,
                    "provider_ref": order.stripe_session_id or order.paypal_order_id,
                },
            )
            return RefundOutcome.failed(order.id, exc)
        finally:
            await crud.release_order_event(order.id, REFUND_CLAIM)

    async def _cancel_and_refund(self, order: Order) -> RefundOutcome:
        paid = order.payment_status == "completed"
        refund: Optional[ProviderRefund] = None
        expected = {"payment_status": order.payment_status}

        if paid:
            refund = await self._provider_for(order).refund(order)
            fields = {"status": "cancelled", "payment_status": "refunded"}
            if refund.manual:
                note = (
                    f"[{_stamp()}] Cancelled. Manual refund of "
                    f"{money_str(refund.amount)} {order.currency} to reconcile "
                    f"({order.payment_method})."
                )
            else:
                note = (
                    f"[{_stamp()}] Refunded {money_str(refund.amount)} {order.currency} "
                    f"via {refund.provider}, refund id {refund.refund_id}."
                )
        else:
            fields = {"status": "cancelled"}
            expected["status"] = order.status
            note = f"[{_stamp()}] Cancelled before payment; no refund needed."

        updated = await crud.update_order_if(order.id, expected, append_note=note, **fields)
        if updated is None:
            # the order moved on while the provider call was in flight
            _logger.error(
                f"Order changed during refund; provider refund {refund.refund_id if refund else None} "
                "needs manual review",
                extra={"order_id": order.id, "provider": order.payment_method},
            )
            raise RefundInProgress(
                "Order was modified while the refund was processed; check it before retrying."
            )

        if refund is not None and refund.manual:
            await crud.record_order_event(order.id, "manual_reconciliation")
        if refund is not None:
            await crud.record_order_event(order.id, "refunded", refund.refund_id)
        else:
            await crud.record_order_event(order.id, "cancelled")

        _logger.info(
            f"Order cancelled ({note})",
            extra={"order_id": order.id, "provider": refund.provider if refund else None},
        )

        if refund is not None:
            await best_effort(
                self.notifier.send_refund_notice, updated, refund.amount, order_id=order.id
            )
        else:
            await best_effort(
                self.notifier.send_cancellation_notice, updated, order_id=order.id
            )

        return RefundOutcome(
            success=True,
            order_id=order.id,
            provider=refund.provider if refund else None,
            refund_id=refund.refund_id if refund else None,
            amount=refund.amount if refund else ZERO,
            manual_reconciliation=bool(refund and refund.manual),
            order=updated,
        )

    # ---------------------------
    # Reconciliation
    # ---------------------------

    async def _mark_paid(self, order: Order, source: str) -> Order:
        fields = {"payment_status": "completed"}
        if order.status in ("pending", "pending_payment"):
            fields["status"] = "processing"
        updated = await crud.update_order_if(
            order.id,
            {"payment_status": "pending"},
            append_note=f"[{_stamp()}] Payment confirmed by {source}.",
            **fields,
        )
        if updated is None:
            return await crud.get_order(order.id)
        _logger.info(f"Payment confirmed by {source}", extra={"order_id": order.id})
        return updated

    async def _mark_failed(self, order: Order, source: str) -> Order:
        updated = await crud.update_order_if(
            order.id,
            {"payment_status": "pending"},
            append_note=f"[{_stamp()}] Payment failed or expired according to {source}.",
            payment_status="failed",
        )
        if updated is None:
            return await crud.get_order(order.id)
        await crud.record_order_event(order.id, "payment_failed", source)
        _logger.warning(f"Payment failed according to {source}", extra={"order_id": order.id})
        return updated

    async def sync_payment_status(self, order_id: str) -> Order:
        """Align a pending order with what its provider reports. Safe to call repeatedly."""
        order = await crud.get_order(order_id)
        if order is None:
            raise OrderNotFound()
        if order.payment_status != "pending":
            return order
        provider = self.providers.get(order.payment_method)
        if provider is None:
            return order
        state = await provider.payment_state(order)
        if state == "paid":
            return await self._mark_paid(order, provider.name)
        if state == "failed":
            return await self._mark_failed(order, provider.name)
        return order

    async def capture_paypal_order(self, order_id: str) -> Order:
        """Capture an approved PayPal order and mark it paid once PayPal reports COMPLETED."""
        order = await crud.get_order(order_id)
        if order is None:
            raise OrderNotFound()
        if order.payment_method != "paypal" or not order.paypal_order_id:
            raise NoPaymentReference("Order has no PayPal payment to capture.")
        if order.payment_status != "pending":
            return order
        provider = self.providers.get("paypal")
        if not isinstance(provider, PayPalRefundProvider):
            raise ProviderUnavailable("PayPal is not configured.")
        captured = await provider.client.capture_order(order.paypal_order_id)
        if captured.get("status") == "COMPLETED":
            return await self._mark_paid(order, "paypal capture")
        _logger.warning(
            f"PayPal capture returned status {captured.get('status')}",
            extra={"order_id": order.id, "provider_ref": order.paypal_order_id},
        )
        return order
