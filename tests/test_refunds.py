from datetime import timedelta
from decimal import Decimal

import httpx

from db import crud
from payments.paypal import PayPalClient, PayPalRefundProvider
from shop.errors import NoPaymentReference, OrderNotFound, ProviderRefundFailed, ProviderUnavailable
from shop.refunds import REFUND_CLAIM, RefundService
from support import DbTestCase, FakeRefundProvider, FailingNotifier, RecordingNotifier, make_order


class FakePayPalClient:
    def __init__(self, status="COMPLETED"):
        self.status = status
        self.captured = []

    async def capture_order(self, paypal_order_id):
        self.captured.append(paypal_order_id)
        return {"id": paypal_order_id, "status": self.status}


class MovingTargetProvider(FakeRefundProvider):
    """Changes the order behind the service's back while the refund is in flight."""

    async def refund(self, order):
        await crud.update_order(order.id, payment_status="failed")
        return await super().refund(order)


class RefundTestCase(DbTestCase):
    def setUp(self):
        super().setUp()
        self.card = FakeRefundProvider("stripe", "re_test_123")
        self.paypal = FakeRefundProvider("paypal", "PP-REFUND-1")
        self.notifier = RecordingNotifier()
        self.service = RefundService(
            providers={"card": self.card, "paypal": self.paypal}, notifier=self.notifier
        )

    async def test_paid_card_order_is_refunded(self):
        order = (await make_order(stripe_session_id="cs_1")).order
        outcome = await self.service.cancel_and_refund(order.id)

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.stripe_refund_id, "re_test_123")
        self.assertIsNone(outcome.paypal_refund_id)
        self.assertEqual(outcome.amount, Decimal("104.97"))
        self.assertFalse(outcome.manual_reconciliation)

        stored = await crud.get_order(order.id)
        self.assertEqual((stored.status, stored.payment_status), ("cancelled", "refunded"))
        self.assertIn("re_test_123", stored.notes)
        self.assertRegex(stored.notes, r"^\[\d{4}-\d\d-\d\d \d\d:\d\d:\d\d UTC\] Refunded 104.97 EUR")
        self.assertEqual(self.card.refunded, [order.id])

        self.assertEqual(len(self.notifier.sent), 1)
        self.assertTrue(self.notifier.sent[0].subject.startswith("Refund for order"))
        self.assertFalse(await crud.has_order_event(order.id, REFUND_CLAIM))

    async def test_bank_order_needs_manual_reconciliation(self):
        order = (await make_order(payment_method="bank", notes="Leave at the door")).order
        outcome = await self.service.cancel_and_refund(order.id)

        self.assertTrue(outcome.success)
        self.assertTrue(outcome.manual_reconciliation)
        self.assertIsNone(outcome.refund_id)
        self.assertEqual(outcome.provider, "manual")

        stored = await crud.get_order(order.id)
        self.assertEqual((stored.status, stored.payment_status), ("cancelled", "refunded"))
        self.assertTrue(stored.notes.startswith("Leave at the door\n["))
        self.assertTrue(await crud.has_order_event(order.id, "manual_reconciliation"))
        self.assertEqual(self.card.refunded, [])

    async def test_unpaid_paypal_order_is_only_cancelled(self):
        order = (
            await make_order(payment_method="paypal", payment_status="pending", status="pending")
        ).order
        outcome = await self.service.cancel_and_refund(order.id)

        self.assertTrue(outcome.success)
        self.assertIsNone(outcome.refund_id)
        self.assertEqual(outcome.amount, Decimal("0.00"))
        self.assertEqual(self.paypal.refunded, [])

        stored = await crud.get_order(order.id)
        self.assertEqual((stored.status, stored.payment_status), ("cancelled", "pending"))
        self.assertTrue(await crud.has_order_event(order.id, "cancelled"))
        self.assertIn("was cancelled", self.notifier.sent[0].subject)

    async def test_unpaid_card_order_is_cancelled_once(self):
        order = (await make_order(payment_status="pending", status="pending")).order
        outcome = await self.service.cancel_and_refund(order.id)
        self.assertTrue(outcome.success)
        self.assertIsNone(outcome.stripe_refund_id)
        self.assertEqual(self.card.refunded, [])

        again = await self.service.cancel_and_refund(order.id)
        self.assertFalse(again.success)
        self.assertEqual(again.error_code, "already_cancelled")

        stored = await crud.get_order(order.id)
        self.assertEqual((stored.status, stored.payment_status), ("cancelled", "pending"))
        self.assertEqual(len(stored.notes.splitlines()), 1)
        self.assertEqual(len(self.notifier.sent), 1)

    async def test_unpaid_bank_order_is_only_cancelled(self):
        order = (
            await make_order(payment_method="bank", payment_status="pending", status="pending_payment")
        ).order
        outcome = await self.service.cancel_and_refund(order.id)

        self.assertTrue(outcome.success)
        self.assertIsNone(outcome.refund_id)
        self.assertIsNone(outcome.provider)
        self.assertFalse(outcome.manual_reconciliation)

        stored = await crud.get_order(order.id)
        self.assertEqual((stored.status, stored.payment_status), ("cancelled", "pending"))
        self.assertIn("no refund needed", stored.notes)
        self.assertFalse(await crud.has_order_event(order.id, "manual_reconciliation"))
        self.assertIn("was cancelled", self.notifier.sent[0].subject)

    async def test_paypal_capture_already_refunded(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            if request.url.path == "/v2/checkout/orders/PP-9":
                return httpx.Response(
                    200,
                    json={
                        "status": "COMPLETED",
                        "purchase_units": [
                            {"payments": {"captures": [{"id": "CAP-9", "status": "REFUNDED"}]}}
                        ],
                    },
                )
            return httpx.Response(500, json={"message": "unexpected call"})

        client = PayPalClient("id", "secret", transport=httpx.MockTransport(handler))
        service = RefundService(
            providers={"paypal": PayPalRefundProvider(client)}, notifier=self.notifier
        )
        order = (await make_order(payment_method="paypal", paypal_order_id="PP-9")).order

        outcome = await service.cancel_and_refund(order.id)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_code, "no_refundable_capture")

        stored = await crud.get_order(order.id)
        self.assertEqual((stored.status, stored.payment_status), ("processing", "completed"))
        self.assertIsNone(stored.notes)
        self.assertEqual(self.notifier.sent, [])
        self.assertFalse(any("/refund" in r.url.path for r in requests))

    async def test_second_refund_is_refused(self):
        order = (await make_order()).order
        self.assertTrue((await self.service.cancel_and_refund(order.id)).success)

        again = await self.service.cancel_and_refund(order.id)
        self.assertFalse(again.success)
        self.assertEqual(again.error_code, "already_refunded")
        self.assertEqual(len(self.card.refunded), 1)

    async def test_provider_failure_leaves_order_untouched(self):
        order = (await make_order(stripe_session_id="cs_1")).order
        self.card.error = ProviderRefundFailed("Stripe refund failed: card expired")

        outcome = await self.service.cancel_and_refund(order.id)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_code, "provider_refund_failed")
        self.assertIn("card expired", outcome.error_message)

        stored = await crud.get_order(order.id)
        self.assertEqual((stored.status, stored.payment_status), ("processing", "completed"))
        self.assertIsNone(stored.notes)
        self.assertEqual(self.notifier.sent, [])

        # the claim was released, so a retry goes through
        self.card.error = None
        self.assertTrue((await self.service.cancel_and_refund(order.id)).success)

    async def test_concurrent_refund_is_rejected(self):
        order = (await make_order()).order
        await crud.claim_order_event(order.id, REFUND_CLAIM, timedelta(minutes=5))

        outcome = await self.service.cancel_and_refund(order.id)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_code, "refund_in_progress")
        self.assertEqual(self.card.refunded, [])

    async def test_order_changed_during_refund(self):
        provider = MovingTargetProvider()
        service = RefundService(providers={"card": provider}, notifier=self.notifier)
        order = (await make_order()).order

        outcome = await service.cancel_and_refund(order.id)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_code, "refund_in_progress")
        self.assertEqual((await crud.get_order(order.id)).status, "processing")

    async def test_missing_provider(self):
        service = RefundService(notifier=self.notifier)
        order = (await make_order(payment_method="paypal")).order
        outcome = await service.cancel_and_refund(order.id)
        self.assertEqual(outcome.error_code, ProviderUnavailable.code)

    async def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            await self.service.cancel_and_refund("missing")

    async def test_email_failure_keeps_refund(self):
        service = RefundService(providers={"card": self.card}, notifier=FailingNotifier())
        order = (await make_order()).order
        outcome = await service.cancel_and_refund(order.id)
        self.assertTrue(outcome.success)
        self.assertEqual((await crud.get_order(order.id)).payment_status, "refunded")


class ReconciliationTestCase(DbTestCase):
    async def test_sync_marks_paid_orders(self):
        service = RefundService(providers={"card": FakeRefundProvider(state="paid")})
        order = (await make_order(payment_status="pending", status="pending")).order

        synced = await service.sync_payment_status(order.id)
        self.assertEqual((synced.payment_status, synced.status), ("completed", "processing"))
        self.assertIn("Payment confirmed by stripe", synced.notes)

        # repeating is harmless
        again = await service.sync_payment_status(order.id)
        self.assertEqual(again.notes, synced.notes)

    async def test_sync_marks_failed_payments(self):
        service = RefundService(providers={"card": FakeRefundProvider(state="failed")})
        order = (await make_order(payment_status="pending", status="pending")).order

        synced = await service.sync_payment_status(order.id)
        self.assertEqual((synced.payment_status, synced.status), ("failed", "pending"))
        self.assertIn("Payment failed or expired according to stripe", synced.notes)
        self.assertTrue(await crud.has_order_event(order.id, "payment_failed"))

        again = await service.sync_payment_status(order.id)
        self.assertEqual(again.notes, synced.notes)

    async def test_sync_leaves_unpaid_orders(self):
        service = RefundService(providers={"card": FakeRefundProvider(state="pending")})
        order = (await make_order(payment_status="pending", status="pending")).order
        synced = await service.sync_payment_status(order.id)
        self.assertEqual(synced.payment_status, "pending")

        bank = (await make_order(payment_method="bank", payment_status="pending")).order
        self.assertEqual((await service.sync_payment_status(bank.id)).payment_status, "pending")

        with self.assertRaises(OrderNotFound):
            await service.sync_payment_status("missing")

    async def test_capture_paypal_order(self):
        client = FakePayPalClient()
        service = RefundService(providers={"paypal": PayPalRefundProvider(client)})
        order = (
            await make_order(
                payment_method="paypal",
                payment_status="pending",
                status="pending",
                paypal_order_id="PP-1",
            )
        ).order

        captured = await service.capture_paypal_order(order.id)
        self.assertEqual(captured.payment_status, "completed")
        self.assertEqual(client.captured, ["PP-1"])

        # already paid: no second capture
        await service.capture_paypal_order(order.id)
        self.assertEqual(client.captured, ["PP-1"])

    async def test_capture_not_completed(self):
        service = RefundService(
            providers={"paypal": PayPalRefundProvider(FakePayPalClient("PAYER_ACTION_REQUIRED"))}
        )
        order = (
            await make_order(payment_method="paypal", payment_status="pending", paypal_order_id="PP-2")
        ).order
        self.assertEqual((await service.capture_paypal_order(order.id)).payment_status, "pending")

    async def test_capture_requires_paypal(self):
        service = RefundService()
        card = (await make_order(payment_status="pending")).order
        with self.assertRaises(NoPaymentReference):
            await service.capture_paypal_order(card.id)

        paypal = (
            await make_order(payment_method="paypal", payment_status="pending", paypal_order_id="PP-3")
        ).order
        with self.assertRaises(ProviderUnavailable):
            await service.capture_paypal_order(paypal.id)
