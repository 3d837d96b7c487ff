from decimal import Decimal

from db import crud
from shop.errors import ForbiddenField, InvalidStatus, OrderNotFound
from shop.orders import award_rewards, update_order_admin, validate_admin_changes
from support import DbTestCase, FailingNotifier, RecordingNotifier, make_order


class AdminUpdateTestCase(DbTestCase):
    def setUp(self):
        super().setUp()
        self.notifier = RecordingNotifier()

    def test_allow_list(self):
        self.assertEqual(
            validate_admin_changes({"status": "shipped", "tracking_number": "DHL1"}),
            {"status": "shipped", "tracking_number": "DHL1"},
        )
        for bad in ({"total_amount": "0.01"}, {"status": "shipped", "user_id": "u-bob"}):
            with self.subTest(bad=bad):
                with self.assertRaises(ForbiddenField):
                    validate_admin_changes(bad)
        with self.assertRaises(InvalidStatus):
            validate_admin_changes({"status": "lost"})
        with self.assertRaises(InvalidStatus):
            validate_admin_changes({"payment_status": "paid"})
        with self.assertRaises(InvalidStatus):
            validate_admin_changes({"tracking_number": 42})

    async def test_forbidden_field_changes_nothing(self):
        order = (await make_order()).order
        with self.assertRaises(ForbiddenField):
            await update_order_admin(order.id, {"status": "shipped", "total_amount": "0"})
        self.assertEqual((await crud.get_order(order.id)).status, "processing")

    async def test_unknown_order(self):
        with self.assertRaises(OrderNotFound):
            await update_order_admin("missing", {"status": "shipped"}, notifier=self.notifier)

    async def test_shipping_notice_sent_once(self):
        order = (await make_order()).order
        updated = await update_order_admin(
            order.id, {"status": "shipped", "tracking_number": "DHL123"}, notifier=self.notifier
        )
        self.assertEqual(updated.tracking_number, "DHL123")
        await update_order_admin(order.id, {"admin_notes": "called customer"}, notifier=self.notifier)

        self.assertEqual(len(self.notifier.sent), 1)
        self.assertIn("DHL123", self.notifier.sent[0].html)
        self.assertTrue(await crud.has_order_event(order.id, "shipping_email_sent"))

    async def test_failed_shipping_notice_is_retried(self):
        order = (await make_order()).order
        await update_order_admin(
            order.id, {"status": "shipped", "tracking_number": "DHL1"}, notifier=FailingNotifier()
        )
        self.assertFalse(await crud.has_order_event(order.id, "shipping_email_sent"))

        await update_order_admin(order.id, {"admin_notes": "resend"}, notifier=self.notifier)
        self.assertEqual(len(self.notifier.sent), 1)

    async def test_completion_awards_rewards_once(self):
        order = (await make_order(partner_id="pt-approved")).order
        await update_order_admin(order.id, {"status": "completed"}, notifier=self.notifier)
        await update_order_admin(order.id, {"status": "completed"}, notifier=self.notifier)

        # 5% cashback and 2.5% commission on 104.97 - 4.99
        self.assertEqual((await crud.get_user("u-alice")).payback_balance, Decimal("5.00"))
        sales = await crud.list_partner_sales("pt-approved")
        self.assertEqual(sales, [(order.id, Decimal("2.50"))])

    async def test_unpaid_completion_waits_for_payment(self):
        order = (
            await make_order(
                payment_method="bank",
                payment_status="pending",
                status="pending_payment",
                partner_id="pt-approved",
            )
        ).order
        await update_order_admin(order.id, {"status": "completed"}, notifier=self.notifier)

        self.assertEqual((await crud.get_user("u-alice")).payback_balance, Decimal("0"))
        self.assertFalse(await crud.has_order_event(order.id, "cashback_awarded"))
        self.assertEqual(await crud.list_partner_sales("pt-approved"), [])

        # the transfer arrives later
        await update_order_admin(order.id, {"payment_status": "completed"}, notifier=self.notifier)
        self.assertEqual((await crud.get_user("u-alice")).payback_balance, Decimal("5.00"))
        self.assertEqual(len(await crud.list_partner_sales("pt-approved")), 1)


class RewardsTestCase(DbTestCase):
    async def test_refunded_order_earns_nothing(self):
        order = (await make_order(payment_status="refunded", status="cancelled")).order
        await award_rewards(order)
        self.assertEqual(await crud.list_order_events(order.id), [])

    async def test_guest_order_earns_no_cashback(self):
        order = (await make_order(user_id=None)).order
        await award_rewards(order)
        self.assertFalse(await crud.has_order_event(order.id, "cashback_awarded"))

    async def test_free_order_earns_nothing(self):
        order = (await make_order(total="4.99")).order
        await award_rewards(order)
        self.assertEqual(await crud.list_order_events(order.id), [])
