import re
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal

from db import crud
from db import database as db_database
from support import DbTestCase, make_order


class CrudTestCase(DbTestCase):
    # ---------- Catalog ----------

    async def test_get_variant_reads_stored_price(self):
        variant = await crud.get_variant("v-oud-50")
        self.assertEqual(variant.price, Decimal("49.99"))
        self.assertEqual(variant.original_price, Decimal("59.99"))
        self.assertTrue(variant.is_active)
        self.assertIsNone(await crud.get_variant("nope"))

        orphan = await crud.get_variant("v-orphan")
        self.assertIsNone(orphan.product_id)

    async def test_get_variants_skips_unknown_ids(self):
        found = await crud.get_variants(["v-oud-50", "v-santal-50", "missing"])
        self.assertEqual(set(found), {"v-oud-50", "v-santal-50"})
        self.assertEqual(await crud.get_variants([]), {})

    async def test_list_products_filters(self):
        products = await crud.list_products_with_variants()
        names = [p.product.name for p in products]
        self.assertEqual(names, sorted(names))
        self.assertNotIn("Vetiver Classic", names)

        everything = await crud.list_products_with_variants(include_inactive=True)
        self.assertIn("Vetiver Classic", [p.product.name for p in everything])

        hits = await crud.list_products_with_variants(search="  SANTAL ")
        self.assertEqual([p.product.id for p in hits], ["p-santal"])

        by_variant = await crud.list_products_with_variants(search="sample")
        self.assertEqual([p.product.id for p in by_variant], ["p-oud"])

        men = await crud.list_products_with_variants(category="Men")
        self.assertEqual([p.product.id for p in men], ["p-santal"])

    async def test_product_with_variants_and_cascade_delete(self):
        product = await crud.create_product(
            "Ambre Nuit", brand="ALDENAIR", scent_notes=["amber", "vanilla"]
        )
        await crud.create_variant(product.id, "Ambre Nuit 100ml", "79.00", size="100ml", stock=5)
        await crud.create_variant(product.id, "Ambre Nuit 10ml", "12.50", size="10ml")

        found = await crud.get_product_with_variants(product.id)
        self.assertEqual(found.product.scent_notes, ["amber", "vanilla"])
        self.assertEqual([v.price for v in found.variants], [Decimal("12.50"), Decimal("79.00")])

        self.assertTrue(await crud.delete_product(product.id))
        self.assertIsNone(await crud.get_product_with_variants(product.id))
        async with db_database.connect() as conn:
            cur = await conn.execute(
                "SELECT COUNT(*) FROM product_variants WHERE product_id = ?;", (product.id,)
            )
            self.assertEqual((await cur.fetchone())[0], 0)
            await cur.close()
        self.assertFalse(await crud.delete_product(product.id))

    async def test_variant_price_validation(self):
        with self.assertRaises(ValueError):
            await crud.create_variant(None, "Bad", "-1.00")
        with self.assertRaises(ValueError):
            await crud.create_variant(None, "Bad", "1.999")
        with self.assertRaises(TypeError):
            await crud.create_variant(None, "Bad", 1.99)

        self.assertFalse(await crud.update_variant("v-oud-5"))
        self.assertTrue(await crud.update_variant("v-oud-5", price="5.49", stock=150))
        variant = await crud.get_variant("v-oud-5")
        self.assertEqual((variant.price, variant.stock), (Decimal("5.49"), 150))
        with self.assertRaises(ValueError):
            await crud.update_variant("v-oud-5", stock=-1)
        self.assertFalse(await crud.update_variant("missing", is_active=False))

    # ---------- Orders ----------

    async def test_order_round_trip_keeps_frozen_prices(self):
        created = await make_order()
        order = await crud.get_order(created.order.id)
        self.assertEqual(order.total_amount, Decimal("104.97"))
        self.assertEqual(order.currency, "EUR")
        self.assertEqual(order.shipping_address_data["city"], "Berlin")

        # live price changes after the order
        await crud.update_variant("v-oud-50", price="99.00")

        items = await crud.get_order_items(order.id)
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].quantity, 2)
        self.assertEqual(items[0].unit_price, Decimal("49.99"))
        self.assertEqual(items[0].total_price, Decimal("99.98"))
        self.assertEqual(await crud.compute_order_total(order.id), Decimal("99.98"))

        by_number = await crud.get_order_by_number(order.order_number)
        self.assertEqual(by_number.id, order.id)

    async def test_create_order_with_items_is_atomic(self):
        with self.assertRaises(ValueError):
            await crud.create_order_with_items(
                {
                    "order_number": "ALN-ATOMIC-0001",
                    "payment_method": "bank",
                    "subtotal": "10.00",
                    "total_amount": "10.00",
                },
                [{"variant_id": "v-oud-5", "quantity": 0, "unit_price": "4.99", "total_price": "0"}],
            )
        self.assertIsNone(await crud.get_order_by_number("ALN-ATOMIC-0001"))

    async def test_create_order_item_appends_line(self):
        created = await make_order()
        item = await crud.create_order_item(
            {
                "order_id": created.order.id,
                "variant_id": "v-oud-5",
                "name": "Sample",
                "quantity": 1,
                "unit_price": Decimal("4.99"),
                "total_price": Decimal("4.99"),
            }
        )
        self.assertEqual(item.line_no, 2)

    async def test_unknown_order_fields_rejected(self):
        with self.assertRaises(ValueError):
            await crud.create_order({"order_number": "X", "payment_method": "card", "price": 1})
        created = await make_order()
        with self.assertRaises(ValueError):
            await crud.update_order(created.order.id, order_number="ALN-NEW")

    async def test_update_order_merges_and_refreshes_updated_at(self):
        created = await make_order()
        before = created.order
        updated = await crud.update_order(before.id, tracking_number="DHL123")
        self.assertEqual(updated.tracking_number, "DHL123")
        self.assertEqual(updated.status, before.status)
        self.assertGreater(updated.updated_at, before.updated_at)
        self.assertIsNone(await crud.update_order("missing", status="cancelled"))

    async def test_update_order_if_guards_on_expected_values(self):
        created = await make_order(payment_status="completed")
        oid = created.order.id
        self.assertIsNone(
            await crud.update_order_if(oid, {"payment_status": "pending"}, status="cancelled")
        )
        self.assertEqual((await crud.get_order(oid)).status, "processing")

        changed = await crud.update_order_if(
            oid, {"payment_status": "completed"}, append_note="refunded", payment_status="refunded"
        )
        self.assertEqual(changed.payment_status, "refunded")
        self.assertEqual(changed.notes, "refunded")

    async def test_append_order_note_never_overwrites(self):
        created = await make_order(notes="Please gift wrap")
        await crud.append_order_note(created.order.id, "[1] first")
        order = await crud.append_order_note(created.order.id, "[2] second")
        self.assertEqual(order.notes, "Please gift wrap\n[1] first\n[2] second")

    async def test_delete_order_cascades_items_and_events(self):
        created = await make_order()
        oid = created.order.id
        await crud.record_order_event(oid, "email_sent")
        self.assertTrue(await crud.delete_order(oid))
        self.assertEqual(await crud.get_order_items(oid), [])
        self.assertEqual(await crud.list_order_events(oid), [])
        self.assertFalse(await crud.delete_order(oid))

    async def test_list_orders_pagination(self):
        for _ in range(3):
            await make_order()
        await make_order(user_id="u-bob")

        mine, total = await crud.list_orders(user_id="u-alice", page=1, page_size=2)
        self.assertEqual(total, 3)
        self.assertEqual(len(mine), 2)
        self.assertGreaterEqual(mine[0].created_at, mine[1].created_at)

        rest, _ = await crud.list_orders(user_id="u-alice", page=2, page_size=2)
        self.assertEqual(len(rest), 1)

        _, everyone = await crud.list_orders()
        self.assertEqual(everyone, 4)

    async def test_generate_order_number_format(self):
        number = await crud.generate_order_number()
        self.assertRegex(number, r"^ALN-[0-9A-Z]+-[0-9A-Z]{4}$")

    async def test_generate_order_number_gives_up_after_collisions(self):
        # Patch connect so every candidate appears taken.
        class FakeCursor:
            async def fetchone(self):
                return (1,)

            async def close(self):
                return None

        class FakeConn:
            async def execute(self, *_args, **_kwargs):
                return FakeCursor()

        @asynccontextmanager
        async def fake_connect():
            yield FakeConn()

        orig_connect = crud.connect
        try:
            crud.connect = fake_connect  # type: ignore
            with self.assertRaises(RuntimeError):
                await crud.generate_order_number(max_attempts=3)
        finally:
            crud.connect = orig_connect

    # ---------- Events ----------

    async def test_record_order_event_only_once(self):
        oid = (await make_order()).order.id
        self.assertTrue(await crud.record_order_event(oid, "email_sent"))
        self.assertFalse(await crud.record_order_event(oid, "email_sent"))
        self.assertTrue(await crud.has_order_event(oid, "email_sent"))
        self.assertFalse(await crud.has_order_event(oid, "refunded"))
        self.assertEqual([e.type for e in await crud.list_order_events(oid)], ["email_sent"])

    async def test_claim_order_event_and_stale_takeover(self):
        oid = (await make_order()).order.id
        ttl = timedelta(minutes=5)
        self.assertTrue(await crud.claim_order_event(oid, "refund_in_progress", ttl))
        self.assertFalse(await crud.claim_order_event(oid, "refund_in_progress", ttl))

        # an abandoned claim can be taken over
        self.assertTrue(await crud.claim_order_event(oid, "refund_in_progress", timedelta(0)))

        await crud.release_order_event(oid, "refund_in_progress")
        self.assertTrue(await crud.claim_order_event(oid, "refund_in_progress", ttl))

    # ---------- Partners, coupons, users ----------

    async def test_partner_codes(self):
        code = await crud.generate_partner_code()
        self.assertTrue(re.fullmatch(r"ALN-[A-Z0-9]{6}", code))

        partner = await crud.create_partner(user_id="u-alice")
        self.assertEqual(partner.status, "pending")
        self.assertEqual(partner.commission_rate, Decimal("2.50"))

        found = await crud.get_partner_by_code(f" {partner.partner_code.lower()} ")
        self.assertEqual(found.id, partner.id)
        self.assertIsNone(await crud.get_partner_by_code("ALN-NOPE00"))

    async def test_partner_sale_adds_earnings(self):
        first = (await make_order()).order.id
        second = (await make_order()).order.id
        await crud.record_partner_sale("pt-approved", first, Decimal("2.50"))
        await crud.record_partner_sale("pt-approved", second, Decimal("1.25"))
        sales = await crud.list_partner_sales("pt-approved")
        self.assertEqual(sorted(s[1] for s in sales), [Decimal("1.25"), Decimal("2.50")])
        async with db_database.connect() as conn:
            cur = await conn.execute(
                "SELECT total_earnings FROM partners WHERE id = 'pt-approved';"
            )
            self.assertEqual((await cur.fetchone())[0], "3.75")
            await cur.close()

    async def test_coupon_usage_limit(self):
        coupon = await crud.create_coupon("limited", "fixed", "3.00", max_uses=1)
        self.assertEqual(coupon.code, "LIMITED")
        self.assertTrue(await crud.increment_coupon_use(coupon.id))
        self.assertFalse(await crud.increment_coupon_use(coupon.id))
        self.assertEqual((await crud.get_coupon_by_code("limited")).current_uses, 1)

        expired = await crud.get_coupon_by_code("SUMMER20")
        self.assertIsNotNone(expired.expires_at)
        with self.assertRaises(ValueError):
            await crud.create_coupon("WRONG", "bogus", "1")

    async def test_users_and_payback(self):
        user = await crud.create_user("neu@aldenair-kunden.de", "Neu Kunde")
        self.assertFalse(user.is_admin)
        self.assertTrue((await crud.get_user("u-admin")).is_admin)
        self.assertIsNone(await crud.get_user("nobody"))

        order_id = (await make_order(user_id=user.id)).order.id
        balance = await crud.award_payback(user.id, order_id, Decimal("4.75"), Decimal("5"))
        self.assertEqual(balance, Decimal("4.75"))
        await crud.award_payback(user.id, order_id, Decimal("0.25"), Decimal("5"))
        self.assertEqual((await crud.get_user(user.id)).payback_balance, Decimal("5.00"))
        with self.assertRaises(ValueError):
            await crud.award_payback("nobody", order_id, Decimal("1"), Decimal("5"))
