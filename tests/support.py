import os
import tempfile
import unittest
from decimal import Decimal
from typing import List, Optional

from db import crud
from db import database as db_database
from db.models import Order, OrderWithItems
from notify.mailer import Email, NotificationError, Notifier
from payments.base import ProviderRefund, RefundProvider
from shop.errors import RefundError


class DbTestCase(unittest.IsolatedAsyncioTestCase):
    """Points the database at a fresh temporary file with the seed data loaded."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.temp_dir.name, "test.sqlite")
        db_database.DB_PATH = self.db_path
        db_database._initialized = False

    async def asyncSetUp(self):
        # Touch initialization by opening a connection
        async with db_database.connect() as conn:
            cur = await conn.execute("SELECT name FROM sqlite_master WHERE type='table';")
            await cur.fetchall()
            await cur.close()

    def tearDown(self):
        self.temp_dir.cleanup()


ADDRESS = {
    "firstName": "Alice",
    "lastName": "Meyer",
    "street": "Hauptstr. 1",
    "postalCode": "10115",
    "city": "Berlin",
    "country": "DE",
}


async def make_order(
    payment_method: str = "card",
    payment_status: str = "completed",
    status: str = "processing",
    total: str = "104.97",
    **fields,
) -> OrderWithItems:
    """Insert an order with one Oud Royale line, bypassing checkout."""
    header = {
        "order_number": await crud.generate_order_number(),
        "user_id": "u-alice",
        "status": status,
        "payment_status": payment_status,
        "payment_method": payment_method,
        "subtotal": Decimal("99.98"),
        "shipping_cost": Decimal("4.99"),
        "total_amount": Decimal(total),
        "customer_name": "Alice Meyer",
        "customer_email": "alice@aldenair-kunden.de",
        "shipping_address_data": ADDRESS,
    }
    header.update(fields)
    return await crud.create_order_with_items(
        header,
        [
            {
                "product_id": "p-oud",
                "variant_id": "v-oud-50",
                "name": "Oud Royale 50ml",
                "quantity": 2,
                "unit_price": Decimal("49.99"),
                "total_price": Decimal("99.98"),
            }
        ],
    )


class RecordingNotifier(Notifier):
    def __init__(self, settings=None):
        super().__init__(settings)
        self.sent: List[Email] = []

    async def send(self, email: Email) -> None:
        self.sent.append(email)


class FailingNotifier(Notifier):
    async def send(self, email: Email) -> None:
        raise NotificationError("mail server down")


class FakeRefundProvider(RefundProvider):
    """Refund provider double that records calls and returns or raises a canned answer."""

    def __init__(
        self,
        name: str = "stripe",
        refund_id: str = "re_test_123",
        error: Optional[RefundError] = None,
        state: Optional[str] = None,
    ):
        self.name = name
        self.refund_id = refund_id
        self.error = error
        self.state = state
        self.refunded: List[str] = []

    async def refund(self, order: Order) -> ProviderRefund:
        if self.error is not None:
            raise self.error
        self.refunded.append(order.id)
        return ProviderRefund(
            provider=self.name, refund_id=self.refund_id, amount=order.total_amount
        )

    async def payment_state(self, order: Order) -> Optional[str]:
        return self.state
