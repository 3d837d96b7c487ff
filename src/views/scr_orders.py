from math import ceil
from typing import List, Optional

from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.events import ScreenResume
from textual.reactive import reactive
from textual.validation import Number
from textual.widgets import Button, DataTable, Input, Label, MarkdownViewer

import db.crud
from db.models import Order
from shop.errors import ShopError
from shop.money import money_str
from shop.orders import update_order_admin
from utils.messages import ModeSwitchedMessage, OrderChangedMessage
from utils.pure import order_detail_markdown
from views.base_screen import BaseScreen
from views.modal_dialog import DialogModal, PromptModal

PAGE_SIZE = 10


class OrdersScreen(BaseScreen):
    """
    All orders, newest first, with a detail panel and the admin actions.

    Layout:
    - Markdown detail view at the top for the highlighted order.
    - Orders table below, PAGE_SIZE per page with Prev/Next.
    - Action bar: Cancel & Refund, Sync Payment, Mark Shipped, Complete.
    """

    BINDINGS = [
        Binding("r", "refresh", "Refresh", show=True),
        Binding("x", "refund", "Cancel & Refund", show=True),
        Binding("s", "sync", "Sync Payment", show=True),
    ]

    page_idx = reactive(1)
    page_cnt = reactive(1)

    def __init__(self) -> None:
        super().__init__()
        self._orders: List[Order] = []

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical():
            yield MarkdownViewer(id="md-order-detail", show_table_of_contents=False)
            yield DataTable(id="table-orders")
        with Horizontal(id="hort-actions"):
            yield Button("Cancel & Refund", id="btn-refund", variant="error")
            yield Button("Sync Payment", id="btn-sync", variant="primary")
            yield Button("Mark Shipped", id="btn-ship")
            yield Button("Complete", id="btn-complete", variant="success")
        with Horizontal(id="hort-table-control"):
            yield Button("Refresh", id="btn-refresh")
            yield Button("<", id="btn-prev")
            yield Input("1", id="input-page", type="integer")
            yield Label(" / 1", id="label-total-page-cnt")
            yield Button(">", id="btn-next")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.cursor_type = "row"
        table.zebra_stripes = True
        table.add_columns(
            "Order No", "Date", "Customer", "Method", "Payment", "Status", "Total"
        )
        self.page_idx = 1

    # ---------------------------
    # Loading
    # ---------------------------

    @on(Button.Pressed, "#btn-refresh")
    @on(ModeSwitchedMessage)
    @on(ScreenResume)
    def action_refresh(self):
        self._load_orders(self.page_idx)

    @on(OrderChangedMessage)
    def handle_order_changed(self, message: OrderChangedMessage):
        self._load_orders(self.page_idx, keep_order_id=message.order_id)

    def watch_page_idx(self, old: int, new: int) -> None:
        self.query_one("#input-page", Input).value = str(new)
        self._refresh_buttons()
        self._load_orders(new)

    def _refresh_buttons(self) -> None:
        self.query_one("#btn-prev", Button).disabled = self.page_idx <= 1
        self.query_one("#btn-next", Button).disabled = self.page_idx >= self.page_cnt
        self.query_one("#input-page", Input).validators = [
            Number(minimum=1, maximum=self.page_cnt)
        ]

    @on(Button.Pressed, "#btn-prev")
    def handle_prev(self) -> None:
        if self.page_idx > 1:
            self.page_idx -= 1

    @on(Button.Pressed, "#btn-next")
    def handle_next(self) -> None:
        if self.page_idx < self.page_cnt:
            self.page_idx += 1

    @on(Input.Changed, "#input-page")
    def handle_page_input(self, ev: Input.Changed) -> None:
        if ev.value and ev.value.isdigit():
            new_idx = max(1, min(int(ev.value), self.page_cnt))
            if new_idx != self.page_idx:
                self.page_idx = new_idx

    @work(exclusive=True, group="orders")
    async def _load_orders(self, page: int, keep_order_id: Optional[str] = None) -> None:
        orders, total = await db.crud.list_orders(page=page, page_size=PAGE_SIZE)
        table = self.query_one(DataTable)
        table.clear()
        for o in orders:
            table.add_row(
                o.order_number,
                f"{o.created_at:%Y-%m-%d %H:%M}",
                o.customer_name or "-",
                o.payment_method,
                o.payment_status,
                o.status,
                f"{money_str(o.total_amount)} {o.currency}",
            )
        self._orders = orders
        self.page_cnt = max(ceil(total / PAGE_SIZE), 1)
        self.query_one("#label-total-page-cnt", Label).content = f" / {self.page_cnt}"
        self._refresh_buttons()

        if not orders:
            self._render_detail(None)
            return
        row = next((i for i, o in enumerate(orders) if o.id == keep_order_id), 0)
        table.move_cursor(row=row)
        self._load_and_render_detail(orders[row].id)

    @on(DataTable.RowHighlighted)
    def handle_row_highlight(self, event: DataTable.RowHighlighted) -> None:
        order = self._order_at(event.cursor_row)
        if order is not None:
            self._load_and_render_detail(order.id)

    def _order_at(self, row: Optional[int]) -> Optional[Order]:
        if row is None or not 0 <= row < len(self._orders):
            return None
        return self._orders[row]

    def _selected(self) -> Optional[Order]:
        order = self._order_at(self.query_one(DataTable).cursor_row)
        if order is None:
            self.notify("Select an order first.", severity="warning")
        return order

    @work(exclusive=True, group="detail")
    async def _load_and_render_detail(self, order_id: str) -> None:
        detail = await db.crud.get_order_detail(order_id)
        if detail is None:
            self._render_detail(None)
            return
        events = await db.crud.list_order_events(order_id)
        self._render_detail(order_detail_markdown(detail.order, detail.items, events))

    def _render_detail(self, md: Optional[str]) -> None:
        self.query_one("#md-order-detail", MarkdownViewer).document.update(
            md or order_detail_markdown(None)
        )

    # ---------------------------
    # Actions
    # ---------------------------

    @on(Button.Pressed, "#btn-refund")
    @work(exclusive=True, group="action")
    async def action_refund(self) -> None:
        order = self._selected()
        if order is None:
            return
        if not await self.app.push_screen_wait(
            DialogModal(
                f"Cancel order {order.order_number} and refund "
                f"{money_str(order.total_amount)} {order.currency}?",
                primary_text="Cancel & Refund",
                secondary_text="Keep order",
                tone="error",
            )
        ):
            return

        outcome = await self.app.state.refunds.cancel_and_refund(order.id)
        if outcome.success:
            if outcome.manual_reconciliation:
                self.notify(
                    "Order cancelled. Refund has to be transferred manually.",
                    severity="warning",
                )
            elif outcome.refund_id:
                self.notify(f"Refunded {money_str(outcome.amount)} ({outcome.refund_id}).")
            else:
                self.notify("Order cancelled, no payment had been taken.")
        else:
            self.notify(outcome.error_message, title="Refund failed", severity="error")
        self.post_message(OrderChangedMessage(order.id))

    @on(Button.Pressed, "#btn-sync")
    @work(exclusive=True, group="action")
    async def action_sync(self) -> None:
        order = self._selected()
        if order is None:
            return
        try:
            synced = await self.app.state.refunds.sync_payment_status(order.id)
        except ShopError as exc:
            self.notify(exc.message, title="Sync failed", severity="error")
            return
        self.notify(f"Payment status: {synced.payment_status}")
        self.post_message(OrderChangedMessage(order.id))

    @on(Button.Pressed, "#btn-ship")
    @work(exclusive=True, group="action")
    async def handle_ship(self) -> None:
        order = self._selected()
        if order is None:
            return
        tracking = await self.app.push_screen_wait(
            PromptModal(
                f"Tracking number for {order.order_number}",
                placeholder="DHL tracking number",
                value=order.tracking_number or "",
            )
        )
        if tracking is None:
            return
        await self._admin_update(order, {"status": "shipped", "tracking_number": tracking})

    @on(Button.Pressed, "#btn-complete")
    @work(exclusive=True, group="action")
    async def handle_complete(self) -> None:
        order = self._selected()
        if order is None:
            return
        if not await self.app.push_screen_wait(
            DialogModal(
                f"Mark {order.order_number} as completed? Cashback and partner "
                "commission are booked.",
                primary_text="Complete",
                secondary_text="Back",
                tone="positive",
            )
        ):
            return
        await self._admin_update(order, {"status": "completed"})

    async def _admin_update(self, order: Order, changes: dict) -> None:
        try:
            await update_order_admin(order.id, changes, notifier=self.app.state.notifier)
        except ShopError as exc:
            self.notify(exc.message, title="Update failed", severity="error")
            return
        self.notify(f"{order.order_number} updated.")
        self.post_message(OrderChangedMessage(order.id))
