from __future__ import annotations

from typing import Dict, Optional

from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.validation import Number, Regex
from textual.widgets import Button, Input, Label, MarkdownViewer, OptionList
from textual.widgets.option_list import Option

from db.crud import get_product, get_variant, list_products_with_variants, update_variant
from db.models import Variant
from shop.money import money_str
from utils.pure import generate_markdown_table
from views.base_screen import BaseScreen

PRICE_PATTERN = r"^\d+(\.\d{1,2})?$"


class CatalogScreen(BaseScreen):
    """
    Search variants, inspect them and change price, stock or availability.
    """

    current_variant_id: Optional[str] = None

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical():
            yield Input(id="input-search", placeholder="Search product or variant...")
            yield OptionList(id="optlist-variants")
            yield MarkdownViewer(id="md-variant", show_table_of_contents=False)
            with Horizontal(id="hort-controls"):
                with Horizontal(id="div-new-inputs"):
                    with Vertical():
                        yield Label("Price:")
                        yield Input(
                            placeholder="49.99",
                            id="input-price",
                            validators=[Regex(PRICE_PATTERN)],
                        )
                    with Vertical():
                        yield Label("Stock:")
                        yield Input(
                            placeholder="0",
                            id="input-stock",
                            type="integer",
                            validators=[Number(minimum=0)],
                        )
                with Horizontal(id="div-button"):
                    yield Button("Toggle active", id="btn-toggle")
                    yield Button("Update", id="btn-update", variant="success")

    def on_mount(self) -> None:
        self.query_one("#input-search", Input).focus()
        self.query_one("#md-variant").add_class("hidden")
        self.query_one("#hort-controls").add_class("hidden")
        self.update_optlist("")

    def on_input_changed(self, message: Input.Changed) -> None:
        if message.input.id == "input-search":
            self.query_one("#optlist-variants").remove_class("hidden")
            self.update_optlist(message.value)

    def on_option_list_option_selected(self, message: OptionList.OptionSelected):
        self.current_variant_id = message.option.id
        self.render_variant()

        self.query_one("#optlist-variants").add_class("hidden")
        self.query_one("#md-variant").remove_class("hidden")
        self.query_one("#hort-controls").remove_class("hidden")

    @work(exclusive=True)
    async def update_optlist(self, query: str):
        """
        fill option list with matching variants, inactive ones included
        """
        products = await list_products_with_variants(
            search=query or None, include_inactive=True
        )
        opt_list = self.query_one("#optlist-variants", OptionList)
        opt_list.clear_options()
        opt_list.add_options(
            [
                Option(
                    f"{v.name}  {money_str(v.price)}  stock {v.stock}"
                    + ("" if v.is_active and p.product.is_active else "  (inactive)"),
                    id=v.id,
                )
                for p in products
                for v in p.variants
            ]
        )

    @work(exclusive=True)
    async def render_variant(self) -> None:
        variant = await get_variant(self.current_variant_id)
        if variant is None:
            self.notify("Variant no longer exists.", severity="error")
            return
        product = await get_product(variant.product_id) if variant.product_id else None

        rows: Dict[str, object] = {
            "Variant id": variant.id,
            "Product": product.name if product else "(none)",
            "Size": variant.size,
            "Price": variant.price,
            "Original price": variant.original_price,
            "Stock": variant.stock,
            "Active": "yes" if variant.is_active else "no",
        }
        md_table = generate_markdown_table(
            ["Attribute", "Value"], [[k, v] for k, v in rows.items()], ["l", "l"]
        )
        await self.query_one("#md-variant", MarkdownViewer).document.update(
            f"### {variant.name}\n\n" + md_table
        )
        self.query_one("#input-price", Input).value = money_str(variant.price)
        self.query_one("#input-stock", Input).value = str(variant.stock)

    async def _current(self) -> Optional[Variant]:
        if self.current_variant_id is None:
            return None
        return await get_variant(self.current_variant_id)

    @on(Button.Pressed, "#btn-update")
    @work(exclusive=True)
    async def handle_update(self) -> None:
        variant = await self._current()
        if variant is None:
            return
        price_input = self.query_one("#input-price", Input)
        stock_input = self.query_one("#input-stock", Input)
        if not price_input.is_valid or not price_input.value:
            price_input.focus()
            price_input.add_class("-invalid")
            return
        if not stock_input.is_valid or not stock_input.value:
            stock_input.focus()
            stock_input.add_class("-invalid")
            return

        new_price = price_input.value.strip()
        new_stock = int(stock_input.value)
        if money_str(new_price) == money_str(variant.price) and new_stock == variant.stock:
            self.notify("Nothing to update.", severity="warning")
            return

        try:
            updated = await update_variant(variant.id, price=new_price, stock=new_stock)
        except ValueError as exc:
            self.notify(str(exc), severity="error")
            return
        if updated:
            self.notify("Variant updated.")
        else:
            self.notify("Update failed.", severity="error")
        self.render_variant()

    @on(Button.Pressed, "#btn-toggle")
    @work(exclusive=True)
    async def handle_toggle(self) -> None:
        variant = await self._current()
        if variant is None:
            return
        await update_variant(variant.id, is_active=not variant.is_active)
        self.notify(f"{variant.name} is now {'inactive' if variant.is_active else 'active'}.")
        self.render_variant()
