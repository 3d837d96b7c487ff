from decimal import Decimal
from typing import Any, List, Literal, Optional, Sequence

from db.models import Order, OrderEvent, OrderItem
from shop.money import money_str


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, Decimal):
        return money_str(value)
    # a bare pipe would end the cell early
    return str(value).replace("|", "\\|").replace("\n", " ")


def generate_markdown_table(
    headers: Optional[List[Any]],
    rows: List[List[Any]],
    aligns: Optional[List[Literal["l", "c", "r"]]] = None,
) -> str:
    """
    Generate a Markdown table.

    Args:
        headers: List of column headers, or None to use first row as headers.
        rows: List of rows. Decimals are rendered with two places, None as "-".
        aligns: List of alignments ('l', 'c', 'r') for each column.
                Defaults to all left ('l').

    Returns:
        str: Markdown formatted table, or "" when there is nothing to show.
    """
    if not rows:
        return ""

    if not headers:
        headers, rows = rows[0], rows[1:]

    headers = [_cell(h) for h in headers]
    rows = [[_cell(c) for c in row] for row in rows]

    num_cols = len(headers)
    if aligns is None:
        aligns = ["l"] * num_cols
    elif len(aligns) != num_cols:
        raise ValueError("Length of aligns must match number of headers.")

    align_map = {"l": ":---", "c": ":---:", "r": "---:"}

    lines = [
        "| " + " | ".join(headers) + " |",
        "| " + " | ".join(align_map[a] for a in aligns) + " |",
    ]
    lines.extend("| " + " | ".join(row) + " |" for row in rows)
    return "\n".join(lines)


def format_address(address: Optional[dict]) -> str:
    if not address:
        return "-"
    name = " ".join(
        part for part in (address.get("firstName"), address.get("lastName")) if part
    )
    city = " ".join(part for part in (address.get("postalCode"), address.get("city")) if part)
    parts = [name, address.get("street"), city, address.get("country")]
    return ", ".join(p for p in parts if p)


def order_detail_markdown(
    order: Optional[Order],
    items: Sequence[OrderItem] = (),
    events: Sequence[OrderEvent] = (),
) -> str:
    """Markdown shown in the order detail panel of the console."""
    if order is None:
        return "### Select an order to view its details."

    c = order.currency
    header = (
        f"### Order {order.order_number}\n\n"
        f"Placed: {order.created_at:%Y-%m-%d %H:%M}  \n"
        f"Customer: {order.customer_name or '-'} <{order.customer_email or '-'}>  \n"
        f"Ship to: {format_address(order.shipping_address_data)}  \n"
        f"Payment: {order.payment_method} / **{order.payment_status}**  \n"
        f"Status: **{order.status}**"
        + (f"  \nTracking: {order.tracking_number}" if order.tracking_number else "")
    )
    item_table = generate_markdown_table(
        ["Item", "Qty", f"Unit ({c})", f"Line ({c})"],
        [[i.name, i.quantity, i.unit_price, i.total_price] for i in items],
        ["l", "r", "r", "r"],
    )
    totals = generate_markdown_table(
        ["", c],
        [
            ["Subtotal", order.subtotal],
            ["Discount", -order.discount_amount if order.discount_amount else order.discount_amount],
            ["Shipping", order.shipping_cost],
            ["**Total**", f"**{money_str(order.total_amount)}**"],
        ],
        ["l", "r"],
    )
    parts = [header, item_table or "_No items._", totals]
    if events:
        parts.append(
            "#### Events\n\n"
            + generate_markdown_table(
                ["When", "Event", "Detail"],
                [[f"{e.occurred_at:%Y-%m-%d %H:%M}", e.type, e.detail] for e in events],
            )
        )
    if order.notes:
        parts.append("#### Notes\n\n" + order.notes.replace("\n", "  \n"))
    if order.admin_notes:
        parts.append("#### Admin notes\n\n" + order.admin_notes)
    return "\n\n".join(parts)
