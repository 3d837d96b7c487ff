# src/db/crud.py
from __future__ import annotations

import json
import random
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from sqlite3 import Row
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from db import models
from db.database import connect
from shop.money import ZERO, money_str, parse_price, to_money
from utils.config import get_settings

ORDER_COLUMNS = (
    "id",
    "order_number",
    "user_id",
    "status",
    "payment_status",
    "payment_method",
    "subtotal",
    "discount_amount",
    "shipping_cost",
    "total_amount",
    "currency",
    "customer_name",
    "customer_email",
    "customer_phone",
    "shipping_address_data",
    "billing_address_data",
    "partner_id",
    "coupon_code",
    "stripe_session_id",
    "paypal_order_id",
    "tracking_number",
    "notes",
    "admin_notes",
    "created_at",
    "updated_at",
)

# columns that may never be changed after the order row exists
IMMUTABLE_ORDER_COLUMNS = frozenset({"id", "order_number", "created_at"})

_MONEY_COLUMNS = frozenset(
    {"subtotal", "discount_amount", "shipping_cost", "total_amount"}
)
_JSON_COLUMNS = frozenset({"shipping_address_data", "billing_address_data"})

_CODE_CHARS = string.ascii_uppercase + string.digits


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def _parse_ts(val: Optional[str]) -> Optional[datetime]:
    if not val:
        return None
    return datetime.fromisoformat(val)


def _new_id() -> str:
    return uuid.uuid4().hex


def _json_list(val: Optional[str]) -> List[str]:
    return list(json.loads(val)) if val else []


def _json_obj(val: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(val) if val else None


def _money_or_none(val: Optional[str]) -> Optional[Decimal]:
    return Decimal(val) if val is not None else None


def _base36(num: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while num:
        num, rem = divmod(num, 36)
        out = digits[rem] + out
    return out or "0"


# ---------------------------
# Row mapping
# ---------------------------


def _row_to_user(row: Row) -> models.User:
    return models.User(
        id=row["id"],
        email=row["email"],
        full_name=row["full_name"],
        role=row["role"],
        payback_balance=Decimal(row["payback_balance"]),
    )


def _row_to_product(row: Row) -> models.Product:
    return models.Product(
        id=row["id"],
        name=row["name"],
        brand=row["brand"],
        category=row["category"],
        description=row["description"],
        scent_notes=_json_list(row["scent_notes"]),
        seasons=_json_list(row["seasons"]),
        occasions=_json_list(row["occasions"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_variant(row: Row) -> models.Variant:
    return models.Variant(
        id=row["id"],
        product_id=row["product_id"],
        name=row["name"],
        size=row["size"],
        price=Decimal(row["price"]),
        original_price=_money_or_none(row["original_price"]),
        stock=int(row["stock"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_partner(row: Row) -> models.Partner:
    return models.Partner(
        id=row["id"],
        user_id=row["user_id"],
        partner_code=row["partner_code"],
        status=row["status"],
        commission_rate=Decimal(row["commission_rate"]),
    )


def _row_to_coupon(row: Row) -> models.Coupon:
    return models.Coupon(
        id=row["id"],
        code=row["code"],
        discount_type=row["discount_type"],
        discount_value=Decimal(row["discount_value"]),
        min_order_amount=Decimal(row["min_order_amount"]),
        max_uses=row["max_uses"],
        current_uses=int(row["current_uses"]),
        is_active=bool(row["is_active"]),
        expires_at=_parse_ts(row["expires_at"]),
    )


def _row_to_order(row: Row) -> models.Order:
    return models.Order(
        id=row["id"],
        order_number=row["order_number"],
        user_id=row["user_id"],
        status=row["status"],
        payment_status=row["payment_status"],
        payment_method=row["payment_method"],
        subtotal=Decimal(row["subtotal"]),
        discount_amount=Decimal(row["discount_amount"]),
        shipping_cost=Decimal(row["shipping_cost"]),
        total_amount=Decimal(row["total_amount"]),
        currency=row["currency"],
        customer_name=row["customer_name"],
        customer_email=row["customer_email"],
        customer_phone=row["customer_phone"],
        shipping_address_data=_json_obj(row["shipping_address_data"]),
        billing_address_data=_json_obj(row["billing_address_data"]),
        partner_id=row["partner_id"],
        coupon_code=row["coupon_code"],
        stripe_session_id=row["stripe_session_id"],
        paypal_order_id=row["paypal_order_id"],
        tracking_number=row["tracking_number"],
        notes=row["notes"],
        admin_notes=row["admin_notes"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_order_item(row: Row) -> models.OrderItem:
    return models.OrderItem(
        id=row["id"],
        order_id=row["order_id"],
        line_no=int(row["line_no"]),
        product_id=row["product_id"],
        variant_id=row["variant_id"],
        name=row["name"],
        quantity=int(row["quantity"]),
        unit_price=Decimal(row["unit_price"]),
        total_price=Decimal(row["total_price"]),
    )


def _row_to_event(row: Row) -> models.OrderEvent:
    return models.OrderEvent(
        order_id=row["order_id"],
        type=row["type"],
        detail=row["detail"],
        occurred_at=_parse_ts(row["occurred_at"]),
    )


def _encode_order_value(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _MONEY_COLUMNS:
        return money_str(value)
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    if isinstance(value, datetime):
        return _ts(value)
    return value


# ---------------------------
# Users
# ---------------------------


async def create_user(
    email: str, full_name: Optional[str] = None, role: str = "customer"
) -> models.User:
    """Create a user account and return it."""
    uid = _new_id()
    now = _ts(_now())
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO users(id, email, full_name, role, payback_balance, created_at, updated_at)
            VALUES (?, ?, ?, ?, '0.00', ?, ?);
            """,
            (uid, email, full_name, role, now, now),
        )
        await conn.commit()
    return models.User(
        id=uid, email=email, full_name=full_name, role=role, payback_balance=ZERO
    )


async def get_user(user_id: str) -> Optional[models.User]:
    """Return a User for the given id, or None if not found."""
    async with connect() as conn:
        cur = await conn.execute("SELECT * FROM users WHERE id = ?;", (user_id,))
        row = await cur.fetchone()
        await cur.close()
    return _row_to_user(row) if row else None


async def award_payback(
    user_id: str, order_id: str, amount: Decimal, percentage: Decimal
) -> Decimal:
    """Book a cashback earning for the user and return the new balance."""
    amount = to_money(amount)
    async with connect() as conn:
        await conn.execute("BEGIN IMMEDIATE;")
        cur = await conn.execute(
            "SELECT payback_balance FROM users WHERE id = ?;", (user_id,)
        )
        row = await cur.fetchone()
        await cur.close()
        if not row:
            raise ValueError(f"unknown user {user_id}")
        balance = to_money(row[0]) + amount
        await conn.execute(
            """
            INSERT INTO payback_earnings(id, user_id, order_id, amount, percentage, status, created_at)
            VALUES (?, ?, ?, ?, ?, 'pending', ?);
            """,
            (_new_id(), user_id, order_id, money_str(amount), str(percentage), _ts(_now())),
        )
        await conn.execute(
            "UPDATE users SET payback_balance = ?, updated_at = ? WHERE id = ?;",
            (money_str(balance), _ts(_now()), user_id),
        )
        await conn.commit()
    return balance


# ---------------------------
# Catalog lookup
# ---------------------------


async def create_product(
    name: str,
    brand: Optional[str] = None,
    category: Optional[str] = None,
    description: Optional[str] = None,
    scent_notes: Sequence[str] = (),
    seasons: Sequence[str] = (),
    occasions: Sequence[str] = (),
    is_active: bool = True,
) -> models.Product:
    pid = _new_id()
    now = _ts(_now())
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO products(id, name, brand, category, description, scent_notes,
                                 seasons, occasions, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                pid,
                name,
                brand,
                category,
                description,
                json.dumps(list(scent_notes)),
                json.dumps(list(seasons)),
                json.dumps(list(occasions)),
                int(is_active),
                now,
                now,
            ),
        )
        await conn.commit()
    return models.Product(
        id=pid,
        name=name,
        brand=brand,
        category=category,
        description=description,
        scent_notes=list(scent_notes),
        seasons=list(seasons),
        occasions=list(occasions),
        is_active=is_active,
    )


async def get_product(product_id: str) -> Optional[models.Product]:
    """Fetch a product by id."""
    async with connect() as conn:
        cur = await conn.execute("SELECT * FROM products WHERE id = ?;", (product_id,))
        row = await cur.fetchone()
        await cur.close()
    return _row_to_product(row) if row else None


async def delete_product(product_id: str) -> bool:
    """Delete a product; its variants go with it."""
    async with connect() as conn:
        res = await conn.execute("DELETE FROM products WHERE id = ?;", (product_id,))
        await conn.commit()
        return res.rowcount > 0


async def create_variant(
    product_id: Optional[str],
    name: str,
    price: Decimal | str,
    size: Optional[str] = None,
    original_price: Decimal | str | None = None,
    stock: int = 0,
    is_active: bool = True,
) -> models.Variant:
    """Create a variant. Raises ValueError for prices that are negative or finer than cents."""
    price = parse_price(price)
    original = parse_price(original_price) if original_price is not None else None
    vid = _new_id()
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO product_variants(id, product_id, name, size, price, original_price,
                                         stock, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                vid,
                product_id,
                name,
                size,
                money_str(price),
                money_str(original) if original is not None else None,
                stock,
                int(is_active),
                _ts(_now()),
            ),
        )
        await conn.commit()
    return models.Variant(
        id=vid,
        product_id=product_id,
        name=name,
        size=size,
        price=price,
        original_price=original,
        stock=stock,
        is_active=is_active,
    )


async def get_variant(variant_id: str) -> Optional[models.Variant]:
    """Current price and availability for a variant; never cached."""
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT * FROM product_variants WHERE id = ?;", (variant_id,)
        )
        row = await cur.fetchone()
        await cur.close()
    return _row_to_variant(row) if row else None


async def get_variants(variant_ids: Iterable[str]) -> Dict[str, models.Variant]:
    """Fetch several variants at once, keyed by id. Unknown ids are absent."""
    ids = sorted(set(variant_ids))
    if not ids:
        return {}
    placeholders = ", ".join("?" * len(ids))
    async with connect() as conn:
        cur = await conn.execute(
            f"SELECT * FROM product_variants WHERE id IN ({placeholders});",
            tuple(ids),
        )
        rows = await cur.fetchall()
        await cur.close()
    return {row["id"]: _row_to_variant(row) for row in rows}


async def update_variant(
    variant_id: str,
    price: Decimal | str | None = None,
    stock: Optional[int] = None,
    is_active: Optional[bool] = None,
) -> bool:
    """
    Update price, stock and/or active flag (only provided fields). Return True if a row was updated.
    """
    sets: List[str] = []
    params: List[Any] = []
    if price is not None:
        sets.append("price = ?")
        params.append(money_str(parse_price(price)))
    if stock is not None:
        if stock < 0:
            raise ValueError("Stock cannot be negative.")
        sets.append("stock = ?")
        params.append(stock)
    if is_active is not None:
        sets.append("is_active = ?")
        params.append(int(is_active))
    if not sets:
        return False
    async with connect() as conn:
        res = await conn.execute(
            f"UPDATE product_variants SET {', '.join(sets)} WHERE id = ?;",
            (*params, variant_id),
        )
        await conn.commit()
        return res.rowcount > 0


async def _variants_by_product(conn, product_ids: List[str]) -> Dict[str, List[models.Variant]]:
    if not product_ids:
        return {}
    placeholders = ", ".join("?" * len(product_ids))
    cur = await conn.execute(
        f"""
        SELECT * FROM product_variants
        WHERE product_id IN ({placeholders})
        ORDER BY product_id, CAST(price AS REAL);
        """,
        tuple(product_ids),
    )
    rows = await cur.fetchall()
    await cur.close()
    grouped: Dict[str, List[models.Variant]] = {pid: [] for pid in product_ids}
    for row in rows:
        grouped[row["product_id"]].append(_row_to_variant(row))
    return grouped


async def list_products_with_variants(
    category: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
) -> List[models.ProductWithVariants]:
    """
    Products with their variants, ordered by name.
    `search` matches product or variant names case-insensitively.
    """
    where = []
    params: List[Any] = []
    if not include_inactive:
        where.append("p.is_active = 1")
    if category:
        where.append("LOWER(p.category) = ?")
        params.append(category.strip().lower())
    if search:
        like = f"%{search.strip().lower()}%"
        where.append(
            """
            (LOWER(p.name) LIKE ? OR LOWER(COALESCE(p.brand, '')) LIKE ?
             OR EXISTS (SELECT 1 FROM product_variants v
                        WHERE v.product_id = p.id AND LOWER(v.name) LIKE ?))
            """
        )
        params.extend([like, like, like])
    where_clause = " AND ".join(where) if where else "1 = 1"

    async with connect() as conn:
        cur = await conn.execute(
            f"SELECT p.* FROM products p WHERE {where_clause} ORDER BY p.name;",
            tuple(params),
        )
        rows = await cur.fetchall()
        await cur.close()
        products = [_row_to_product(row) for row in rows]
        variants = await _variants_by_product(conn, [p.id for p in products])

    return [
        models.ProductWithVariants(
            product=p,
            variants=[
                v for v in variants.get(p.id, []) if include_inactive or v.is_active
            ],
        )
        for p in products
    ]


async def get_product_with_variants(
    product_id: str,
) -> Optional[models.ProductWithVariants]:
    async with connect() as conn:
        cur = await conn.execute("SELECT * FROM products WHERE id = ?;", (product_id,))
        row = await cur.fetchone()
        await cur.close()
        if not row:
            return None
        variants = await _variants_by_product(conn, [product_id])
    return models.ProductWithVariants(
        product=_row_to_product(row), variants=variants.get(product_id, [])
    )


# ---------------------------
# Partners & coupons
# ---------------------------


async def generate_partner_code() -> str:
    """Random `ALN-XXXXXX` code that no partner uses yet."""
    prefix = get_settings().order_number_prefix
    async with connect() as conn:
        while True:
            code = f"{prefix}-" + "".join(random.choices(_CODE_CHARS, k=6))
            cur = await conn.execute(
                "SELECT 1 FROM partners WHERE partner_code = ?;", (code,)
            )
            exists = await cur.fetchone()
            await cur.close()
            if not exists:
                return code


async def create_partner(
    user_id: Optional[str] = None,
    status: str = "pending",
    commission_rate: Decimal | str = "2.50",
) -> models.Partner:
    code = await generate_partner_code()
    pid = _new_id()
    now = _ts(_now())
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO partners(id, user_id, partner_code, status, commission_rate,
                                 total_earnings, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, '0.00', ?, ?);
            """,
            (pid, user_id, code, status, money_str(commission_rate), now, now),
        )
        await conn.commit()
    return models.Partner(
        id=pid,
        user_id=user_id,
        partner_code=code,
        status=status,
        commission_rate=to_money(commission_rate),
    )


async def get_partner(partner_id: str) -> Optional[models.Partner]:
    async with connect() as conn:
        cur = await conn.execute("SELECT * FROM partners WHERE id = ?;", (partner_id,))
        row = await cur.fetchone()
        await cur.close()
    return _row_to_partner(row) if row else None


async def get_partner_by_code(code: str) -> Optional[models.Partner]:
    """Look up a partner by referral code (case-insensitive, trimmed)."""
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT * FROM partners WHERE partner_code = ?;",
            ((code or "").strip().upper(),),
        )
        row = await cur.fetchone()
        await cur.close()
    return _row_to_partner(row) if row else None


async def record_partner_sale(
    partner_id: str, order_id: str, commission: Decimal
) -> None:
    """Book a pending commission and add it to the partner's earnings."""
    commission = to_money(commission)
    async with connect() as conn:
        await conn.execute("BEGIN IMMEDIATE;")
        cur = await conn.execute(
            "SELECT total_earnings FROM partners WHERE id = ?;", (partner_id,)
        )
        row = await cur.fetchone()
        await cur.close()
        if not row:
            raise ValueError(f"unknown partner {partner_id}")
        await conn.execute(
            """
            INSERT INTO partner_sales(id, partner_id, order_id, commission_amount, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?);
            """,
            (_new_id(), partner_id, order_id, money_str(commission), _ts(_now())),
        )
        await conn.execute(
            "UPDATE partners SET total_earnings = ?, updated_at = ? WHERE id = ?;",
            (money_str(to_money(row[0]) + commission), _ts(_now()), partner_id),
        )
        await conn.commit()


async def list_partner_sales(partner_id: str) -> List[Tuple[str, Decimal]]:
    """[(order_id, commission), ...] newest first."""
    async with connect() as conn:
        cur = await conn.execute(
            """
            SELECT order_id, commission_amount FROM partner_sales
            WHERE partner_id = ? ORDER BY created_at DESC;
            """,
            (partner_id,),
        )
        rows = await cur.fetchall()
        await cur.close()
    return [(row[0], Decimal(row[1])) for row in rows]


async def create_coupon(
    code: str,
    discount_type: str,
    discount_value: Decimal | str,
    min_order_amount: Decimal | str = "0.00",
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    is_active: bool = True,
) -> models.Coupon:
    if discount_type not in ("percentage", "fixed"):
        raise ValueError(f"unknown discount type {discount_type!r}")
    cid = _new_id()
    code = code.strip().upper()
    async with connect() as conn:
        await conn.execute(
            """
            INSERT INTO coupons(id, code, discount_type, discount_value, min_order_amount,
                                max_uses, current_uses, is_active, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?);
            """,
            (
                cid,
                code,
                discount_type,
                str(Decimal(discount_value)),
                money_str(min_order_amount),
                max_uses,
                int(is_active),
                _ts(expires_at) if expires_at else None,
                _ts(_now()),
            ),
        )
        await conn.commit()
    return models.Coupon(
        id=cid,
        code=code,
        discount_type=discount_type,
        discount_value=Decimal(discount_value),
        min_order_amount=to_money(min_order_amount),
        max_uses=max_uses,
        current_uses=0,
        is_active=is_active,
        expires_at=expires_at,
    )


async def get_coupon_by_code(code: str) -> Optional[models.Coupon]:
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT * FROM coupons WHERE code = ?;", ((code or "").strip().upper(),)
        )
        row = await cur.fetchone()
        await cur.close()
    return _row_to_coupon(row) if row else None


async def increment_coupon_use(coupon_id: str) -> bool:
    """Count one redemption; False once the coupon is used up."""
    async with connect() as conn:
        res = await conn.execute(
            """
            UPDATE coupons SET current_uses = current_uses + 1
            WHERE id = ? AND (max_uses IS NULL OR current_uses < max_uses);
            """,
            (coupon_id,),
        )
        await conn.commit()
        return res.rowcount > 0


# ---------------------------
# Orders
# ---------------------------


async def generate_order_number(max_attempts: int = 10) -> str:
    """
    `ALN-<base36 millis>-<4 random>`; regenerated on collision.
    The UNIQUE constraint on order_number backs this check.
    """
    prefix = get_settings().order_number_prefix
    async with connect() as conn:
        for _ in range(max_attempts):
            stamp = _base36(time.time_ns() // 1_000_000)
            suffix = "".join(random.choices(_CODE_CHARS, k=4))
            number = f"{prefix}-{stamp}-{suffix}"
            cur = await conn.execute(
                "SELECT 1 FROM orders WHERE order_number = ?;", (number,)
            )
            exists = await cur.fetchone()
            await cur.close()
            if not exists:
                return number
    raise RuntimeError("could not generate a unique order number")


def _order_insert_params(header: Mapping[str, Any]) -> Tuple[str, Tuple[Any, ...], str]:
    unknown = set(header) - set(ORDER_COLUMNS)
    if unknown:
        raise ValueError(f"unknown order fields: {sorted(unknown)}")
    now = _now()
    values = dict(header)
    values.setdefault("id", _new_id())
    values.setdefault("created_at", now)
    values.setdefault("updated_at", now)
    values.setdefault("currency", get_settings().currency)
    values.setdefault("status", "pending")
    values.setdefault("payment_status", "pending")
    values.setdefault("discount_amount", ZERO)
    values.setdefault("shipping_cost", ZERO)
    columns = [c for c in ORDER_COLUMNS if c in values]
    sql = (
        f"INSERT INTO orders({', '.join(columns)}) "
        f"VALUES ({', '.join('?' * len(columns))});"
    )
    params = tuple(_encode_order_value(c, values[c]) for c in columns)
    return sql, params, values["id"]


def _item_insert_params(
    order_id: str, line_no: int, item: Mapping[str, Any]
) -> Tuple[Any, ...]:
    quantity = int(item["quantity"])
    if quantity < 1:
        raise ValueError("Quantity must be at least 1.")
    return (
        item.get("id") or _new_id(),
        order_id,
        line_no,
        item.get("product_id"),
        item.get("variant_id"),
        item.get("name"),
        quantity,
        money_str(item["unit_price"]),
        money_str(item["total_price"]),
        _ts(_now()),
    )


_ITEM_INSERT = """
    INSERT INTO order_items(id, order_id, line_no, product_id, variant_id, name,
                            quantity, unit_price, total_price, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
"""


async def _fetch_order(conn, order_id: str) -> Optional[models.Order]:
    cur = await conn.execute("SELECT * FROM orders WHERE id = ?;", (order_id,))
    row = await cur.fetchone()
    await cur.close()
    return _row_to_order(row) if row else None


async def _fetch_order_items(conn, order_id: str) -> List[models.OrderItem]:
    cur = await conn.execute(
        "SELECT * FROM order_items WHERE order_id = ? ORDER BY line_no;", (order_id,)
    )
    rows = await cur.fetchall()
    await cur.close()
    return [_row_to_order_item(row) for row in rows]


async def create_order(header: Mapping[str, Any]) -> models.Order:
    """Insert an order header. Keys are order column names."""
    sql, params, order_id = _order_insert_params(header)
    async with connect() as conn:
        await conn.execute(sql, params)
        await conn.commit()
        return await _fetch_order(conn, order_id)


async def create_order_item(item: Mapping[str, Any]) -> models.OrderItem:
    """Append one line to an existing order; line numbers continue from the last one."""
    order_id = item["order_id"]
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT COALESCE(MAX(line_no), 0) FROM order_items WHERE order_id = ?;",
            (order_id,),
        )
        line_no = (await cur.fetchone())[0] + 1
        await cur.close()
        params = _item_insert_params(order_id, line_no, item)
        await conn.execute(_ITEM_INSERT, params)
        await conn.commit()
        cur = await conn.execute("SELECT * FROM order_items WHERE id = ?;", (params[0],))
        row = await cur.fetchone()
        await cur.close()
    return _row_to_order_item(row)


async def create_order_with_items(
    header: Mapping[str, Any], items: Sequence[Mapping[str, Any]]
) -> models.OrderWithItems:
    """Insert the header and all lines in one transaction; nothing is kept on failure."""
    sql, params, order_id = _order_insert_params(header)
    async with connect() as conn:
        await conn.execute(sql, params)
        for line_no, item in enumerate(items, start=1):
            await conn.execute(_ITEM_INSERT, _item_insert_params(order_id, line_no, item))
        await conn.commit()
        order = await _fetch_order(conn, order_id)
        lines = await _fetch_order_items(conn, order_id)
    return models.OrderWithItems(order=order, items=lines)


async def get_order(order_id: str) -> Optional[models.Order]:
    async with connect() as conn:
        return await _fetch_order(conn, order_id)


async def get_order_by_number(order_number: str) -> Optional[models.Order]:
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT * FROM orders WHERE order_number = ?;", (order_number,)
        )
        row = await cur.fetchone()
        await cur.close()
    return _row_to_order(row) if row else None


async def get_order_items(order_id: str) -> List[models.OrderItem]:
    async with connect() as conn:
        return await _fetch_order_items(conn, order_id)


async def get_order_detail(order_id: str) -> Optional[models.OrderWithItems]:
    """
    Return the order with its lines, or None.
    """
    async with connect() as conn:
        order = await _fetch_order(conn, order_id)
        if not order:
            return None
        lines = await _fetch_order_items(conn, order_id)
    return models.OrderWithItems(order=order, items=lines)


async def list_orders(
    user_id: Optional[str] = None, page: int = 1, page_size: int = 20
) -> Tuple[List[models.Order], int]:
    """
    List orders newest first, optionally only those of one user, paginated.
    Return (orders_for_page, total_count).
    """
    where, params = ("WHERE user_id = ?", (user_id,)) if user_id else ("", ())
    async with connect() as conn:
        cur = await conn.execute(f"SELECT COUNT(*) FROM orders {where};", params)
        total = (await cur.fetchone())[0]
        await cur.close()
        offset = max(page - 1, 0) * page_size
        cur = await conn.execute(
            f"""
            SELECT * FROM orders {where}
            ORDER BY created_at DESC
            LIMIT ? OFFSET ?;
            """,
            (*params, page_size, offset),
        )
        rows = await cur.fetchall()
        await cur.close()
    return [_row_to_order(row) for row in rows], total


def _order_update_sql(
    fields: Mapping[str, Any], append_note: Optional[str]
) -> Tuple[List[str], List[Any]]:
    bad = set(fields) - (set(ORDER_COLUMNS) - IMMUTABLE_ORDER_COLUMNS)
    if bad:
        raise ValueError(f"order fields cannot be updated: {sorted(bad)}")
    sets = [f"{column} = ?" for column in fields if column != "updated_at"]
    params = [
        _encode_order_value(column, value)
        for column, value in fields.items()
        if column != "updated_at"
    ]
    if append_note:
        sets.append(
            "notes = CASE WHEN notes IS NULL OR notes = '' THEN ? "
            "ELSE notes || char(10) || ? END"
        )
        params.extend([append_note, append_note])
    sets.append("updated_at = ?")
    params.append(_ts(_now()))
    return sets, params


async def update_order(
    order_id: str, append_note: Optional[str] = None, **fields: Any
) -> Optional[models.Order]:
    """
    Partial update; `updated_at` is always refreshed.
    `append_note` is added to the notes on a new line, never replacing them.
    Returns the updated order, or None if it does not exist.
    """
    sets, params = _order_update_sql(fields, append_note)
    async with connect() as conn:
        res = await conn.execute(
            f"UPDATE orders SET {', '.join(sets)} WHERE id = ?;", (*params, order_id)
        )
        await conn.commit()
        if res.rowcount == 0:
            return None
        return await _fetch_order(conn, order_id)


async def update_order_if(
    order_id: str,
    expected: Mapping[str, Any],
    append_note: Optional[str] = None,
    **fields: Any,
) -> Optional[models.Order]:
    """
    Same as update_order, but only applies when every column in `expected`
    still holds the given value. Returns None when the guard does not match.
    """
    sets, params = _order_update_sql(fields, append_note)
    guards = " AND ".join(f"{column} IS ?" for column in expected)
    guard_params = [_encode_order_value(c, v) for c, v in expected.items()]
    async with connect() as conn:
        res = await conn.execute(
            f"UPDATE orders SET {', '.join(sets)} WHERE id = ?"
            + (f" AND {guards};" if guards else ";"),
            (*params, order_id, *guard_params),
        )
        await conn.commit()
        if res.rowcount == 0:
            return None
        return await _fetch_order(conn, order_id)


async def append_order_note(order_id: str, fragment: str) -> Optional[models.Order]:
    return await update_order(order_id, append_note=fragment)


async def delete_order(order_id: str) -> bool:
    """Delete an order; its items and events cascade."""
    async with connect() as conn:
        res = await conn.execute("DELETE FROM orders WHERE id = ?;", (order_id,))
        await conn.commit()
        return res.rowcount > 0


async def compute_order_total(order_id: str) -> Decimal:
    """Sum of the frozen line totals of an order (before discount and shipping)."""
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT total_price FROM order_items WHERE order_id = ?;", (order_id,)
        )
        rows = await cur.fetchall()
        await cur.close()
    return to_money(sum((Decimal(row[0]) for row in rows), ZERO))


# ---------------------------
# Order events
# ---------------------------


async def record_order_event(
    order_id: str, event_type: str, detail: Optional[str] = None
) -> bool:
    """Record a one-time event. True if it was recorded now, False if it already existed."""
    async with connect() as conn:
        res = await conn.execute(
            """
            INSERT OR IGNORE INTO order_events(order_id, type, detail, occurred_at)
            VALUES (?, ?, ?, ?);
            """,
            (order_id, event_type, detail, _ts(_now())),
        )
        await conn.commit()
        return res.rowcount == 1


async def has_order_event(order_id: str, event_type: str) -> bool:
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT 1 FROM order_events WHERE order_id = ? AND type = ?;",
            (order_id, event_type),
        )
        row = await cur.fetchone()
        await cur.close()
    return row is not None


async def claim_order_event(
    order_id: str, event_type: str, stale_after: timedelta
) -> bool:
    """
    Take an exclusive marker for `order_id`. A marker older than `stale_after`
    is considered abandoned and may be taken over.
    """
    cutoff = _ts(_now() - stale_after)
    async with connect() as conn:
        await conn.execute(
            "DELETE FROM order_events WHERE order_id = ? AND type = ? AND occurred_at < ?;",
            (order_id, event_type, cutoff),
        )
        res = await conn.execute(
            """
            INSERT OR IGNORE INTO order_events(order_id, type, detail, occurred_at)
            VALUES (?, ?, NULL, ?);
            """,
            (order_id, event_type, _ts(_now())),
        )
        await conn.commit()
        return res.rowcount == 1


async def release_order_event(order_id: str, event_type: str) -> None:
    async with connect() as conn:
        await conn.execute(
            "DELETE FROM order_events WHERE order_id = ? AND type = ?;",
            (order_id, event_type),
        )
        await conn.commit()


async def list_order_events(order_id: str) -> List[models.OrderEvent]:
    async with connect() as conn:
        cur = await conn.execute(
            "SELECT * FROM order_events WHERE order_id = ? ORDER BY occurred_at, type;",
            (order_id,),
        )
        rows = await cur.fetchall()
        await cur.close()
    return [_row_to_event(row) for row in rows]
