from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.schemas import (
    CheckoutOut,
    OrderCreate,
    OrderOut,
    OrderPage,
    ProductOut,
    RefundOut,
    patch_changes,
)
from db import crud
from db.models import Order, OrderItem, User
from notify.mailer import Notifier, build_notifier
from payments.paypal import PayPalClient, PayPalRefundProvider
from payments.stripe import CardRefundProvider, StripeClient
from shop.checkout import CheckoutRequest, CheckoutService, Customer
from shop.errors import OrderNotFound, ShopError
from shop.orders import update_order_admin
from shop.pricing import CartLine
from shop.refunds import RefundService
from utils.config import Settings, get_settings
from utils.logger import get_logger

_logger = get_logger(__name__)

router = APIRouter()


def order_out(order: Order, items: Sequence[OrderItem] = ()) -> OrderOut:
    return OrderOut.model_validate({**asdict(order), "items": [asdict(i) for i in items]})


# ---------------------------
# Dependencies
# ---------------------------


async def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> User:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    user = await crud.get_user(x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


async def get_optional_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[User]:
    if not x_user_id:
        return None
    return await crud.get_user(x_user_id)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


def get_refunds(request: Request) -> RefundService:
    return request.app.state.refunds


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


async def _owned_order(order_id: str, user: User) -> Order:
    order = await crud.get_order(order_id)
    if order is None:
        raise OrderNotFound()
    if not user.is_admin and order.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not your order")
    return order


# ---------------------------
# Catalog
# ---------------------------


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/products", response_model=List[ProductOut])
async def list_products(category: Optional[str] = None, search: Optional[str] = None):
    products = await crud.list_products_with_variants(category=category, search=search)
    return [
        ProductOut.model_validate(
            {**asdict(p.product), "variants": [asdict(v) for v in p.variants]}
        )
        for p in products
    ]


@router.get("/products/{product_id}", response_model=ProductOut)
async def get_product(product_id: str):
    found = await crud.get_product_with_variants(product_id)
    if found is None or not found.product.is_active:
        raise HTTPException(status_code=404, detail="Product not found")
    return ProductOut.model_validate(
        {
            **asdict(found.product),
            "variants": [asdict(v) for v in found.variants if v.is_active],
        }
    )


# ---------------------------
# Orders
# ---------------------------


@router.post("/orders", response_model=CheckoutOut)
async def create_order(
    payload: OrderCreate,
    user: Optional[User] = Depends(get_optional_user),
    checkout: CheckoutService = Depends(get_checkout),
):
    result = await checkout.submit_order(
        CheckoutRequest(
            items=[CartLine(i.variant_id, i.quantity) for i in payload.items],
            customer=Customer(
                name=payload.customer_name,
                email=payload.customer_email,
                phone=payload.customer_phone,
            ),
            shipping_address=payload.shipping_address_data,
            billing_address=payload.billing_address_data,
            payment_method=payload.payment_method,
            discount_code=payload.discount_code,
            referral_code=payload.referral_code,
            shipping_option_id=payload.shipping_option_id,
            notes=payload.notes,
            user_id=user.id if user else None,
        )
    )
    return CheckoutOut(
        order=order_out(result.order, result.items),
        redirect_url=result.redirect_url,
        approval_url=result.approval_url,
        bank_instructions=asdict(result.bank_instructions)
        if result.bank_instructions
        else None,
    )


async def _order_page(user_id: Optional[str], page: int, page_size: int) -> OrderPage:
    orders, total = await crud.list_orders(user_id=user_id, page=page, page_size=page_size)
    return OrderPage(
        orders=[order_out(o) for o in orders], total=total, page=page, page_size=page_size
    )


@router.get("/orders", response_model=OrderPage)
async def list_my_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    user: User = Depends(get_current_user),
):
    return await _order_page(user.id, page, page_size)


@router.get("/admin/orders", response_model=OrderPage)
async def list_all_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    _admin: User = Depends(require_admin),
):
    return await _order_page(None, page, page_size)


@router.get("/orders/{order_id}", response_model=OrderOut)
async def get_order(order_id: str, user: User = Depends(get_current_user)):
    order = await _owned_order(order_id, user)
    return order_out(order, await crud.get_order_items(order.id))


@router.patch("/orders/{order_id}", response_model=OrderOut)
async def patch_order(
    order_id: str,
    body: Dict[str, Any] = Body(...),
    _admin: User = Depends(require_admin),
    notifier: Notifier = Depends(get_notifier),
):
    order = await update_order_admin(order_id, patch_changes(body), notifier=notifier)
    return order_out(order, await crud.get_order_items(order.id))


@router.post("/orders/{order_id}/cancel-and-refund", response_model=RefundOut)
async def cancel_and_refund(
    order_id: str,
    _admin: User = Depends(require_admin),
    refunds: RefundService = Depends(get_refunds),
):
    outcome = await refunds.cancel_and_refund(order_id)
    if not outcome.success:
        return JSONResponse(
            status_code=400,
            content={"error": outcome.error_message, "code": outcome.error_code},
        )
    return RefundOut(
        success=True,
        stripe_refund_id=outcome.stripe_refund_id,
        paypal_refund_id=outcome.paypal_refund_id,
        refund_amount=outcome.amount,
        manual_reconciliation=outcome.manual_reconciliation,
        order=order_out(outcome.order) if outcome.order else None,
    )


@router.post("/orders/{order_id}/sync-payment", response_model=OrderOut)
async def sync_payment(
    order_id: str,
    _admin: User = Depends(require_admin),
    refunds: RefundService = Depends(get_refunds),
):
    return order_out(await refunds.sync_payment_status(order_id))


@router.post("/orders/{order_id}/paypal/capture", response_model=OrderOut)
async def capture_paypal(
    order_id: str,
    user: User = Depends(get_current_user),
    refunds: RefundService = Depends(get_refunds),
):
    await _owned_order(order_id, user)
    return order_out(await refunds.capture_paypal_order(order_id))


# ---------------------------
# App factory
# ---------------------------


async def _shop_error(_request: Request, exc: ShopError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.message, "code": exc.code}
    )


async def _invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return JSONResponse(
        status_code=400,
        content={
            "error": f"{where}: {first.get('msg', 'invalid request')}".strip(": "),
            "code": "invalid_request",
        },
    )


def create_app(
    checkout: Optional[CheckoutService] = None,
    refunds: Optional[RefundService] = None,
    notifier: Optional[Notifier] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    notifier = notifier or build_notifier(settings)
    if checkout is None or refunds is None:
        stripe = StripeClient.from_settings(settings)
        paypal = PayPalClient.from_settings(settings)
        checkout = checkout or CheckoutService(
            card=stripe, paypal=paypal, notifier=notifier, settings=settings
        )
        refunds = refunds or RefundService(
            providers={
                "card": CardRefundProvider(stripe),
                "paypal": PayPalRefundProvider(paypal),
            },
            notifier=notifier,
            settings=settings,
        )

    app = FastAPI(title=f"{settings.store_name} Orders API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.checkout = checkout
    app.state.refunds = refunds
    app.state.notifier = notifier
    app.add_exception_handler(ShopError, _shop_error)
    app.add_exception_handler(RequestValidationError, _invalid_request)
    app.include_router(router)
    _logger.debug("API application created")
    return app


app = create_app()
