from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Mapping, Optional
from urllib.parse import urlencode

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi import Form, Query
from fastapi.responses import (
    HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse,
)
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import Settings, configure_logging
from .errors import StoreError
from .fulfillment import apply_payment, cancel_order
from .helpers import ct_equal, is_valid_contact, new_order_number, now_iso
from .helpers import now_ts, to_iso
from .infra import timings
from .infra.timings import timeit
from .mockpay import MOCK_CASHIER_PATH, MockGateway, callback_form
from .model.records import (
    PAY_FAILED, PAY_PAID, PAY_PENDING, PAYMENT_STATUSES, PRODUCT_ACTIVE,
    SECRET_AVAILABLE, SECRET_SOLD, Product,
)
from .model.store import new_backend
from .payment import (
    PAYMENT_TYPES, CallbackVerifier, GatewayClient, PaymentGateway,
    minor_to_major, order_param,
)
from .store import Store

logger = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

app = FastAPI(
    title="CardShop",
    default_response_class=ORJSONResponse,
)
# the cookie key is needed before startup, where the rest of the settings load
app.add_middleware(
    SessionMiddleware, secret_key=Settings.from_env().session_secret
)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _startup():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    app.state.settings = settings

    app.state.http = httpx.AsyncClient(
        timeout=settings.gateway.timeout,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=32),
    )

    store = Store(new_backend(settings))
    await store.open()
    app.state.store = store

    app.state.verifier = CallbackVerifier(
        settings.gateway.secret_key,
        allow_mock_signature=settings.allow_mock_signature,
    )
    if settings.payment_gateway == "mock":
        app.state.gateway = MockGateway()
    else:
        app.state.gateway = GatewayClient(settings.gateway, app.state.http)

    logger.info(
        "CardShop starting: env=%s store=%s gateway=%s mock_signature=%s",
        settings.app_env, store.database_type, settings.payment_gateway,
        "allowed" if settings.allow_mock_signature else "off",
    )


@app.on_event("shutdown")
async def _shutdown():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    store = getattr(app.state, "store", None)
    if store is not None:
        await store.close()
        app.state.store = None


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError):
    return ORJSONResponse(
        status_code=503,
        content={"success": False, "error": "Database unavailable"},
    )


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_verifier(request: Request) -> CallbackVerifier:
    return request.app.state.verifier


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")


def require_mock(settings: Settings = Depends(get_settings)) -> None:
    # the mock cashier only exists where mock signatures are accepted
    if not settings.allow_mock_signature:
        raise HTTPException(404, detail="Not Found")


# ----------------------------
# Request bodies
# ----------------------------
class CreateOrderRequest(BaseModel):
    contactInfo: str
    productId: str
    paymentType: str = "alipay"
    # single-unit purchases only; accepted for client compatibility
    quantity: int = 1


class OrderQueryRequest(BaseModel):
    contactInfo: str


class LoginRequest(BaseModel):
    password: str


class ProductIn(BaseModel):
    title: str
    price: int = Field(ge=0)
    description: str = ""
    category: str = ""
    subcategory: str = ""
    currency: str = "CNY"
    stock: int = Field(default=0, ge=0)
    quality_guarantee: str = ""
    attributes: List[str] = Field(default_factory=list)
    status: str = PRODUCT_ACTIVE


class ProductPatch(BaseModel):
    title: Optional[str] = None
    price: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    currency: Optional[str] = None
    stock: Optional[int] = Field(default=None, ge=0)
    quality_guarantee: Optional[str] = None
    attributes: Optional[List[str]] = None
    status: Optional[str] = None


class CardSecretIn(BaseModel):
    account: str
    password: str
    additional_info: Optional[str] = None
    quality_guarantee: str = ""


class CardSecretUpload(BaseModel):
    card_secrets: List[CardSecretIn]


# ----------------------------
# Health
# ----------------------------
@app.get("/api/health")
async def health(store: Store = Depends(get_store)):
    ok = await store.health_check()
    return ORJSONResponse(
        status_code=200 if ok else 503,
        content={
            "status": "ok" if ok else "degraded",
            "database_type": store.database_type,
            "database": ok,
        },
    )


# ----------------------------
# Storefront: products
# ----------------------------
@app.get("/api/products")
async def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    store: Store = Depends(get_store),
):
    products = [
        p for p in await store.get_products() if p.status == PRODUCT_ACTIVE
    ]
    if category:
        products = [p for p in products if p.category == category]
    if search:
        needle = search.strip().lower()
        products = [
            p for p in products
            if needle in p.title.lower() or needle in p.description.lower()
        ]
    return {"success": True, "products": [p.to_dict() for p in products]}


@app.get("/api/products/{product_id}")
async def get_product(product_id: str, store: Store = Depends(get_store)):
    product = await store.get_product_by_id(product_id)
    if product is None or product.status != PRODUCT_ACTIVE:
        raise HTTPException(404, detail="product not found")
    return {"success": True, "product": product.to_dict()}


@app.get("/api/categories")
async def list_categories(store: Store = Depends(get_store)):
    categories = {}
    for p in await store.get_products():
        if p.status != PRODUCT_ACTIVE or not p.category:
            continue
        c = categories.setdefault(p.category, {
            "name": p.category, "subcategories": [], "product_count": 0,
        })
        c["product_count"] += 1
        if p.subcategory and p.subcategory not in c["subcategories"]:
            c["subcategories"].append(p.subcategory)
    return {
        "success": True,
        "categories": sorted(categories.values(), key=lambda c: c["name"]),
    }


# ----------------------------
# Storefront: orders (force 1 unit, require contact)
# ----------------------------
@app.post("/api/orders")
async def create_order(
    payload: CreateOrderRequest,
    store: Store = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    contact_info = payload.contactInfo.strip()
    if not is_valid_contact(contact_info):
        raise HTTPException(
            400,
            detail="contactInfo must be a valid email address or mobile "
                   "number",
        )
    if payload.paymentType not in PAYMENT_TYPES:
        raise HTTPException(400, detail="invalid payment type")

    product = await store.get_product_by_id(payload.productId)
    if product is None or product.status != PRODUCT_ACTIVE:
        raise HTTPException(404, detail="product not found")
    if product.stock <= 0:
        raise HTTPException(409, detail="Sold out")

    order = await store.add_order({
        "order_number": new_order_number(),
        "product_id": product.id,
        "product_title": product.title,
        "quantity": 1,
        "unit_price": product.price,
        "currency": product.currency,
        "contact_info": contact_info,
        "payment_method": payload.paymentType,
        "payment_status": PAY_PENDING,
        "expires_at": to_iso(now_ts() + settings.order_ttl_seconds),
    })

    result = await gateway.create_order(
        order.id, product.id, payload.paymentType, order.total_amount,
        contact_info,
    )
    if not result["success"]:
        await store.transition_order(order.id, (PAY_PENDING,), PAY_FAILED)
        return ORJSONResponse(status_code=502, content={
            "success": False,
            "orderId": order.id,
            "error": result["error"],
            "errorKind": result["error_kind"],
        })

    if result.get("cloud_order_id"):
        await store.transition_order(
            order.id, (PAY_PENDING,), PAY_PENDING,
            payment_transaction_id=result["cloud_order_id"],
        )
    return {
        "success": True,
        "orderId": order.id,
        "orderNumber": order.order_number,
        "payUrl": result["pay_url"],
    }


# polled by the success page
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, store: Store = Depends(get_store)):
    order = await store.get_order(order_id)
    if order is None:
        raise HTTPException(404, detail="order not found")
    return {"success": True, "order": order.public_dict()}


@app.post("/api/orders/query")
async def query_orders(
    payload: OrderQueryRequest, store: Store = Depends(get_store)
):
    contact_info = payload.contactInfo.strip()
    if not contact_info:
        raise HTTPException(400, detail="contactInfo is required")
    orders = await store.orders_by_contact_info(contact_info)
    return {"success": True, "orders": [o.public_dict() for o in orders]}


@app.get("/api/orders/{order_id}/card-secret")
async def get_card_secret(
    order_id: str, email: str, store: Store = Depends(get_store)
):
    order = await store.get_order(order_id)
    if order is None:
        raise HTTPException(404, detail="order not found")
    if not ct_equal(order.contact_info, email.strip()):
        raise HTTPException(403, detail="contact info does not match")
    if order.payment_status != PAY_PAID or order.card_secret is None:
        raise HTTPException(404, detail="card secret not available yet")
    return {"success": True, "cardSecret": order.card_secret.to_dict()}


# ----------------------------
# Payment callbacks
# ----------------------------
def _amount_matches(price: str, total_amount: int) -> bool:
    try:
        return Decimal(price) * 100 == Decimal(int(total_amount))
    except (InvalidOperation, ValueError):
        return False


async def process_notify(
    form: Mapping[str, str], store: Store, verifier: CallbackVerifier
) -> bool:
    result = verifier.verify(
        form.get("payId", ""),
        form.get("param", ""),
        form.get("type", ""),
        form.get("price", ""),
        form.get("reallyPrice", ""),
        form.get("sign", ""),
    )
    if not result["success"]:
        return False

    order = await store.get_order(result["order_id"])
    if order is None:
        logger.warning("callback for unknown order %s", result["order_id"])
        return False
    if not _amount_matches(form.get("price", ""), order.total_amount):
        logger.warning(
            "callback price %r does not match order %s total %s",
            form.get("price"), order.id, order.total_amount,
        )
        return False

    async with timeit("payment.notify"):
        outcome = await apply_payment(store, order.id)
    return outcome.ok


# gateway -> us, server to server
@app.post("/api/payment/notify")
async def payment_notify(
    request: Request,
    store: Store = Depends(get_store),
    verifier: CallbackVerifier = Depends(get_verifier),
):
    form = await request.form()
    ok = await process_notify(
        {k: str(v) for k, v in form.items()}, store, verifier
    )
    if ok:
        return PlainTextResponse("success")
    return PlainTextResponse("fail", status_code=400)


# customer's browser coming back from the cashier
@app.get("/api/payment/return")
async def payment_return(
    request: Request,
    verifier: CallbackVerifier = Depends(get_verifier),
    settings: Settings = Depends(get_settings),
):
    q = request.query_params
    result = verifier.verify(
        q.get("payId", ""), q.get("param", ""), q.get("type", ""),
        q.get("price", ""), q.get("reallyPrice", ""), q.get("sign", ""),
    )
    if result["success"]:
        url = f"{settings.frontend_url}/success?" + urlencode(
            {"orderId": result["order_id"]}
        )
    else:
        url = f"{settings.frontend_url}/payment/error?" + urlencode(
            {"message": result["error"]}
        )
    return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Mock cashier (development only)
# ----------------------------
@app.get(MOCK_CASHIER_PATH, response_class=HTMLResponse,
         dependencies=[Depends(require_mock)])
async def mockpay_screen(
    request: Request, payId: str, pay_type: str = Query("2", alias="type"),
    store: Store = Depends(get_store),
):
    order = await store.get_order(payId)
    if order is None:
        raise HTTPException(404, "order not found")
    return templates.TemplateResponse(request, "mockpay.html", {
        "order": order,
        "pay_type": pay_type,
        "price": minor_to_major(order.total_amount),
    })


@app.post(MOCK_CASHIER_PATH + "/emit", dependencies=[Depends(require_mock)])
async def mockpay_emit(
    payId: str = Form(...),
    pay_type: str = Form("2", alias="type"),
    t: str = Form(...),
    store: Store = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
    verifier: CallbackVerifier = Depends(get_verifier),
    settings: Settings = Depends(get_settings),
):
    if t not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")
    order = await store.get_order(payId)
    if order is None:
        raise HTTPException(404, "order not found")

    if t == "succeeded":
        form = callback_form(
            order.id,
            order_param(order.id, order.product_id, order.contact_info),
            pay_type,
            minor_to_major(order.total_amount),
        )
        if not await process_notify(form, store, verifier):
            logger.warning("mock callback for %s was not accepted", order.id)
        return RedirectResponse(
            url="/api/payment/return?" + urlencode(form),
            status_code=HTTP_303_SEE_OTHER,
        )

    if t == "failed":
        await store.transition_order(order.id, (PAY_PENDING,), PAY_FAILED)
        message = "Payment failed"
    else:
        await cancel_order(store, gateway, order.id)
        message = "Payment cancelled"
    return RedirectResponse(
        url=f"{settings.frontend_url}/payment/error?"
            + urlencode({"message": message}),
        status_code=HTTP_303_SEE_OTHER,
    )


# ----------------------------
# Admin: session
# ----------------------------
@app.post("/api/admin/login")
async def admin_login(
    payload: LoginRequest, request: Request,
    settings: Settings = Depends(get_settings),
):
    if not ct_equal(payload.password, settings.admin_password):
        raise HTTPException(401, detail="Invalid credentials.")
    request.session["admin"] = True
    return {"success": True}


@app.post("/api/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}


admin = [Depends(require_admin)]


@app.get("/api/admin/stats", dependencies=admin)
async def admin_stats(
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    stats = await store.sales_stats(tz=settings.stats_tz)
    products = await store.get_products()
    stats["total_products"] = len(products)
    stats["active_products"] = sum(
        1 for p in products if p.status == PRODUCT_ACTIVE
    )
    return {"success": True, "stats": stats}


@app.get("/api/admin/email-stats", dependencies=admin)
async def admin_email_stats(store: Store = Depends(get_store)):
    return {"success": True, **(await store.email_stats())}


@app.get("/api/admin/timings", dependencies=admin)
async def admin_timings():
    return {"success": True, "timings": timings.summary()}


# ----------------------------
# Admin: products
# ----------------------------
@app.get("/api/admin/products", dependencies=admin)
async def admin_list_products(store: Store = Depends(get_store)):
    return {
        "success": True,
        "products": [p.to_dict() for p in await store.get_products()],
    }


@app.post("/api/admin/products", status_code=201, dependencies=admin)
async def admin_create_product(
    payload: ProductIn, store: Store = Depends(get_store)
):
    try:
        product = await store.add_product(payload.model_dump())
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    return {"success": True, "product": product.to_dict()}


@app.get("/api/admin/products/{product_id}", dependencies=admin)
async def admin_get_product(product_id: str, store: Store = Depends(get_store)):
    product = await store.get_product_by_id(product_id)
    if product is None:
        raise HTTPException(404, detail="product not found")
    return {"success": True, "product": product.to_dict()}


@app.put("/api/admin/products/{product_id}", dependencies=admin)
async def admin_update_product(
    product_id: str, payload: ProductPatch, store: Store = Depends(get_store)
):
    existing = await store.get_product_by_id(product_id)
    if existing is None:
        raise HTTPException(404, detail="product not found")
    data = existing.to_dict()
    data.update(payload.model_dump(exclude_unset=True, exclude_none=True))
    # sold_count only ever grows through sales
    data["sold_count"] = existing.sold_count
    try:
        product = await store.save_product(Product.from_dict(data))
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    return {"success": True, "product": product.to_dict()}


@app.delete("/api/admin/products/{product_id}", dependencies=admin)
async def admin_delete_product(
    product_id: str, store: Store = Depends(get_store)
):
    if not await store.delete_product(product_id):
        raise HTTPException(404, detail="product not found")
    product = await store.get_product_by_id(product_id)
    return {
        "success": True,
        # kept (inactive) when orders still point at it
        "soft_deleted": product is not None,
    }


# ----------------------------
# Admin: card secrets
# ----------------------------
@app.get("/api/admin/products/{product_id}/card-secrets", dependencies=admin)
async def admin_list_card_secrets(
    product_id: str, status: Optional[str] = None,
    store: Store = Depends(get_store),
):
    if await store.get_product_by_id(product_id) is None:
        raise HTTPException(404, detail="product not found")
    secrets = await store.get_card_secrets(product_id, status=status or None)
    return {
        "success": True,
        "card_secrets": [cs.to_dict() for cs in secrets],
        "count": len(secrets),
    }


# the admin page says "used" for sold secrets
EXPORT_STATUSES = {
    "all": None, SECRET_AVAILABLE: SECRET_AVAILABLE, SECRET_SOLD: SECRET_SOLD,
    "used": SECRET_SOLD,
}
EXPORT_FIELDS = (
    "id", "account", "password", "additional_info", "quality_guarantee",
    "status", "created_at",
)


@app.get(
    "/api/admin/products/{product_id}/card-secrets/export",
    dependencies=admin,
)
async def admin_export_card_secrets(
    product_id: str,
    status: str = "all",
    include_used_info: bool = Query(False, alias="includeUsedInfo"),
    store: Store = Depends(get_store),
):
    if status not in EXPORT_STATUSES:
        raise HTTPException(400, detail="invalid status")
    if await store.get_product_by_id(product_id) is None:
        raise HTTPException(404, detail="product not found")

    fields = EXPORT_FIELDS
    if include_used_info:
        fields += ("order_id", "sold_at")
    secrets = await store.get_card_secrets(
        product_id, status=EXPORT_STATUSES[status]
    )
    data = [{f: getattr(cs, f) for f in fields} for cs in secrets]
    stamp = now_iso()[:10].replace("-", "")
    return {
        "success": True,
        "filename": f"card_secrets_{product_id}_{status}_{stamp}.json",
        "count": len(data),
        "data": data,
    }


@app.post(
    "/api/admin/products/{product_id}/card-secrets/upload",
    status_code=201, dependencies=admin,
)
async def admin_upload_card_secrets(
    product_id: str, payload: CardSecretUpload,
    store: Store = Depends(get_store),
):
    if not payload.card_secrets:
        raise HTTPException(400, detail="card_secrets must not be empty")
    try:
        added = await store.add_card_secrets(
            product_id, [cs.model_dump() for cs in payload.card_secrets]
        )
    except LookupError:
        raise HTTPException(404, detail="product not found")
    except ValueError as e:
        raise HTTPException(400, detail=str(e))
    return {"success": True, "count": len(added)}


@app.delete("/api/admin/card-secrets/{card_secret_id}", dependencies=admin)
async def admin_delete_card_secret(
    card_secret_id: str, store: Store = Depends(get_store)
):
    cs = await store.get_card_secret(card_secret_id)
    if cs is None:
        raise HTTPException(404, detail="card secret not found")
    if cs.status != SECRET_AVAILABLE or not await store.delete_card_secret(
        card_secret_id
    ):
        raise HTTPException(409, detail="sold card secrets cannot be deleted")
    return {"success": True}


# ----------------------------
# Admin: orders
# ----------------------------
@app.get("/api/admin/orders", dependencies=admin)
async def admin_orders(
    limit: int = 200, status: Optional[str] = None,
    store: Store = Depends(get_store),
):
    if status is not None and status not in PAYMENT_STATUSES:
        raise HTTPException(400, detail="invalid status")
    orders = await store.get_orders()
    if status is not None:
        orders = [o for o in orders if o.payment_status == status]
    limit = max(1, min(limit, 500))
    return {
        "success": True,
        "items": [o.public_dict() for o in orders[:limit]],
        "total": len(orders),
        "limit": limit,
    }


@app.post("/api/admin/orders/{order_id}/cancel", dependencies=admin)
async def admin_cancel_order(
    order_id: str,
    store: Store = Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
):
    order = await cancel_order(store, gateway, order_id)
    if order is None:
        if await store.get_order(order_id) is None:
            raise HTTPException(404, detail="order not found")
        raise HTTPException(409, detail="only pending orders can be cancelled")
    return {"success": True, "order": order.public_dict()}
