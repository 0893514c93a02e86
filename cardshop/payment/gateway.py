from __future__ import annotations
import json
import logging
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Literal, Optional, TypedDict
from urllib.parse import parse_qs, urlsplit

import httpx

from ..config import GatewayConfig
from ..infra.timings import timeit
from .signature import close_order_sign, create_order_sign

logger = logging.getLogger(__name__)

PAYMENT_TYPES = {"wechat": 1, "alipay": 2}

NETWORK_ERROR = "Network error, please retry"
UNPARSEABLE_ERROR = "Failed to create payment order (unparseable response)"

ErrorKind = Literal["network", "rejected", "unparseable"]


# ----------------------------
# Results
# ----------------------------
class CreateOrderResult(TypedDict, total=False):
    success: bool
    pay_url: str
    cloud_order_id: str
    error: str
    error_kind: ErrorKind


class CloseOrderResult(TypedDict, total=False):
    success: bool
    error: str
    error_kind: ErrorKind


def _failure(kind: ErrorKind, error: str) -> dict:
    return {"success": False, "error": error, "error_kind": kind}


def minor_to_major(amount_minor: int) -> str:
    """1500 -> "15", 1550 -> "15.5", 1505 -> "15.05"."""
    return str(Decimal(int(amount_minor)) / Decimal(100))


def order_param(order_id: str, product_id: str, contact_info: str) -> str:
    """The opaque `param` the gateway echoes back in its callback."""
    return json.dumps({
        "productId": product_id,
        "contactInfo": contact_info,
        "orderId": order_id,
    }, ensure_ascii=False, separators=(",", ":"))


# ----------------------------
# Response parsing pipeline
# ----------------------------
_CHARSET_RE = re.compile(rb"charset\s*=\s*[\"']?\s*(gbk|gb2312|gb18030)", re.I)
_REDIRECT_RE = re.compile(
    r"window\.location\.href\s*=\s*['\"]([^'\"]+)['\"]", re.I
)


def parse_json_response(body: bytes) -> Optional[CreateOrderResult]:
    """First parse attempt. None means "not JSON, try the next parser"."""
    try:
        doc = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(doc, dict):
        return None

    data = doc.get("data")
    if str(doc.get("code")) == "1":
        if isinstance(data, dict) and data.get("payUrl"):
            return {
                "success": True,
                "pay_url": str(data["payUrl"]),
                "cloud_order_id": str(data.get("orderId") or ""),
            }
        return _failure("unparseable", UNPARSEABLE_ERROR)
    msg = doc.get("msg") or "Payment gateway rejected the order"
    return _failure("rejected", str(msg))


def decode_html(body: bytes) -> str:
    # legacy cashier pages announce GBK in a meta tag
    if _CHARSET_RE.search(body):
        return body.decode("gbk", errors="replace")
    return body.decode("utf-8", errors="replace")


def parse_html_redirect(
    html: str, base_url: str
) -> Optional[CreateOrderResult]:
    m = _REDIRECT_RE.search(html)
    if not m:
        return None
    target = m.group(1).strip()
    if target.startswith(("http://", "https://")):
        pay_url = target
    else:
        pay_url = f"{base_url.rstrip('/')}{target}"
    query = parse_qs(urlsplit(target).query)
    return {
        "success": True,
        "pay_url": pay_url,
        "cloud_order_id": query.get("orderId", [""])[0],
    }


def parse_create_order_response(
    body: bytes, base_url: str
) -> CreateOrderResult:
    parsed = parse_json_response(body)
    if parsed is not None:
        return parsed
    parsed = parse_html_redirect(decode_html(body), base_url)
    if parsed is not None:
        return parsed
    return _failure("unparseable", UNPARSEABLE_ERROR)


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    @abstractmethod
    async def create_order(
        self, order_id: str, product_id: str, payment_type: str,
        amount: int, contact_info: str
    ) -> CreateOrderResult: ...

    @abstractmethod
    async def close_order(self, cloud_order_id: str) -> CloseOrderResult: ...


# ----------------------------
# Aggregator implementation
# ----------------------------
class GatewayClient(PaymentGateway):

    def __init__(self, config: GatewayConfig, http: httpx.AsyncClient):
        self.config = config
        self.http = http

    async def _post(self, path: str, form: dict) -> httpx.Response:
        return await self.http.post(
            f"{self.config.base_url}{path}",
            data=form,
            timeout=self.config.timeout,
        )

    async def create_order(
        self, order_id: str, product_id: str, payment_type: str,
        amount: int, contact_info: str
    ) -> CreateOrderResult:
        pay_type = PAYMENT_TYPES.get(payment_type)
        if pay_type is None:
            return _failure(
                "rejected", f"unsupported payment type: {payment_type}"
            )

        price = minor_to_major(amount)
        param = order_param(order_id, product_id, contact_info)
        sign = create_order_sign(
            order_id, param, pay_type, price, self.config.secret_key
        )
        form = {
            "payId": order_id,
            "type": str(pay_type),
            "price": price,
            "sign": sign,
            "param": param,
            # ask for the hosted H5 cashier page
            "isHtml": "1",
            "returnUrl": self.config.return_url,
            "notifyUrl": self.config.notify_url,
        }

        try:
            async with timeit("gateway.create_order"):
                resp = await self._post("/createOrder", form)
        except httpx.HTTPError as e:
            logger.warning("createOrder for %s failed: %r", order_id, e)
            return _failure("network", NETWORK_ERROR)

        if resp.is_error:
            logger.warning(
                "createOrder for %s returned HTTP %s",
                order_id, resp.status_code,
            )
            return _failure(
                "rejected", f"Payment gateway returned HTTP {resp.status_code}"
            )

        result = parse_create_order_response(
            resp.content, self.config.base_url
        )
        if not result["success"]:
            logger.warning(
                "createOrder for %s not accepted (%s): %s",
                order_id, result["error_kind"], result["error"],
            )
        return result

    async def close_order(self, cloud_order_id: str) -> CloseOrderResult:
        sign = close_order_sign(cloud_order_id, self.config.secret_key)
        try:
            async with timeit("gateway.close_order"):
                resp = await self._post(
                    "/closeOrder", {"orderId": cloud_order_id, "sign": sign}
                )
        except httpx.HTTPError as e:
            logger.warning("closeOrder for %s failed: %r", cloud_order_id, e)
            return _failure("network", NETWORK_ERROR)

        try:
            doc = resp.json()
        except ValueError:
            return _failure("unparseable", "Unparseable closeOrder response")
        if not isinstance(doc, dict):
            return _failure("unparseable", "Unparseable closeOrder response")
        if str(doc.get("code")) == "1":
            return {"success": True}
        return _failure(
            "rejected", str(doc.get("msg") or "Failed to close order")
        )
