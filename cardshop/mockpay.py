from __future__ import annotations

import logging
import uuid
from typing import Dict, Literal
from urllib.parse import urlencode

from .payment.callback import MOCK_SIGNATURE
from .payment.gateway import (
    PAYMENT_TYPES, CloseOrderResult, CreateOrderResult, PaymentGateway,
    _failure,
)
from .payment.signature import callback_sign

logger = logging.getLogger(__name__)

MOCK_CASHIER_PATH = "/payment/mock"

EmitKind = Literal["succeeded", "failed", "canceled"]


# ----------------------------
# MockPay implementation
# ----------------------------
class MockGateway(PaymentGateway):
    """Stands in for the aggregator during local development.

    Instead of a hosted cashier, customers land on our own mock page, which
    posts a callback signed with the mock sentinel back to the notify URL.
    """

    async def create_order(
        self, order_id: str, product_id: str, payment_type: str,
        amount: int, contact_info: str
    ) -> CreateOrderResult:
        pay_type = PAYMENT_TYPES.get(payment_type)
        if pay_type is None:
            return _failure(
                "rejected", f"unsupported payment type: {payment_type}"
            )
        logger.info("mock cashier order %s (%s)", order_id, payment_type)
        query = urlencode({"payId": order_id, "type": pay_type})
        return {
            "success": True,
            "pay_url": f"{MOCK_CASHIER_PATH}?{query}",
            "cloud_order_id": f"mock_{uuid.uuid4().hex}",
        }

    async def close_order(self, cloud_order_id: str) -> CloseOrderResult:
        return {"success": True}


def callback_form(
    pay_id: str, param: str, pay_type: str, price: str,
    secret: str | None = None,
) -> Dict[str, str]:
    """Notify form as the aggregator would post it.

    Signed for real when ``secret`` is given, otherwise with the mock
    sentinel.
    """
    really_price = price
    if secret is None:
        sign = MOCK_SIGNATURE
    else:
        sign = callback_sign(
            pay_id, param, pay_type, price, really_price, secret
        )
    return {
        "payId": pay_id,
        "param": param,
        "type": str(pay_type),
        "price": price,
        "reallyPrice": really_price,
        "sign": sign,
    }

