from .callback import CallbackVerifier, CallbackResult, MOCK_SIGNATURE
from .gateway import (
    PaymentGateway, GatewayClient, CreateOrderResult, CloseOrderResult,
    PAYMENT_TYPES, minor_to_major, order_param,
)

__all__ = [
    "CallbackVerifier", "CallbackResult", "MOCK_SIGNATURE",
    "PaymentGateway", "GatewayClient", "CreateOrderResult",
    "CloseOrderResult", "PAYMENT_TYPES", "minor_to_major", "order_param",
]
