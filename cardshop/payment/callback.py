import json
import logging
from typing import Optional, TypedDict

from .signature import verify_callback_sign

logger = logging.getLogger(__name__)

MOCK_SIGNATURE = "mock_signature"

INVALID_SIGNATURE = "Invalid signature"
INVALID_PARAM = "Invalid param format"


class CallbackResult(TypedDict, total=False):
    success: bool
    order_id: str
    product_id: Optional[str]
    contact_info: Optional[str]
    error: str


class CallbackVerifier:
    """Authenticates gateway notifications and recovers the order payload.

    Stateless: verifying the same callback twice gives the same answer and
    touches nothing. Applying the result idempotently is the caller's job.
    """

    def __init__(self, secret: str, allow_mock_signature: bool = False):
        self.secret = secret
        self.allow_mock_signature = allow_mock_signature

    def verify(
        self, pay_id: str, param: str, pay_type: str, price: str,
        really_price: str, sign: str
    ) -> CallbackResult:
        if self.allow_mock_signature and sign == MOCK_SIGNATURE:
            logger.info("accepting mock signature for %s", pay_id)
        elif not verify_callback_sign(
            pay_id, param, pay_type, price, really_price, self.secret, sign
        ):
            logger.warning("rejected callback for %s: bad signature", pay_id)
            return {"success": False, "error": INVALID_SIGNATURE}

        try:
            payload = json.loads(param)
        except (TypeError, ValueError):
            payload = None
        if not isinstance(payload, dict):
            logger.warning("rejected callback for %s: bad param", pay_id)
            return {"success": False, "error": INVALID_PARAM}

        return {
            "success": True,
            "order_id": pay_id,
            "product_id": payload.get("productId"),
            "contact_info": payload.get("contactInfo"),
        }
