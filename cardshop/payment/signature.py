"""Request signing for the payment aggregator.

The gateway signs by concatenating a fixed, ordered set of fields followed by
the shared secret (no separators) and taking the lowercase hex MD5 digest.
Each call site has its own field order; the orders are part of the gateway
contract and must not drift independently.
"""
import hashlib
from typing import Any, Sequence

from ..helpers import ct_equal


def sign(fields: Sequence[Any], secret: str) -> str:
    payload = "".join(str(f) for f in fields) + secret
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def verify(fields: Sequence[Any], secret: str, candidate: str) -> bool:
    # exact, case-sensitive match
    if not isinstance(candidate, str):
        return False
    return ct_equal(sign(fields, secret), candidate)


# ----------------------------
# Field orderings
# ----------------------------
def create_order_sign(
    pay_id: str, param: str, pay_type: int | str, price: str, secret: str
) -> str:
    return sign((pay_id, param, pay_type, price), secret)


def callback_sign(
    pay_id: str, param: str, pay_type: int | str, price: str,
    really_price: str, secret: str
) -> str:
    return sign((pay_id, param, pay_type, price, really_price), secret)


def verify_callback_sign(
    pay_id: str, param: str, pay_type: int | str, price: str,
    really_price: str, secret: str, candidate: str
) -> bool:
    return verify(
        (pay_id, param, pay_type, price, really_price), secret, candidate
    )


def close_order_sign(order_id: str, secret: str) -> str:
    return sign((order_id,), secret)
