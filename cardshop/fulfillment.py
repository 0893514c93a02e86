"""
Turning a verified payment into a delivered card secret.

At-most-once delivery rests on guarded store operations: ``transition_order``
moves an order to ``paid`` once, ``claim_card_secret`` hands an order the
secret it already holds (or a fresh one nobody else holds), and
``attach_card_secret`` writes the snapshot only while none is delivered. Only
the caller that attaches records the sale. A paid order left without a
snapshot, by a failed write or by an empty shelf, is picked up again by the
next callback for it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from .infra.timings import timeit
from .model.records import (
    PAY_CANCELLED, PAY_FAILED, PAY_PAID, PAY_PENDING, CardSecret, Order,
)
from .payment import PaymentGateway
from .store import Store

logger = logging.getLogger(__name__)

# a late success callback still wins over an earlier failure or cancel
PAYABLE_STATUSES = (PAY_PENDING, PAY_FAILED, PAY_CANCELLED)

Outcome = Literal["fulfilled", "paid_unfulfilled", "already_paid", "not_found"]


@dataclass
class FulfillmentResult:
    outcome: Outcome
    order: Optional[Order] = None
    card_secret: Optional[CardSecret] = None

    @property
    def ok(self) -> bool:
        return self.outcome != "not_found"


async def apply_payment(
    store: Store, order_id: str, transaction_id: Optional[str] = None
) -> FulfillmentResult:
    changes = {}
    if transaction_id:
        changes["payment_transaction_id"] = transaction_id

    async with timeit("fulfillment.mark_paid"):
        order = await store.transition_order(
            order_id, PAYABLE_STATUSES, PAY_PAID, **changes
        )
    if order is None:
        existing = await store.get_order(order_id)
        if existing is None:
            logger.warning("payment for unknown order %s", order_id)
            return FulfillmentResult("not_found")
        if (
            existing.payment_status != PAY_PAID
            or existing.card_secret is not None
            or existing.card_secret_delivered_at is not None
        ):
            logger.info("order %s already %s, ignoring callback", order_id,
                        existing.payment_status)
            return FulfillmentResult("already_paid", order=existing)
        logger.info("order %s paid but not delivered, resuming", order_id)
        order = existing

    return await deliver(store, order)


async def deliver(store: Store, order: Order) -> FulfillmentResult:
    async with timeit("fulfillment.claim"):
        card_secret = await store.claim_card_secret(order.product_id, order.id)
    if card_secret is None:
        logger.error(
            "order %s paid but product %s has no card secrets left",
            order.id, order.product_id,
        )
        return FulfillmentResult("paid_unfulfilled", order=order)

    delivered = await store.attach_card_secret(
        order.id, card_secret.snapshot()
    )
    if delivered is None:
        # a concurrent callback for the same order attached first
        current = await store.get_order(order.id)
        return FulfillmentResult("already_paid", order=current or order)

    await store.record_sale(order.product_id)
    logger.info(
        "order %s fulfilled with card secret %s", order.id, card_secret.id
    )
    return FulfillmentResult(
        "fulfilled", order=delivered, card_secret=card_secret
    )


async def cancel_order(
    store: Store, gateway: PaymentGateway, order_id: str
) -> Optional[Order]:
    """Close the gateway-side order, then cancel a still-pending order.

    Returns the cancelled order, or None when it was missing or no longer
    pending. A failed gateway close is logged; the local cancel still runs.
    """
    order = await store.get_order(order_id)
    if order is None or order.payment_status != PAY_PENDING:
        return None

    if order.payment_transaction_id:
        closed = await gateway.close_order(order.payment_transaction_id)
        if not closed["success"]:
            logger.warning(
                "closing gateway order %s failed (%s): %s",
                order.payment_transaction_id,
                closed.get("error_kind"), closed.get("error"),
            )

    return await store.transition_order(
        order_id, (PAY_PENDING,), PAY_CANCELLED
    )
