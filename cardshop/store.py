"""
Order store adapter.

``Store`` is the one persistence façade the rest of the app talks to. It
wraps exactly one ``StoreBackend`` picked at construction time and owns the
rules both backends share:

- ``add_*`` assigns ``id``, ``created_at`` and ``updated_at`` when absent;
  ``save_*`` is update-or-insert and always refreshes ``updated_at``.
- timestamps leave this layer as ISO-8601 UTC strings.
- "not found" is ``None`` (lookups) or ``False`` (deletes/updates); a failing
  backend raises ``StoreError`` instead of leaking driver exceptions.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from .errors import StoreError
from .helpers import now_iso, to_iso
from .infra.timings import timeit
from .model.records import (
    PRODUCT_INACTIVE, PRODUCT_STATUSES, SECRET_AVAILABLE,
    SECRET_SOLD, TIMESTAMP_FIELDS, CardSecret, CardSecretSnapshot, Order,
    Product,
)
from .model.store import StoreBackend
from . import stats

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


def _normalize_timestamps(record):
    changes = {}
    for name in TIMESTAMP_FIELDS:
        if hasattr(record, name):
            value = getattr(record, name)
            if value is not None:
                changes[name] = to_iso(value)
    return replace(record, **changes) if changes else record


class Store:

    def __init__(self, backend: StoreBackend) -> None:
        self.backend = backend

    @asynccontextmanager
    async def _call(self, operation: str):
        try:
            async with timeit(f"store.{operation}"):
                yield
        except StoreError:
            raise
        except (ValueError, LookupError):
            # caller mistakes, not backend failures
            raise
        except Exception as e:
            logger.exception("store operation %s failed", operation)
            raise StoreError(operation, e) from e

    @property
    def database_type(self) -> str:
        return self.backend.name

    async def open(self) -> None:
        async with self._call("open"):
            await self.backend.open()

    async def close(self) -> None:
        await self.backend.close()

    async def health_check(self) -> bool:
        try:
            return await self.backend.health_check()
        except Exception:
            logger.exception("database health check failed")
            return False

    # ------------------------------------------------------------------
    # products
    # ------------------------------------------------------------------
    async def get_products(self) -> List[Product]:
        async with self._call("get_products"):
            return await self.backend.list_products()

    async def get_product_by_id(self, product_id: str) -> Optional[Product]:
        async with self._call("get_product_by_id"):
            return await self.backend.get_product(product_id)

    async def add_product(self, data: Dict[str, Any] | Product) -> Product:
        product = data if isinstance(data, Product) else Product.from_dict(
            {"id": "", **data}
        )
        now = now_iso()
        product = replace(
            product,
            id=product.id or new_id(),
            created_at=product.created_at or now,
            updated_at=product.updated_at or now,
        )
        _check_product(product)
        async with self._call("add_product"):
            return await self.backend.put_product(
                _normalize_timestamps(product)
            )

    async def save_product(self, product: Product) -> Product:
        now = now_iso()
        product = replace(
            product, created_at=product.created_at or now, updated_at=now
        )
        _check_product(product)
        async with self._call("save_product"):
            return await self.backend.put_product(
                _normalize_timestamps(product)
            )

    async def delete_product(self, product_id: str) -> bool:
        """Hard delete, or mark inactive when any order references it."""
        async with self._call("delete_product"):
            product = await self.backend.get_product(product_id)
            if product is None:
                return False
            if await self.backend.count_orders_for_product(product_id) > 0:
                await self.backend.put_product(replace(
                    product, status=PRODUCT_INACTIVE, updated_at=now_iso()
                ))
                logger.info(
                    "product %s has orders, marked inactive instead of "
                    "deleting", product_id,
                )
                return True
            return await self.backend.delete_product(product_id)

    async def update_product_stock(self, product_id: str, stock: int) -> bool:
        if stock < 0:
            raise ValueError("stock must be >= 0")
        async with self._call("update_product_stock"):
            return await self.backend.set_product_stock(
                product_id, stock, now_iso()
            )

    async def increment_product_sold_count(self, product_id: str) -> bool:
        async with self._call("increment_product_sold_count"):
            return await self.backend.adjust_product(
                product_id, 0, 1, now_iso()
            )

    async def record_sale(self, product_id: str) -> bool:
        """One unit left the shelf: stock - 1 (floored at 0), sold + 1."""
        async with self._call("record_sale"):
            return await self.backend.adjust_product(
                product_id, -1, 1, now_iso()
            )

    # ------------------------------------------------------------------
    # card secrets
    # ------------------------------------------------------------------
    async def get_card_secrets(
        self, product_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[CardSecret]:
        async with self._call("get_card_secrets"):
            return await self.backend.list_card_secrets(product_id, status)

    async def get_card_secret(
        self, card_secret_id: str
    ) -> Optional[CardSecret]:
        async with self._call("get_card_secret"):
            return await self.backend.get_card_secret(card_secret_id)

    def _new_card_secret(
        self, data: Dict[str, Any], now: str, product_id: Optional[str] = None
    ) -> CardSecret:
        d = dict(data)
        if product_id is not None:
            d["product_id"] = product_id
        d.setdefault("id", new_id())
        d.setdefault("status", SECRET_AVAILABLE)
        d.setdefault("created_at", now)
        d.setdefault("updated_at", now)
        cs = CardSecret.from_dict(d)
        if not cs.account or not cs.password:
            raise ValueError("card secret needs account and password")
        return _normalize_timestamps(cs)

    async def add_card_secret(self, data: Dict[str, Any]) -> CardSecret:
        cs = self._new_card_secret(data, now_iso())
        async with self._call("add_card_secret"):
            return await self.backend.put_card_secret(cs)

    async def add_card_secrets(
        self, product_id: str, items: Iterable[Dict[str, Any]]
    ) -> List[CardSecret]:
        """Bulk upload of available secrets; product stock grows to match."""
        now = now_iso()
        secrets = [
            self._new_card_secret(
                {**item, "status": SECRET_AVAILABLE}, now, product_id
            )
            for item in items
        ]
        if not secrets:
            return []
        async with self._call("add_card_secrets"):
            if await self.backend.get_product(product_id) is None:
                raise LookupError(f"product {product_id} not found")
            saved = await self.backend.put_card_secrets(secrets)
            await self.backend.adjust_product(
                product_id, len(saved), 0, now_iso()
            )
        return saved

    async def save_card_secret(self, card_secret: CardSecret) -> CardSecret:
        now = now_iso()
        card_secret = replace(
            card_secret,
            created_at=card_secret.created_at or now,
            updated_at=now,
        )
        async with self._call("save_card_secret"):
            existing = await self.backend.get_card_secret(card_secret.id)
            if (
                existing is not None
                and existing.status == SECRET_SOLD
                and existing.order_id != card_secret.order_id
            ):
                raise ValueError(
                    f"card secret {card_secret.id} already belongs to "
                    f"order {existing.order_id}"
                )
            return await self.backend.put_card_secret(
                _normalize_timestamps(card_secret)
            )

    async def delete_card_secret(self, card_secret_id: str) -> bool:
        """Only available secrets can be deleted."""
        async with self._call("delete_card_secret"):
            deleted = await self.backend.delete_card_secret(card_secret_id)
            if deleted is None:
                return False
            await self.backend.adjust_product(
                deleted.product_id, -1, 0, now_iso()
            )
        return True

    async def claim_card_secret(
        self, product_id: str, order_id: str
    ) -> Optional[CardSecret]:
        async with self._call("claim_card_secret"):
            return await self.backend.claim_card_secret(
                product_id, order_id, now_iso()
            )

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    async def get_orders(self) -> List[Order]:
        async with self._call("get_orders"):
            return await self.backend.list_orders()

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._call("get_order"):
            return await self.backend.get_order(order_id)

    async def orders_by_contact_info(self, contact_info: str) -> List[Order]:
        async with self._call("orders_by_contact_info"):
            return await self.backend.list_orders(contact_info=contact_info)

    async def add_order(self, data: Dict[str, Any]) -> Order:
        now = now_iso()
        d = dict(data)
        d.setdefault("id", new_id())
        d.setdefault("quantity", 1)
        d.setdefault("total_amount", int(d["unit_price"]) * int(d["quantity"]))
        d.setdefault("created_at", now)
        d.setdefault("updated_at", now)
        order = _normalize_timestamps(Order.from_dict(d))
        async with self._call("add_order"):
            return await self.backend.put_order(order)

    async def save_order(self, order: Order) -> Order:
        now = now_iso()
        order = replace(
            order, created_at=order.created_at or now, updated_at=now
        )
        async with self._call("save_order"):
            existing = await self.backend.get_order(order.id)
            if (
                existing is not None
                and existing.total_amount != order.total_amount
            ):
                raise ValueError(
                    f"order {order.id}: total_amount cannot change"
                )
            return await self.backend.put_order(_normalize_timestamps(order))

    async def transition_order(
        self, order_id: str, from_statuses: Iterable[str], to_status: str,
        **changes: Any,
    ) -> Optional[Order]:
        """Atomically move an order to ``to_status``.

        Applies only when the current status is one of ``from_statuses``;
        returns the updated order, or None when the guard did not hold.
        """
        for name in TIMESTAMP_FIELDS & changes.keys():
            changes[name] = to_iso(changes[name])
        async with self._call("transition_order"):
            return await self.backend.transition_order(
                order_id, tuple(from_statuses), to_status, changes, now_iso()
            )

    async def attach_card_secret(
        self, order_id: str, snapshot: CardSecretSnapshot
    ) -> Optional[Order]:
        """Deliver ``snapshot`` to a paid order.

        Only the first call for an order writes; later calls (and calls for
        unpaid orders) return None.
        """
        async with self._call("attach_card_secret"):
            return await self.backend.attach_card_secret(
                order_id, snapshot, now_iso()
            )

    # ------------------------------------------------------------------
    # derived
    # ------------------------------------------------------------------
    async def email_stats(self) -> Dict[str, Any]:
        return stats.email_stats(await self.get_orders())

    async def sales_stats(self, tz: str = "Asia/Shanghai") -> Dict[str, int]:
        return stats.sales_stats(await self.get_orders(), tz=tz)


def _check_product(product: Product) -> None:
    if not product.title:
        raise ValueError("product title is required")
    if product.status not in PRODUCT_STATUSES:
        raise ValueError(f"invalid product status: {product.status}")
    if int(product.price) < 0:
        raise ValueError("price must be >= 0")
    if int(product.stock) < 0:
        raise ValueError("stock must be >= 0")
