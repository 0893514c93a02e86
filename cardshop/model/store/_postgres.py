"""
Hosted-database store backend (Postgres; sqlite works for local runs).

Timestamps are native ``TIMESTAMPTZ`` columns and are converted to and from
ISO strings at this boundary. The conditional operations
(``transition_order``, ``attach_card_secret``, ``claim_card_secret``,
``delete_card_secret``) are guarded UPDATE/DELETE statements, so two
concurrent callers can never both win.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import parse_iso, to_iso
from ...infra.sql import make_async_engine
from ..orm import Base, CardSecretRow, OrderRow, ProductRow
from ..records import (
    PAY_PAID, SECRET_AVAILABLE, SECRET_SOLD, TIMESTAMP_FIELDS, CardSecret,
    CardSecretSnapshot, Order, Product,
)
from .base import StoreBackend

logger = logging.getLogger(__name__)

# retries when a concurrent claimer takes the candidate first
CLAIM_ATTEMPTS = 5


# ------------------------------------------------------------------------------
# row <-> record
# ------------------------------------------------------------------------------
def _columns(row_cls) -> List[str]:
    return [c.name for c in row_cls.__table__.columns]


def _row_to_dict(row, row_cls) -> Dict[str, Any]:
    out = {}
    for name in _columns(row_cls):
        value = getattr(row, name)
        if name in TIMESTAMP_FIELDS:
            value = to_iso(value)
        out[name] = value
    return out


def _to_values(data: Dict[str, Any], row_cls) -> Dict[str, Any]:
    names = set(_columns(row_cls))
    out = {}
    for k, v in data.items():
        if k not in names:
            continue
        if k in TIMESTAMP_FIELDS:
            v = parse_iso(v)
        elif isinstance(v, CardSecretSnapshot):
            v = v.to_dict()
        out[k] = v
    return out


def product_from_row(row: ProductRow) -> Product:
    return Product.from_dict(_row_to_dict(row, ProductRow))


def card_secret_from_row(row: CardSecretRow) -> CardSecret:
    return CardSecret.from_dict(_row_to_dict(row, CardSecretRow))


def order_from_row(row: OrderRow) -> Order:
    return Order.from_dict(_row_to_dict(row, OrderRow))


class SqlStore(StoreBackend):
    name = "PostgreSQL"

    def __init__(
        self, database_url: str, *, pool_size: int = 5, max_overflow: int = 5,
        pool_timeout: int = 30,
    ) -> None:
        self.engine, self.sessions = make_async_engine(
            database_url, pool_size=pool_size, max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def open(self) -> None:
        await self.create_schema()
        logger.info("sql store at %s", self.engine.url.render_as_string(
            hide_password=True
        ))

    async def close(self) -> None:
        await self.engine.dispose()

    async def _merge(self, row_cls, data: Dict[str, Any]) -> None:
        db: AsyncSession
        async with self.sessions() as db:
            async with db.begin():
                await db.merge(row_cls(**_to_values(data, row_cls)))

    # ------------------------------------------------------------------
    # products
    # ------------------------------------------------------------------
    async def list_products(self) -> List[Product]:
        async with self.sessions() as db:
            rows = (await db.execute(
                select(ProductRow).order_by(ProductRow.created_at.desc())
            )).scalars().all()
        return [product_from_row(r) for r in rows]

    async def get_product(self, product_id: str) -> Optional[Product]:
        async with self.sessions() as db:
            row = await db.get(ProductRow, product_id)
            return product_from_row(row) if row else None

    async def put_product(self, product: Product) -> Product:
        await self._merge(ProductRow, product.to_dict())
        return product

    async def delete_product(self, product_id: str) -> bool:
        async with self.sessions() as db:
            async with db.begin():
                await db.execute(delete(CardSecretRow).where(
                    CardSecretRow.product_id == product_id
                ))
                res = await db.execute(
                    delete(ProductRow).where(ProductRow.id == product_id)
                )
        return res.rowcount > 0

    async def adjust_product(
        self, product_id: str, stock_delta: int, sold_delta: int, now: str
    ) -> bool:
        new_stock = ProductRow.stock + stock_delta
        async with self.sessions() as db:
            async with db.begin():
                res = await db.execute(
                    update(ProductRow)
                    .where(ProductRow.id == product_id)
                    .values(
                        stock=case((new_stock < 0, 0), else_=new_stock),
                        sold_count=ProductRow.sold_count + sold_delta,
                        updated_at=parse_iso(now),
                    )
                    .execution_options(synchronize_session=False)
                )
        return res.rowcount > 0

    async def set_product_stock(
        self, product_id: str, stock: int, now: str
    ) -> bool:
        async with self.sessions() as db:
            async with db.begin():
                res = await db.execute(
                    update(ProductRow)
                    .where(ProductRow.id == product_id)
                    .values(stock=max(0, int(stock)), updated_at=parse_iso(now))
                    .execution_options(synchronize_session=False)
                )
        return res.rowcount > 0

    # ------------------------------------------------------------------
    # card secrets
    # ------------------------------------------------------------------
    async def list_card_secrets(
        self, product_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[CardSecret]:
        stmt = select(CardSecretRow)
        if product_id is not None:
            stmt = stmt.where(CardSecretRow.product_id == product_id)
        if status is not None:
            stmt = stmt.where(CardSecretRow.status == status)
        stmt = stmt.order_by(CardSecretRow.created_at.desc())
        async with self.sessions() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [card_secret_from_row(r) for r in rows]

    async def get_card_secret(
        self, card_secret_id: str
    ) -> Optional[CardSecret]:
        async with self.sessions() as db:
            row = await db.get(CardSecretRow, card_secret_id)
            return card_secret_from_row(row) if row else None

    async def put_card_secret(self, card_secret: CardSecret) -> CardSecret:
        await self._merge(CardSecretRow, card_secret.to_dict())
        return card_secret

    async def put_card_secrets(
        self, card_secrets: Iterable[CardSecret]
    ) -> List[CardSecret]:
        items = list(card_secrets)
        async with self.sessions() as db:
            async with db.begin():
                db.add_all([
                    CardSecretRow(**_to_values(cs.to_dict(), CardSecretRow))
                    for cs in items
                ])
        return items

    async def delete_card_secret(
        self, card_secret_id: str
    ) -> Optional[CardSecret]:
        async with self.sessions() as db:
            async with db.begin():
                row = await db.get(CardSecretRow, card_secret_id)
                if row is None or row.status != SECRET_AVAILABLE:
                    return None
                found = card_secret_from_row(row)
                res = await db.execute(
                    delete(CardSecretRow)
                    .where(CardSecretRow.id == card_secret_id)
                    .where(CardSecretRow.status == SECRET_AVAILABLE)
                    .execution_options(synchronize_session=False)
                )
        return found if res.rowcount > 0 else None

    async def claim_card_secret(
        self, product_id: str, order_id: str, now: str
    ) -> Optional[CardSecret]:
        sold_at = parse_iso(now)
        for _ in range(CLAIM_ATTEMPTS):
            try:
                async with self.sessions() as db:
                    async with db.begin():
                        held = (await db.execute(
                            select(CardSecretRow)
                            .where(CardSecretRow.order_id == order_id)
                        )).scalar_one_or_none()
                        if held is not None:
                            return card_secret_from_row(held)
                        candidate = (await db.execute(
                            select(CardSecretRow.id)
                            .where(CardSecretRow.product_id == product_id)
                            .where(CardSecretRow.status == SECRET_AVAILABLE)
                            .order_by(
                                CardSecretRow.created_at.asc(),
                                CardSecretRow.id.asc(),
                            )
                            .limit(1)
                        )).scalar_one_or_none()
                        if candidate is None:
                            return None
                        res = await db.execute(
                            update(CardSecretRow)
                            .where(CardSecretRow.id == candidate)
                            .where(CardSecretRow.status == SECRET_AVAILABLE)
                            .values(
                                status=SECRET_SOLD,
                                order_id=order_id,
                                sold_at=sold_at,
                                updated_at=sold_at,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount == 0:
                            # lost the race for this one; try the next
                            continue
                        row = await db.get(
                            CardSecretRow, candidate, populate_existing=True
                        )
                        return card_secret_from_row(row)
            except IntegrityError:
                # another claim for the same order got there first; the next
                # attempt finds its secret
                continue
        logger.warning(
            "gave up claiming a card secret for product %s", product_id
        )
        return None

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    async def list_orders(
        self, contact_info: Optional[str] = None
    ) -> List[Order]:
        stmt = select(OrderRow)
        if contact_info is not None:
            stmt = stmt.where(OrderRow.contact_info == contact_info)
        stmt = stmt.order_by(OrderRow.created_at.desc())
        async with self.sessions() as db:
            rows = (await db.execute(stmt)).scalars().all()
        return [order_from_row(r) for r in rows]

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self.sessions() as db:
            row = await db.get(OrderRow, order_id)
            return order_from_row(row) if row else None

    async def put_order(self, order: Order) -> Order:
        await self._merge(OrderRow, order.to_dict())
        return order

    async def count_orders_for_product(self, product_id: str) -> int:
        async with self.sessions() as db:
            return int((await db.execute(
                select(func.count())
                .select_from(OrderRow)
                .where(OrderRow.product_id == product_id)
            )).scalar_one())

    async def transition_order(
        self, order_id: str, from_statuses: Iterable[str], to_status: str,
        changes: Dict[str, Any], now: str
    ) -> Optional[Order]:
        values = _to_values(changes, OrderRow)
        values["payment_status"] = to_status
        values["updated_at"] = parse_iso(now)
        async with self.sessions() as db:
            async with db.begin():
                res = await db.execute(
                    update(OrderRow)
                    .where(OrderRow.id == order_id)
                    .where(OrderRow.payment_status.in_(list(from_statuses)))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 0:
                    return None
                row = await db.get(OrderRow, order_id, populate_existing=True)
                return order_from_row(row)

    async def attach_card_secret(
        self, order_id: str, snapshot: CardSecretSnapshot, now: str
    ) -> Optional[Order]:
        delivered_at = parse_iso(now)
        async with self.sessions() as db:
            async with db.begin():
                # the JSON column keeps None as JSON null, so guard on the
                # delivery timestamp instead
                res = await db.execute(
                    update(OrderRow)
                    .where(OrderRow.id == order_id)
                    .where(OrderRow.payment_status == PAY_PAID)
                    .where(OrderRow.card_secret_delivered_at.is_(None))
                    .values(
                        card_secret=snapshot.to_dict(),
                        card_secret_delivered_at=delivered_at,
                        updated_at=delivered_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 0:
                    return None
                row = await db.get(OrderRow, order_id, populate_existing=True)
                return order_from_row(row)

    async def health_check(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
