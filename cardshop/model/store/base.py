from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from ..records import CardSecret, CardSecretSnapshot, Order, Product


class StoreBackend(ABC):
    """Raw persistence for products, card secrets and orders.

    Backends store what they are given; ids and timestamps are assigned by
    ``cardshop.store.Store``. Timestamps cross this boundary as ISO strings.
    Listings are newest first.
    """

    name: str = "unknown"

    # --- products
    @abstractmethod
    async def list_products(self) -> List[Product]: ...

    @abstractmethod
    async def get_product(self, product_id: str) -> Optional[Product]: ...

    @abstractmethod
    async def put_product(self, product: Product) -> Product: ...

    # removes the product and its card secrets
    @abstractmethod
    async def delete_product(self, product_id: str) -> bool: ...

    # stock is floored at 0
    @abstractmethod
    async def adjust_product(
        self, product_id: str, stock_delta: int, sold_delta: int, now: str
    ) -> bool: ...

    @abstractmethod
    async def set_product_stock(
        self, product_id: str, stock: int, now: str
    ) -> bool: ...

    # --- card secrets
    @abstractmethod
    async def list_card_secrets(
        self, product_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[CardSecret]: ...

    @abstractmethod
    async def get_card_secret(
        self, card_secret_id: str
    ) -> Optional[CardSecret]: ...

    @abstractmethod
    async def put_card_secret(self, card_secret: CardSecret) -> CardSecret: ...

    @abstractmethod
    async def put_card_secrets(
        self, card_secrets: Iterable[CardSecret]
    ) -> List[CardSecret]: ...

    # only while available; returns the deleted record
    @abstractmethod
    async def delete_card_secret(
        self, card_secret_id: str
    ) -> Optional[CardSecret]: ...

    # the secret already sold to this order, else atomically flips the
    # oldest available one to sold
    @abstractmethod
    async def claim_card_secret(
        self, product_id: str, order_id: str, now: str
    ) -> Optional[CardSecret]: ...

    # --- orders
    @abstractmethod
    async def list_orders(
        self, contact_info: Optional[str] = None
    ) -> List[Order]: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def put_order(self, order: Order) -> Order: ...

    @abstractmethod
    async def count_orders_for_product(self, product_id: str) -> int: ...

    # conditional status change; None when the order is not in from_statuses
    @abstractmethod
    async def transition_order(
        self, order_id: str, from_statuses: Iterable[str], to_status: str,
        changes: Dict[str, Any], now: str
    ) -> Optional[Order]: ...

    # snapshot onto a paid order that has none delivered yet; None otherwise
    @abstractmethod
    async def attach_card_secret(
        self, order_id: str, snapshot: CardSecretSnapshot, now: str
    ) -> Optional[Order]: ...

    # --- lifecycle
    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def health_check(self) -> bool: ...
