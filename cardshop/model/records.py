"""
Record types shared by every store backend.

Plain dataclasses, JSON-serializable through ``to_dict``. Timestamp fields are
always ISO-8601 strings here; backends convert from whatever they store
natively.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional

# Product.status
PRODUCT_ACTIVE = "active"
PRODUCT_INACTIVE = "inactive"
PRODUCT_DRAFT = "draft"
PRODUCT_STATUSES = (PRODUCT_ACTIVE, PRODUCT_INACTIVE, PRODUCT_DRAFT)

# CardSecret.status
SECRET_AVAILABLE = "available"
SECRET_SOLD = "sold"

# Order.payment_status
PAY_PENDING = "pending"
PAY_PAID = "paid"
PAY_FAILED = "failed"
PAY_CANCELLED = "cancelled"
PAYMENT_STATUSES = (PAY_PENDING, PAY_PAID, PAY_FAILED, PAY_CANCELLED)

TIMESTAMP_FIELDS = {
    "created_at", "updated_at", "sold_at", "card_secret_delivered_at",
    "expires_at",
}


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Product:
    id: str
    title: str
    price: int  # minor units
    description: str = ""
    category: str = ""
    subcategory: str = ""
    currency: str = "CNY"
    stock: int = 0
    sold_count: int = 0
    quality_guarantee: str = ""
    attributes: List[str] = field(default_factory=list)
    status: str = PRODUCT_ACTIVE
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        d = _known(cls, data)
        d["attributes"] = list(d.get("attributes") or [])
        return cls(**d)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CardSecret:
    id: str
    product_id: str
    account: str
    password: str
    additional_info: Optional[str] = None
    quality_guarantee: str = ""
    status: str = SECRET_AVAILABLE
    sold_at: Optional[str] = None
    order_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardSecret":
        return cls(**_known(cls, data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def snapshot(self) -> "CardSecretSnapshot":
        return CardSecretSnapshot(
            account=self.account,
            password=self.password,
            additional_info=self.additional_info,
            quality_guarantee=self.quality_guarantee,
        )


@dataclass
class CardSecretSnapshot:
    """Copy of the delivered card secret kept on the order."""
    account: str
    password: str
    additional_info: Optional[str] = None
    quality_guarantee: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardSecretSnapshot":
        # older file stores wrote camelCase keys
        return cls(
            account=data.get("account", ""),
            password=data.get("password", ""),
            additional_info=data.get(
                "additional_info", data.get("additionalInfo")
            ),
            quality_guarantee=data.get(
                "quality_guarantee", data.get("qualityGuarantee")
            ) or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Order:
    id: str
    order_number: str
    product_id: str
    product_title: str
    unit_price: int
    total_amount: int
    contact_info: str
    quantity: int = 1
    currency: str = "CNY"
    payment_method: Optional[str] = None
    payment_status: str = PAY_PENDING
    payment_transaction_id: Optional[str] = None
    card_secret_delivered_at: Optional[str] = None
    expires_at: Optional[str] = None
    card_secret: Optional[CardSecretSnapshot] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        d = _known(cls, data)
        cs = d.get("card_secret")
        if isinstance(cs, dict):
            d["card_secret"] = CardSecretSnapshot.from_dict(cs)
        elif not isinstance(cs, CardSecretSnapshot):
            d["card_secret"] = None
        return cls(**d)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def public_dict(self) -> Dict[str, Any]:
        """Customer-facing view without the card secret itself."""
        d = self.to_dict()
        d.pop("card_secret", None)
        d["has_card_secret"] = self.card_secret is not None
        return d
