from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB


Base = declarative_base()

JsonDoc = JSON().with_variant(JSONB(), "postgresql")


# ----------------------------
# ORM models
# ----------------------------
class ProductRow(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    category = Column(String, nullable=False, default="")
    subcategory = Column(String, nullable=False, default="")
    price = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="CNY")
    stock = Column(Integer, nullable=False, default=0)
    sold_count = Column(Integer, nullable=False, default=0)
    quality_guarantee = Column(Text, nullable=False, default="")
    attributes = Column(JsonDoc, nullable=False, default=list)

    # active | inactive | draft
    status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class CardSecretRow(Base):
    __tablename__ = "card_secrets"
    id = Column(String, primary_key=True)
    product_id = Column(String, nullable=False, index=True)
    account = Column(String, nullable=False)
    password = Column(String, nullable=False)
    additional_info = Column(Text, nullable=True)
    quality_guarantee = Column(Text, nullable=False, default="")

    # available | sold
    status = Column(String, nullable=False, default="available")
    sold_at = Column(DateTime(timezone=True), nullable=True)
    # one card secret per order, ever
    order_id = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class OrderRow(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)
    product_id = Column(String, nullable=False, index=True)
    product_title = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="CNY")
    contact_info = Column(String, nullable=False, index=True)
    payment_method = Column(String, nullable=True)

    # pending | paid | failed | cancelled
    payment_status = Column(String, nullable=False, default="pending")
    # gateway's order id
    payment_transaction_id = Column(String, nullable=True)
    card_secret_delivered_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    card_secret = Column(JsonDoc, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
