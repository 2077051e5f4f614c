"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Store(Base):
    """Physical retail location. Deactivated, never deleted."""

    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    chain_name: Mapped[str] = mapped_column(String(64), nullable=False)
    external_store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    store_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    zip_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, index=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    prices: Mapped[list["StorePrice"]] = relationship(
        "StorePrice", back_populates="store"
    )

    __table_args__ = (
        UniqueConstraint("chain_name", "external_store_id", name="uq_store_chain_external_id"),
    )


class Product(Base):
    """Catalog item, canonical across stores and chains."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Real barcode when known, otherwise a chain-scoped or synthetic pseudo-identifier
    upc: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    size: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_enrichment: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    discovery_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_price_update: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    prices: Mapped[list["StorePrice"]] = relationship(
        "StorePrice", back_populates="product"
    )

    __table_args__ = (Index("ix_products_brand", "brand"),)


class StorePrice(Base):
    """Current price of one product at one store. No history is kept."""

    __tablename__ = "store_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id"), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    deal_type: Mapped[str] = mapped_column(String(16), default="regular", nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="prices")
    store: Mapped["Store"] = relationship("Store", back_populates="prices")

    __table_args__ = (
        UniqueConstraint("product_id", "store_id", name="uq_store_price_product_store"),
        CheckConstraint("price >= 0", name="ck_store_price_non_negative"),
        Index("ix_store_prices_store_updated", "store_id", "last_updated"),
        Index("ix_store_prices_store_created", "store_id", "created_at"),
    )


class SearchArea(Base):
    """ZIP code with organic search activity (drives the weekly refresh sweep)."""

    __tablename__ = "search_areas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    zip_code: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    search_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    first_searched_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_searched_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
