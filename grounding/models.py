from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ProductCache(Base):
    __tablename__ = "products_cache"
    __table_args__ = (
        Index("ix_products_cache_merchant_cached", "merchant_id", "cached_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(128), index=True)
    platform_product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    cached_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
