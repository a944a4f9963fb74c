from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.core.id_utils import generate_shortuuid
from stockledger.db.base import Base

# Stock columns are 32-bit INTEGER on PostgreSQL.
MAX_STOCK_QUANTITY = 2_147_483_647


class Product(Base):
    """
    Stock-keeping item. `current_stock` is a cached balance of the movement ledger
    and is written only by the balance service together with `version`.
    """
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_shortuuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str] = mapped_column(String(100), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)  # e.g. "pcs", "box"
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    initial_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    min_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    max_stock: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_products_current_stock_non_negative"),
        CheckConstraint("initial_stock >= 0", name="ck_products_initial_stock_non_negative"),
        Index("ix_products_created_at", "created_at"),
        Index("ix_products_current_stock_min_stock", "current_stock", "min_stock"),
        Index("ux_products_sku_lower", func.lower(sku), unique=True),
    )
