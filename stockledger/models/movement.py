from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.base import Base

MOVEMENT_TYPES = ("in", "out")
MOVEMENT_REASONS = ("Purchase", "Return", "Adjustment", "Sale", "Damaged", "Transfer", "Other")


class StockMovement(Base):
    """
    One immutable row per stock receipt ("in") or issue ("out").
    Rows are never updated or deleted; corrections are new reversal rows.
    """
    __tablename__ = "stock_movements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False, index=True)

    type: Mapped[str] = mapped_column(String(3), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)  # e.g. invoice no.
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reversal_of_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("stock_movements.id"), nullable=True, unique=True
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    created_by_user_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
        CheckConstraint("type IN ('in', 'out')", name="ck_stock_movements_type"),
        CheckConstraint("balance_after >= 0", name="ck_stock_movements_balance_after_non_negative"),
        Index("ix_stock_movements_created_at", "created_at"),
        Index("ix_stock_movements_product_created_at", "product_id", "created_at"),
        Index("ix_stock_movements_type_created_at", "type", "created_at"),
    )
