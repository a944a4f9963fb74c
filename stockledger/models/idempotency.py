from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.db.base import Base


class MovementIdempotencyKey(Base):
    __tablename__ = "movement_idempotency_keys"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(120), nullable=False)
    movement_id: Mapped[str] = mapped_column(String(36), ForeignKey("stock_movements.id"), nullable=False)
    # sha256 of the normalized request, to spot a key reused for a different movement
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "product_id",
            "idempotency_key",
            name="uq_movement_idempotency_keys_product_key",
        ),
        Index("ix_movement_idempotency_keys_expires_at", "expires_at"),
    )
