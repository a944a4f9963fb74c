from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, String, func, true
from sqlalchemy.orm import Mapped, mapped_column

from stockledger.core.id_utils import generate_shortuuid
from stockledger.db.base import Base


class User(Base):
    """
    Account that records movements. Permissions come from `role` only:
    admin reconciles, admin and staff write, viewer reads.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_shortuuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(100))
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="staff", server_default="staff")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("role IN ('admin', 'staff', 'viewer')", name="ck_users_role"),
        Index("ux_users_email_lower", func.lower(email), unique=True),
        Index("ux_users_username_lower", func.lower(username), unique=True),
    )
