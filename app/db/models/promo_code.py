from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, func, false, true
from sqlalchemy.orm import Mapped, mapped_column

from app.core.time import utcnow
from app.db.base import Base


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("discount_percent >= 0 AND discount_percent <= 100", name="ck_promo_codes_discount_range"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # always stored uppercased
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    # "all" | "<plan>" | "<plan>,<plan>,..."
    valid_for: Mapped[str] = mapped_column(String(128), default="all", server_default="all", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true(), nullable=False)
    is_one_time: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false(), nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    max_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
