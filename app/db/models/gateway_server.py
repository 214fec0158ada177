from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func, true
from sqlalchemy.orm import Mapped, mapped_column

from app.core.time import utcnow
from app.db.base import Base


class GatewayServer(Base):
    """A 3x-ui panel plus the VLESS/Reality parameters its share links need."""

    __tablename__ = "servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    server_name: Mapped[str] = mapped_column(String(64), nullable=False)
    server_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    country: Mapped[str] = mapped_column(String(32), default="", server_default="", nullable=False)
    # enabled flag; disabled servers are never probed
    status: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true(), nullable=False)

    # panel access
    xui_api_url: Mapped[str] = mapped_column(String(256), nullable=False)
    xui_username: Mapped[str] = mapped_column(String(64), nullable=False)
    # Fernet token (see app.services.gateway.secrets); legacy rows may be plaintext
    xui_password: Mapped[str] = mapped_column(Text, nullable=False)
    inbound_id: Mapped[int] = mapped_column(Integer, nullable=False)

    # share link parameters
    server_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vless_port: Mapped[int] = mapped_column(Integer, default=443, server_default="443", nullable=False)
    vless_type: Mapped[str | None] = mapped_column(String(16), default="tcp", server_default="tcp", nullable=True)
    vless_security: Mapped[str | None] = mapped_column(String(16), default="reality", server_default="reality", nullable=True)
    vless_fp: Mapped[str | None] = mapped_column(String(32), default="chrome", server_default="chrome", nullable=True)
    vless_sni: Mapped[str | None] = mapped_column(String(128), nullable=True)
    vless_public_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    vless_sid: Mapped[str | None] = mapped_column(String(32), nullable=True)
    vless_spx: Mapped[str | None] = mapped_column(String(128), default="/", server_default="/", nullable=True)
    vless_flow: Mapped[str | None] = mapped_column(String(32), nullable=True)
    limit_ip: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    # best-effort load counter, not a capacity limit
    active_subscribers: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    @property
    def label(self) -> str:
        return f"{self.country}-{self.server_name}"
