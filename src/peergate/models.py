from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Index, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from peergate.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClientPeer(Base):
    __tablename__ = "client_peer"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    device_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    device_name: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Where the client registered from. Refreshed on every re-registration.
    real_ip: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    country: Mapped[str | None] = mapped_column(String(128), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)

    vpn_address: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    # Empty until the client supplies its own key out of band.
    public_key: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    # Empty when the key pair was generated on the client.
    private_key: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    preshared_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    last_handshake_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Counters mirror the live interface; they are never reset here.
    bytes_sent: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    bytes_received: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index(
            "uq_client_peer_public_key",
            "public_key",
            unique=True,
            postgresql_where=text("public_key <> ''"),
            sqlite_where=text("public_key <> ''"),
        ),
    )

    @property
    def has_public_key(self) -> bool:
        return bool((self.public_key or "").strip())
