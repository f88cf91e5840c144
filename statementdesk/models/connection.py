"""
Connection and token models for OAuth links to accounting providers.
"""
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from statementdesk.database import Base

if TYPE_CHECKING:
    from statementdesk.models.user import User

TOKEN_ACTIVE = "active"
TOKEN_UNRECOVERABLE = "unrecoverable"


class Connection(Base):
    """A link between one user and one provider tenant."""

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "tenant_id", name="uq_connection_tenant"),
    )
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )  # google, xero, quickbooks
    tenant_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )  # Google account id, Xero tenant id, QuickBooks realm id
    tenant_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    scopes: Mapped[list] = mapped_column(
        JSON,
        default=list,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="connections",
    )
    token: Mapped["TokenRecord | None"] = relationship(
        "TokenRecord",
        back_populates="connection",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Connection {self.provider}:{self.tenant_id} for user {self.user_id}>"


class TokenRecord(Base):
    """Encrypted OAuth credentials owned by exactly one connection."""

    __tablename__ = "token_records"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    access_token_encrypted: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    refresh_token_encrypted: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=TOKEN_ACTIVE,
    )  # active, unrecoverable
    refresh_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Concurrent writers are detected through the version counter
    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}

    # Relationships
    connection: Mapped["Connection"] = relationship(
        "Connection",
        back_populates="token",
    )

    @property
    def has_refresh_token(self) -> bool:
        return self.refresh_token_encrypted is not None

    @property
    def is_unrecoverable(self) -> bool:
        return self.status == TOKEN_UNRECOVERABLE

    def __repr__(self) -> str:
        return f"<TokenRecord for connection {self.connection_id} ({self.status})>"
