"""
Category and merchant mappings to remote accounting entities.
"""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from statementdesk.database import Base

SOURCE_MANUAL = "manual"
SOURCE_SUGGESTED = "suggested"
SOURCE_VALIDATED = "validated"


class CategoryMapping(Base):
    """Local category -> remote chart-of-accounts entry."""

    __tablename__ = "category_mappings"
    __table_args__ = (
        UniqueConstraint("connection_id", "category", name="uq_category_mapping"),
    )
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    remote_account_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    remote_account_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    remote_account_type: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    remote_account_code: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )  # Xero posts line items by account code
    confidence: Mapped[int] = mapped_column(
        Integer,
        default=100,
    )
    source: Mapped[str] = mapped_column(
        String(20),
        default=SOURCE_MANUAL,
    )  # manual, suggested, validated
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
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

    def __repr__(self) -> str:
        return f"<CategoryMapping {self.category} -> {self.remote_account_id}>"


class MerchantMapping(Base):
    """Normalized merchant -> remote vendor or customer."""

    __tablename__ = "merchant_mappings"
    __table_args__ = (
        UniqueConstraint("connection_id", "merchant", name="uq_merchant_mapping"),
    )
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    merchant: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(
        String(20),
        default="vendor",
    )  # vendor, customer
    remote_entity_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    remote_entity_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    confidence: Mapped[int] = mapped_column(
        Integer,
        default=100,
    )
    source: Mapped[str] = mapped_column(
        String(20),
        default=SOURCE_MANUAL,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
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

    def __repr__(self) -> str:
        return f"<MerchantMapping {self.merchant} -> {self.remote_entity_id}>"
