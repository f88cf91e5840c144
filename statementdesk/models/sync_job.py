"""
Bulk sync job and per-transaction outcome models.
"""
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from statementdesk.database import Base

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED})

# Legal status moves; everything else is rejected
JOB_TRANSITIONS: dict[str, frozenset[str]] = {
    JOB_PENDING: frozenset({JOB_RUNNING, JOB_FAILED, JOB_CANCELLED}),
    JOB_RUNNING: frozenset({JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED}),
}

ITEM_PENDING = "pending"
ITEM_SYNCED = "synced"
ITEM_FAILED = "failed"


class SyncJob(Base):
    """One bulk export of a statement file into a provider."""

    __tablename__ = "sync_jobs"
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
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("statement_files.id", ondelete="CASCADE"),
        nullable=False,
    )
    retry_of_job_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=JOB_PENDING,
        index=True,
    )
    total_transactions: Mapped[int] = mapped_column(
        Integer,
        default=0,
    )
    successful_imports: Mapped[int] = mapped_column(
        Integer,
        default=0,
    )
    failed_imports: Mapped[int] = mapped_column(
        Integer,
        default=0,
    )
    settings: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
    )  # Sync options plus the mapping policy in force
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
    )
    error_summary: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    items: Mapped[list["SyncJobItem"]] = relationship(
        "SyncJobItem",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="SyncJobItem.position",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def processed(self) -> int:
        return self.successful_imports + self.failed_imports

    @property
    def progress(self) -> int:
        """Percentage of transactions with a recorded outcome."""
        if not self.total_transactions:
            return 0
        return round(self.processed / self.total_transactions * 100)

    @property
    def errors(self) -> list[dict]:
        """Failed transactions in input order."""
        return [
            {
                "transaction_ref": item.transaction_id,
                "position": item.position,
                "code": item.error_code,
                "reason": item.error_message,
            }
            for item in self.items
            if item.status == ITEM_FAILED
        ]

    def __repr__(self) -> str:
        return f"<SyncJob {self.id} {self.status}>"


class SyncJobItem(Base):
    """Outcome of pushing one transaction within a job."""

    __tablename__ = "sync_job_items"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("sync_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    transaction_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=ITEM_PENDING,
    )  # pending, synced, failed
    error_code: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    remote_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    job: Mapped["SyncJob"] = relationship(
        "SyncJob",
        back_populates="items",
    )

    def __repr__(self) -> str:
        return f"<SyncJobItem {self.position} {self.status}>"
