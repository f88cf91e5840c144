"""
Statement files and extracted transactions.

Rows in these tables are written by the extraction pipeline; the sync
service only reads them.
"""
import uuid
import datetime as dt
from decimal import Decimal

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from statementdesk.database import Base


class StatementFile(Base):
    """An uploaded bank statement."""

    __tablename__ = "statement_files"

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
    filename: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    bank_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="file",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<StatementFile {self.filename}>"


class Transaction(Base):
    """A single extracted statement line."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("statement_files.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )  # line number on the statement
    date: Mapped[dt.date | None] = mapped_column(
        Date,
        nullable=True,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    merchant: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )  # normalized merchant name
    category: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    amount: Mapped[Decimal | None] = mapped_column(
        Numeric(14, 2),
        nullable=True,
    )  # negative = money out
    confidence: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    file: Mapped["StatementFile"] = relationship(
        "StatementFile",
        back_populates="transactions",
    )

    def __repr__(self) -> str:
        return f"<Transaction {self.id} {self.amount}>"
