"""
Read access to extracted statement transactions.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from statementdesk.models.transaction import StatementFile, Transaction
from statementdesk.services.errors import ValidationError


def validate_transaction(transaction: Transaction, *, require_category: bool = True) -> None:
    """
    Reject a transaction that cannot be pushed anywhere.

    Raises:
        ValidationError: Listing every problem found
    """
    problems = []
    if transaction.date is None:
        problems.append("Missing transaction date")
    if transaction.amount is None:
        problems.append("Missing transaction amount")
    elif transaction.amount == 0:
        problems.append("Transaction amount cannot be zero")
    if require_category and not (transaction.category or "").strip():
        problems.append("Missing transaction category")
    if problems:
        raise ValidationError(", ".join(problems))


async def get_statement_file(db: AsyncSession, file_id: str, user_id: str) -> StatementFile | None:
    result = await db.execute(
        select(StatementFile).where(
            StatementFile.id == file_id,
            StatementFile.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def list_file_transactions(db: AsyncSession, file_id: str) -> list[Transaction]:
    """Transactions of a file in statement order."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.file_id == file_id)
        .order_by(Transaction.position, Transaction.date, Transaction.id)
    )
    return list(result.scalars().all())


async def get_transactions(db: AsyncSession, transaction_ids: list[str]) -> dict[str, Transaction]:
    if not transaction_ids:
        return {}
    result = await db.execute(select(Transaction).where(Transaction.id.in_(transaction_ids)))
    return {txn.id: txn for txn in result.scalars().all()}


async def distinct_values(db: AsyncSession, user_id: str, field: str, file_id: str | None = None) -> list[str]:
    """Distinct non-empty categories or merchants across the user's transactions."""
    column = getattr(Transaction, field)
    query = select(column).where(Transaction.user_id == user_id, column.is_not(None)).distinct()
    if file_id is not None:
        query = query.where(Transaction.file_id == file_id)
    result = await db.execute(query.order_by(column))
    return [value for value in result.scalars().all() if value.strip()]
