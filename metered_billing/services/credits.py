"""Credit ledger: append-only signed adjustments with a derived balance.

There is no stored balance. Every read sums the ledger so the figure can
never drift from the entries that produced it.
"""

from collections.abc import Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.database.models import CreditEntry, CreditEntryType
from metered_billing.exceptions import InvalidBillingInputError

logger = structlog.get_logger()


async def get_credit_balance(db: AsyncSession, user_id: str) -> int:
    """Sum of all ledger entries for the user, 0 when there are none."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditEntry.amount), 0)).where(
            CreditEntry.user_id == user_id
        )
    )
    return int(result.scalar_one())


async def add_credits(
    db: AsyncSession,
    user_id: str,
    entry_type: CreditEntryType | str,
    amount: int,
    reason: str | None = None,
) -> CreditEntry:
    """Append a signed entry. Negative amounts are operator deductions."""
    if amount == 0:
        raise InvalidBillingInputError("amount", "must be non-zero")

    entry = CreditEntry(
        user_id=user_id,
        type=entry_type.value if isinstance(entry_type, CreditEntryType) else entry_type,
        amount=amount,
        reason=reason,
    )
    db.add(entry)
    await db.flush()

    logger.info(
        "Credit entry added",
        user_id=user_id,
        entry_type=entry.type,
        amount=amount,
    )
    return entry


async def deduct_credit(db: AsyncSession, user_id: str, reason: str) -> bool:
    """Consume one credit if the balance allows it.

    Callers must hold the per-user lock (see ``usage.lock_monthly_usage``)
    so two requests cannot both spend the last credit.
    """
    balance = await get_credit_balance(db, user_id)
    if balance <= 0:
        logger.info("Credit deduction refused, no balance", user_id=user_id, balance=balance)
        return False

    db.add(
        CreditEntry(
            user_id=user_id,
            type=CreditEntryType.USED.value,
            amount=-1,
            reason=reason,
        )
    )
    await db.flush()
    return True


async def list_credit_entries(
    db: AsyncSession,
    user_id: str,
    limit: int = 50,
) -> Sequence[CreditEntry]:
    """Most recent ledger entries first."""
    result = await db.execute(
        select(CreditEntry)
        .where(CreditEntry.user_id == user_id)
        .order_by(CreditEntry.created_at.desc())
        .limit(limit)
    )
    return result.scalars().all()
