"""
Append-only credit transaction log.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.

`append` is the only write path. It validates the sign convention and the
fixed-point total before anything reaches the session, so a rejected
transaction leaves nothing behind.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.config import settings
from flowcredits.errors import DataIntegrityViolation
from flowcredits.models.credit import CreditTransaction, TransactionType


POSITIVE_TYPES = {TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND}
NEGATIVE_TYPES = {TransactionType.USAGE, TransactionType.EXPIRATION}


def validate_transaction(txn: CreditTransaction) -> None:
    """
    Check a transaction against the ledger's structural invariants.

    Raises:
        DataIntegrityViolation: on any violation
    """
    context = {"tenant_id": txn.tenant_id, "type": getattr(txn.type, "value", txn.type)}

    if not txn.tenant_id:
        raise DataIntegrityViolation("Transaction has no tenant", **context)
    try:
        txn_type = TransactionType(txn.type)
    except ValueError:
        raise DataIntegrityViolation("Unknown transaction type", **context) from None

    amount = txn.credit_amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise DataIntegrityViolation("Credit amount must be an integer", **context)
    if txn_type in POSITIVE_TYPES and amount <= 0:
        raise DataIntegrityViolation(f"{txn_type.value} transactions must be positive", **context)
    if txn_type in NEGATIVE_TYPES and amount >= 0:
        raise DataIntegrityViolation(f"{txn_type.value} transactions must be negative", **context)

    if txn_type == TransactionType.PURCHASE and not txn.payment_id:
        raise DataIntegrityViolation("Purchase transactions require a payment", **context)
    if txn_type == TransactionType.USAGE and not txn.workflow_id:
        raise DataIntegrityViolation("Usage transactions require a workflow", **context)

    unit_price = txn.unit_price_minor or 0
    if unit_price < 0:
        raise DataIntegrityViolation("Unit price cannot be negative", **context)
    if txn.total_amount_minor != abs(amount) * unit_price:
        raise DataIntegrityViolation(
            "Total amount does not equal |credits| x unit price",
            total_amount_minor=txn.total_amount_minor,
            expected=abs(amount) * unit_price,
            **context,
        )
    if txn.currency not in settings.SUPPORTED_CURRENCIES:
        raise DataIntegrityViolation("Unsupported currency on transaction", currency=txn.currency, **context)
    if not txn.description:
        raise DataIntegrityViolation("Transaction requires a description", **context)


class LedgerStore:
    """Append-only access to credit transactions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, txn: CreditTransaction, sequence: int) -> str:
        """
        Append a transaction at the given per-tenant sequence.

        The caller owns the database transaction; nothing is committed here.
        The id is assigned client-side and returned straight from the write.

        Returns:
            The new transaction id
        """
        validate_transaction(txn)
        if sequence <= 0:
            raise DataIntegrityViolation("Sequence must be positive", tenant_id=txn.tenant_id)
        txn.sequence = sequence
        self.db.add(txn)
        await self.db.flush()
        return txn.id

    async def get(self, tenant_id: str, transaction_id: str) -> CreditTransaction | None:
        """Point lookup within a tenant."""
        stmt = select(CreditTransaction).where(
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.id == transaction_id,
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def replay(self, tenant_id: str) -> list[CreditTransaction]:
        """Full log for a tenant in sequence order."""
        stmt = (
            select(CreditTransaction)
            .where(CreditTransaction.tenant_id == tenant_id)
            .order_by(CreditTransaction.sequence.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def find_by_payment(
        self,
        tenant_id: str,
        payment_id: str,
        txn_type: TransactionType,
    ) -> CreditTransaction | None:
        stmt = select(CreditTransaction).where(
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.payment_id == payment_id,
            CreditTransaction.type == txn_type,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def list_recent(
        self,
        tenant_id: str,
        limit: int = 50,
        txn_type: TransactionType | None = None,
    ) -> list[CreditTransaction]:
        """
        Get transactions for a tenant.

        Returns:
            List of credit transactions (most recent first)
        """
        stmt = select(CreditTransaction).where(CreditTransaction.tenant_id == tenant_id)
        if txn_type is not None:
            stmt = stmt.where(CreditTransaction.type == txn_type)
        stmt = stmt.order_by(CreditTransaction.sequence.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
