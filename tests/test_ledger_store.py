"""
Append-only transaction log tests.
"""
import pytest

from flowcredits.errors import DataIntegrityViolation
from flowcredits.models.credit import CreditTransaction, TransactionType
from flowcredits.services.ledger_store import LedgerStore, validate_transaction


def make_txn(tenant_id="t-1", **overrides):
    values = dict(
        tenant_id=tenant_id,
        type=TransactionType.BONUS,
        credit_amount=10,
        unit_price_minor=0,
        total_amount_minor=0,
        currency="EUR",
        description="Welcome bonus",
    )
    values.update(overrides)
    return CreditTransaction(**values)


@pytest.mark.parametrize(
    "overrides",
    [
        {"type": TransactionType.USAGE, "credit_amount": 5, "workflow_id": "wf-1"},
        {"type": TransactionType.EXPIRATION, "credit_amount": 0},
        {"type": TransactionType.BONUS, "credit_amount": -3},
        {"type": TransactionType.REFUND, "credit_amount": 0},
        {"type": TransactionType.PURCHASE, "credit_amount": 10, "payment_id": None},
        {"type": TransactionType.USAGE, "credit_amount": -1, "workflow_id": None},
        {"unit_price_minor": 100, "total_amount_minor": 999},
        {"unit_price_minor": -1, "total_amount_minor": -10},
        {"credit_amount": 2.5},
        {"currency": "USD"},
        {"description": ""},
        {"tenant_id": None},
    ],
)
def test_validate_rejects_malformed_transactions(overrides):
    with pytest.raises(DataIntegrityViolation):
        validate_transaction(make_txn(**overrides))


def test_validate_accepts_exact_fixed_point_total():
    txn = make_txn(
        type=TransactionType.USAGE,
        credit_amount=-3,
        unit_price_minor=11250,
        total_amount_minor=33750,
        workflow_id="wf-1",
    )
    validate_transaction(txn)


def test_zero_credit_adjustment_is_valid():
    validate_transaction(make_txn(type=TransactionType.ADJUSTMENT, credit_amount=0))


@pytest.mark.asyncio
async def test_append_returns_id_and_replays_by_sequence(db):
    store = LedgerStore(db)

    second = await store.append(make_txn(description="second"), sequence=2)
    first = await store.append(make_txn(description="first"), sequence=1)
    await db.commit()

    replayed = await store.replay("t-1")
    assert [t.id for t in replayed] == [first, second]
    assert [t.sequence for t in replayed] == [1, 2]


@pytest.mark.asyncio
async def test_rejected_append_writes_nothing(db):
    store = LedgerStore(db)

    with pytest.raises(DataIntegrityViolation):
        await store.append(make_txn(credit_amount=-1), sequence=1)
    with pytest.raises(DataIntegrityViolation):
        await store.append(make_txn(), sequence=0)
    await db.commit()

    assert await store.replay("t-1") == []


@pytest.mark.asyncio
async def test_lookup_is_tenant_scoped(db):
    store = LedgerStore(db)
    txn_id = await store.append(make_txn(tenant_id="t-1"), sequence=1)
    await store.append(make_txn(tenant_id="t-2"), sequence=1)
    await db.commit()

    assert (await store.get("t-1", txn_id)).id == txn_id
    assert await store.get("t-2", txn_id) is None
    assert len(await store.replay("t-2")) == 1


@pytest.mark.asyncio
async def test_list_recent_newest_first_with_type_filter(db):
    store = LedgerStore(db)
    await store.append(make_txn(), sequence=1)
    await store.append(make_txn(type=TransactionType.ADJUSTMENT, credit_amount=-2), sequence=2)
    await store.append(make_txn(), sequence=3)
    await db.commit()

    recent = await store.list_recent("t-1")
    assert [t.sequence for t in recent] == [3, 2, 1]

    bonuses = await store.list_recent("t-1", txn_type=TransactionType.BONUS, limit=1)
    assert [t.sequence for t in bonuses] == [3]
