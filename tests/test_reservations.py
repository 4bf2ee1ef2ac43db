"""
Reservation lifecycle and concurrency tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm.exc import StaleDataError

from flowcredits.errors import (
    Busy,
    ConcurrentModification,
    InsufficientCredits,
    InvalidQuantity,
    InvalidState,
    TokenNotFound,
)
from flowcredits.models.credit import TransactionType, WorkflowType
from flowcredits.models.reservation import ReservationState
from flowcredits.services.balance_service import BalanceAggregator
from flowcredits.services.credit_service import CreditService
from flowcredits.services.tenant_lock import TenantLockRegistry


@pytest.mark.asyncio
async def test_reserve_holds_credits_and_locks_rate(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 600)

    outcome = await service.reserve(tid, "wf-1", 2, WorkflowType.ONBOARDING)

    assert outcome.changed
    assert outcome.reservation.state == ReservationState.RESERVED
    assert outcome.reservation.rate_locked_minor == 11250
    assert outcome.reservation.token.startswith("rsv_")
    assert outcome.balance.reserved_credits == 2
    assert outcome.balance.available_credits == 598
    # Holding credits writes nothing to the log
    assert len(await service.store.replay(tid)) == 1


@pytest.mark.asyncio
async def test_consume_writes_usage_at_locked_rate(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 600)
    token = (await service.reserve(tid, "wf-1", 2, WorkflowType.ROLE_CHANGE)).reservation.token

    # A later cheaper purchase must not change the locked rate
    await fund(tid, 2500)
    outcome = await service.consume(tid, token)

    usage = await service.store.get(tid, outcome.usage_transaction_id)
    assert usage.type == TransactionType.USAGE
    assert usage.credit_amount == -2
    assert usage.unit_price_minor == 11250
    assert usage.total_amount_minor == 22500
    assert usage.workflow_id == "wf-1"
    assert usage.workflow_type == "role_change"
    assert outcome.balance.reserved_credits == 0
    assert outcome.balance.total_used == 2
    assert outcome.balance.available_credits == 3098


@pytest.mark.asyncio
async def test_usage_window_without_offset_is_utc(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 10)
    token = (await service.reserve(tid, "wf-1", 3, WorkflowType.ONBOARDING)).reservation.token
    await service.consume(tid, token)

    now = datetime.now(timezone.utc).replace(tzinfo=None)
    report = await service.usage_analytics(tid, start=now - timedelta(hours=1), end=now + timedelta(hours=1))

    assert report["period"]["start"].endswith("+00:00")
    assert report["period"]["end"].endswith("+00:00")
    assert report["total_credits_used"] == 3
    assert report["by_workflow_type"][0]["workflow_type"] == "onboarding"


@pytest.mark.asyncio
async def test_consume_is_idempotent(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 10)
    token = (await service.reserve(tid, "wf-1", 1)).reservation.token

    first = await service.consume(tid, token)
    first_usage = first.usage_transaction_id
    second = await service.consume(tid, token)

    assert first.changed
    assert not second.changed
    assert second.usage_transaction_id == first_usage
    usage = await service.list_transactions(tid, txn_type=TransactionType.USAGE)
    assert len(usage) == 1
    assert (await service.aggregator.snapshot(tid)).total_used == 1


@pytest.mark.asyncio
async def test_release_returns_credits_and_records_marker(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 10)
    token = (await service.reserve(tid, "wf-1", 4)).reservation.token

    outcome = await service.release(tid, token)

    assert outcome.changed
    assert outcome.reservation.state == ReservationState.RELEASED
    assert outcome.balance.reserved_credits == 0
    assert outcome.balance.available_credits == 10
    marker = await service.store.get(tid, outcome.reservation.release_transaction_id)
    assert marker.type == TransactionType.ADJUSTMENT
    assert marker.credit_amount == 0


@pytest.mark.asyncio
async def test_release_after_close_is_noop(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 10)
    consumed = (await service.reserve(tid, "wf-consumed", 1)).reservation.token
    released = (await service.reserve(tid, "wf-released", 1)).reservation.token
    await service.consume(tid, consumed)
    await service.release(tid, released)

    after_consume = await service.release(tid, consumed)
    after_release = await service.release(tid, released)

    assert not after_consume.changed
    assert after_consume.reservation.state == ReservationState.CONSUMED
    assert not after_release.changed
    assert (await service.aggregator.snapshot(tid)).available_credits == 9


@pytest.mark.asyncio
async def test_consume_after_release_is_rejected(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 10)
    token = (await service.reserve(tid, "wf-1", 1)).reservation.token
    await service.release(tid, token)

    with pytest.raises(InvalidState):
        await service.consume(tid, token)

    assert (await service.aggregator.snapshot(tid)).total_used == 0


@pytest.mark.asyncio
async def test_reserving_same_workflow_returns_open_reservation(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 10)

    first = await service.reserve(tid, "wf-1", 3)
    token = first.reservation.token
    again = await service.reserve(tid, "wf-1", 3)

    assert not again.changed
    assert again.reservation.token == token
    assert (await service.aggregator.snapshot(tid)).reserved_credits == 3

    await service.consume(tid, token)
    with pytest.raises(InvalidState):
        await service.reserve(tid, "wf-1", 3)


@pytest.mark.asyncio
async def test_reserve_more_than_available_is_denied(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 3)

    with pytest.raises(InsufficientCredits) as exc_info:
        await service.reserve(tid, "wf-1", 4)

    assert exc_info.value.available == 3
    assert exc_info.value.required == 4
    assert (await service.aggregator.snapshot(tid)).reserved_credits == 0


@pytest.mark.asyncio
async def test_reserve_without_balance_is_denied(service, tenant):
    with pytest.raises(InsufficientCredits):
        await service.reserve(tenant.id, "wf-1", 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("credits", [0, -1, 1.5, True])
async def test_reserve_rejects_bad_quantities(service, tenant, credits):
    with pytest.raises(InvalidQuantity):
        await service.reserve(tenant.id, "wf-1", credits)


@pytest.mark.asyncio
async def test_tokens_are_tenant_scoped(service, make_tenant, fund):
    owner = await make_tenant("Owner")
    other = await make_tenant("Other")
    await fund(owner.id, 5)
    token = (await service.reserve(owner.id, "wf-1", 1)).reservation.token

    with pytest.raises(TokenNotFound):
        await service.consume(other.id, token)
    with pytest.raises(TokenNotFound):
        await service.release(other.id, token)
    with pytest.raises(TokenNotFound):
        await service.get_reservation(owner.id, "rsv_unknown")


@pytest.mark.asyncio
async def test_concurrent_reservations_never_exceed_available(session_maker, make_service, tenant, fund):
    tid = tenant.id
    await fund(tid, 5)

    async def attempt(i):
        async with session_maker() as session:
            outcome = await make_service(session).reserve(tid, f"wf-{i}", 1)
            return outcome.reservation.token

    results = await asyncio.gather(*(attempt(i) for i in range(12)), return_exceptions=True)

    granted = [r for r in results if isinstance(r, str)]
    denied = [r for r in results if isinstance(r, InsufficientCredits)]
    assert len(granted) == 5
    assert len(denied) == 7
    assert len(set(granted)) == 5

    async with session_maker() as session:
        snapshot = await BalanceAggregator(session).snapshot(tid)
        rebuilt = await BalanceAggregator(session).rebuild(tid)
    assert snapshot.available_credits == 0
    assert snapshot.reserved_credits == 5
    assert rebuilt == snapshot


@pytest.mark.asyncio
async def test_busy_when_lock_not_acquired(db, dispatcher, tenant, fund):
    tid = tenant.id
    await fund(tid, 5)
    impatient = TenantLockRegistry(timeout=0.05)
    service = CreditService(db, locks=impatient, dispatcher=dispatcher)

    async with impatient.hold(tid):
        assert impatient.is_locked(tid)
        with pytest.raises(Busy) as exc_info:
            await service.reserve(tid, "wf-1", 1)

    assert exc_info.value.retryable
    assert not impatient.is_locked(tid)
    outcome = await service.reserve(tid, "wf-1", 1)
    assert outcome.changed


@pytest.mark.asyncio
async def test_version_conflict_becomes_concurrent_modification(db, session_maker, tenant, fund):
    tid = tenant.id
    await fund(tid, 5)
    # Separate registries stand in for two processes
    ours, theirs = TenantLockRegistry(timeout=1.0), TenantLockRegistry(timeout=1.0)

    with pytest.raises(ConcurrentModification) as exc_info:
        async with ours.transaction(db, tid):
            balance = await BalanceAggregator(db).get_for_update(tid)

            async with session_maker() as other:
                async with theirs.transaction(other, tid):
                    competing = await BalanceAggregator(other).get_for_update(tid)
                    competing.total_adjustments += 1

            balance.total_adjustments += 2

    assert exc_info.value.retryable
    async with session_maker() as check:
        assert (await BalanceAggregator(check).snapshot(tid)).total_adjustments == 1


@pytest.mark.asyncio
async def test_stale_data_inside_transaction_is_translated(db, locks, tenant):
    with pytest.raises(ConcurrentModification):
        async with locks.transaction(db, tenant.id):
            raise StaleDataError("version mismatch")

    assert not locks.is_locked(tenant.id)
