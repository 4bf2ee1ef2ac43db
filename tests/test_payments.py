"""
Purchase, payment confirmation and refund tests.
"""
import pytest

from flowcredits.errors import (
    InsufficientCredits,
    InvalidCurrency,
    InvalidQuantity,
    InvalidSettings,
    InvalidState,
    PaymentFailed,
    PaymentNotFound,
    UnknownTenant,
)
from flowcredits.models.credit import TransactionType
from flowcredits.models.payment import PaymentMethod, PaymentStatus
from flowcredits.models.tenant import TenantStatus
from flowcredits.services.payment_gateway import sign_payload, verify_gateway_signature
from flowcredits.services.tenant_service import TenantService


@pytest.mark.asyncio
async def test_purchase_is_pending_until_confirmed(service, tenant):
    tid = tenant.id

    result = await service.purchase_credits(tid, 600, payment_method=PaymentMethod.CREDIT_CARD)

    assert result.payment.status == PaymentStatus.PENDING
    assert result.payment.amount_minor == 6750000
    assert result.transaction.type == TransactionType.PURCHASE
    assert result.transaction.payment_id == result.payment.id
    assert result.to_dict()["unit_price"] == "112.50"
    assert result.to_dict()["total_amount"] == "67500.00"
    assert result.to_dict()["pricing_tier"] == "bulk_tier_1"
    snapshot = await service.aggregator.snapshot(tid)
    assert snapshot.available_credits == 0
    assert snapshot.last_sequence == 1


@pytest.mark.asyncio
async def test_confirm_recognises_purchase(service, tenant):
    tid = tenant.id
    result = await service.purchase_credits(tid, 600, payment_method="stripe")

    confirmed = await service.confirm_payment(result.payment.id, "completed", gateway_reference="ch_123")

    assert confirmed.changed
    assert confirmed.payment.status == PaymentStatus.COMPLETED
    assert confirmed.payment.gateway_reference == "ch_123"
    assert confirmed.balance.available_credits == 600
    assert confirmed.balance.total_spent_minor == 6750000
    assert confirmed.balance.last_purchase_at is not None


@pytest.mark.asyncio
async def test_repeated_confirmation_is_noop(service, tenant):
    tid = tenant.id
    payment_id = (await service.purchase_credits(tid, 10, payment_method="invoice")).payment.id

    await service.confirm_payment(payment_id, PaymentStatus.COMPLETED)
    again = await service.confirm_payment(payment_id, PaymentStatus.COMPLETED)

    assert not again.changed
    assert (await service.aggregator.snapshot(tid)).total_purchased == 10


@pytest.mark.asyncio
async def test_failed_payment_never_counts(service, tenant):
    tid = tenant.id
    payment_id = (await service.purchase_credits(tid, 10, payment_method="sepa")).payment.id

    failed = await service.confirm_payment(payment_id, PaymentStatus.FAILED, failure_reason="card declined")
    assert failed.payment.failure_reason == "card declined"

    with pytest.raises(InvalidState):
        await service.confirm_payment(payment_id, PaymentStatus.COMPLETED)

    assert (await service.aggregator.snapshot(tid)).available_credits == 0
    assert (await service.rebuild(tid)).available_credits == 0


@pytest.mark.asyncio
async def test_confirm_rejects_non_terminal_outcome(service, tenant):
    payment_id = (await service.purchase_credits(tenant.id, 10, payment_method="invoice")).payment.id

    with pytest.raises(InvalidState):
        await service.confirm_payment(payment_id, PaymentStatus.REFUNDED)


@pytest.mark.asyncio
async def test_unknown_payment(service, tenant):
    with pytest.raises(PaymentNotFound):
        await service.confirm_payment("missing", PaymentStatus.COMPLETED)
    with pytest.raises(PaymentNotFound):
        await service.refund_payment(tenant.id, "missing")


@pytest.mark.asyncio
async def test_refund_at_purchase_price(service, tenant, fund):
    tid = tenant.id
    payment_id = (await fund(tid, 600)).payment.id

    refunded = await service.refund_payment(tid, payment_id, reason="Customer request")

    assert refunded.changed
    assert refunded.payment.status == PaymentStatus.REFUNDED
    assert refunded.transaction.type == TransactionType.REFUND
    assert refunded.transaction.credit_amount == 600
    assert refunded.transaction.unit_price_minor == 11250
    assert refunded.transaction.total_amount_minor == 6750000
    assert refunded.balance.available_credits == 0
    assert refunded.balance.total_refunded_amount_minor == 6750000
    assert (await service.rebuild(tid)) == (await service.aggregator.snapshot(tid))


@pytest.mark.asyncio
async def test_refund_is_idempotent(service, tenant, fund):
    tid = tenant.id
    payment_id = (await fund(tid, 10)).payment.id

    first = await service.refund_payment(tid, payment_id)
    first_txn = first.transaction.id
    second = await service.refund_payment(tid, payment_id)

    assert not second.changed
    assert second.transaction.id == first_txn
    assert (await service.aggregator.snapshot(tid)).total_refunded == 10

    # Gateway replaying the completion after the refund changes nothing
    replay = await service.confirm_payment(payment_id, PaymentStatus.COMPLETED)
    assert not replay.changed
    assert replay.payment.status == PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_of_failed_payment(service, tenant):
    tid = tenant.id
    payment_id = (await service.purchase_credits(tid, 10, payment_method="invoice")).payment.id
    await service.confirm_payment(payment_id, PaymentStatus.FAILED)

    with pytest.raises(PaymentFailed):
        await service.refund_payment(tid, payment_id)


@pytest.mark.asyncio
async def test_refund_of_pending_payment(service, tenant):
    tid = tenant.id
    payment_id = (await service.purchase_credits(tid, 10, payment_method="invoice")).payment.id

    with pytest.raises(InvalidState):
        await service.refund_payment(tid, payment_id)


@pytest.mark.asyncio
async def test_refund_needs_purchased_credits_available(service, tenant, fund):
    tid = tenant.id
    payment_id = (await fund(tid, 10)).payment.id
    await service.reserve(tid, "wf-1", 1)

    with pytest.raises(InsufficientCredits) as exc_info:
        await service.refund_payment(tid, payment_id)

    assert exc_info.value.available == 9
    assert exc_info.value.required == 10


@pytest.mark.asyncio
async def test_refund_is_tenant_scoped(service, make_tenant, fund):
    owner = await make_tenant("Owner")
    other = await make_tenant("Other")
    payment_id = (await fund(owner.id, 10)).payment.id

    with pytest.raises(PaymentNotFound):
        await service.refund_payment(other.id, payment_id)


@pytest.mark.asyncio
async def test_purchase_rejected_at_boundary(service, tenant):
    tid = tenant.id

    with pytest.raises(InvalidQuantity):
        await service.purchase_credits(tid, 0, payment_method="invoice")
    with pytest.raises(InvalidCurrency):
        await service.purchase_credits(tid, 10, payment_method="invoice", currency="USD")
    with pytest.raises(InvalidSettings):
        await service.purchase_credits(tid, 10, payment_method="barter")

    assert await service.store.replay(tid) == []


@pytest.mark.asyncio
async def test_purchase_in_supported_currency(service, tenant):
    result = await service.purchase_credits(tenant.id, 10, payment_method="wire", currency="chf")

    assert result.payment.currency == "CHF"
    assert result.transaction.currency == "CHF"
    assert (await service.aggregator.get(tenant.id)).currency == "CHF"


@pytest.mark.asyncio
async def test_ledger_currency_is_fixed_after_first_entry(service, tenant, fund):
    tid = tenant.id
    await fund(tid, 10)
    before = await service.aggregator.snapshot(tid)

    with pytest.raises(InvalidCurrency):
        await service.purchase_credits(tid, 10, payment_method="wire", currency="CHF")
    with pytest.raises(InvalidCurrency):
        await service.update_alert_settings(tid, currency="CHF")

    # Same currency, spelled differently, is accepted
    result = await service.purchase_credits(tid, 10, payment_method="wire", currency="eur")
    assert result.payment.currency == "EUR"

    assert (await service.aggregator.get(tid)).currency == "EUR"
    assert (await service.aggregator.snapshot(tid)).total_spent_minor == before.total_spent_minor
    assert [t.currency for t in await service.store.replay(tid)] == ["EUR", "EUR"]


@pytest.mark.asyncio
async def test_unknown_or_suspended_tenant(service, db, tenant):
    with pytest.raises(UnknownTenant):
        await service.purchase_credits("no-such-tenant", 10, payment_method="invoice")

    stored = await TenantService(db).get_by_id(tenant.id)
    stored.status = TenantStatus.SUSPENDED
    await db.commit()

    with pytest.raises(UnknownTenant):
        await service.purchase_credits(tenant.id, 10, payment_method="invoice")
    with pytest.raises(UnknownTenant):
        await service.reserve(tenant.id, "wf-1", 1)


def test_gateway_signature():
    body = b'{"payment_id": "p-1", "status": "completed"}'
    signature = sign_payload(body)

    assert verify_gateway_signature(body, signature)
    assert not verify_gateway_signature(body + b" ", signature)
    assert not verify_gateway_signature(body, None)
    assert not verify_gateway_signature(body, sign_payload(body, secret="other"))
