"""
Multi-tenancy verification.

Creates two tenants with their own purchases and reservations and verifies
that no ledger query for one tenant returns data from the other: balances,
transaction history, reservation tokens, payments and replays.
"""
import pytest
import pytest_asyncio
from sqlalchemy import select

from flowcredits.errors import PaymentNotFound, TokenNotFound
from flowcredits.models.credit import CreditTransaction


@pytest_asyncio.fixture
async def two_tenants(make_tenant, fund, service):
    acme = await make_tenant("Acme Corp")
    beta = await make_tenant("Beta Inc")

    acme_payment = (await fund(acme.id, 1000)).payment.id
    await fund(beta.id, 500)
    acme_token = (await service.reserve(acme.id, "wf-shared-id", 10)).reservation.token
    beta_token = (await service.reserve(beta.id, "wf-shared-id", 20)).reservation.token

    return {
        "acme": acme.id,
        "beta": beta.id,
        "acme_payment": acme_payment,
        "acme_token": acme_token,
        "beta_token": beta_token,
    }


@pytest.mark.asyncio
async def test_balance_isolation(service, two_tenants):
    acme = await service.aggregator.snapshot(two_tenants["acme"])
    beta = await service.aggregator.snapshot(two_tenants["beta"])

    assert acme.available_credits == 990
    assert beta.available_credits == 480


@pytest.mark.asyncio
async def test_history_isolation(service, db, two_tenants):
    acme_history = await service.list_transactions(two_tenants["acme"])
    beta_history = await service.list_transactions(two_tenants["beta"])

    assert {t.tenant_id for t in acme_history} == {two_tenants["acme"]}
    assert {t.tenant_id for t in beta_history} == {two_tenants["beta"]}

    # Both tenants start their log at sequence 1
    rows = (await db.execute(select(CreditTransaction.tenant_id, CreditTransaction.sequence))).all()
    assert sorted(seq for _, seq in rows) == [1, 1]


@pytest.mark.asyncio
async def test_same_workflow_id_per_tenant(service, two_tenants):
    acme = await service.get_reservation(two_tenants["acme"], two_tenants["acme_token"])
    beta = await service.get_reservation(two_tenants["beta"], two_tenants["beta_token"])

    assert acme.workflow_id == beta.workflow_id == "wf-shared-id"
    assert acme.token != beta.token


@pytest.mark.asyncio
async def test_tokens_and_payments_do_not_cross(service, two_tenants):
    with pytest.raises(TokenNotFound):
        await service.consume(two_tenants["beta"], two_tenants["acme_token"])
    with pytest.raises(PaymentNotFound):
        await service.get_payment(two_tenants["beta"], two_tenants["acme_payment"])

    # Acme's reservation is untouched
    acme = await service.aggregator.snapshot(two_tenants["acme"])
    assert acme.reserved_credits == 10
    assert acme.total_used == 0


@pytest.mark.asyncio
async def test_rebuild_is_per_tenant(service, two_tenants):
    acme = await service.rebuild(two_tenants["acme"])
    beta = await service.rebuild(two_tenants["beta"])

    assert acme == await service.aggregator.snapshot(two_tenants["acme"])
    assert beta == await service.aggregator.snapshot(two_tenants["beta"])
    assert acme.total_spent_minor == 1000 * 11250
    assert beta.total_spent_minor == 500 * 11250
