"""
Reservation manager.

SECURITY: All queries MUST include tenant_id filter.
Failure to do so will result in data leakage between tenants.

Every state change runs inside the tenant's critical section: the
available-credit check, the hold and the ledger append commit together.
Given K available credits, concurrent reservations of one credit each
yield exactly K successes.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowcredits.errors import (
    DataIntegrityViolation,
    InsufficientCredits,
    InvalidQuantity,
    InvalidState,
    TokenNotFound,
)
from flowcredits.logging_config import get_logger
from flowcredits.models.base import utcnow
from flowcredits.models.credit import ClientBalance, CreditTransaction, TransactionType, WorkflowType
from flowcredits.models.reservation import Reservation, ReservationState, new_token
from flowcredits.routes.metrics import track_credits_consumed, track_reservation
from flowcredits.services.balance_service import BalanceAggregator, average_credit_price_minor
from flowcredits.services.ledger_store import LedgerStore
from flowcredits.services.tenant_lock import TenantLockRegistry, tenant_locks


@dataclass
class ReservationOutcome:
    """Result of a reservation operation.

    `changed` is False when the call was an idempotent replay and nothing
    was written; `balance` is then the untouched stored balance.
    """
    reservation: Reservation
    balance: ClientBalance | None
    changed: bool = True

    @property
    def usage_transaction_id(self) -> str | None:
        return self.reservation.usage_transaction_id


class ReservationManager:
    """Reserve, consume and release credits for workflows."""

    def __init__(
        self,
        db: AsyncSession,
        locks: TenantLockRegistry | None = None,
        aggregator: BalanceAggregator | None = None,
    ):
        self.db = db
        self.locks = locks or tenant_locks
        self.aggregator = aggregator or BalanceAggregator(db)
        self.store = LedgerStore(db)

    async def get(self, tenant_id: str, token: str, for_update: bool = False) -> Reservation:
        """
        Look up a reservation by token within a tenant.

        Raises:
            TokenNotFound: unknown token, or a token owned by another tenant
        """
        stmt = select(Reservation).where(
            Reservation.tenant_id == tenant_id,
            Reservation.token == token,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise TokenNotFound("Reservation not found", tenant_id=tenant_id)
        return reservation

    async def find_by_workflow(self, tenant_id: str, workflow_id: str) -> Reservation | None:
        stmt = (
            select(Reservation)
            .where(
                Reservation.tenant_id == tenant_id,
                Reservation.workflow_id == workflow_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def reserve(
        self,
        tenant_id: str,
        workflow_id: str,
        credits_needed: int,
        workflow_type: WorkflowType | None = None,
    ) -> ReservationOutcome:
        """
        Hold credits for a workflow and lock in the rate to charge.

        A workflow that already holds an open reservation gets that
        reservation back unchanged.

        Raises:
            InvalidQuantity: credits_needed is not a positive integer
            InsufficientCredits: available credits do not cover the request
            InvalidState: the workflow's reservation is already closed
            Busy, ConcurrentModification: transient, retry
        """
        if isinstance(credits_needed, bool) or not isinstance(credits_needed, int) or credits_needed <= 0:
            raise InvalidQuantity("Credits to reserve must be a positive integer", quantity=credits_needed)
        if not workflow_id:
            raise InvalidState("A workflow id is required to reserve credits", tenant_id=tenant_id)

        log = get_logger(tenant_id=tenant_id, workflow_id=workflow_id)
        workflow_type_value = WorkflowType(workflow_type).value if workflow_type else None

        async with self.locks.transaction(self.db, tenant_id):
            existing = await self.find_by_workflow(tenant_id, workflow_id)
            if existing is not None:
                if existing.state != ReservationState.RESERVED:
                    raise InvalidState(
                        f"Workflow reservation is already {existing.state.value}",
                        tenant_id=tenant_id,
                        workflow_id=workflow_id,
                    )
                balance = await self.aggregator.get(tenant_id)
                log.info("reservation_reused", reservation_token=existing.token)
                return ReservationOutcome(reservation=existing, balance=balance, changed=False)

            balance = await self.aggregator.get_or_create_for_update(tenant_id)
            if balance.available_credits < credits_needed:
                track_reservation("denied")
                log.info(
                    "reservation_denied",
                    available=balance.available_credits,
                    required=credits_needed,
                )
                raise InsufficientCredits(
                    available=balance.available_credits,
                    required=credits_needed,
                    tenant_id=tenant_id,
                    workflow_id=workflow_id,
                )

            reservation = Reservation(
                token=new_token(),
                tenant_id=tenant_id,
                workflow_id=workflow_id,
                workflow_type=workflow_type_value,
                credits_reserved=credits_needed,
                rate_locked_minor=average_credit_price_minor(balance),
                currency=balance.currency,
                state=ReservationState.RESERVED,
            )
            self.db.add(reservation)
            self.aggregator.adjust_reserved(balance, credits_needed)
            await self.db.flush()

        track_reservation("reserved")
        log.info(
            "credits_reserved",
            reservation_token=reservation.token,
            credits=credits_needed,
            rate_locked_minor=reservation.rate_locked_minor,
            available=balance.available_credits,
        )
        return ReservationOutcome(reservation=reservation, balance=balance)

    async def consume(self, tenant_id: str, token: str) -> ReservationOutcome:
        """
        Convert a reservation into a usage transaction at the locked rate.

        Consuming an already consumed token returns the original usage
        transaction without writing anything.

        Raises:
            TokenNotFound: unknown token
            InvalidState: the reservation was released
        """
        log = get_logger(tenant_id=tenant_id, reservation_token=token)

        async with self.locks.transaction(self.db, tenant_id):
            reservation = await self.get(tenant_id, token, for_update=True)
            if reservation.state == ReservationState.CONSUMED:
                log.info("reservation_consume_replayed", usage_transaction_id=reservation.usage_transaction_id)
                balance = await self.aggregator.get(tenant_id)
                return ReservationOutcome(reservation=reservation, balance=balance, changed=False)
            if reservation.state == ReservationState.RELEASED:
                raise InvalidState(
                    "Reservation was released and cannot be consumed",
                    tenant_id=tenant_id,
                    workflow_id=reservation.workflow_id,
                )

            balance = await self._locked_balance(tenant_id)
            credits = reservation.credits_reserved
            self.aggregator.adjust_reserved(balance, -credits)

            usage = CreditTransaction(
                tenant_id=tenant_id,
                type=TransactionType.USAGE,
                credit_amount=-credits,
                unit_price_minor=reservation.rate_locked_minor,
                total_amount_minor=credits * reservation.rate_locked_minor,
                currency=reservation.currency,
                workflow_id=reservation.workflow_id,
                workflow_type=reservation.workflow_type,
                reservation_id=reservation.id,
                description=f"Workflow usage: {reservation.workflow_id}",
                created_by="reservation",
            )
            usage_id = await self.store.append(usage, balance.last_sequence + 1)
            self.aggregator.apply(balance, usage)

            reservation.state = ReservationState.CONSUMED
            reservation.usage_transaction_id = usage_id
            reservation.consumed_at = utcnow()

        track_reservation("consumed")
        track_credits_consumed(tenant_id, credits)
        log.info(
            "reservation_consumed",
            usage_transaction_id=usage_id,
            credits=credits,
            available=balance.available_credits,
        )
        return ReservationOutcome(reservation=reservation, balance=balance)

    async def release(self, tenant_id: str, token: str) -> ReservationOutcome:
        """
        Return held credits to the available balance.

        Safe to call for a workflow that already finished: a consumed or
        released reservation is left as is and reported unchanged.

        Raises:
            TokenNotFound: unknown token
        """
        log = get_logger(tenant_id=tenant_id, reservation_token=token)

        async with self.locks.transaction(self.db, tenant_id):
            reservation = await self.get(tenant_id, token, for_update=True)
            if reservation.state != ReservationState.RESERVED:
                log.info("reservation_release_noop", state=reservation.state.value)
                balance = await self.aggregator.get(tenant_id)
                return ReservationOutcome(reservation=reservation, balance=balance, changed=False)

            balance = await self._locked_balance(tenant_id)
            self.aggregator.adjust_reserved(balance, -reservation.credits_reserved)

            # Zero-credit audit record; totals are unchanged
            marker = CreditTransaction(
                tenant_id=tenant_id,
                type=TransactionType.ADJUSTMENT,
                credit_amount=0,
                unit_price_minor=reservation.rate_locked_minor,
                total_amount_minor=0,
                currency=reservation.currency,
                workflow_id=reservation.workflow_id,
                workflow_type=reservation.workflow_type,
                reservation_id=reservation.id,
                description=f"Reservation released: {reservation.workflow_id}",
                created_by="reservation",
            )
            marker_id = await self.store.append(marker, balance.last_sequence + 1)
            self.aggregator.apply(balance, marker)

            reservation.state = ReservationState.RELEASED
            reservation.release_transaction_id = marker_id
            reservation.released_at = utcnow()

        track_reservation("released")
        log.info(
            "reservation_released",
            credits=reservation.credits_reserved,
            available=balance.available_credits,
        )
        return ReservationOutcome(reservation=reservation, balance=balance)

    async def _locked_balance(self, tenant_id: str) -> ClientBalance:
        balance = await self.aggregator.get_for_update(tenant_id)
        if balance is None:
            raise DataIntegrityViolation("Reservation exists without a balance", tenant_id=tenant_id)
        return balance
