"""Escrow ledger — custody of contract funds from deposit to payout.

A transaction is created when the client accepts a proposal, funded when
the deposit is confirmed, and then released to the specialist, refunded
to the client, or frozen by a dispute until an administrator resolves it.

Every operation is idempotent with respect to its target state: calling
``release`` on a transaction that is already released succeeds without
moving money or publishing anything. This makes blind retries after a
timeout safe. Moving to any other state is an InvalidTransition, so a
released transaction can never also be refunded.

Every operation can run inside a caller's UnitOfWork (the orchestrator
and dispute resolver do this, so the contract and the money move in one
commit) or standalone, in which case the ledger commits and publishes.

Actor counters move in the same unit as the funds:
    deposit  → client.escrow_balance += amount
    release  → client.escrow_balance -= amount,
               specialist.earnings_total += payout, jobs_completed += 1
    refund   → client.escrow_balance -= amount
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, TypeVar

from marketplace.compensation.commission import compute_commission
from marketplace.defaults import Clock, IdFactory, new_id, to_money, utc_now
from marketplace.errors import InvalidTransition
from marketplace.events.bus import DomainEvent, DomainEventKind, EventBus
from marketplace.models.escrow import EscrowState, EscrowTransaction
from marketplace.persistence.repository import Repository, UnitOfWork

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class EscrowLedger:
    """Owns escrow transactions and the commission they carry.

    Usage:
        ledger = EscrowLedger(repo, bus, commission_rate=Decimal("0.15"))
        txn, _ = ledger.create_transaction("c-1", Decimal("180"))
        txn, _ = ledger.confirm_deposit(txn.transaction_id, "pay_123")
        txn, moved = ledger.release(txn.transaction_id)

    Every mutating call returns ``(transaction, changed)``; ``changed`` is
    False when the call was an idempotent no-op.
    """

    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        commission_rate: Decimal = Decimal("0.15"),
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
    ) -> None:
        self._repo = repository
        self._bus = bus
        self._rate = commission_rate
        self._clock = clock or utc_now
        self._new_id = id_factory or new_id

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        contract_id: str,
        amount: Decimal,
        uow: Optional[UnitOfWork] = None,
        now: Optional[datetime] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """Create the escrow transaction for an assigned contract.

        Idempotent: if the contract already has an active transaction for
        the same amount, that transaction is returned unchanged.
        """
        amount = to_money(amount)
        if amount <= Decimal("0"):
            raise ValueError("Escrow amount must be positive")
        now = now or self._clock()

        def op(unit: UnitOfWork) -> tuple[EscrowTransaction, bool]:
            contract = unit.contract(contract_id)
            if contract.specialist_id is None:
                raise InvalidTransition(
                    f"Contract {contract_id} has no assigned specialist"
                )
            if contract.escrow_id is not None:
                existing = unit.escrow(contract.escrow_id)
                if existing.is_active:
                    if existing.amount != amount:
                        raise InvalidTransition(
                            f"Contract {contract_id} already has active escrow "
                            f"{existing.transaction_id} for {existing.amount}"
                        )
                    return existing, False

            breakdown = compute_commission(amount, self._rate)
            txn_id = self._new_id("txn")
            txn = EscrowTransaction(
                transaction_id=txn_id,
                contract_id=contract_id,
                client_id=contract.client_id,
                specialist_id=contract.specialist_id,
                amount=breakdown.amount,
                commission=breakdown.commission,
                payout=breakdown.payout,
                reference=f"ESC-{int(now.timestamp() * 1000)}-{txn_id[-8:].upper()}",
                created_utc=now,
            )
            unit.add(txn)
            contract.escrow_id = txn_id
            unit.save(contract)
            unit.events.append(self._event(
                DomainEventKind.TRANSACTION_CREATED, txn, None, now,
                actor_id=txn.client_id,
            ))
            return txn, True

        return self._in_unit(uow, op)

    def confirm_deposit(
        self,
        transaction_id: str,
        payment_reference: str,
        uow: Optional[UnitOfWork] = None,
        now: Optional[datetime] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """PENDING_DEPOSIT → FUNDS_HELD."""
        now = now or self._clock()

        def op(unit: UnitOfWork) -> tuple[EscrowTransaction, bool]:
            txn = unit.escrow(transaction_id)
            if txn.state == EscrowState.FUNDS_HELD:
                return txn, False
            before = txn.snapshot()
            txn.transition_to(EscrowState.FUNDS_HELD)
            txn.payment_reference = payment_reference
            txn.deposited_utc = now
            unit.save(txn)
            self._adjust_client_balance(unit, txn.client_id, txn.amount)
            unit.events.append(self._event(
                DomainEventKind.ESCROW_FUNDED, txn, before, now,
                actor_id=txn.client_id,
            ))
            return txn, True

        return self._in_unit(uow, op)

    def release(
        self,
        transaction_id: str,
        uow: Optional[UnitOfWork] = None,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """FUNDS_HELD | DISPUTED → RELEASED_TO_SPECIALIST."""
        now = now or self._clock()

        def op(unit: UnitOfWork) -> tuple[EscrowTransaction, bool]:
            txn = unit.escrow(transaction_id)
            if txn.state == EscrowState.RELEASED_TO_SPECIALIST:
                return txn, False
            before = txn.snapshot()
            txn.transition_to(EscrowState.RELEASED_TO_SPECIALIST)
            txn.released_utc = now
            unit.save(txn)
            self._adjust_client_balance(unit, txn.client_id, -txn.amount)
            specialist = unit.actor(txn.specialist_id)
            if specialist is not None:
                specialist.earnings_total += txn.payout
                specialist.jobs_completed += 1
                unit.save(specialist)
            unit.events.append(self._event(
                DomainEventKind.ESCROW_RELEASED, txn, before, now,
                actor_id=actor_id,
            ))
            return txn, True

        return self._in_unit(uow, op)

    def refund(
        self,
        transaction_id: str,
        uow: Optional[UnitOfWork] = None,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """FUNDS_HELD | DISPUTED → REFUNDED_TO_CLIENT. Full amount returned."""
        now = now or self._clock()

        def op(unit: UnitOfWork) -> tuple[EscrowTransaction, bool]:
            txn = unit.escrow(transaction_id)
            if txn.state == EscrowState.REFUNDED_TO_CLIENT:
                return txn, False
            before = txn.snapshot()
            txn.transition_to(EscrowState.REFUNDED_TO_CLIENT)
            txn.refunded_utc = now
            unit.save(txn)
            self._adjust_client_balance(unit, txn.client_id, -txn.amount)
            unit.events.append(self._event(
                DomainEventKind.ESCROW_REFUNDED, txn, before, now,
                actor_id=actor_id,
            ))
            return txn, True

        return self._in_unit(uow, op)

    def mark_disputed(
        self,
        transaction_id: str,
        uow: Optional[UnitOfWork] = None,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """FUNDS_HELD → DISPUTED."""
        now = now or self._clock()

        def op(unit: UnitOfWork) -> tuple[EscrowTransaction, bool]:
            txn = unit.escrow(transaction_id)
            if txn.state == EscrowState.DISPUTED:
                return txn, False
            if txn.state != EscrowState.FUNDS_HELD:
                raise InvalidTransition(
                    f"Invalid escrow transition: {txn.state.value} → disputed. "
                    f"Only funds_held transactions can be disputed"
                )
            before = txn.snapshot()
            txn.transition_to(EscrowState.DISPUTED)
            txn.disputed_utc = now
            unit.save(txn)
            unit.events.append(self._event(
                DomainEventKind.ESCROW_DISPUTED, txn, before, now,
                actor_id=actor_id,
            ))
            return txn, True

        return self._in_unit(uow, op)

    def cancel(
        self,
        transaction_id: str,
        uow: Optional[UnitOfWork] = None,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> tuple[EscrowTransaction, bool]:
        """PENDING_DEPOSIT → CANCELLED. Nothing was ever deposited."""
        now = now or self._clock()

        def op(unit: UnitOfWork) -> tuple[EscrowTransaction, bool]:
            txn = unit.escrow(transaction_id)
            if txn.state == EscrowState.CANCELLED:
                return txn, False
            before = txn.snapshot()
            txn.transition_to(EscrowState.CANCELLED)
            txn.cancelled_utc = now
            unit.save(txn)
            unit.events.append(self._event(
                DomainEventKind.ESCROW_CANCELLED, txn, before, now,
                actor_id=actor_id,
            ))
            return txn, True

        return self._in_unit(uow, op)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Optional[EscrowTransaction]:
        return self._repo.get_escrow(transaction_id)

    def transaction_for_contract(self, contract_id: str) -> Optional[EscrowTransaction]:
        """The active transaction for a contract, else the most recent one."""
        txns = self._repo.escrows_for_contract(contract_id)
        if not txns:
            return None
        active = [t for t in txns if t.is_active]
        pool = active or txns
        return max(pool, key=lambda t: t.created_utc or _EPOCH)

    def financial_metrics(self, start: datetime, end: datetime) -> dict[str, Decimal]:
        """Money moved in [start, end] plus funds currently in custody."""
        released = Decimal("0")
        commission = Decimal("0")
        refunded = Decimal("0")
        held = Decimal("0")
        for txn in self._repo.all_escrows():
            if txn.state == EscrowState.RELEASED_TO_SPECIALIST and _within(txn.released_utc, start, end):
                released += txn.payout
                commission += txn.commission
            elif txn.state == EscrowState.REFUNDED_TO_CLIENT and _within(txn.refunded_utc, start, end):
                refunded += txn.amount
            elif txn.state in (EscrowState.FUNDS_HELD, EscrowState.DISPUTED):
                held += txn.amount
        return {
            "released_to_specialists": released,
            "commission_earned": commission,
            "refunded_to_clients": refunded,
            "funds_held": held,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _in_unit(
        self,
        uow: Optional[UnitOfWork],
        operation: Callable[[UnitOfWork], T],
    ) -> T:
        if uow is not None:
            return operation(uow)
        unit = self._repo.begin()
        result = operation(unit)
        unit.commit()
        self._bus.publish_all(unit.events)
        return result

    @staticmethod
    def _adjust_client_balance(unit: UnitOfWork, client_id: str, delta: Decimal) -> None:
        client = unit.actor(client_id)
        if client is None:
            return
        client.escrow_balance += delta
        unit.save(client)

    @staticmethod
    def _event(
        kind: DomainEventKind,
        txn: EscrowTransaction,
        before: Optional[dict],
        now: datetime,
        actor_id: Optional[str] = None,
    ) -> DomainEvent:
        return DomainEvent.create(
            kind, "transaction", txn.transaction_id,
            actor_id=actor_id,
            before=before,
            after=txn.snapshot(),
            payload={
                "contract_id": txn.contract_id,
                "client_id": txn.client_id,
                "specialist_id": txn.specialist_id,
                "amount": str(txn.amount),
                "commission": str(txn.commission),
                "payout": str(txn.payout),
            },
            now=now,
        )


def _within(ts: Optional[datetime], start: datetime, end: datetime) -> bool:
    return ts is not None and start <= ts <= end
