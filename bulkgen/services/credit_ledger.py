"""Per-user credit ledger with reservations and an append-only transaction log.

Implements reserve → debit | refund settlement against a per-user balance.
Every call runs in its own short transaction and is committed before it
returns, so a crash never leaves a half-applied settlement.

Architecture Pattern:
    - Single writer per user: a process-local asyncio.Lock per user id
      (dropped once idle),
      plus SELECT ... FOR UPDATE on the account row for multi-process
      PostgreSQL deployments (SQLite ignores the lock clause)
    - Reservations take credits out of the available balance immediately;
      debit releases the unused remainder in the same transaction
    - Refund and repeated debit are idempotent no-ops

Amounts recorded in credit_transactions are signed balance deltas
(see CreditTransaction).
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkgen.exceptions import InsufficientBalanceError, ReservationStateError
from bulkgen.models import (
    CreditAccount,
    CreditReservation,
    CreditTransaction,
    ReservationStatus,
    TransactionType,
    utcnow,
)
from bulkgen.utils.locks import KeyedLocks
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)


class CreditLedger:
    """Reserve, debit and refund credits for a user.

    Example:
        >>> ledger = CreditLedger(session_factory)
        >>> await ledger.grant("user-1", 100, note="welcome bonus")
        >>> reservation = await ledger.reserve("user-1", 3, row_id=row.id)
        >>> await ledger.debit(reservation.id, 2)  # 1 credit released
        >>> await ledger.get_balance("user-1")
        98
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._user_locks = KeyedLocks()

    async def _lock_account(
        self, db: AsyncSession, user_id: str, create: bool = False
    ) -> CreditAccount | None:
        stmt = select(CreditAccount).where(CreditAccount.user_id == user_id).with_for_update()
        account = (await db.execute(stmt)).scalar_one_or_none()
        if account is None and create:
            account = CreditAccount(user_id=user_id, balance=0)
            db.add(account)
            await db.flush()
        return account

    async def _lock_reservation(self, db: AsyncSession, reservation_id: UUID) -> CreditReservation:
        stmt = (
            select(CreditReservation)
            .where(CreditReservation.id == reservation_id)
            .with_for_update()
        )
        reservation = (await db.execute(stmt)).scalar_one_or_none()
        if reservation is None:
            raise ReservationStateError(f"Reservation not found: {reservation_id}")
        return reservation

    async def _owner_of(self, reservation_id: UUID) -> str:
        async with self._session_factory() as db:
            user_id = await db.scalar(
                select(CreditReservation.user_id).where(CreditReservation.id == reservation_id)
            )
        if user_id is None:
            raise ReservationStateError(f"Reservation not found: {reservation_id}")
        return user_id

    async def get_balance(self, user_id: str) -> int:
        """Return the available balance (0 for unknown users)."""
        async with self._session_factory() as db:
            balance = await db.scalar(
                select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
            )
        return balance or 0

    async def grant(self, user_id: str, amount: int, note: str | None = None) -> int:
        """Apply an administrative adjustment to a user's balance.

        Args:
            user_id: Account to adjust (created on first grant)
            amount: Signed credits to add (negative removes credits)
            note: Free-text reason recorded on the transaction

        Returns:
            Balance after the adjustment.

        Raises:
            ValueError: If amount is zero
            InsufficientBalanceError: If a negative adjustment would overdraw
        """
        if amount == 0:
            raise ValueError("Adjustment amount must be non-zero")

        async with self._user_locks.hold(user_id):
            async with self._session_factory() as db:
                account = await self._lock_account(db, user_id, create=True)
                if account.balance + amount < 0:
                    raise InsufficientBalanceError(user_id, -amount, account.balance)
                account.balance += amount
                db.add(
                    CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.ADJUSTMENT,
                        amount=amount,
                        balance_after=account.balance,
                        note=note,
                    )
                )
                await db.commit()
                balance = account.balance

        log.info("credits_adjusted", user_id=user_id, amount=amount, balance_after=balance)
        return balance

    async def reserve(
        self,
        user_id: str,
        amount: int,
        batch_id: UUID | None = None,
        row_id: UUID | None = None,
    ) -> CreditReservation:
        """Hold credits for a row before it starts rendering.

        Atomic relative to every other ledger call for the same user: two
        concurrent reservations can never together exceed the balance.

        Raises:
            ValueError: If amount is not a positive integer
            InsufficientBalanceError: If the available balance is too low
        """
        if amount <= 0:
            raise ValueError(f"Reservation amount must be positive, got {amount}")

        async with self._user_locks.hold(user_id):
            async with self._session_factory() as db:
                account = await self._lock_account(db, user_id)
                available = account.balance if account else 0
                if account is None or available < amount:
                    log.warning(
                        "credits_insufficient",
                        user_id=user_id,
                        requested=amount,
                        available=available,
                        row_id=str(row_id) if row_id else None,
                    )
                    raise InsufficientBalanceError(user_id, amount, available)

                account.balance -= amount
                reservation = CreditReservation(
                    user_id=user_id,
                    amount=amount,
                    status=ReservationStatus.ACTIVE,
                    batch_id=batch_id,
                    row_id=row_id,
                )
                db.add(reservation)
                await db.flush()
                db.add(
                    CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.RESERVE,
                        amount=-amount,
                        balance_after=account.balance,
                        reservation_id=reservation.id,
                        batch_id=batch_id,
                        row_id=row_id,
                    )
                )
                await db.commit()
                balance = account.balance

        log.info(
            "credits_reserved",
            user_id=user_id,
            reservation_id=str(reservation.id),
            amount=amount,
            balance_after=balance,
            row_id=str(row_id) if row_id else None,
        )
        return reservation

    async def debit(self, reservation_id: UUID, actual_amount: int) -> CreditReservation:
        """Convert a reservation into a permanent charge of ``actual_amount``.

        The unused remainder goes back to the available balance in the same
        transaction. ``actual_amount`` above the reservation is capped at the
        reservation (a row is never charged more than was held).

        Returns:
            The settled reservation. Debiting an already-debited reservation
            returns it unchanged.

        Raises:
            ValueError: If actual_amount is negative
            ReservationStateError: If the reservation was refunded or is unknown
        """
        if actual_amount < 0:
            raise ValueError(f"Debit amount must be non-negative, got {actual_amount}")

        user_id = await self._owner_of(reservation_id)
        async with self._user_locks.hold(user_id):
            async with self._session_factory() as db:
                reservation = await self._lock_reservation(db, reservation_id)
                if reservation.status == ReservationStatus.DEBITED:
                    log.debug("debit_already_applied", reservation_id=str(reservation_id))
                    return reservation
                if reservation.status == ReservationStatus.REFUNDED:
                    raise ReservationStateError(
                        f"Reservation {reservation_id} was refunded and cannot be debited"
                    )

                if actual_amount > reservation.amount:
                    log.warning(
                        "debit_capped_at_reservation",
                        reservation_id=str(reservation_id),
                        requested=actual_amount,
                        reserved=reservation.amount,
                    )
                    actual_amount = reservation.amount

                released = reservation.amount - actual_amount
                account = await self._lock_account(db, user_id, create=True)
                account.balance += released
                reservation.status = ReservationStatus.DEBITED
                reservation.credits_charged = actual_amount
                reservation.settled_at = utcnow()
                # Recorded even when nothing is released: marks the conversion
                db.add(
                    CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.DEBIT,
                        amount=released,
                        balance_after=account.balance,
                        reservation_id=reservation.id,
                        batch_id=reservation.batch_id,
                        row_id=reservation.row_id,
                    )
                )
                await db.commit()
                balance = account.balance

        log.info(
            "credits_debited",
            user_id=user_id,
            reservation_id=str(reservation_id),
            charged=actual_amount,
            released=released,
            balance_after=balance,
        )
        return reservation

    async def refund(self, reservation_id: UUID) -> CreditReservation:
        """Release the full reservation back to the available balance.

        Idempotent: refunding an already-refunded or already-debited
        reservation changes nothing.
        """
        user_id = await self._owner_of(reservation_id)
        async with self._user_locks.hold(user_id):
            async with self._session_factory() as db:
                reservation = await self._lock_reservation(db, reservation_id)
                if reservation.status != ReservationStatus.ACTIVE:
                    log.debug(
                        "refund_noop",
                        reservation_id=str(reservation_id),
                        status=reservation.status.value,
                    )
                    return reservation

                account = await self._lock_account(db, user_id, create=True)
                account.balance += reservation.amount
                reservation.status = ReservationStatus.REFUNDED
                reservation.settled_at = utcnow()
                db.add(
                    CreditTransaction(
                        user_id=user_id,
                        type=TransactionType.REFUND,
                        amount=reservation.amount,
                        balance_after=account.balance,
                        reservation_id=reservation.id,
                        batch_id=reservation.batch_id,
                        row_id=reservation.row_id,
                    )
                )
                await db.commit()
                balance = account.balance

        log.info(
            "credits_refunded",
            user_id=user_id,
            reservation_id=str(reservation_id),
            amount=reservation.amount,
            balance_after=balance,
        )
        return reservation

    async def get_reservation(self, reservation_id: UUID) -> CreditReservation | None:
        async with self._session_factory() as db:
            return await db.get(CreditReservation, reservation_id)

    async def active_reservation_for_row(self, row_id: UUID) -> CreditReservation | None:
        """Return the newest still-active reservation held for a row, if any.

        A process that stops between reserving and recording the reservation
        on the row leaves exactly this behind; the next claim adopts it.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(CreditReservation)
                .where(
                    CreditReservation.row_id == row_id,
                    CreditReservation.status == ReservationStatus.ACTIVE,
                )
                .order_by(CreditReservation.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def transactions_for_row(self, row_id: UUID) -> list[CreditTransaction]:
        """Return every ledger entry correlated with a row, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.row_id == row_id)
                .order_by(CreditTransaction.created_at)
            )
            return list(result.scalars().all())

    async def net_charged(self, row_id: UUID) -> int:
        """Credits a row has permanently consumed (minus the sum of its deltas)."""
        async with self._session_factory() as db:
            total = await db.scalar(
                select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                    CreditTransaction.row_id == row_id
                )
            )
        return -int(total or 0)
