"""
Credit Ledger — balance checks, reservations (debits) and compensating refunds.

Every balance change is paired with an append-only ``credit_transactions`` row.
Reservation and refund are idempotent per job: the unique index on
``(reference_id, transaction_type)`` admits one of each, so a job's
transactions always net to either the reservation amount or zero.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from leadscore.core.errors import PaymentRequiredError, ReservationRefundedError
from leadscore.db import get_async_db_connection, is_unique_violation, row_to_dict, utc_now

logger = logging.getLogger(__name__)

RESERVATION = "reservation"
REFUND = "refund"
GRANT = "grant"


@dataclass
class CreditTransaction:
    account_id: str
    amount: int
    balance_after: int
    transaction_type: str
    reference_id: Optional[str]
    description: str
    created_at: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CreditTransaction":
        return cls(
            account_id=row["account_id"],
            amount=row["amount"],
            balance_after=row["balance_after"],
            transaction_type=row["transaction_type"],
            reference_id=row["reference_id"],
            description=row["description"] or "",
            created_at=row["created_at"],
        )


class CreditLedger:

    def __init__(self, connect=get_async_db_connection):
        self._connect = connect

    async def get_balance(self, account_id: str) -> int:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT credit_balance FROM balances WHERE account_id = ?", (account_id,)
            )
            row = await cursor.fetchone()
        return row["credit_balance"] if row else 0

    async def has_sufficient_credits(self, account_id: str, required: int) -> bool:
        return await self.get_balance(account_id) >= required

    async def grant(self, account_id: str, amount: int, description: str = "Credit grant") -> int:
        """Add purchased or promotional credits. Returns the new balance."""
        if amount <= 0:
            raise ValueError("grant amount must be positive")
        now = utc_now()
        async with self._connect() as conn:
            await conn.begin()
            try:
                cursor = await conn.execute(
                    """
                    INSERT INTO balances (account_id, credit_balance, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT (account_id) DO UPDATE SET
                        credit_balance = balances.credit_balance + excluded.credit_balance,
                        updated_at = excluded.updated_at
                    RETURNING credit_balance
                    """,
                    (account_id, amount, now),
                )
                balance = (await cursor.fetchall())[0]["credit_balance"]
                await self._insert_transaction(conn, account_id, amount, balance, GRANT, None, description)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        logger.info(f"Granted {amount} credits to {account_id} (balance {balance}).")
        return balance

    async def reserve(self, account_id: str, amount: int, job_id: str, description: str = "") -> CreditTransaction:
        """
        Atomically debit ``amount`` and record a reservation for ``job_id``.

        Calling again for the same job returns the existing reservation without
        a second debit (queue redelivery).

        Raises:
            PaymentRequiredError: balance is lower than ``amount``.
            ReservationRefundedError: the job was already refunded.
        """
        if await self.find_transaction(job_id, REFUND):
            raise ReservationRefundedError(f"Credits for {job_id} were already refunded")

        existing = await self.find_transaction(job_id, RESERVATION)
        if existing:
            logger.info(f"[{job_id}] Reservation already recorded, skipping debit.")
            return existing

        async with self._connect() as conn:
            await conn.begin()
            try:
                cursor = await conn.execute(
                    """
                    UPDATE balances
                    SET credit_balance = credit_balance - ?, updated_at = ?
                    WHERE account_id = ? AND credit_balance >= ?
                    RETURNING credit_balance
                    """,
                    (amount, utc_now(), account_id, amount),
                )
                rows = await cursor.fetchall()
                if not rows:
                    await conn.rollback()
                    raise PaymentRequiredError(f"Insufficient credits: {amount} required")
                tx = await self._insert_transaction(
                    conn, account_id, -amount, rows[0]["credit_balance"], RESERVATION, job_id,
                    description or f"Reservation for {job_id}",
                )
                await conn.commit()
            except PaymentRequiredError:
                raise
            except Exception as e:
                await conn.rollback()
                if is_unique_violation(e):
                    # Lost a race with another delivery of the same job
                    return await self.find_transaction(job_id, RESERVATION)
                raise

        logger.info(f"[{job_id}] Reserved {amount} credits from {account_id} (balance {tx.balance_after}).")
        return tx

    async def refund(self, account_id: str, job_id: str, description: str = "") -> Optional[CreditTransaction]:
        """
        Return the reserved credits for ``job_id``. Returns None when nothing was
        reserved; returns the existing refund when one was already issued.
        """
        reservation = await self.find_transaction(job_id, RESERVATION)
        if reservation is None:
            logger.info(f"[{job_id}] No reservation found, nothing to refund.")
            return None

        existing = await self.find_transaction(job_id, REFUND)
        if existing:
            logger.info(f"[{job_id}] Refund already issued.")
            return existing

        amount = -reservation.amount
        async with self._connect() as conn:
            await conn.begin()
            try:
                cursor = await conn.execute(
                    """
                    UPDATE balances
                    SET credit_balance = credit_balance + ?, updated_at = ?
                    WHERE account_id = ?
                    RETURNING credit_balance
                    """,
                    (amount, utc_now(), account_id),
                )
                rows = await cursor.fetchall()
                if not rows:
                    raise LookupError(f"No balance row for account {account_id}")
                tx = await self._insert_transaction(
                    conn, account_id, amount, rows[0]["credit_balance"], REFUND, job_id,
                    description or f"Refund for {job_id}",
                )
                await conn.commit()
            except Exception as e:
                await conn.rollback()
                if is_unique_violation(e):
                    return await self.find_transaction(job_id, REFUND)
                raise

        logger.info(f"[{job_id}] Refunded {amount} credits to {account_id} (balance {tx.balance_after}).")
        return tx

    async def find_transaction(self, job_id: str, transaction_type: str) -> Optional[CreditTransaction]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM credit_transactions WHERE reference_id = ? AND transaction_type = ?",
                (job_id, transaction_type),
            )
            row = row_to_dict(await cursor.fetchone())
        return CreditTransaction.from_row(row) if row else None

    async def transactions_for_job(self, job_id: str) -> list[CreditTransaction]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM credit_transactions WHERE reference_id = ? ORDER BY id",
                (job_id,),
            )
            rows = await cursor.fetchall()
        return [CreditTransaction.from_row(row_to_dict(r)) for r in rows]

    async def get_transactions(self, account_id: str, limit: int = 50) -> list[CreditTransaction]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM credit_transactions WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                (account_id, limit),
            )
            rows = await cursor.fetchall()
        return [CreditTransaction.from_row(row_to_dict(r)) for r in rows]

    async def _insert_transaction(
        self, conn, account_id: str, amount: int, balance_after: int,
        transaction_type: str, reference_id: Optional[str], description: str,
    ) -> CreditTransaction:
        now = utc_now()
        await conn.execute(
            """
            INSERT INTO credit_transactions (
                account_id, amount, balance_after, transaction_type, reference_id, description, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (account_id, amount, balance_after, transaction_type, reference_id, description, now),
        )
        return CreditTransaction(account_id, amount, balance_after, transaction_type, reference_id, description, now)
