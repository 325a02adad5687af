"""Usage log and balance SQL.

Write methods take the connection of an open ``Database.transaction()`` so the
ledger can group a log insert and a balance change into one commit. Every
balance change is a single conditional UPDATE; none of them read a value into
Python and write it back.
"""

from __future__ import annotations

from datetime import datetime

import aiosqlite

from multichat.core.types import KeyType
from multichat.storage.database import Database
from multichat.storage.models import Balance, ProcessedPaymentEvent, UsageLogEntry

_BALANCE_COLUMNS = "user_id, free_remaining, paid_remaining, total_used_overall, free_last_reset_at"


class UsageRepository:
    def __init__(self, db: Database):
        self._db = db

    # -- reads ---------------------------------------------------------------

    async def get_balance(self, user_id: str) -> Balance | None:
        cursor = await self._db.conn.execute(
            f"SELECT {_BALANCE_COLUMNS} FROM balances WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_balance(row) if row else None

    async def list_usage(self, user_id: str, limit: int = 200) -> list[UsageLogEntry]:
        """Usage log for a user, newest first."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM token_usage_log WHERE user_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def usage_totals(self, user_id: str) -> dict[KeyType, int]:
        cursor = await self._db.conn.execute(
            """SELECT key_type, COALESCE(SUM(total_tokens), 0) AS total
               FROM token_usage_log WHERE user_id = ? GROUP BY key_type""",
            (user_id,),
        )
        totals = {key_type: 0 for key_type in KeyType}
        for row in await cursor.fetchall():
            totals[KeyType(row["key_type"])] = row["total"]
        return totals

    async def is_event_processed(self, event_id: str) -> bool:
        cursor = await self._db.conn.execute(
            "SELECT 1 FROM processed_payment_events WHERE event_id = ?", (event_id,)
        )
        return await cursor.fetchone() is not None

    # -- writes (inside a transaction) ----------------------------------------

    @staticmethod
    async def ensure_balance(
        conn: aiosqlite.Connection, user_id: str, free_allowance: int, now: datetime
    ) -> None:
        """Create the balance row with the free allowance if it does not exist."""
        await conn.execute(
            """INSERT INTO balances (user_id, free_remaining, paid_remaining,
                                     total_used_overall, free_last_reset_at)
               VALUES (?, ?, 0, 0, ?)
               ON CONFLICT(user_id) DO NOTHING""",
            (user_id, free_allowance, now.isoformat()),
        )

    @staticmethod
    async def insert_log(conn: aiosqlite.Connection, entry: UsageLogEntry) -> int:
        cursor = await conn.execute(
            """INSERT INTO token_usage_log
               (user_id, provider, model_name, input_tokens, output_tokens, total_tokens,
                interaction_id, slot_number, key_type, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.user_id,
                entry.provider,
                entry.model,
                entry.input_tokens,
                entry.output_tokens,
                entry.total_tokens,
                entry.interaction_id,
                entry.slot_number,
                entry.key_type.value,
                entry.created_at.isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    @staticmethod
    async def debit(
        conn: aiosqlite.Connection, user_id: str, amount: int, capped: bool
    ) -> Balance | None:
        """Consume free tokens first, then paid.

        Strict mode only matches when the full amount is available. Capped mode
        always matches and draws at most what the user holds. Returns None when
        no row matched.
        """
        condition = "" if capped else "AND free_remaining + paid_remaining >= :amount"
        cursor = await conn.execute(
            f"""UPDATE balances SET
                    free_remaining = free_remaining - MIN(free_remaining, :amount),
                    paid_remaining = paid_remaining
                        - MIN(paid_remaining, :amount - MIN(free_remaining, :amount)),
                    total_used_overall = total_used_overall + :amount
                WHERE user_id = :user_id {condition}
                RETURNING {_BALANCE_COLUMNS}""",
            {"user_id": user_id, "amount": amount},
        )
        row = await cursor.fetchone()
        return UsageRepository._row_to_balance(row) if row else None

    @staticmethod
    async def add_own_key_usage(conn: aiosqlite.Connection, user_id: str, amount: int) -> Balance | None:
        cursor = await conn.execute(
            f"""UPDATE balances SET total_used_overall = total_used_overall + ?
                WHERE user_id = ?
                RETURNING {_BALANCE_COLUMNS}""",
            (amount, user_id),
        )
        row = await cursor.fetchone()
        return UsageRepository._row_to_balance(row) if row else None

    @staticmethod
    async def credit_paid(conn: aiosqlite.Connection, user_id: str, tokens: int) -> Balance | None:
        cursor = await conn.execute(
            f"""UPDATE balances SET paid_remaining = paid_remaining + ?
                WHERE user_id = ?
                RETURNING {_BALANCE_COLUMNS}""",
            (tokens, user_id),
        )
        row = await cursor.fetchone()
        return UsageRepository._row_to_balance(row) if row else None

    @staticmethod
    async def mark_event_processed(conn: aiosqlite.Connection, event: ProcessedPaymentEvent) -> bool:
        """Record a payment event id. False if it was already recorded."""
        cursor = await conn.execute(
            """INSERT INTO processed_payment_events
               (event_id, user_id, price_id, quantity, tokens, created_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(event_id) DO NOTHING""",
            (
                event.event_id,
                event.user_id,
                event.price_id,
                event.quantity,
                event.tokens,
                event.created_at.isoformat(),
            ),
        )
        return cursor.rowcount == 1

    @staticmethod
    async def refresh_free_allowance(
        conn: aiosqlite.Connection, allowance: int, cutoff: datetime, now: datetime
    ) -> int:
        """Reset free_remaining on rows last reset before cutoff. Returns row count."""
        cursor = await conn.execute(
            """UPDATE balances SET free_remaining = ?, free_last_reset_at = ?
               WHERE free_last_reset_at IS NULL OR free_last_reset_at <= ?""",
            (allowance, now.isoformat(), cutoff.isoformat()),
        )
        return cursor.rowcount

    # -- row mapping -----------------------------------------------------------

    @staticmethod
    def _row_to_balance(row) -> Balance:
        reset_at = row["free_last_reset_at"]
        return Balance(
            user_id=row["user_id"],
            free_remaining=row["free_remaining"],
            paid_remaining=row["paid_remaining"],
            total_used_overall=row["total_used_overall"],
            free_last_reset_at=datetime.fromisoformat(reset_at) if reset_at else None,
        )

    @staticmethod
    def _row_to_entry(row) -> UsageLogEntry:
        return UsageLogEntry(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            model=row["model_name"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            key_type=KeyType(row["key_type"]),
            interaction_id=row["interaction_id"],
            slot_number=row["slot_number"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
