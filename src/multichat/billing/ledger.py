"""Usage ledger: audit log rows plus free/paid balance accounting."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import aiosqlite

from multichat.config import BillingConfig
from multichat.core.session import require_user
from multichat.core.types import KeyType
from multichat.errors import InsufficientBalance, LogWriteError, PersistenceError
from multichat.log import get_logger
from multichat.storage.database import Database
from multichat.storage.models import Balance, ProcessedPaymentEvent, UsageLogEntry, utcnow
from multichat.storage.usage_repo import UsageRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class CreditResult:
    balance: Balance
    applied: bool  # False when the event id had already been credited


@dataclass
class UsageReport:
    balance: Balance
    entries: list[UsageLogEntry] = field(default_factory=list)
    totals: dict[KeyType, int] = field(default_factory=dict)


class AdmissionBudget:
    """Admission control for calls billed to platform keys.

    The balance is read once, on the first reservation, and every reservation
    is taken from that one snapshot. Calls reserved against the same budget
    therefore cannot each spend the user's whole balance. Nothing is debited
    here; the ledger settles actual usage after the call.
    """

    def __init__(self, ledger: UsageLedger, user_id: str):
        self._ledger = ledger
        self._user_id = user_id
        self._available: int | None = None
        self._lock = asyncio.Lock()

    async def reserve(self, tokens: int) -> None:
        async with self._lock:
            if self._available is None:
                self._available = (await self._ledger.get_balance(self._user_id)).available
            if tokens > self._available:
                logger.info(
                    "admission_denied",
                    user_id=self._user_id,
                    required=tokens,
                    available=self._available,
                )
                raise InsufficientBalance(required=tokens, available=self._available)
            self._available -= tokens


class UsageLedger:
    """Converts provider usage into log rows and balance changes.

    Calls billed to the platform ("provided" keys) are settled against the
    free allowance first, then the paid balance. Calls made with the user's own
    key are logged and counted but never touch free or paid tokens.
    """

    def __init__(self, db: Database, config: BillingConfig):
        self._db = db
        self._repo = UsageRepository(db)
        self._config = config

    async def record(
        self,
        user_id: str,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        key_type: KeyType,
        interaction_id: str | None = None,
        slot_number: int | None = None,
    ) -> UsageLogEntry:
        """Append a usage row and apply the matching balance change atomically."""
        user_id = require_user(user_id)
        entry = UsageLogEntry(
            user_id=user_id,
            provider=provider,
            model=model,
            input_tokens=max(0, int(input_tokens or 0)),
            output_tokens=max(0, int(output_tokens or 0)),
            key_type=key_type,
            interaction_id=interaction_id,
            slot_number=slot_number,
        )
        total = entry.total_tokens

        try:
            async with self._db.transaction() as conn:
                await self._repo.ensure_balance(conn, user_id, self._config.free_allowance, entry.created_at)
                entry_id = await self._repo.insert_log(conn, entry)
                if key_type is KeyType.PROVIDED:
                    # Read only for the shortfall warning; the debit itself is one UPDATE
                    before = await self._repo.get_balance(user_id)
                    balance = await self._repo.debit(conn, user_id, total, capped=True)
                    if before is not None and before.available < total:
                        logger.warning(
                            "usage_settlement_shortfall",
                            user_id=user_id,
                            required=total,
                            available=before.available,
                        )
                else:
                    balance = await self._repo.add_own_key_usage(conn, user_id, total)
        except aiosqlite.Error as e:
            logger.error("usage_record_failed", user_id=user_id, provider=provider, error=str(e))
            raise LogWriteError(f"Failed to record token usage: {e}") from e

        logger.info(
            "usage_recorded",
            user_id=user_id,
            provider=provider,
            model=model,
            total_tokens=total,
            key_type=key_type.value,
            free_remaining=balance.free_remaining if balance else None,
            paid_remaining=balance.paid_remaining if balance else None,
        )
        return UsageLogEntry(
            id=entry_id,
            user_id=entry.user_id,
            provider=entry.provider,
            model=entry.model,
            input_tokens=entry.input_tokens,
            output_tokens=entry.output_tokens,
            key_type=entry.key_type,
            interaction_id=entry.interaction_id,
            slot_number=entry.slot_number,
            created_at=entry.created_at,
        )

    async def debit(self, user_id: str, total_tokens: int) -> Balance:
        """Strict debit: either the full amount is taken or nothing changes."""
        user_id = require_user(user_id)
        if total_tokens < 0:
            raise ValueError("total_tokens must be >= 0")
        try:
            async with self._db.transaction() as conn:
                await self._repo.ensure_balance(conn, user_id, self._config.free_allowance, utcnow())
                balance = await self._repo.debit(conn, user_id, total_tokens, capped=False)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to debit balance: {e}") from e

        if balance is None:
            current = await self.get_balance(user_id)
            raise InsufficientBalance(required=total_tokens, available=current.available)
        logger.info("balance_debited", user_id=user_id, tokens=total_tokens)
        return balance

    async def credit(
        self,
        user_id: str,
        tokens: int,
        event_id: str | None = None,
        price_id: str = "",
        quantity: int = 1,
    ) -> CreditResult:
        """Add purchased tokens. With an event id, a replay changes nothing."""
        user_id = require_user(user_id)
        if tokens <= 0:
            raise ValueError("tokens must be > 0")
        try:
            async with self._db.transaction() as conn:
                now = utcnow()
                processed = ProcessedPaymentEvent(
                    event_id=event_id or "",
                    user_id=user_id,
                    price_id=price_id,
                    quantity=quantity,
                    tokens=tokens,
                    created_at=now,
                )
                if event_id is not None and not await self._repo.mark_event_processed(conn, processed):
                    balance = None
                else:
                    await self._repo.ensure_balance(conn, user_id, self._config.free_allowance, now)
                    balance = await self._repo.credit_paid(conn, user_id, tokens)
        except aiosqlite.Error as e:
            logger.error("balance_credit_failed", user_id=user_id, tokens=tokens, error=str(e))
            raise PersistenceError(f"Failed to credit balance: {e}") from e

        if balance is None:
            logger.info("credit_already_applied", user_id=user_id, event_id=event_id)
            return CreditResult(balance=await self.get_balance(user_id), applied=False)

        logger.info(
            "balance_credited",
            user_id=user_id,
            tokens=tokens,
            event_id=event_id,
            paid_remaining=balance.paid_remaining,
        )
        return CreditResult(balance=balance, applied=True)

    async def get_balance(self, user_id: str) -> Balance:
        """Current balance; a user without a row has the untouched free allowance."""
        user_id = require_user(user_id)
        async with self._db.snapshot():
            balance = await self._repo.get_balance(user_id)
        if balance is None:
            return Balance(
                user_id=user_id,
                free_remaining=self._config.free_allowance,
                paid_remaining=0,
            )
        return balance

    async def can_afford(self, user_id: str, tokens: int) -> bool:
        balance = await self.get_balance(user_id)
        return balance.available >= tokens

    def admission(self, user_id: str) -> AdmissionBudget:
        """Budget for gating platform-billed calls before they are made."""
        return AdmissionBudget(self, require_user(user_id))

    async def usage_report(self, user_id: str, limit: int = 200) -> UsageReport:
        user_id = require_user(user_id)
        return UsageReport(
            balance=await self.get_balance(user_id),
            entries=await self._repo.list_usage(user_id, limit),
            totals=await self._repo.usage_totals(user_id),
        )

    async def refresh_free_allowance(self, now: datetime | None = None) -> int:
        """Reset the free allowance for every balance whose period has elapsed."""
        now = now or utcnow()
        cutoff = now - timedelta(days=self._config.free_reset_days)
        async with self._db.transaction() as conn:
            count = await self._repo.refresh_free_allowance(
                conn, self._config.free_allowance, cutoff, now
            )
        if count:
            logger.info("free_allowance_refreshed", users=count)
        return count
