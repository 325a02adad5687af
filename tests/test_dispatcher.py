"""Tests for concurrent slot dispatch, isolation, billing and persistence."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from multichat.ai.client import Blocked, Failure, Success
from multichat.ai.conversation import SlotConfig
from multichat.ai.dispatcher import DispatchCoordinator, slots_from_settings
from multichat.config import BillingConfig, DispatchConfig
from multichat.billing.ledger import UsageLedger
from multichat.core.types import KeyType, Provider, Role
from multichat.errors import LogWriteError, PersistenceError, Unauthorized
from multichat.storage.models import UserSettings
from tests.conftest import PLATFORM_KEYS, fake_adapter

SLOTS = [
    SlotConfig(1, Provider.OPENAI, "gpt-4o-mini"),
    SlotConfig(2, Provider.ANTHROPIC, "claude-haiku-4-5"),
    SlotConfig(3, Provider.GEMINI, "gemini-2.0-flash"),
]


@pytest.fixture
def adapters(registry):
    registry.register(fake_adapter(Provider.OPENAI, Success(text="From OpenAI", input_tokens=10, output_tokens=5)))
    registry.register(fake_adapter(Provider.ANTHROPIC, Success(text="From Claude", input_tokens=8, output_tokens=4)))
    registry.register(fake_adapter(Provider.GEMINI, Success(text="From Gemini", input_tokens=6, output_tokens=3)))
    return registry


@pytest.fixture
def big_ledger(db):
    return UsageLedger(db, BillingConfig(free_allowance=10000))


@pytest.fixture
def coordinator(vault, adapters, big_ledger, interaction_repo, dispatch_config):
    return DispatchCoordinator(vault, adapters, big_ledger, interaction_repo, dispatch_config)


async def _usage_rows(db, user_id):
    cursor = await db.conn.execute(
        "SELECT provider, key_type, total_tokens, slot_number, interaction_id FROM token_usage_log WHERE user_id = ?",
        (user_id,),
    )
    return [dict(row) for row in await cursor.fetchall()]


class TestFanOut:
    """Tests for the three-provider happy path."""

    @pytest.mark.asyncio
    async def test_three_providers_with_platform_keys(self, coordinator, vault, big_ledger, db, adapters):
        await vault.set_use_provided_keys("alice", True)

        outcome = await coordinator.dispatch("alice", "Hello", SLOTS)

        assert [s.response_text for s in outcome.slots] == ["From OpenAI", "From Claude", "From Gemini"]
        assert all(s.key_type is KeyType.PROVIDED for s in outcome.slots)
        rows = await _usage_rows(db, "alice")
        assert len(rows) == 3
        assert {r["key_type"] for r in rows} == {"provided"}
        assert {r["interaction_id"] for r in rows} == {outcome.interaction_id}
        balance = await big_ledger.get_balance("alice")
        assert balance.free_remaining == 10000 - (15 + 12 + 9)

        openai_adapter = adapters.get(Provider.OPENAI)
        model, history, api_key = openai_adapter.call.call_args.args
        assert model == "gpt-4o-mini"
        assert api_key == PLATFORM_KEYS[Provider.OPENAI]
        assert [(m.role, m.content) for m in history] == [(Role.USER, "Hello")]

    @pytest.mark.asyncio
    async def test_own_keys_leave_balance_untouched(self, coordinator, vault, big_ledger, db):
        await vault.store_credential("bob", Provider.OPENAI, "sk-bob")

        outcome = await coordinator.dispatch("bob", "Hi", SLOTS[:1])

        assert outcome.slots[0].key_type is KeyType.USER
        rows = await _usage_rows(db, "bob")
        assert [r["key_type"] for r in rows] == ["user"]
        balance = await big_ledger.get_balance("bob")
        assert balance.free_remaining == 10000
        assert balance.total_used_overall == 15


class TestIsolation:
    """One slot's failure never affects the others."""

    @pytest.mark.asyncio
    async def test_transport_error_in_one_slot(self, coordinator, vault, adapters):
        await vault.set_use_provided_keys("alice", True)
        adapters.register(
            fake_adapter(
                Provider.ANTHROPIC,
                Failure(code="provider_error", message="Could not reach Anthropic", status=None),
            )
        )

        outcome = await coordinator.dispatch("alice", "Hello", SLOTS)

        assert [s.ok for s in outcome.slots] == [True, False, True]
        assert outcome.slot(2).error_code == "provider_error"
        assert outcome.slot(2).error == "Could not reach Anthropic"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, coordinator, vault, adapters):
        await vault.set_use_provided_keys("alice", True)
        adapters.register(fake_adapter(Provider.GEMINI, error=RuntimeError("socket closed")))

        outcome = await coordinator.dispatch("alice", "Hello", SLOTS)

        assert outcome.slot(1).ok and outcome.slot(2).ok
        assert outcome.slot(3).error_code == "provider_error"
        assert "socket closed" in outcome.slot(3).error

    @pytest.mark.asyncio
    async def test_timeout_becomes_provider_error(self, vault, adapters, big_ledger, interaction_repo):
        await vault.set_use_provided_keys("alice", True)

        async def _slow(*args):
            await asyncio.sleep(5)

        adapters.get(Provider.OPENAI).call.side_effect = _slow
        coordinator = DispatchCoordinator(
            vault, adapters, big_ledger, interaction_repo, DispatchConfig(timeout=0.05)
        )

        outcome = await coordinator.dispatch("alice", "Hello", SLOTS)

        assert outcome.slot(1).error_code == "provider_error"
        assert "did not respond" in outcome.slot(1).error
        assert outcome.slot(2).ok

    @pytest.mark.asyncio
    async def test_ledger_write_failure_keeps_the_answer(self, coordinator, vault, big_ledger):
        await vault.set_use_provided_keys("alice", True)

        with patch.object(big_ledger, "record", AsyncMock(side_effect=LogWriteError("disk I/O error"))):
            outcome = await coordinator.dispatch("alice", "Hello", SLOTS)

        assert [s.response_text for s in outcome.slots] == ["From OpenAI", "From Claude", "From Gemini"]
        assert all(s.error is None for s in outcome.slots)
        assert outcome.persisted

    @pytest.mark.asyncio
    async def test_missing_credential_is_reported_per_slot(self, coordinator, vault):
        await vault.store_credential("bob", Provider.OPENAI, "sk-bob")

        outcome = await coordinator.dispatch("bob", "Hi", SLOTS)

        assert outcome.slot(1).ok
        assert outcome.slot(2).error_code == "not_configured"
        assert outcome.slot(3).error_code == "not_configured"


class TestAdmission:
    @pytest.mark.asyncio
    async def test_insufficient_balance_blocks_call(self, vault, adapters, interaction_repo, db, dispatch_config):
        ledger = UsageLedger(db, BillingConfig(free_allowance=2))
        coordinator = DispatchCoordinator(vault, adapters, ledger, interaction_repo, dispatch_config)
        await vault.set_use_provided_keys("alice", True)

        outcome = await coordinator.dispatch("alice", "A prompt that is clearly longer than eight chars", SLOTS[:1])

        assert outcome.slot(1).error_code == "insufficient_balance"
        adapters.get(Provider.OPENAI).call.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_slots_share_one_balance(self, vault, adapters, interaction_repo, db, dispatch_config):
        # "Hello" estimates to 2 tokens per slot; 5 tokens cover two slots, not three
        ledger = UsageLedger(db, BillingConfig(free_allowance=5))
        coordinator = DispatchCoordinator(vault, adapters, ledger, interaction_repo, dispatch_config)
        await vault.set_use_provided_keys("alice", True)

        outcome = await coordinator.dispatch("alice", "Hello", SLOTS)

        codes = sorted(s.error_code or "ok" for s in outcome.slots)
        assert codes == ["insufficient_balance", "ok", "ok"]
        assert sum(a.call.await_count for a in (adapters.get(p) for p in Provider)) == 2

    @pytest.mark.asyncio
    async def test_blocked_response_still_bills_reported_usage(self, coordinator, vault, adapters, db):
        await vault.set_use_provided_keys("alice", True)
        adapters.register(fake_adapter(Provider.OPENAI, Blocked(reason="content_filter", input_tokens=9, output_tokens=0)))

        outcome = await coordinator.dispatch("alice", "Hello", SLOTS[:1])

        assert outcome.slot(1).error_code == "blocked"
        rows = await _usage_rows(db, "alice")
        assert [r["total_tokens"] for r in rows] == [9]


class TestPersistence:
    """Tests for writing turns into the interaction store."""

    @pytest.mark.asyncio
    async def test_new_interaction_records_successful_pairs_only(self, coordinator, vault, adapters, interaction_repo):
        await vault.set_use_provided_keys("alice", True)
        adapters.register(fake_adapter(Provider.GEMINI, Failure(code="provider_error", message="down", status=503)))

        outcome = await coordinator.dispatch("alice", "Hello", SLOTS)

        assert outcome.persisted
        stored = await interaction_repo.get(outcome.interaction_id, "alice")
        assert stored.prompt == "Hello"
        assert [(m.role, m.content) for m in stored.slot(1).conversation] == [
            (Role.USER, "Hello"),
            (Role.MODEL, "From OpenAI"),
        ]
        assert stored.slot(1).input_tokens == 10
        assert stored.slot(3).conversation == []

    @pytest.mark.asyncio
    async def test_continuation_sends_prior_history(self, coordinator, vault, adapters, interaction_repo):
        await vault.set_use_provided_keys("alice", True)
        first = await coordinator.dispatch("alice", "Hello", SLOTS[:1])

        second = await coordinator.dispatch("alice", "And then?", SLOTS[:1], interaction_id=first.interaction_id)

        assert second.interaction_id == first.interaction_id
        history = adapters.get(Provider.OPENAI).call.call_args.args[1]
        assert [m.content for m in history] == ["Hello", "From OpenAI", "And then?"]
        stored = await interaction_repo.get(first.interaction_id, "alice")
        assert len(stored.slot(1).conversation) == 4
        assert stored.slot(1).output_tokens == 10

    @pytest.mark.asyncio
    async def test_concurrent_continuations_keep_every_turn(self, coordinator, vault, adapters, interaction_repo):
        await vault.set_use_provided_keys("alice", True)

        async def _reply(model, history, api_key):
            await asyncio.sleep(0.05)
            return Success(text=f"reply to {history[-1].content}", input_tokens=1, output_tokens=1)

        adapters.get(Provider.OPENAI).call.side_effect = _reply
        first = await coordinator.dispatch("alice", "one", SLOTS[:1])

        await asyncio.gather(
            coordinator.dispatch("alice", "two", SLOTS[:1], interaction_id=first.interaction_id),
            coordinator.dispatch("alice", "three", SLOTS[:1], interaction_id=first.interaction_id),
        )

        stored = await interaction_repo.get(first.interaction_id, "alice")
        contents = [m.content for m in stored.slot(1).conversation]
        assert len(contents) == 6
        assert contents[:2] == ["one", "reply to one"]
        assert {"two", "reply to two", "three", "reply to three"} == set(contents[2:])
        assert stored.slot(1).input_tokens == 3

    @pytest.mark.asyncio
    async def test_other_users_interaction_is_rejected(self, coordinator, vault):
        await vault.set_use_provided_keys("alice", True)
        first = await coordinator.dispatch("alice", "Hello", SLOTS[:1])

        with pytest.raises(PersistenceError):
            await coordinator.dispatch("mallory", "Hi", SLOTS[:1], interaction_id=first.interaction_id)


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "slots",
        [
            [],
            [SlotConfig(7, Provider.OPENAI, "gpt-4o")],
            [SlotConfig(1, Provider.OPENAI, "gpt-4o"), SlotConfig(1, Provider.GEMINI, "gemini-2.0-flash")],
        ],
    )
    async def test_bad_slot_lists_are_rejected(self, coordinator, slots):
        with pytest.raises(ValueError):
            await coordinator.dispatch("alice", "Hello", slots)

    @pytest.mark.asyncio
    async def test_blank_prompt_is_rejected(self, coordinator):
        with pytest.raises(ValueError):
            await coordinator.dispatch("alice", "   ", SLOTS)

    @pytest.mark.asyncio
    async def test_anonymous_caller_is_unauthorized(self, coordinator):
        with pytest.raises(Unauthorized):
            await coordinator.dispatch(None, "Hello", SLOTS)


class TestSlotsFromSettings:
    def test_parses_canonical_and_legacy_selections(self):
        settings = UserSettings(
            user_id="alice",
            slot_models={
                3: "gemini:gemini-2.0-flash",
                1: "ChatGPT: gpt-4o",
                2: "",
                4: "mystery:model",
                5: "Anthropic: claude-sonnet-4-5",
            },
        )

        slots = slots_from_settings(settings)

        assert slots == [
            SlotConfig(1, Provider.OPENAI, "gpt-4o"),
            SlotConfig(3, Provider.GEMINI, "gemini-2.0-flash"),
            SlotConfig(5, Provider.ANTHROPIC, "claude-sonnet-4-5"),
        ]
