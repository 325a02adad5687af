"""Concurrent fan-out of one prompt to the configured slots."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import assert_never

from multichat.ai.client import Blocked, Empty, Failure, ProviderResult, Success, Truncated
from multichat.ai.conversation import (
    SlotConfig,
    estimate_tokens,
    parse_model_selection,
    validate_slots,
)
from multichat.ai.registry import AdapterRegistry
from multichat.billing.ledger import AdmissionBudget, UsageLedger
from multichat.config import DispatchConfig
from multichat.core.session import require_user
from multichat.core.types import KeyType, Role
from multichat.errors import MultiChatError, PersistenceError, ProviderError
from multichat.log import get_logger
from multichat.security.vault import CredentialVault
from multichat.storage.interaction_repo import InteractionRepository
from multichat.storage.models import ConversationMessage, Interaction, SlotState, UserSettings

logger = get_logger(__name__)


@dataclass
class SlotResult:
    slot_number: int
    model_used: str
    response_text: str | None = None
    error: str | None = None
    error_code: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    key_type: KeyType | None = None

    @property
    def ok(self) -> bool:
        return self.response_text is not None


@dataclass
class DispatchOutcome:
    interaction_id: str
    slots: list[SlotResult] = field(default_factory=list)
    persisted: bool = True

    def slot(self, slot_number: int) -> SlotResult | None:
        return next((s for s in self.slots if s.slot_number == slot_number), None)


def slots_from_settings(settings: UserSettings) -> list[SlotConfig]:
    """Build slot configs from the stored per-slot model selections."""
    slots: list[SlotConfig] = []
    for slot_number, selection in sorted(settings.slot_models.items()):
        if not selection or not selection.strip():
            continue
        try:
            provider, model = parse_model_selection(selection)
        except ValueError as e:
            logger.warning("slot_selection_invalid", slot=slot_number, selection=selection, error=str(e))
            continue
        slots.append(SlotConfig(slot_number=slot_number, provider=provider, model=model))
    return slots


class DispatchCoordinator:
    """Runs resolve -> admission -> call -> record for every slot concurrently.

    A slot's exception never reaches the caller or its sibling slots; it is
    folded into that slot's SlotResult. After all slots finish, the turn is
    written to the interaction store.
    """

    def __init__(
        self,
        vault: CredentialVault,
        adapters: AdapterRegistry,
        ledger: UsageLedger,
        interactions: InteractionRepository,
        config: DispatchConfig,
    ):
        self._vault = vault
        self._adapters = adapters
        self._ledger = ledger
        self._interactions = interactions
        self._config = config

    async def dispatch(
        self,
        user_id: str,
        prompt: str,
        slot_configs: list[SlotConfig],
        interaction_id: str | None = None,
    ) -> DispatchOutcome:
        user_id = require_user(user_id)
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("prompt cannot be empty")
        validate_slots(slot_configs)

        interaction: Interaction | None = None
        if interaction_id is not None:
            interaction = await self._interactions.get(interaction_id, user_id)
            if interaction is None:
                raise PersistenceError(f"Interaction {interaction_id} not found for this user.")
        else:
            interaction_id = uuid.uuid4().hex

        user_message = ConversationMessage(role=Role.USER, content=prompt)
        budget = self._ledger.admission(user_id)

        async def _run(slot: SlotConfig) -> tuple[SlotResult, str | None]:
            prior = interaction.slot(slot.slot_number) if interaction else None
            history = [*(prior.conversation if prior else []), user_message]
            try:
                return await self._run_slot(user_id, slot, history, interaction_id, budget)
            except MultiChatError as e:
                logger.warning(
                    "slot_failed",
                    user_id=user_id,
                    slot=slot.slot_number,
                    model=slot.model_used,
                    error_code=e.code,
                    error=e.message,
                )
                return SlotResult(slot.slot_number, slot.model_used, error=e.message, error_code=e.code), None
            except Exception as e:
                logger.error(
                    "slot_unexpected_error",
                    user_id=user_id,
                    slot=slot.slot_number,
                    model=slot.model_used,
                    error=str(e),
                )
                return (
                    SlotResult(
                        slot.slot_number,
                        slot.model_used,
                        error=f"Unexpected error: {e}",
                        error_code=ProviderError.code,
                    ),
                    None,
                )

        results = await asyncio.gather(*(_run(slot) for slot in slot_configs))

        outcome = DispatchOutcome(interaction_id=interaction_id, slots=[r for r, _ in results])
        outcome.persisted = await self._persist_turn(user_id, prompt, interaction, interaction_id, results)
        logger.info(
            "dispatch_completed",
            user_id=user_id,
            interaction_id=interaction_id,
            slots=len(results),
            succeeded=sum(1 for r, _ in results if r.ok),
        )
        return outcome

    async def _run_slot(
        self,
        user_id: str,
        slot: SlotConfig,
        history: list[ConversationMessage],
        interaction_id: str,
        budget: AdmissionBudget,
    ) -> tuple[SlotResult, str | None]:
        credential = await self._vault.resolve(user_id, slot.provider)

        if credential.key_type is KeyType.PROVIDED:
            await budget.reserve(estimate_tokens(history, self._config.chars_per_token))

        adapter = self._adapters.require(slot.provider)
        try:
            result = await asyncio.wait_for(
                adapter.call(slot.model, history, credential.api_key),
                timeout=self._config.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{slot.provider.label} did not respond within {self._config.timeout:g} seconds.",
                provider=slot.provider.value,
            ) from e

        if isinstance(result, Success) or result.total_tokens > 0:
            await self._record_usage(user_id, slot, result, credential.key_type, interaction_id)

        slot_result = self._to_slot_result(slot, result)
        slot_result.key_type = credential.key_type
        return slot_result, slot_result.response_text

    async def _record_usage(
        self,
        user_id: str,
        slot: SlotConfig,
        result: ProviderResult,
        key_type: KeyType,
        interaction_id: str,
    ) -> None:
        try:
            await self._ledger.record(
                user_id=user_id,
                provider=slot.provider.value,
                model=slot.model,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                key_type=key_type,
                interaction_id=interaction_id,
                slot_number=slot.slot_number,
            )
        except MultiChatError as e:
            logger.warning("slot_usage_not_recorded", user_id=user_id, slot=slot.slot_number, error=e.message)

    @staticmethod
    def _to_slot_result(slot: SlotConfig, result: ProviderResult) -> SlotResult:
        base = SlotResult(
            slot.slot_number,
            slot.model_used,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        label = slot.provider.label
        match result:
            case Success(text=text):
                base.response_text = text
            case Blocked(reason=reason):
                base.error = f"{label} blocked the response ({reason})."
                base.error_code = "blocked"
            case Truncated():
                base.error = f"{label} response truncated: maximum output length reached."
                base.error_code = "truncated"
            case Empty(reason=reason):
                base.error = f"{label} returned an empty response ({reason})."
                base.error_code = "empty_response"
            case Failure(code=code, message=message):
                base.error = message
                base.error_code = code
            case _:
                assert_never(result)
        return base

    async def _persist_turn(
        self,
        user_id: str,
        prompt: str,
        interaction: Interaction | None,
        interaction_id: str,
        results: list[tuple[SlotResult, str | None]],
    ) -> bool:
        # One delta per slot: the new (user, model) pair and this turn's tokens
        turns: list[SlotState] = []
        for slot_result, reply in results:
            messages = []
            if reply is not None:
                messages = [
                    ConversationMessage(role=Role.USER, content=prompt),
                    ConversationMessage(role=Role.MODEL, content=reply),
                ]
            turns.append(
                SlotState(
                    slot_number=slot_result.slot_number,
                    model_used=slot_result.model_used,
                    conversation=messages,
                    input_tokens=slot_result.input_tokens,
                    output_tokens=slot_result.output_tokens,
                )
            )

        try:
            if interaction is None:
                await self._interactions.create(
                    Interaction(
                        id=interaction_id,
                        user_id=user_id,
                        prompt=prompt,
                        slots={t.slot_number: t for t in turns},
                    )
                )
            else:
                await self._interactions.append_turns(interaction_id, user_id, turns)
        except MultiChatError as e:
            logger.error("turn_persist_failed", user_id=user_id, interaction_id=interaction_id, error=e.message)
            return False
        return True
