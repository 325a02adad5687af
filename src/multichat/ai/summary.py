"""Aggregate summary of an interaction's slot responses."""

from __future__ import annotations

import asyncio

from multichat.ai.client import Success, unwrap
from multichat.ai.conversation import estimate_tokens, parse_model_selection
from multichat.ai.registry import AdapterRegistry
from multichat.billing.ledger import UsageLedger
from multichat.config import SummaryConfig
from multichat.core.session import require_user
from multichat.core.types import KeyType, Role
from multichat.errors import MultiChatError, NotConfigured, PersistenceError, ProviderError
from multichat.log import get_logger
from multichat.security.vault import CredentialVault
from multichat.storage.interaction_repo import InteractionRepository
from multichat.storage.models import ConversationMessage, Interaction, SlotState
from multichat.storage.settings_repo import SettingsRepository

logger = get_logger(__name__)

_NO_RESPONSE = "(No response or error received)"


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _latest_pair(slot: SlotState) -> tuple[str | None, str | None]:
    """Most recent (user prompt, model reply) of a slot."""
    prompt = reply = None
    for message in reversed(slot.conversation):
        if message.role is Role.MODEL and reply is None and prompt is None:
            reply = message.content
        elif message.role is Role.USER:
            prompt = message.content
            break
    return prompt, reply


def build_initial_prompt(initial_prompt: str, responses: list[tuple[str, str | None]], limit: int) -> str:
    lines = [
        "Please provide an unbiased, aggregated summary based *only* on the following "
        "AI responses to the user's initial prompt.",
        "",
        f'User\'s Initial Prompt: "{initial_prompt}"',
        "",
        "AI Responses:",
    ]
    lines += _render_responses(responses, limit)
    lines.append(
        "Generate a concise, neutral summary combining the key information from these "
        "initial responses. Focus on presenting the aggregated facts or points without "
        "adding interpretation or bias."
    )
    return "\n".join(lines)


def build_update_prompt(
    previous_summary: str, latest_prompt: str, responses: list[tuple[str, str | None]], limit: int
) -> str:
    lines = [
        "Here is the existing summary of the conversation so far:",
        "",
        "--- Existing Summary ---",
        previous_summary or "(No previous summary provided)",
        "---",
        "",
        "The latest interaction involved this user prompt:",
        f'"{latest_prompt}"',
        "",
        "Here are the AI responses to that latest prompt:",
    ]
    lines += _render_responses(responses, limit)
    lines.append(
        "Please update the existing summary by incorporating the key information from the "
        "latest user prompt and AI responses. Maintain a neutral tone and focus on aggregated "
        "facts. If the new information contradicts or significantly changes previous points, "
        "revise the summary accordingly. Output *only* the new, complete, updated summary."
    )
    return "\n".join(lines)


def _render_responses(responses: list[tuple[str, str | None]], limit: int) -> list[str]:
    lines: list[str] = []
    for index, (model_name, response) in enumerate(responses, start=1):
        lines.append(f"--- Response {index} ({model_name}) ---")
        lines.append(_clip(response, limit) if response else _NO_RESPONSE)
        lines.append("---")
        lines.append("")
    return lines


class SummaryService:
    """Summarizes an interaction with the user's configured summary model."""

    def __init__(
        self,
        settings_repo: SettingsRepository,
        vault: CredentialVault,
        adapters: AdapterRegistry,
        ledger: UsageLedger,
        interactions: InteractionRepository,
        config: SummaryConfig,
        timeout: float,
        chars_per_token: int = 4,
    ):
        self._settings = settings_repo
        self._vault = vault
        self._adapters = adapters
        self._ledger = ledger
        self._interactions = interactions
        self._config = config
        self._timeout = timeout
        self._chars_per_token = chars_per_token

    async def summarize(self, user_id: str, interaction_id: str) -> str:
        user_id = require_user(user_id)
        settings = await self._settings.get(user_id)
        if settings is None or not settings.summary_model:
            raise NotConfigured("Summary model not configured.")
        try:
            provider, model = parse_model_selection(settings.summary_model)
        except ValueError as e:
            raise NotConfigured(f"Summary model is invalid: {e}") from e

        interaction = await self._interactions.get(interaction_id, user_id)
        if interaction is None:
            raise PersistenceError(f"Interaction {interaction_id} not found for this user.")

        prompt = self._build_prompt(interaction)
        credential = await self._vault.resolve(user_id, provider)
        adapter = self._adapters.require(provider)
        history = [ConversationMessage(role=Role.USER, content=prompt)]
        if credential.key_type is KeyType.PROVIDED:
            await self._ledger.admission(user_id).reserve(estimate_tokens(history, self._chars_per_token))
        try:
            result = await asyncio.wait_for(adapter.call(model, history, credential.api_key), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{provider.label} did not respond within {self._timeout:g} seconds.",
                provider=provider.value,
            ) from e

        if isinstance(result, Success) or result.total_tokens > 0:
            try:
                await self._ledger.record(
                    user_id=user_id,
                    provider=provider.value,
                    model=model,
                    input_tokens=result.input_tokens,
                    output_tokens=result.output_tokens,
                    key_type=credential.key_type,
                    interaction_id=interaction_id,
                )
            except MultiChatError as e:
                logger.warning("summary_usage_not_recorded", user_id=user_id, error=e.message)

        summary = unwrap(result, provider)
        await self._interactions.update_summary(interaction_id, user_id, summary)
        logger.info(
            "summary_updated",
            user_id=user_id,
            interaction_id=interaction_id,
            initial=interaction.summary is None,
        )
        return summary

    def _build_prompt(self, interaction: Interaction) -> str:
        limit = self._config.max_response_chars
        slots = [interaction.slots[n] for n in sorted(interaction.slots)]

        if interaction.summary is None:
            responses = []
            for slot in slots:
                first_reply = next((m.content for m in slot.conversation if m.role is Role.MODEL), None)
                responses.append((slot.model_used, first_reply))
            return build_initial_prompt(interaction.prompt, responses, limit)

        pairs = [(slot, *_latest_pair(slot)) for slot in slots]
        # The slot with the longest thread carries the most recent prompt
        longest = max(slots, key=lambda s: len(s.conversation), default=None)
        latest_prompt = (_latest_pair(longest)[0] if longest else None) or interaction.prompt
        responses = [(slot.model_used, reply if prompt == latest_prompt else None) for slot, prompt, reply in pairs]
        return build_update_prompt(interaction.summary, latest_prompt, responses, limit)
