"""Anthropic Messages API adapter."""

from __future__ import annotations

from typing import Any

import anthropic

from multichat.ai.client import Blocked, Empty, Failure, ProviderAdapter, ProviderResult, Success, Truncated
from multichat.ai.conversation import to_chat_messages
from multichat.core.types import Provider
from multichat.storage.models import ConversationMessage


class AnthropicAdapter(ProviderAdapter):
    provider = Provider.ANTHROPIC

    def _default_client(self, api_key: str) -> anthropic.AsyncAnthropic:
        return anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            max_retries=0,
        )

    async def _complete(self, client: Any, model: str, history: list[ConversationMessage]) -> ProviderResult:
        response = await client.messages.create(
            model=model,
            max_tokens=self._config.max_output_tokens,
            messages=to_chat_messages(history, model_role="assistant"),
        )

        usage = getattr(response, "usage", None)
        reported = {
            "input_tokens": getattr(usage, "input_tokens", 0) or 0,
            "output_tokens": getattr(usage, "output_tokens", 0) or 0,
        }

        text = "".join(
            block.text for block in (response.content or []) if block.type == "text"
        ).strip()

        match response.stop_reason:
            case "refusal":
                return Blocked(reason="refusal", **reported)
            case "max_tokens":
                return Truncated(reason="max_tokens", partial_text=text or None, **reported)
        if not text:
            return Empty(reason=f"stop_reason={response.stop_reason}", **reported)
        return Success(text=text, **reported)

    def _translate_error(self, exc: Exception, model: str) -> Failure | None:
        if isinstance(exc, anthropic.APIStatusError):
            return self._failure(exc.status_code, model, exc.message)
        if isinstance(exc, anthropic.APIConnectionError):
            return Failure(code="provider_error", message=f"Could not reach Anthropic: {exc}")
        if isinstance(exc, anthropic.APIError):
            return self._failure(None, model, exc.message)
        return None
