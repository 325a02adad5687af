"""OpenAI chat-completions adapter."""

from __future__ import annotations

from typing import Any

import openai

from multichat.ai.client import Blocked, Empty, Failure, ProviderAdapter, ProviderResult, Success, Truncated
from multichat.ai.conversation import to_chat_messages
from multichat.core.types import Provider
from multichat.storage.models import ConversationMessage


class OpenAIAdapter(ProviderAdapter):
    provider = Provider.OPENAI

    def _default_client(self, api_key: str) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            max_retries=0,
        )

    async def _complete(self, client: Any, model: str, history: list[ConversationMessage]) -> ProviderResult:
        completion = await client.chat.completions.create(
            model=model,
            messages=to_chat_messages(history, model_role="assistant"),
            max_completion_tokens=self._config.max_output_tokens,
        )

        usage = getattr(completion, "usage", None)
        reported = {
            "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
        }

        if not completion.choices:
            return Empty(reason="no choices returned", **reported)

        choice = completion.choices[0]
        message = choice.message
        refusal = getattr(message, "refusal", None)
        if choice.finish_reason == "content_filter" or refusal:
            return Blocked(reason=refusal or "content_filter", **reported)

        text = (message.content or "").strip()
        if choice.finish_reason == "length":
            return Truncated(reason="length", partial_text=text or None, **reported)
        if not text:
            return Empty(reason=f"finish_reason={choice.finish_reason}", **reported)
        return Success(text=text, **reported)

    def _translate_error(self, exc: Exception, model: str) -> Failure | None:
        if isinstance(exc, openai.APIStatusError):
            return self._failure(exc.status_code, model, exc.message)
        if isinstance(exc, openai.APIConnectionError):
            return Failure(
                code="provider_error",
                message=f"Could not reach OpenAI: {exc}",
            )
        if isinstance(exc, openai.APIError):
            return self._failure(None, model, exc.message)
        return None
