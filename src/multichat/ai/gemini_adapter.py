"""Google Gemini adapter (google-genai SDK)."""

from __future__ import annotations

from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from multichat.ai.client import Blocked, Empty, Failure, ProviderAdapter, ProviderResult, Success, Truncated
from multichat.ai.conversation import drop_blank
from multichat.core.types import Provider, Role
from multichat.storage.models import ConversationMessage

BLOCKING_FINISH_REASONS = frozenset({"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"})


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value))


class GeminiAdapter(ProviderAdapter):
    provider = Provider.GEMINI

    def _default_client(self, api_key: str) -> genai.Client:
        return genai.Client(
            api_key=api_key,
            http_options=types.HttpOptions(
                base_url=self._config.base_url,
                timeout=int(self._config.timeout * 1000),  # milliseconds
            ),
        )

    @staticmethod
    def _build_contents(history: list[ConversationMessage]) -> list[types.Content]:
        return [
            types.Content(
                role="model" if m.role is Role.MODEL else "user",
                parts=[types.Part(text=m.content)],
            )
            for m in drop_blank(history)
        ]

    async def _complete(self, client: Any, model: str, history: list[ConversationMessage]) -> ProviderResult:
        response = await client.aio.models.generate_content(
            model=model,
            contents=self._build_contents(history),
            config=types.GenerateContentConfig(max_output_tokens=self._config.max_output_tokens),
        )

        usage = getattr(response, "usage_metadata", None)
        reported = {
            "input_tokens": getattr(usage, "prompt_token_count", 0) or 0,
            "output_tokens": getattr(usage, "candidates_token_count", 0) or 0,
        }

        feedback = getattr(response, "prompt_feedback", None)
        block_reason = _enum_name(getattr(feedback, "block_reason", None))
        if block_reason:
            return Blocked(reason=block_reason, **reported)

        if not response.candidates:
            return Empty(reason="no candidates returned", **reported)

        candidate = response.candidates[0]
        finish_reason = _enum_name(candidate.finish_reason)
        if finish_reason in BLOCKING_FINISH_REASONS:
            return Blocked(reason=finish_reason, **reported)

        parts = candidate.content.parts if candidate.content and candidate.content.parts else []
        text = "".join(p.text for p in parts if getattr(p, "text", None)).strip()

        if finish_reason == "MAX_TOKENS":
            return Truncated(reason="MAX_TOKENS", partial_text=text or None, **reported)
        if not text:
            return Empty(reason=f"finish_reason={finish_reason}", **reported)
        return Success(text=text, **reported)

    def _translate_error(self, exc: Exception, model: str) -> Failure | None:
        if isinstance(exc, genai_errors.APIError):
            return self._failure(exc.code, model, exc.message)
        return None
