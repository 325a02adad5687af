"""Conversation history helpers and slot model selections."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from multichat.core.types import MAX_SLOTS, Provider, Role
from multichat.storage.models import ConversationMessage


@dataclass(frozen=True)
class SlotConfig:
    """A slot number bound to one provider model."""

    slot_number: int
    provider: Provider
    model: str

    @property
    def model_used(self) -> str:
        return f"{self.provider.value}:{self.model}"


def parse_model_selection(value: str) -> tuple[Provider, str]:
    """Parse ``"provider:model"``, also accepting stored labels like ``"ChatGPT: gpt-4o"``."""
    provider_part, sep, model = value.partition(":")
    model = model.strip()
    if not sep or not model:
        raise ValueError(f"model selection must look like 'provider:model', got {value!r}")
    return Provider.parse(provider_part), model


def validate_slots(slots: list[SlotConfig]) -> None:
    if not slots:
        raise ValueError("at least one slot is required")
    seen: set[int] = set()
    for slot in slots:
        if not 1 <= slot.slot_number <= MAX_SLOTS:
            raise ValueError(f"slot number must be 1..{MAX_SLOTS}, got {slot.slot_number}")
        if slot.slot_number in seen:
            raise ValueError(f"duplicate slot number {slot.slot_number}")
        if not slot.model.strip():
            raise ValueError(f"slot {slot.slot_number} has no model")
        seen.add(slot.slot_number)


def drop_blank(history: list[ConversationMessage]) -> list[ConversationMessage]:
    return [m for m in history if m.content and m.content.strip()]


def to_chat_messages(history: list[ConversationMessage], model_role: str = "assistant") -> list[dict[str, Any]]:
    """Convert stored messages into ``{"role", "content"}`` dicts for chat-style APIs."""
    return [
        {"role": model_role if m.role is Role.MODEL else "user", "content": m.content}
        for m in drop_blank(history)
    ]


def estimate_tokens(history: list[ConversationMessage], chars_per_token: int) -> int:
    """Rough pre-call token estimate used for admission control."""
    chars = sum(len(m.content) for m in history)
    return math.ceil(chars / max(1, chars_per_token))
