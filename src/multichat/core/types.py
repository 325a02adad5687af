"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum

MAX_SLOTS = 6


class Provider(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: str) -> Provider:
        """Accept canonical names and the labels used by stored model selections."""
        normalized = value.strip().lower()
        normalized = _PROVIDER_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ValueError(f"unsupported provider: {value}") from exc

    @property
    def label(self) -> str:
        return _PROVIDER_LABELS[self]


_PROVIDER_LABELS = {
    Provider.OPENAI: "OpenAI",
    Provider.ANTHROPIC: "Anthropic",
    Provider.GEMINI: "Google Gemini",
}

_PROVIDER_ALIASES = {
    "chatgpt": "openai",
    "google": "gemini",
    "claude": "anthropic",
}


class Role(StrEnum):
    USER = "user"
    MODEL = "model"


class KeyType(StrEnum):
    USER = "user"  # User-owned credential, unmetered
    PROVIDED = "provided"  # Platform credential, billed against Balance
