"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from multichat.core.types import MAX_SLOTS, KeyType, Provider, Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> ConversationMessage:
        return cls(role=Role(data["role"]), content=data["content"])


@dataclass
class SlotState:
    """One provider/model column of an interaction."""

    slot_number: int
    model_used: str  # "provider:model"
    conversation: list[ConversationMessage] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Interaction:
    user_id: str
    prompt: str
    id: str = ""
    title: Optional[str] = None
    summary: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    slots: dict[int, SlotState] = field(default_factory=dict)

    def slot(self, slot_number: int) -> SlotState | None:
        return self.slots.get(slot_number)


@dataclass
class UserSettings:
    user_id: str
    encrypted_keys: dict[Provider, str] = field(default_factory=dict)
    use_provided_keys: bool = False
    slot_models: dict[int, str] = field(default_factory=dict)  # slot_number -> "provider:model"
    summary_model: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        for slot_number in self.slot_models:
            if not 1 <= slot_number <= MAX_SLOTS:
                raise ValueError(f"slot number must be 1..{MAX_SLOTS}, got {slot_number}")


@dataclass(frozen=True)
class Balance:
    user_id: str
    free_remaining: int
    paid_remaining: int
    total_used_overall: int = 0
    free_last_reset_at: Optional[datetime] = None

    @property
    def available(self) -> int:
        return self.free_remaining + self.paid_remaining


@dataclass(frozen=True)
class UsageLogEntry:
    """Append-only audit row; never updated or deleted."""

    user_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    key_type: KeyType
    interaction_id: Optional[str] = None
    slot_number: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class ProcessedPaymentEvent:
    event_id: str
    user_id: str
    price_id: str
    quantity: int
    tokens: int
    created_at: datetime = field(default_factory=utcnow)
