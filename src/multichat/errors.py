"""Error taxonomy shared by the vault, adapters, ledger and reconciler."""

from __future__ import annotations

from typing import Any


class MultiChatError(Exception):
    """Base class. ``code`` is stable and safe to show to callers."""

    code = "error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class Unauthorized(MultiChatError):
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required."):
        super().__init__(message)


class NotConfigured(MultiChatError):
    """No credential (or model selection) exists for what was requested."""

    code = "not_configured"

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, provider=provider)
        self.provider = provider


class DecryptionFailed(MultiChatError):
    """A stored credential exists but cannot be decrypted."""

    code = "decryption_failed"

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, provider=provider)
        self.provider = provider


class ProviderError(MultiChatError):
    code = "provider_error"

    def __init__(self, message: str, provider: str | None = None, status: int | None = None):
        super().__init__(message, provider=provider, status=status)
        self.provider = provider
        self.status = status


class EmptyResponse(MultiChatError):
    code = "empty_response"


class Blocked(MultiChatError):
    code = "blocked"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message, reason=reason)
        self.reason = reason


class Truncated(MultiChatError):
    code = "truncated"

    def __init__(self, message: str, partial_text: str | None = None):
        super().__init__(message)
        self.partial_text = partial_text


class InsufficientBalance(MultiChatError):
    code = "insufficient_balance"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient token balance: {required} required, {available} available.",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class LogWriteError(MultiChatError):
    code = "log_write_error"


class BadSignature(MultiChatError):
    code = "bad_signature"


class UnknownEvent(MultiChatError):
    code = "unknown_event"


class PersistenceError(MultiChatError):
    code = "persistence_error"
