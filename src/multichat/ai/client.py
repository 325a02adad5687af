"""Provider adapter abstraction and the normalized call result."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Union

from multichat import errors
from multichat.ai.conversation import drop_blank
from multichat.config import ProviderConfig
from multichat.core.types import Provider
from multichat.log import get_logger
from multichat.storage.models import ConversationMessage

logger = get_logger(__name__)


@dataclass(frozen=True, kw_only=True)
class _Reported:
    """Usage reported by the provider; zero when the response omits it."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, kw_only=True)
class Success(_Reported):
    text: str


@dataclass(frozen=True, kw_only=True)
class Blocked(_Reported):
    reason: str


@dataclass(frozen=True, kw_only=True)
class Truncated(_Reported):
    reason: str
    partial_text: str | None = None


@dataclass(frozen=True, kw_only=True)
class Empty(_Reported):
    reason: str


@dataclass(frozen=True, kw_only=True)
class Failure(_Reported):
    code: str
    message: str
    status: int | None = None


ProviderResult = Union[Success, Blocked, Truncated, Empty, Failure]

ClientFactory = Callable[[str], Any]


def describe_status(provider: Provider, status: int | None, model: str, message: str | None) -> str:
    """User-facing message for an HTTP error returned by a provider."""
    label = provider.label
    match status:
        case 401:
            return f"Invalid {label} API key provided. Please check your key in Settings."
        case 403:
            return f"Permission denied by {label}. Check API key permissions or account status."
        case 404:
            return f"{label} model '{model}' not found or unavailable."
        case 429:
            return f"{label} rate limit exceeded. Please try again later."
        case 400:
            return f"Invalid request to {label}: {message or 'bad request'}"
        case int() if status >= 500:
            return f"{label} server error ({status}). Please try again later."
    return message or f"Failed to get response from {label}."


def unwrap(result: ProviderResult, provider: Provider) -> str:
    """Return the text of a Success, or raise the matching error."""
    label = provider.label
    match result:
        case Success(text=text):
            return text
        case Blocked(reason=reason):
            raise errors.Blocked(f"{label} blocked the response ({reason}).", reason=reason)
        case Truncated(partial_text=partial):
            raise errors.Truncated(
                f"{label} response truncated: maximum output length reached.",
                partial_text=partial,
            )
        case Empty(reason=reason):
            raise errors.EmptyResponse(f"{label} returned an empty response ({reason}).")
        case Failure(message=message, status=status):
            raise errors.ProviderError(message, provider=provider.value, status=status)


class ProviderAdapter(ABC):
    """Normalizes one provider's SDK into ``call(model, history) -> ProviderResult``.

    A fresh SDK client is built per call from the resolved credential, so no
    plaintext key outlives the call. Tests inject ``client_factory``.
    """

    provider: Provider

    def __init__(self, config: ProviderConfig, client_factory: ClientFactory | None = None):
        self._config = config
        self._client_factory = client_factory or self._default_client

    @abstractmethod
    def _default_client(self, api_key: str) -> Any:
        ...

    @abstractmethod
    async def _complete(self, client: Any, model: str, history: list[ConversationMessage]) -> ProviderResult:
        """Issue the request and classify the response."""
        ...

    @abstractmethod
    def _translate_error(self, exc: Exception, model: str) -> Failure | None:
        """Map an SDK exception to a Failure, or None to let it propagate."""
        ...

    async def call(self, model: str, history: list[ConversationMessage], api_key: str) -> ProviderResult:
        messages = drop_blank(history)
        if not messages:
            return Empty(reason="no non-blank messages to send")

        client = self._client_factory(api_key)
        logger.debug("provider_request", provider=self.provider.value, model=model, message_count=len(messages))
        try:
            result = await self._complete(client, model, messages)
        except Exception as e:
            failure = self._translate_error(e, model)
            if failure is None:
                raise
            logger.warning(
                "provider_call_failed",
                provider=self.provider.value,
                model=model,
                status=failure.status,
                error=str(e),
            )
            return failure

        logger.debug(
            "provider_response",
            provider=self.provider.value,
            model=model,
            outcome=type(result).__name__,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )
        return result

    def _failure(self, status: int | None, model: str, message: str | None) -> Failure:
        return Failure(
            code="provider_error",
            message=describe_status(self.provider, status, model, message),
            status=status,
        )
