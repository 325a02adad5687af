"""Tests for history helpers, slot selections and result unwrapping."""

import pytest

from multichat import errors
from multichat.ai.client import Blocked, Empty, Failure, Success, Truncated, describe_status, unwrap
from multichat.ai.conversation import estimate_tokens, parse_model_selection, to_chat_messages
from multichat.core.types import Provider, Role
from multichat.storage.models import ConversationMessage


class TestModelSelection:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("openai:gpt-4o", (Provider.OPENAI, "gpt-4o")),
            ("ChatGPT: gpt-4o-mini", (Provider.OPENAI, "gpt-4o-mini")),
            ("Gemini: gemini-2.0-flash", (Provider.GEMINI, "gemini-2.0-flash")),
            ("anthropic:claude-sonnet-4-5", (Provider.ANTHROPIC, "claude-sonnet-4-5")),
            ("openai:ft:gpt-4o:org:custom", (Provider.OPENAI, "ft:gpt-4o:org:custom")),
        ],
    )
    def test_parse(self, value, expected):
        assert parse_model_selection(value) == expected

    @pytest.mark.parametrize("value", ["gpt-4o", "openai:", "perplexity:sonar"])
    def test_parse_rejects(self, value):
        with pytest.raises(ValueError):
            parse_model_selection(value)


class TestHistoryHelpers:
    def test_estimate_rounds_up(self):
        history = [ConversationMessage(Role.USER, "abcde"), ConversationMessage(Role.MODEL, "fgh")]

        assert estimate_tokens(history, 4) == 2

    def test_chat_messages_use_requested_model_role(self):
        history = [ConversationMessage(Role.USER, "q"), ConversationMessage(Role.MODEL, "a")]

        assert to_chat_messages(history, model_role="model")[1] == {"role": "model", "content": "a"}


class TestUnwrap:
    """Each non-success variant maps to its error class."""

    def test_success_returns_text(self):
        assert unwrap(Success(text="ok"), Provider.OPENAI) == "ok"

    @pytest.mark.parametrize(
        "result, error_type",
        [
            (Blocked(reason="SAFETY"), errors.Blocked),
            (Truncated(reason="length", partial_text="par"), errors.Truncated),
            (Empty(reason="no text"), errors.EmptyResponse),
            (Failure(code="provider_error", message="boom", status=502), errors.ProviderError),
        ],
    )
    def test_non_success_raises(self, result, error_type):
        with pytest.raises(error_type):
            unwrap(result, Provider.GEMINI)

    def test_truncated_keeps_partial_text(self):
        with pytest.raises(errors.Truncated) as exc_info:
            unwrap(Truncated(reason="length", partial_text="par"), Provider.OPENAI)

        assert exc_info.value.partial_text == "par"


class TestDescribeStatus:
    @pytest.mark.parametrize(
        "status, fragment",
        [
            (401, "Invalid OpenAI API key"),
            (403, "Permission denied by OpenAI"),
            (404, "model 'gpt-x' not found"),
            (429, "rate limit exceeded"),
            (400, "Invalid request to OpenAI: bad thing"),
            (503, "server error (503)"),
            (None, "bad thing"),
        ],
    )
    def test_messages(self, status, fragment):
        assert fragment in describe_status(Provider.OPENAI, status, "gpt-x", "bad thing")
