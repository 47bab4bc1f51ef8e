"""
Tests for OpenAI reply generation.
"""

import dataclasses
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from src.callrelay.config import get_config
from src.callrelay.llm import (
    EMPTY_REPLY_TEXT,
    GenerationError,
    OpenAIGenerator,
    build_messages,
)

HISTORY = [
    {"role": "system", "content": "You are a helpful AI assistant for Corner Bakery."},
    {"role": "user", "content": "Hi"},
    {"role": "assistant", "content": "Hello! How can I help?"},
]


def completion(text):
    message = SimpleNamespace(content=text)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def mock_client(result=None, error=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=result, side_effect=error)
    client.close = AsyncMock()
    return client


class TestBuildMessages:
    def test_history_then_utterance(self):
        messages = build_messages(HISTORY, "Are you open Sunday?")

        assert messages[:3] == HISTORY
        assert messages[-1] == {"role": "user", "content": "Are you open Sunday?"}
        assert len(messages) == 4

    def test_language_hint_for_non_english(self):
        messages = build_messages(HISTORY, "Vous êtes ouverts ?", "fr")

        assert messages[-2] == {
            "role": "system",
            "content": "The caller is speaking French. Reply in French.",
        }

    def test_no_hint_for_english(self):
        assert len(build_messages(HISTORY, "Hello", "en")) == 4

    def test_history_not_mutated(self):
        history = list(HISTORY)
        build_messages(history, "Hello", "es")

        assert history == HISTORY


class TestOpenAIGenerator:
    @pytest.mark.asyncio
    async def test_generate_returns_reply(self):
        client = mock_client(completion("  We open at 7am.  "))
        generator = OpenAIGenerator(client=client)

        reply = await generator.generate(HISTORY, "When do you open?")

        assert reply == "We open at 7am."
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["stream"] is False
        assert kwargs["messages"][-1] == {"role": "user", "content": "When do you open?"}

    @pytest.mark.asyncio
    async def test_empty_reply_uses_placeholder(self):
        generator = OpenAIGenerator(client=mock_client(completion("")))

        assert await generator.generate(HISTORY, "...") == EMPTY_REPLY_TEXT

    @pytest.mark.asyncio
    async def test_api_error_raises_generation_error(self):
        generator = OpenAIGenerator(client=mock_client(error=OpenAIError("rate limited")))

        with pytest.raises(GenerationError, match="rate limited"):
            await generator.generate(HISTORY, "Hello")

    @pytest.mark.asyncio
    async def test_missing_key_raises_generation_error(self):
        config = dataclasses.replace(get_config(), openai_api_key="")
        generator = OpenAIGenerator(config)

        with pytest.raises(GenerationError, match="OPENAI_API_KEY"):
            await generator.generate(HISTORY, "Hello")

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = mock_client(completion("ok"))
        generator = OpenAIGenerator(client=client)

        await generator.close()

        client.close.assert_awaited_once()
