"""
Reply generation with the OpenAI chat completions API.

The generator is stateless: each call receives the ordered conversation
history (system turn first) plus the caller's latest utterance. Cancellation
and timeouts are applied by the caller through the turn's token; cancelling
the awaiting task aborts the underlying HTTP request.
"""

from typing import Any, Dict, List, Optional, Protocol

import structlog
from openai import AsyncOpenAI, OpenAIError

from src.callrelay.config import get_config
from src.callrelay.language import language_name

logger = structlog.get_logger(__name__)

EMPTY_REPLY_TEXT = "I'm sorry, I didn't catch that."


class GenerationError(Exception):
    """The generation service failed or is not configured."""
    pass


class ResponseGenerator(Protocol):
    async def generate(
        self,
        history: List[Dict[str, str]],
        utterance: str,
        language: Optional[str] = None,
    ) -> str: ...


def build_messages(
    history: List[Dict[str, str]],
    utterance: str,
    language: Optional[str] = None,
) -> List[Dict[str, str]]:
    """Assemble the chat messages: history, optional language hint, then the utterance."""
    messages = list(history)
    name = language_name(language)
    if name and language != "en":
        messages.append({
            "role": "system",
            "content": f"The caller is speaking {name}. Reply in {name}.",
        })
    messages.append({"role": "user", "content": utterance})
    return messages


class OpenAIGenerator:
    """Non-streaming chat completion client."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.config.openai_api_key:
                raise GenerationError("OPENAI_API_KEY not set")
            self._client = AsyncOpenAI(api_key=self.config.openai_api_key)
        return self._client

    async def generate(
        self,
        history: List[Dict[str, str]],
        utterance: str,
        language: Optional[str] = None,
    ) -> str:
        """
        Generate a complete reply.

        Raises:
            GenerationError: missing credentials or an API failure
        """
        client = self._get_client()
        messages = build_messages(history, utterance, language)

        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=False,
            )
        except OpenAIError as e:
            logger.error("LLM generation failed", model=self.model, error=str(e))
            raise GenerationError(str(e)) from e

        text = ""
        if completion.choices:
            text = (completion.choices[0].message.content or "").strip()

        if not text:
            logger.warning("LLM returned an empty reply", model=self.model)
            return EMPTY_REPLY_TEXT

        logger.debug("LLM reply generated", chars=len(text), language=language)
        return text

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
