"""
ElevenLabs speech synthesis over HTTP streaming.

Audio is requested as `ulaw_8000`, which is exactly what Twilio Media Streams
plays, so response bytes are relayed without any transcoding.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

import httpx
import structlog

from src.callrelay.audio_relay import AudioStream
from src.callrelay.config import get_config
from src.callrelay.language import normalize_language_code

logger = structlog.get_logger(__name__)

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"

# Models that accept an explicit `language_code`.
MULTILINGUAL_MODELS = frozenset({"eleven_turbo_v2_5", "eleven_flash_v2_5"})

STREAM_CHUNK_SIZE = 4096


class Synthesizer(Protocol):
    async def synthesize(self, text: str, language: Optional[str] = None) -> Optional[AudioStream]: ...


class ElevenLabsTTS:
    """
    Streaming TTS client.

    `synthesize()` returns once the response headers arrive: an `AudioStream`
    over the response body, or None when the service is unavailable. The body
    is read lazily by the audio relay and released when the stream is closed
    or destroyed.
    """

    def __init__(self, config: Optional[Any] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        if config is None:
            config = get_config()

        self.config = config
        # Injected in tests (httpx.MockTransport)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.synthesis_timeout_seconds),
            transport=self._transport,
        )

    def build_payload(self, text: str, language: Optional[str] = None) -> dict:
        payload = {
            "text": text,
            "model_id": self.config.elevenlabs_model_id,
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            },
        }
        code = normalize_language_code(language)
        if code and self.config.elevenlabs_model_id in MULTILINGUAL_MODELS:
            payload["language_code"] = code
        return payload

    async def synthesize(self, text: str, language: Optional[str] = None) -> Optional[AudioStream]:
        """Start synthesizing `text`. Returns None on any service failure."""
        if not text or not text.strip():
            return None

        if not self.config.elevenlabs_api_key:
            logger.warning("ElevenLabs API key missing, skipping synthesis")
            return None

        url = f"{ELEVENLABS_BASE_URL}/text-to-speech/{self.config.elevenlabs_voice_id}/stream"
        client = self._client()
        request = client.build_request(
            "POST",
            url,
            params={"output_format": self.config.elevenlabs_output_format},
            json=self.build_payload(text, language),
            headers={
                "xi-api-key": self.config.elevenlabs_api_key,
                "Content-Type": "application/json",
            },
        )

        logger.info("Generating TTS", text=text[:50], language=language)

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("ElevenLabs request failed", error_type=type(e).__name__, error=str(e))
            await client.aclose()
            return None
        except asyncio.CancelledError:
            await client.aclose()
            raise

        if response.status_code >= 400:
            try:
                detail = (await response.aread())[:200].decode("utf-8", errors="replace")
            except httpx.HTTPError:
                detail = ""
            logger.error(
                "ElevenLabs error generating speech",
                status_code=response.status_code,
                detail=detail,
            )
            await response.aclose()
            await client.aclose()
            return None

        logger.info(
            "TTS stream started",
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
        )

        async def _release() -> None:
            try:
                await response.aclose()
            finally:
                await client.aclose()

        return AudioStream(
            response.aiter_bytes(chunk_size=STREAM_CHUNK_SIZE),
            on_close=_release,
            label=text[:30],
        )

    async def validate_api_key(self) -> bool:
        """
        Check the API key against the ElevenLabs user endpoint.

        Only logs; a bad key degrades synthesis to silence instead of stopping
        the server.
        """
        if not self.config.elevenlabs_api_key:
            logger.warning("ElevenLabs API key not set, synthesis disabled")
            return False

        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            try:
                response = await client.get(
                    f"{ELEVENLABS_BASE_URL}/user",
                    headers={"xi-api-key": self.config.elevenlabs_api_key},
                )
            except httpx.HTTPError as e:
                logger.warning("Could not reach ElevenLabs to validate key", error=str(e))
                return False

        if response.status_code != 200:
            logger.error(
                "ElevenLabs API key rejected",
                status_code=response.status_code,
                response=response.text[:200],
            )
            return False

        logger.info("ElevenLabs API key validated")
        return True
