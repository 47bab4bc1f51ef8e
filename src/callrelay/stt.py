"""
Deepgram live transcription client.

Twilio's mu-law 8kHz audio is forwarded unchanged (Deepgram accepts `mulaw`
natively). Only finalized transcripts are reported; interim results are
ignored because every final one starts a new conversational turn.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets

from src.callrelay.config import get_config
from src.callrelay.twilio_protocol import TWILIO_SAMPLE_RATE

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

FinalTranscriptCallback = Callable[[str, float], Awaitable[None]]


@dataclass
class STTMetrics:
    """Metrics for one transcription connection."""
    audio_bytes_sent: int = 0
    final_transcripts: int = 0
    connected_at: float = 0.0

    @property
    def audio_ms(self) -> float:
        # mu-law: one byte per sample
        return self.audio_bytes_sent * 1000 / TWILIO_SAMPLE_RATE


class DeepgramTranscriber:
    """
    Streaming transcription over Deepgram's live WebSocket API.

    Reports `open`, `final_transcript(text, confidence)` and `error` through
    async callbacks, and supports `request_close()` for a graceful shutdown.
    """

    def __init__(
        self,
        on_open: Optional[Callable[[], Awaitable[None]]] = None,
        on_final_transcript: Optional[FinalTranscriptCallback] = None,
        on_error: Optional[Callable[[Exception], Awaitable[None]]] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_open = on_open
        self._on_final_transcript = on_final_transcript
        self._on_error = on_error
        self._ws = None
        self._is_open = False
        self._closing = False
        self._receive_task: Optional[asyncio.Task] = None
        self._metrics = STTMetrics()

    @property
    def is_open(self) -> bool:
        return self._is_open and not self._closing

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def build_url(self) -> str:
        params = {
            "model": self.config.deepgram_model,
            "language": self.config.deepgram_language,
            "smart_format": "true" if self.config.deepgram_smart_format else "false",
            "encoding": "mulaw",
            "sample_rate": TWILIO_SAMPLE_RATE,
            "channels": 1,
            "endpointing": self.config.deepgram_endpointing_ms,
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def connect(self) -> bool:
        """Open the live connection. Returns False (and reports an error) on failure."""
        if self._is_open:
            return True

        if not self.config.deepgram_api_key:
            logger.warning("DEEPGRAM_API_KEY not set, transcription disabled")
            await self._report_error(RuntimeError("Deepgram API key missing"))
            return False

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self.build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            await self._report_error(e)
            return False

        if self._closing:
            # Session ended while the handshake was in flight.
            await self._close_socket()
            return False

        self._is_open = True
        self._metrics.connected_at = time.time()
        logger.info("Deepgram STT connected", model=self.config.deepgram_model)

        self._receive_task = asyncio.create_task(self._receive_loop())

        if self._on_open:
            await self._on_open()
        return True

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Forward raw mu-law audio. Silently ignored when not open."""
        if not self.is_open or not self._ws:
            return
        try:
            await self._ws.send(audio_bytes)
            self._metrics.audio_bytes_sent += len(audio_bytes)
        except websockets.exceptions.ConnectionClosed:
            self._is_open = False
            logger.info("Deepgram connection closed while sending audio")
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def request_close(self) -> None:
        """Ask Deepgram to flush and close, then tear the connection down."""
        if self._closing:
            return
        self._closing = True

        if self._ws is not None and self._is_open:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("CloseStream not delivered", error=str(e))

        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        await self._close_socket()
        logger.info(
            "Deepgram STT closed",
            audio_ms=round(self._metrics.audio_ms),
            final_transcripts=self._metrics.final_transcripts,
        )

    async def _close_socket(self) -> None:
        self._is_open = False
        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))
        self._ws = None

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Invalid JSON from Deepgram")
                    continue
                try:
                    await self._handle_message(data)
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
            await self._report_error(e)
        finally:
            self._is_open = False

    async def _handle_message(self, data: dict) -> None:
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            if not data.get("is_final", False):
                return

            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            transcript = (alternatives[0].get("transcript") or "").strip()
            if not transcript:
                return

            confidence = float(alternatives[0].get("confidence") or 0.0)
            self._metrics.final_transcripts += 1
            logger.debug(
                "STT final transcript",
                text=transcript[:50],
                confidence=round(confidence, 3),
            )
            if self._on_final_transcript:
                await self._on_final_transcript(transcript, confidence)

        elif msg_type_norm == "error":
            description = data.get("description") or data.get("message") or "Unknown"
            logger.error("Deepgram error", error=description)
            await self._report_error(RuntimeError(str(description)))

    async def _report_error(self, error: Exception) -> None:
        if self._on_error:
            try:
                await self._on_error(error)
            except Exception as e:
                logger.warning("STT error callback failed", error=str(e))
