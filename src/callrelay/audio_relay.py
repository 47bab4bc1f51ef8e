"""
Outbound audio relay.

Streams synthesized mu-law audio back into the call as Twilio media messages:

- At most one stream is active per session; relaying a new stream stops the
  previous one first.
- Every chunk is checked against `session.active_audio` before it is written,
  so frames from a superseded stream never reach the carrier after a race.
- A completion mark is written only when the stream that is still current
  ends normally. Errors and external closes clean up without a mark.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

import structlog

from src.callrelay.session import Session
from src.callrelay.twilio_protocol import create_mark_message, create_media_message

logger = structlog.get_logger(__name__)

_stream_ids = itertools.count(1)


class AudioStream:
    """
    A synthesized audio byte stream that can be destroyed mid-flight.

    Destroying stops iteration and releases the underlying resource (e.g. the
    HTTP response body) instead of draining it.
    """

    def __init__(
        self,
        chunks: AsyncIterable[bytes],
        *,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
        label: str = "",
    ):
        self.id = next(_stream_ids)
        self.label = label
        self._iterator: AsyncIterator[bytes] = chunks.__aiter__()
        self._on_close = on_close
        self._closed = False
        self._close_task: Optional[asyncio.Task] = None
        # Set while a relay pump is consuming the stream; the pump then owns closing it.
        self.pumping = False
        self.destroyed = False

    def __repr__(self) -> str:
        return f"AudioStream(id={self.id}, label={self.label!r}, destroyed={self.destroyed})"

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "AudioStream":
        return self

    async def __anext__(self) -> bytes:
        if self.destroyed or self._closed:
            raise StopAsyncIteration
        chunk = await self._iterator.__anext__()
        return bytes(chunk)

    def destroy(self) -> None:
        """Stop the stream now and release it in the background."""
        if self.destroyed:
            return
        self.destroyed = True
        if self.pumping:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._close_task = loop.create_task(self.aclose())

    async def aclose(self) -> None:
        """Release the underlying resources. Idempotent."""
        if self._closed:
            return
        self._closed = True
        close = getattr(self._iterator, "aclose", None)
        if callable(close):
            try:
                await close()
            except Exception as e:
                logger.debug("Audio iterator close failed", stream_id=self.id, error=str(e))
        if self._on_close is not None:
            try:
                await self._on_close()
            except Exception as e:
                logger.debug("Audio stream close failed", stream_id=self.id, error=str(e))


class AudioRelay:
    """Relays one session's synthesized audio to its transport."""

    def __init__(self, session: Session):
        self._session = session
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def is_current(self, stream: AudioStream) -> bool:
        session = self._session
        return session.speaking and session.active_audio is stream

    def relay(self, stream: AudioStream) -> Optional[asyncio.Task]:
        """
        Start relaying `stream`, stopping any stream already playing.

        Returns the pump task, or None if the stream could not be started.
        """
        session = self._session

        if session.speaking or session.active_audio is not None:
            self.stop(reason="superseded")

        if session.is_closed:
            logger.debug("Session closed, discarding audio stream", stream_id=stream.id)
            stream.destroy()
            return None

        if not session.stream_sid:
            logger.error("No streamSid available - cannot send audio", call_id=session.call_id)
            stream.destroy()
            return None

        session.speaking = True
        session.active_audio = stream
        session.stats.streams_started += 1

        logger.info(
            "Starting audio relay",
            stream_sid=session.stream_sid,
            stream_id=stream.id,
            label=stream.label,
        )
        self._task = asyncio.create_task(self._pump(stream))
        return self._task

    def stop(self, *, reason: str = "stop") -> None:
        """Synchronously stop the active stream: destroy it and clear playback state."""
        session = self._session
        stream = session.active_audio

        session.speaking = False
        session.active_audio = None

        if stream is not None:
            stream.destroy()
            logger.info("Audio relay stopped", stream_id=stream.id, reason=reason)

        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _clear_if_current(self, stream: AudioStream) -> None:
        session = self._session
        if session.active_audio is stream:
            session.speaking = False
            session.active_audio = None

    async def _pump(self, stream: AudioStream) -> None:
        session = self._session
        transport = session.transport
        chunk_count = 0
        total_bytes = 0
        outcome = "end"
        stream.pumping = True

        try:
            async for chunk in stream:
                if not chunk:
                    continue
                if not self.is_current(stream):
                    session.stats.frames_dropped += 1
                    continue
                if not transport.is_open:
                    session.stats.frames_dropped += 1
                    logger.warning("WebSocket not open, dropping audio frame", stream_id=stream.id)
                    continue

                message = create_media_message(session.stream_sid or "", chunk)
                # Shielded so a barge-in never leaves half a message on the wire.
                sent = await asyncio.shield(transport.send(message))
                if sent:
                    chunk_count += 1
                    total_bytes += len(chunk)
                    session.stats.frames_sent += 1
                    session.stats.bytes_sent += len(chunk)
                else:
                    session.stats.frames_dropped += 1

            if stream.destroyed:
                outcome = "close"
                self._clear_if_current(stream)
            elif self.is_current(stream):
                await self._send_completion_mark(stream)
                self._clear_if_current(stream)

        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        except Exception as e:
            outcome = "error"
            logger.error("Audio stream error", stream_id=stream.id, error=str(e))
            self._clear_if_current(stream)
        finally:
            stream.pumping = False
            await stream.aclose()
            logger.info(
                "Audio stream finished",
                stream_id=stream.id,
                outcome=outcome,
                chunks=chunk_count,
                bytes=total_bytes,
            )

    async def _send_completion_mark(self, stream: AudioStream) -> None:
        session = self._session
        if not session.transport.is_open or not session.stream_sid:
            return
        name = session.marks.next_name()
        sent = await asyncio.shield(
            session.transport.send(create_mark_message(session.stream_sid, name))
        )
        if sent:
            session.stats.marks_sent += 1
            logger.debug("Mark event sent", mark_name=name, stream_id=stream.id)
