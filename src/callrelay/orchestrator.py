"""
Per-call session orchestrator.

Every input to a call, whether a Twilio WebSocket frame, a socket close, a
final transcript or the loaded business context, is posted as an event into
the call's inbox and handled by one dispatch loop in arrival order. The inbox
exists from construction, so nothing posted before the loop or the service
connections start is lost.

Long-running work (turns, the greeting, context loading, the transcription
handshake) runs in background tasks that report back through the inbox or
through the session's turn token.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional, Set, Union

import structlog

from src.callrelay.audio_relay import AudioRelay
from src.callrelay.bootstrap import ContextBootstrap, SessionContext
from src.callrelay.cancellation import CancellationToken
from src.callrelay.config import get_config
from src.callrelay.language import LanguageDetector, StopwordLanguageDetector
from src.callrelay.llm import OpenAIGenerator, ResponseGenerator
from src.callrelay.pipeline import TurnPipeline
from src.callrelay.profile import BusinessProfileStore, ProfileStore
from src.callrelay.session import Session, SessionState
from src.callrelay.stt import DeepgramTranscriber
from src.callrelay.transport import Transport
from src.callrelay.tts import ElevenLabsTTS, Synthesizer
from src.callrelay.twilio_protocol import (
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TransportMessage:
    raw: Union[str, bytes]


@dataclass(frozen=True)
class TransportClosed:
    reason: str = "transport_closed"


@dataclass(frozen=True)
class TransportError:
    error: BaseException


@dataclass(frozen=True)
class TranscriptionOpened:
    pass


@dataclass(frozen=True)
class TranscriptionFailed:
    error: BaseException


@dataclass(frozen=True)
class TranscriptFinal:
    text: str
    confidence: float = 0.0


@dataclass(frozen=True)
class ContextReady:
    context: SessionContext


SessionEvent = Union[
    TransportMessage,
    TransportClosed,
    TransportError,
    TranscriptionOpened,
    TranscriptionFailed,
    TranscriptFinal,
    ContextReady,
]


class CallSession:
    """
    Orchestrates one call from WebSocket accept to close.

    Usage (from the WebSocket endpoint):
        call = CallSession(WebSocketTransport(websocket))
        call.start()
        call.post(TransportMessage(raw))   # for every inbound frame
        call.post(TransportClosed())       # when the socket ends
        await call.wait_closed()
    """

    def __init__(
        self,
        transport: Transport,
        *,
        call_id: Optional[str] = None,
        config: Optional[Any] = None,
        generator: Optional[ResponseGenerator] = None,
        synthesizer: Optional[Synthesizer] = None,
        profile_store: Optional[ProfileStore] = None,
        detector: Optional[LanguageDetector] = None,
        transcriber_factory: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or get_config()
        self.session = Session(transport=transport, call_id=call_id or uuid.uuid4().hex[:12])
        self.relay = AudioRelay(self.session)
        self.pipeline = TurnPipeline(
            self.relay,
            generator or OpenAIGenerator(self.config),
            synthesizer or ElevenLabsTTS(self.config),
            detector=detector or StopwordLanguageDetector(),
            config=self.config,
        )
        self.bootstrap = ContextBootstrap(profile_store or BusinessProfileStore(config=self.config))

        factory = transcriber_factory or DeepgramTranscriber
        self.transcriber = factory(
            on_open=self._on_transcription_open,
            on_final_transcript=self._on_final_transcript,
            on_error=self._on_transcription_error,
            config=self.config,
        )

        self._inbox: "asyncio.Queue[SessionEvent]" = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._log = logger.bind(call_id=self.session.call_id)

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def start(self) -> None:
        """
        Begin handling the call.

        The dispatch loop is started before the context load and the
        transcription handshake are kicked off.
        """
        if self._dispatch_task is not None:
            return
        self._log.info("New stream connection")
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._spawn(self._load_context(), name="context")
        self._spawn(self._connect_transcription(), name="transcription")

    def post(self, event: SessionEvent) -> None:
        """Queue an event for the dispatch loop. Ignored once the call is closed."""
        if self._closed.is_set():
            return
        self._inbox.put_nowait(event)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def close(self, reason: str = "shutdown") -> None:
        """Ask the call to close and wait until it has."""
        if self._dispatch_task is None:
            await self._shutdown(reason)
            self._closed.set()
            return
        self.post(TransportClosed(reason=reason))
        await self.wait_closed()

    # -- dispatch -----------------------------------------------------------

    async def _dispatch_loop(self) -> None:
        try:
            while True:
                event = await self._inbox.get()
                try:
                    await self._dispatch(event)
                except Exception as e:
                    self._log.error(
                        "Session event handler failed",
                        event=type(event).__name__,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                if self.session.state is SessionState.CLOSED:
                    break
        finally:
            if self.session.state is not SessionState.CLOSED:
                await self._shutdown("dispatch_stopped")
            self._closed.set()

    async def _dispatch(self, event: SessionEvent) -> None:
        if isinstance(event, TransportMessage):
            await self._handle_transport_message(event.raw)
        elif isinstance(event, TranscriptFinal):
            self._handle_final_transcript(event.text, event.confidence)
        elif isinstance(event, ContextReady):
            self._handle_context_ready(event.context)
        elif isinstance(event, TranscriptionOpened):
            self._log.info("Transcription connected")
            self._maybe_send_greeting()
        elif isinstance(event, TranscriptionFailed):
            self._log.warning("Transcription unavailable", error=str(event.error))
        elif isinstance(event, TransportClosed):
            self._log.info("Stream connection closed", reason=event.reason)
            self.session.transport.mark_closed()
            await self._shutdown(event.reason)
        elif isinstance(event, TransportError):
            self._log.error("WebSocket error", error=str(event.error))
            self.session.transport.mark_closed()
            await self._shutdown("transport_error")

    async def _handle_transport_message(self, raw: Union[str, bytes]) -> None:
        if self.session.is_closed:
            return

        if isinstance(raw, str) and '"event":"media"' not in raw:
            self._log.debug("Twilio message received", raw=raw[:500])

        try:
            event_type, event = parse_twilio_message(raw)
        except ValueError as e:
            self._log.warning("Failed to parse Twilio message", error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            self._log.info("Media stream connected")

        elif event_type == TwilioEventType.START:
            self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            await self._handle_media(event)

        elif event_type == TwilioEventType.MARK:
            self._handle_mark(event)

        elif event_type == TwilioEventType.DTMF:
            self._handle_dtmf(event)

        elif event_type == TwilioEventType.STOP:
            self._log.info("Media stream stopped")
            await self._shutdown("stop")

    def _handle_start(self, event: TwilioStartEvent) -> None:
        if not self.session.set_stream_sid(event.stream_sid, event.call_sid):
            return
        self.session.account_sid = event.account_sid
        self.session.custom_parameters = dict(event.custom_parameters)
        self.session.state = SessionState.STREAM_STARTING
        self._log = self._log.bind(stream_sid=event.stream_sid)
        self._log.info(
            "Media stream started",
            call_sid=event.call_sid,
            account_sid=event.account_sid,
            tracks=event.tracks,
            custom_parameters=event.custom_parameters,
        )

        self._maybe_send_greeting()
        self.session.state = SessionState.ACTIVE

    async def _handle_media(self, event: TwilioMediaEvent) -> None:
        # Frames arriving before the transcriber is ready are dropped, not buffered.
        if event.payload and self.transcriber.is_open:
            await self.transcriber.send_audio(event.payload)

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        rtt_ms = self.session.marks.acknowledge(event.name)
        if rtt_ms is None:
            self._log.info("Mark received", mark_name=event.name)
            return
        self._log.info(
            "Mark received",
            mark_name=event.name,
            mark_rtt_ms=round(rtt_ms, 2),
            avg_mark_rtt_ms=round(self.session.marks.avg_rtt_ms, 2),
        )

    def _handle_dtmf(self, event: TwilioDTMFEvent) -> None:
        self._log.info("DTMF received", digit=event.digit)

    def _handle_context_ready(self, context: SessionContext) -> None:
        if self.session.is_closed:
            return
        ContextBootstrap.apply(self.session, context)
        self._log.info(
            "Context loaded",
            degraded=context.degraded,
            greetings=context.greetings[:50] or "(none)",
        )
        self._maybe_send_greeting()

    def _handle_final_transcript(self, text: str, confidence: float) -> None:
        session = self.session
        if session.is_closed or not text.strip():
            return

        session.caller_spoke = True
        if session.speaking:
            self._log.info("Barge-in: caller spoke during playback", turn=session.current_turn_token.id)
            session.current_turn_token.cancel()
            self.relay.stop(reason="barge_in")

        token = session.begin_turn(label="turn")
        self._log.debug("Starting turn", turn=token.id, confidence=round(confidence, 3))
        self._spawn(self.pipeline.run_turn(session, token, text), name=f"turn-{token.id}")

    # -- greeting -----------------------------------------------------------

    def _maybe_send_greeting(self) -> None:
        session = self.session
        self._log.debug(
            "Greeting check",
            has_greetings=bool(session.greetings),
            greeting_sent=session.greeting_sent,
            has_stream_sid=session.stream_sid is not None,
            context_loaded=session.context_loaded,
        )
        if not session.claim_greeting():
            return

        if session.caller_spoke:
            # The greeting never plays after the caller's first words.
            self._log.info("Skipping greeting, caller already speaking")
            return

        text = session.greetings
        session.history.add_assistant_message(text)
        self._log.info("Sending greeting", text=text[:50])
        self._spawn(self._deliver_greeting(session.current_turn_token, text), name="greeting")

    async def _deliver_greeting(self, token: CancellationToken, text: str) -> None:
        # Give the carrier stream a moment to be ready to play audio.
        delay_s = self.config.greeting_delay_ms / 1000
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        outcome = await self.pipeline.speak(self.session, token, text)
        self._log.debug("Greeting finished", outcome=outcome.value)

    # -- background work ----------------------------------------------------

    async def _load_context(self) -> None:
        context = await self.bootstrap.load()
        self.post(ContextReady(context))

    async def _connect_transcription(self) -> None:
        ok = await self.transcriber.connect()
        if not ok:
            self._log.error("Transcription failed to start")

    async def _on_transcription_open(self) -> None:
        self.post(TranscriptionOpened())

    async def _on_final_transcript(self, text: str, confidence: float) -> None:
        self.post(TranscriptFinal(text=text, confidence=confidence))

    async def _on_transcription_error(self, error: Exception) -> None:
        self.post(TranscriptionFailed(error))

    def _spawn(self, coro, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                self._log.error("Background task failed", task=name, error_type=type(error).__name__, error=str(error))

        task.add_done_callback(_done)
        return task

    # -- shutdown -----------------------------------------------------------

    async def _shutdown(self, reason: str) -> None:
        session = self.session
        if session.is_closed:
            return
        session.state = SessionState.CLOSING

        relay_task = self.relay.task
        session.current_turn_token.cancel()
        self.relay.stop(reason=reason)

        try:
            await self.transcriber.request_close()
        except Exception as e:
            self._log.warning("Error closing transcription", error=str(e))

        pending = [t for t in self._tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if relay_task is not None and not relay_task.done():
            await asyncio.gather(relay_task, return_exceptions=True)

        session.state = SessionState.CLOSED
        self._log.info(
            "Call ended",
            reason=reason,
            turns=len(session.history),
            relay=session.stats.to_dict(),
            avg_mark_rtt_ms=round(session.marks.avg_rtt_ms, 2),
        )
