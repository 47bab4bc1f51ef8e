"""
Turn pipeline: utterance -> reply text -> synthesized audio -> relay.

Each stage is bound to the turn's cancellation token and re-checks ownership
before every observable effect. The caller's utterance is staged while the
reply is generated and committed together with the assistant turn, so a turn
that is superseded mid-flight leaves the conversation history untouched.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional

import structlog

from src.callrelay.audio_relay import AudioRelay
from src.callrelay.cancellation import CancellationToken, TurnCancelled
from src.callrelay.config import get_config
from src.callrelay.language import LanguageDetector, safe_detect
from src.callrelay.llm import GenerationError, ResponseGenerator
from src.callrelay.session import Session
from src.callrelay.tts import Synthesizer

logger = structlog.get_logger(__name__)


class TurnOutcome(str, Enum):
    """How a turn (or a synthesis-only utterance) ended."""
    RELAYED = "relayed"
    CANCELLED = "cancelled"
    SILENT = "silent"


class TurnPipeline:
    """Runs conversational turns for one call."""

    def __init__(
        self,
        relay: AudioRelay,
        generator: ResponseGenerator,
        synthesizer: Synthesizer,
        detector: Optional[LanguageDetector] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self.relay = relay
        self.generator = generator
        self.synthesizer = synthesizer
        self.detector = detector

    async def run_turn(self, session: Session, token: CancellationToken, text: str) -> TurnOutcome:
        log = logger.bind(call_id=session.call_id, turn=token.id)
        log.info("User said", text=text[:100])

        # 1. Language (best effort, sticky, token-guarded)
        language = safe_detect(self.detector, text)
        if session.update_detected_language(language, token):
            log.debug("Detected language", language=language)

        # 2. Stage the user turn
        if not session.owns(token):
            log.debug("Turn superseded before generation")
            return TurnOutcome.CANCELLED
        history = session.history.get_messages()

        # 3. Generate
        try:
            reply = await token.run(
                self.generator.generate(history, text, session.detected_language),
                timeout=self.config.generation_timeout_seconds,
            )
        except TurnCancelled:
            log.debug("Generation cancelled")
            return TurnOutcome.CANCELLED
        except asyncio.TimeoutError:
            log.warning("Generation timed out", timeout_s=self.config.generation_timeout_seconds)
            reply = self.config.apology_text
        except GenerationError as e:
            log.warning("Generation unavailable, using apology", error=str(e))
            reply = self.config.apology_text
        except Exception as e:
            log.error("Generation failed, using apology", error_type=type(e).__name__, error=str(e))
            reply = self.config.apology_text

        # 4. Commit user + assistant turns
        if not session.owns(token):
            log.debug("Turn superseded after generation, discarding reply")
            return TurnOutcome.CANCELLED
        session.history.add_exchange(text, reply)
        log.info("AI response", text=reply[:100])

        # 5-6. Synthesize and relay
        return await self.speak(session, token, reply)

    async def speak(self, session: Session, token: CancellationToken, text: str) -> TurnOutcome:
        """Synthesize `text` and relay it if `token` still owns the session."""
        log = logger.bind(call_id=session.call_id, turn=token.id)

        if not session.owns(token):
            return TurnOutcome.CANCELLED

        try:
            stream = await token.run(
                self.synthesizer.synthesize(text, session.detected_language),
                timeout=self.config.synthesis_timeout_seconds,
            )
        except TurnCancelled:
            log.debug("Synthesis cancelled")
            return TurnOutcome.CANCELLED
        except asyncio.TimeoutError:
            log.warning("Synthesis timed out", timeout_s=self.config.synthesis_timeout_seconds)
            return TurnOutcome.SILENT
        except Exception as e:
            log.error("Synthesis failed", error_type=type(e).__name__, error=str(e))
            return TurnOutcome.SILENT

        if stream is None:
            log.warning("No audio stream from synthesis, turn ends silently")
            return TurnOutcome.SILENT

        if not session.owns(token):
            log.debug("Turn superseded after synthesis, discarding audio")
            stream.destroy()
            return TurnOutcome.CANCELLED

        if self.relay.relay(stream) is None:
            return TurnOutcome.SILENT
        return TurnOutcome.RELAYED
