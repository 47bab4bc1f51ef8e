"""
Per-call session record.

One `Session` exists per carrier connection. It is owned by the call's
orchestrator and only mutated from that session's event loop; the turn
pipeline and audio relay receive it by reference.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog

from src.callrelay.cancellation import CancellationToken
from src.callrelay.history import ConversationHistory
from src.callrelay.transport import Transport
from src.callrelay.twilio_protocol import MarkTracker

if TYPE_CHECKING:
    from src.callrelay.audio_relay import AudioStream

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    """Lifecycle of a call session."""
    IDLE = "idle"
    STREAM_STARTING = "stream_starting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class RelayStats:
    """Running totals of what was relayed to the carrier."""
    streams_started: int = 0
    frames_sent: int = 0
    bytes_sent: int = 0
    frames_dropped: int = 0
    marks_sent: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "streams_started": self.streams_started,
            "frames_sent": self.frames_sent,
            "bytes_sent": self.bytes_sent,
            "frames_dropped": self.frames_dropped,
            "marks_sent": self.marks_sent,
        }


@dataclass
class Session:
    """State for one call."""
    transport: Transport
    call_id: str = ""
    stream_sid: Optional[str] = None
    call_sid: str = ""
    account_sid: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    state: SessionState = SessionState.IDLE
    history: ConversationHistory = field(default_factory=ConversationHistory)
    greetings: str = ""
    context_loaded: bool = False
    greeting_sent: bool = False
    caller_spoke: bool = False
    detected_language: Optional[str] = None
    speaking: bool = False
    active_audio: Optional["AudioStream"] = None
    current_turn_token: CancellationToken = field(
        default_factory=lambda: CancellationToken(label="initial")
    )
    marks: MarkTracker = field(default_factory=MarkTracker)
    stats: RelayStats = field(default_factory=RelayStats)
    started_at: float = field(default_factory=time.time)

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED)

    def set_stream_sid(self, stream_sid: str, call_sid: str = "") -> bool:
        """Set the stream SID once. Returns False if it was already set."""
        if self.stream_sid is not None:
            logger.warning(
                "Ignoring repeated stream start",
                call_id=self.call_id,
                stream_sid=self.stream_sid,
                new_stream_sid=stream_sid,
            )
            return False
        self.stream_sid = stream_sid
        self.call_sid = call_sid
        return True

    def greeting_eligible(self) -> bool:
        return bool(
            self.greetings
            and not self.greeting_sent
            and self.stream_sid is not None
            and self.context_loaded
            and not self.is_closed
        )

    def claim_greeting(self) -> bool:
        """Check-and-set: True exactly once, when the greeting may fire."""
        if not self.greeting_eligible():
            return False
        self.greeting_sent = True
        return True

    def begin_turn(self, label: str = "turn") -> CancellationToken:
        """Supersede the current turn token and return the new one."""
        self.current_turn_token = self.current_turn_token.supersede(label=label)
        return self.current_turn_token

    def owns(self, token: CancellationToken) -> bool:
        """True if `token` is the live token for this session."""
        return (
            token is self.current_turn_token
            and token.is_current()
            and not self.is_closed
        )

    def update_detected_language(self, language: Optional[str], token: CancellationToken) -> bool:
        """Sticky, token-guarded language update. Empty detections are ignored."""
        if not language or not self.owns(token):
            return False
        self.detected_language = language
        return True
