"""
Conversation history for a call.

The system (context) turn lives in its own slot so it is always the first
message once the business context is loaded, even if a caller utterance was
recorded before the bootstrap finished. Everything else is append-only.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """A single turn in the conversation. Immutable once appended."""
    role: Role
    text: str
    timestamp: float = field(default_factory=time.time, compare=False)

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.text}


class ConversationHistory:
    """Append-only conversation history with a dedicated system slot."""

    def __init__(self) -> None:
        self._system: Optional[Turn] = None
        self._turns: List[Turn] = []

    @property
    def system(self) -> Optional[Turn]:
        return self._system

    def set_system(self, text: str) -> Turn:
        """Install the context turn. Only the first call has an effect."""
        if self._system is None:
            self._system = Turn(role=Role.SYSTEM, text=text)
        return self._system

    def add_assistant_message(self, text: str) -> Turn:
        return self._append(Turn(role=Role.ASSISTANT, text=text))

    def add_exchange(self, user_text: str, assistant_text: str) -> None:
        """Commit a completed user/assistant exchange in one step."""
        self._append(Turn(role=Role.USER, text=user_text))
        self._append(Turn(role=Role.ASSISTANT, text=assistant_text))

    def _append(self, turn: Turn) -> Turn:
        self._turns.append(turn)
        return turn

    def turns(self) -> List[Turn]:
        """Snapshot of all turns in conversation order (system first)."""
        head = [self._system] if self._system is not None else []
        return head + list(self._turns)

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [turn.to_message() for turn in self.turns()]

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns())

    def __len__(self) -> int:
        return len(self._turns) + (1 if self._system is not None else 0)
