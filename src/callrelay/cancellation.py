"""
Per-turn cancellation tokens.

A token identifies the turn that is currently allowed to produce observable
effects (history appends, audio relay). Starting a new turn supersedes the old
token, which cancels it; observers registered on the old token fire once so
in-flight network requests and audio streams are torn down, not drained.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_token_ids = itertools.count(1)


class TurnCancelled(Exception):
    """Raised inside a turn once its token has been cancelled or superseded."""

    def __init__(self, token_id: int):
        super().__init__(f"turn {token_id} cancelled")
        self.token_id = token_id


class CancellationToken:
    """Single-use revocable handle for one conversational turn."""

    def __init__(self, label: str = "turn"):
        self.id = next(_token_ids)
        self.label = label
        self._cancelled = False
        self._observers: List[Callable[[], Any]] = []

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "current"
        return f"CancellationToken(id={self.id}, label={self.label!r}, {state})"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def is_current(self) -> bool:
        """True until the token is cancelled (superseding always cancels)."""
        return not self._cancelled

    def cancel(self) -> None:
        """Cancel the token and notify observers. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        observers, self._observers = self._observers, []
        for observer in observers:
            try:
                observer()
            except Exception as e:
                logger.warning(
                    "Cancellation observer failed",
                    token_id=self.id,
                    error=str(e),
                )
        logger.debug("Turn token cancelled", token_id=self.id, label=self.label)

    def add_observer(self, observer: Callable[[], Any]) -> Callable[[], None]:
        """
        Register a callback fired on cancellation.

        Fires immediately if the token is already cancelled. Returns a function
        that unregisters the observer.
        """
        if self._cancelled:
            observer()
            return lambda: None

        self._observers.append(observer)

        def _remove() -> None:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass

        return _remove

    def supersede(self, label: str = "turn") -> "CancellationToken":
        """Cancel this token and mint its successor."""
        self.cancel()
        return CancellationToken(label=label)

    async def run(self, awaitable: Awaitable[T], *, timeout: Optional[float] = None) -> T:
        """
        Await `awaitable` bound to this token.

        Cancelling the token aborts the underlying task and raises
        `TurnCancelled` here. A timeout raises `asyncio.TimeoutError`, which
        callers treat as a regular failure.
        """
        if self._cancelled:
            # Close un-awaited coroutines so they don't warn.
            close = getattr(awaitable, "close", None)
            if callable(close):
                close()
            raise TurnCancelled(self.id)

        task = asyncio.ensure_future(awaitable)
        remove = self.add_observer(task.cancel)
        try:
            if timeout is None:
                return await task
            return await asyncio.wait_for(task, timeout)
        except asyncio.CancelledError:
            # Cancellation aimed at the awaiting task itself always propagates.
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            if self._cancelled and task.cancelled():
                raise TurnCancelled(self.id) from None
            raise
        finally:
            remove()
