"""
Per-call context bootstrap.

Loads the business profile and catalog once per call, turns them into the
system turn that seeds the conversation, and picks up the greeting. Loading
never blocks the call: any failure yields a generic context.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from src.callrelay.profile import BusinessProfile, ProfileStore, ProfileUnavailable
from src.callrelay.session import Session

logger = structlog.get_logger(__name__)

FALLBACK_SYSTEM_PROMPT = "You are a helpful assistant."


@dataclass(frozen=True)
class SessionContext:
    """Result of a bootstrap: what to install on the session."""
    system_prompt: str
    greetings: str = ""
    degraded: bool = False


def build_system_prompt(profile: BusinessProfile) -> str:
    """Summarize the business for the response generator."""
    lines = [f"You are a helpful AI assistant for {profile.name}."]
    if profile.description:
        lines.append(f"Business Description: {profile.description}.")
    if profile.catalog:
        products = ", ".join(item.describe() for item in profile.catalog)
        lines.append(f"Available Products: {products}.")
    if profile.hours:
        lines.append(f"Business Hours: {profile.hours}.")
    if profile.contact_info:
        lines.append(f"Contact Information: {profile.contact_info}.")
    lines.append("Keep responses concise and conversational.")
    return "\n".join(lines)


class ContextBootstrap:
    """Builds the per-call context from a profile store."""

    def __init__(self, store: ProfileStore):
        self.store = store

    async def load(self) -> SessionContext:
        logger.info("Loading business context")
        try:
            profile = await self.store.load()
        except ProfileUnavailable as e:
            logger.warning("Business profile unavailable, using generic context", error=str(e))
            return SessionContext(system_prompt=FALLBACK_SYSTEM_PROMPT, degraded=True)
        except Exception as e:
            logger.error("Error loading business context", error_type=type(e).__name__, error=str(e))
            return SessionContext(system_prompt=FALLBACK_SYSTEM_PROMPT, degraded=True)

        logger.info(
            "Business context loaded",
            business=profile.name,
            catalog_items=len(profile.catalog),
            has_greeting=bool(profile.greetings),
        )
        return SessionContext(
            system_prompt=build_system_prompt(profile),
            greetings=profile.greetings,
        )

    @staticmethod
    def apply(session: Session, context: Optional[SessionContext]) -> None:
        """Install the context on the session. Runs on the session's dispatch loop."""
        if session.context_loaded:
            return
        if context is None:
            context = SessionContext(system_prompt=FALLBACK_SYSTEM_PROMPT, degraded=True)
        session.history.set_system(context.system_prompt)
        session.greetings = context.greetings
        session.context_loaded = True
