"""
Pytest configuration and fixtures.
"""

import asyncio
import json
import os
from typing import Callable, Optional
from unittest.mock import patch

import pytest

from tests.fakes import FakeGenerator, FakeProfileStore, FakeSynthesizer, FakeTranscriber, FakeTransport


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "OPENAI_API_KEY": "test_openai_key",
        "ELEVENLABS_API_KEY": "test_elevenlabs_key",
        "SUPABASE_URL": "https://project.supabase.test",
        "SUPABASE_KEY": "test_supabase_key",
        "CLOVER_API_URL": "https://api.clover.test",
        "CLOVER_API_KEY": "test_clover_key",
        "CLOVER_MERCHANT_ID": "MERCHANT1",
        "GREETING_DELAY_MS": "0",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.callrelay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def business_profile():
    from src.callrelay.profile import BusinessProfile, CatalogItem

    return BusinessProfile(
        name="Corner Bakery",
        description="Fresh bread and pastries",
        hours="7am to 6pm daily",
        contact_info="555-0100",
        greetings="Thanks for calling Corner Bakery!",
        catalog=[CatalogItem("Croissant", 350), CatalogItem("Baguette", 425)],
    )


@pytest.fixture
def make_call(business_profile):
    """Factory for a CallSession wired to in-memory collaborators."""
    from src.callrelay.config import get_config
    from src.callrelay.orchestrator import CallSession

    def _make(
        *,
        generator: Optional[FakeGenerator] = None,
        synthesizer: Optional[FakeSynthesizer] = None,
        profile_store: Optional[FakeProfileStore] = None,
        auto_open: bool = True,
        detector=None,
        config=None,
    ):
        transport = FakeTransport()
        generator = generator or FakeGenerator()
        synthesizer = synthesizer or FakeSynthesizer()
        profile_store = profile_store or FakeProfileStore(business_profile)

        def _transcriber(**kwargs):
            return FakeTranscriber(auto_open=auto_open, **kwargs)

        call = CallSession(
            transport,
            call_id="test-call",
            config=config or get_config(),
            generator=generator,
            synthesizer=synthesizer,
            profile_store=profile_store,
            detector=detector,
            transcriber_factory=_transcriber,
        )
        return call, transport, generator, synthesizer

    return _make


@pytest.fixture
def wait_until() -> Callable:
    """Poll a condition on the running loop."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
