"""
Tests for Twilio protocol handling.
"""

import pytest
import json
import base64

from src.callrelay.twilio_protocol import (
    MARK_PREFIX,
    MarkTracker,
    TwilioEventType,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioDTMFEvent,
    parse_twilio_message,
    create_media_message,
    create_mark_message,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        """Test parsing connected event."""
        message = json.dumps({"event": "connected", "protocol": "Call"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED
        assert event["protocol"] == "Call"

    def test_parse_start_event(self):
        """Test parsing start event."""
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ123",
            "start": {
                "callSid": "CA456",
                "accountSid": "AC789",
                "tracks": ["inbound"],
                "customParameters": {"key": "value"},
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123"
        assert event.call_sid == "CA456"
        assert event.account_sid == "AC789"
        assert event.tracks == ["inbound"]
        assert event.custom_parameters == {"key": "value"}

    def test_parse_start_event_nested_stream_sid(self):
        message = json.dumps({"event": "start", "start": {"streamSid": "MZ999", "callSid": "CA1"}})

        _, event = parse_twilio_message(message)

        assert event.stream_sid == "MZ999"

    def test_parse_start_event_without_stream_sid(self):
        message = json.dumps({"event": "start", "start": {"callSid": "CA1"}})

        with pytest.raises(ValueError, match="streamSid"):
            parse_twilio_message(message)

    def test_parse_media_event(self):
        """Test parsing media event."""
        audio_data = b"\xff" * 160
        payload_b64 = base64.b64encode(audio_data).decode()

        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {
                "track": "inbound",
                "chunk": 1,
                "timestamp": "12345",
                "payload": payload_b64,
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.stream_sid == "MZ123"
        assert event.track == "inbound"
        assert event.chunk == 1
        assert event.payload == audio_data

    def test_parse_media_event_bad_payload(self):
        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {"payload": "not base64!!"},
        })

        with pytest.raises(ValueError, match="Invalid media payload"):
            parse_twilio_message(message)

    def test_parse_mark_event(self):
        """Test parsing mark event."""
        message = json.dumps({
            "event": "mark",
            "streamSid": "MZ123",
            "mark": {
                "name": "mark_1",
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.stream_sid == "MZ123"
        assert event.name == "mark_1"

    def test_parse_dtmf_event(self):
        """Test parsing DTMF event."""
        message = json.dumps({
            "event": "dtmf",
            "streamSid": "MZ123",
            "dtmf": {
                "digit": "5",
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.DTMF
        assert isinstance(event, TwilioDTMFEvent)
        assert event.digit == "5"

    def test_parse_stop_event(self):
        """Test parsing stop event."""
        message = json.dumps({"event": "stop", "streamSid": "MZ123"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        """Test parsing invalid JSON raises error."""
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not valid json")

    def test_parse_non_object(self):
        with pytest.raises(ValueError, match="not a JSON object"):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        """Test parsing unknown event type raises error."""
        message = json.dumps({"event": "unknown_event"})
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(message)


class TestMessageCreation:
    """Tests for creating Twilio messages."""

    def test_create_media_message(self):
        """Test creating media message."""
        audio_data = bytes(range(256))
        message = create_media_message("MZ123", audio_data)

        parsed = json.loads(message)

        assert parsed["event"] == "media"
        assert parsed["streamSid"] == "MZ123"
        assert base64.b64decode(parsed["media"]["payload"]) == audio_data

    def test_create_mark_message(self):
        """Test creating mark message."""
        message = create_mark_message("MZ123", "mark_42")

        parsed = json.loads(message)

        assert parsed == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "mark_42"}}


class TestMarkTracker:
    """Tests for mark naming and RTT bookkeeping."""

    def test_names_are_unique_and_prefixed(self):
        tracker = MarkTracker()

        names = [tracker.next_name() for _ in range(5)]

        assert len(set(names)) == 5
        assert all(name.startswith(f"{MARK_PREFIX}_") for name in names)
        assert names[0].split("_")[2] == "1"
        assert names[4].split("_")[2] == "5"

    def test_acknowledge_records_rtt(self):
        tracker = MarkTracker()
        name = tracker.next_name()

        rtt = tracker.acknowledge(name)

        assert rtt is not None and rtt >= 0
        assert name not in tracker.pending
        assert tracker.rtt_samples == [rtt]
        assert tracker.avg_rtt_ms == rtt

    def test_unknown_mark_is_ignored(self):
        tracker = MarkTracker()

        assert tracker.acknowledge("other_mark") is None
        assert tracker.avg_rtt_ms == 0.0

    def test_rtt_samples_are_bounded(self):
        tracker = MarkTracker()

        for _ in range(MarkTracker.MAX_RTT_SAMPLES + 5):
            tracker.acknowledge(tracker.next_name())

        assert len(tracker.rtt_samples) == MarkTracker.MAX_RTT_SAMPLES
