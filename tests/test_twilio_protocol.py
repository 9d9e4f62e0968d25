"""
Tests for Twilio protocol handling.
"""

import base64
import json

import pytest

from src.voicecore.twilio_protocol import (
    END_OF_REPLY_MARK,
    TwilioDTMFEvent,
    TwilioEventType,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioProtocolHandler,
    TwilioStartEvent,
    create_clear_message,
    create_mark_message,
    create_media_message,
    parse_twilio_message,
)


class TestMessageParsing:
    """Tests for parsing Twilio messages."""

    def test_parse_connected_event(self):
        message = json.dumps({"event": "connected", "protocol": "Call"})
        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.CONNECTED

    def test_parse_start_event(self):
        """Start events carry SIDs and custom parameters."""
        message = json.dumps({
            "event": "start",
            "streamSid": "MZ123",
            "start": {
                "callSid": "CA456",
                "accountSid": "AC789",
                "tracks": ["inbound"],
                "customParameters": {"auth_token": "123.abc"},
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.START
        assert isinstance(event, TwilioStartEvent)
        assert event.stream_sid == "MZ123"
        assert event.call_sid == "CA456"
        assert event.account_sid == "AC789"
        assert event.tracks == ["inbound"]
        assert event.auth_token == "123.abc"

    def test_start_event_without_token(self):
        message = json.dumps({"event": "start", "streamSid": "MZ1", "start": {"callSid": "CA1"}})
        _, event = parse_twilio_message(message)

        assert event.auth_token is None

    def test_parse_media_event(self):
        audio_data = b"\xff" * 160
        message = json.dumps({
            "event": "media",
            "streamSid": "MZ123",
            "media": {
                "track": "inbound",
                "chunk": 1,
                "timestamp": "12345",
                "payload": base64.b64encode(audio_data).decode(),
            }
        })

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MEDIA
        assert isinstance(event, TwilioMediaEvent)
        assert event.track == "inbound"
        assert event.chunk == 1
        assert event.payload == audio_data

    def test_media_event_rejects_bad_base64(self):
        message = json.dumps({"event": "media", "streamSid": "MZ1", "media": {"payload": "!!not base64!!"}})

        with pytest.raises(ValueError):
            parse_twilio_message(message)

    def test_parse_mark_event(self):
        message = json.dumps({"event": "mark", "streamSid": "MZ123", "mark": {"name": "tts-done-1"}})

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.MARK
        assert isinstance(event, TwilioMarkEvent)
        assert event.name == "tts-done-1"

    def test_parse_dtmf_event(self):
        message = json.dumps({"event": "dtmf", "streamSid": "MZ123", "dtmf": {"digit": "5"}})

        event_type, event = parse_twilio_message(message)

        assert event_type == TwilioEventType.DTMF
        assert isinstance(event, TwilioDTMFEvent)
        assert event.digit == "5"

    def test_parse_stop_event(self):
        event_type, _ = parse_twilio_message(json.dumps({"event": "stop", "streamSid": "MZ123"}))

        assert event_type == TwilioEventType.STOP

    def test_parse_invalid_json(self):
        with pytest.raises(ValueError, match="Invalid JSON"):
            parse_twilio_message("not json {")

    def test_parse_non_object(self):
        with pytest.raises(ValueError):
            parse_twilio_message("[1, 2, 3]")

    def test_parse_unknown_event(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            parse_twilio_message(json.dumps({"event": "bogus"}))


class TestMessageCreation:
    """Tests for outbound messages."""

    def test_create_media_message(self):
        audio = b"\x7f" * 160
        message = json.loads(create_media_message("MZ123", audio))

        assert message["event"] == "media"
        assert message["streamSid"] == "MZ123"
        assert base64.b64decode(message["media"]["payload"]) == audio

    def test_create_mark_message(self):
        message = json.loads(create_mark_message("MZ123", "tts-done"))

        assert message == {"event": "mark", "streamSid": "MZ123", "mark": {"name": "tts-done"}}

    def test_create_clear_message(self):
        message = json.loads(create_clear_message("MZ123"))

        assert message == {"event": "clear", "streamSid": "MZ123"}


class TestProtocolHandler:
    """Tests for per-connection protocol state."""

    @pytest.fixture
    def handler(self):
        handler = TwilioProtocolHandler()
        handler.handle_start(TwilioStartEvent(stream_sid="MZ123", call_sid="CA456"))
        return handler

    def test_start_sets_identity(self, handler):
        assert handler.stream_sid == "MZ123"
        assert handler.call_sid == "CA456"
        assert handler.is_active

    def test_duplicate_start_ignored(self, handler):
        assert handler.handle_start(TwilioStartEvent(stream_sid="MZ999", call_sid="CA999")) is False
        assert handler.stream_sid == "MZ123"
        assert handler.call_sid == "CA456"

    def test_outbound_requires_stream(self):
        handler = TwilioProtocolHandler()

        assert handler.create_audio_messages(b"\xff" * 320) == []
        assert handler.create_mark() == ""
        assert handler.create_clear() == ""

    def test_audio_messages_are_20ms_frames(self, handler):
        """Audio is split into 160-byte frames; the last one is padded with silence."""
        messages = handler.create_audio_messages(b"\x01" * 400)

        assert len(messages) == 3
        payloads = [base64.b64decode(json.loads(m)["media"]["payload"]) for m in messages]
        assert all(len(p) == 160 for p in payloads)
        assert payloads[-1][80:] == b"\xff" * 80

    def test_default_mark_name(self, handler):
        assert json.loads(handler.create_mark())["mark"]["name"] == END_OF_REPLY_MARK

    def test_mark_round_trip(self, handler):
        handler.create_mark("tts-done-1")

        rtt = handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="tts-done-1"))
        assert rtt >= 0
        assert handler.handle_mark(TwilioMarkEvent(stream_sid="MZ123", name="tts-done-1")) == 0.0

    def test_stop_deactivates(self, handler):
        handler.handle_stop()
        assert not handler.is_active
