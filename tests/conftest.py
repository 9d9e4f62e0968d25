"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "TWILIO_VALIDATE_SIGNATURE": "false",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "STREAM_TOKEN_SECRET": "test_stream_secret",
        "ORGANIZATION_ID": "org_123",
        "ORGANIZATION_NAME": "Smile Dental",
        "ASSISTANT_ID": "asst_456",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicecore.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_factory():
    """Build a Twilio start message carrying the given stream token."""
    def _build(token=None, stream_sid="MZ123456", call_sid="CA789012"):
        custom = {"auth_token": token} if token is not None else {}
        return json.dumps({
            "event": "start",
            "sequenceNumber": "1",
            "streamSid": stream_sid,
            "start": {
                "streamSid": stream_sid,
                "callSid": call_sid,
                "accountSid": "AC345678",
                "tracks": ["inbound"],
                "customParameters": custom,
            },
        })
    return _build


@pytest.fixture
def twilio_start_message(twilio_start_factory):
    """Sample Twilio start message without a stream token."""
    return twilio_start_factory()


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
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
def twilio_mark_factory():
    """Build a Twilio mark echo for the given mark name."""
    def _build(name, stream_sid="MZ123456"):
        return json.dumps({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})
    return _build
