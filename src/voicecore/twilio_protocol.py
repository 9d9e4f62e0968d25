"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and customParameters
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio (for barge-in)
"""

import base64
import binascii
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import msgspec
import structlog

from src.voicecore.audio import TWILIO_FRAME_SIZE, chunk_audio

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

END_OF_REPLY_MARK = "tts-done"


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def auth_token(self) -> Optional[str]:
        value = self.custom_parameters.get("auth_token")
        return value if isinstance(value, str) and value else None

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = message.get("start") or {}
        return cls(
            stream_sid=start.get("streamSid") or message.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks") or [],
            custom_parameters=start.get("customParameters") or {},
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = message.get("media") or {}
        try:
            payload = base64.b64decode(media.get("payload", ""), validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Invalid base64 media payload")

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0) or 0),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        mark = message.get("mark") or {}
        return cls(stream_sid=message.get("streamSid", ""), name=mark.get("name", ""))


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        dtmf = message.get("dtmf") or {}
        return cls(stream_sid=message.get("streamSid", ""), digit=dtmf.get("digit", ""))


def parse_twilio_message(raw_message: Any) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_type_str = message.get("event", "")
    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    if event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    if event_type == TwilioEventType.DTMF:
        return event_type, TwilioDTMFEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Outbound media event carrying one mu-law frame."""
    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {"payload": base64.b64encode(audio_payload).decode("utf-8")},
    }
    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Outbound mark event.

    Twilio echoes the mark back once all audio queued before it has played.
    """
    message = {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}
    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """Outbound clear event; drops audio Twilio has buffered but not played."""
    return encoder.encode({"event": "clear", "streamSid": stream_sid}).decode("utf-8")


class TwilioProtocolHandler:
    """
    Per-connection protocol state.

    The stream and call SIDs are assigned by the first start event and never
    change afterwards.
    """

    def __init__(self):
        self.stream_sid = ""
        self.call_sid = ""
        self.is_active = False
        self._pending_marks: Dict[str, float] = {}

    def handle_start(self, event: TwilioStartEvent) -> bool:
        """Record the stream identity. Returns False for a duplicate start."""
        if self.stream_sid:
            logger.warning(
                "Ignoring duplicate start event",
                stream_sid=self.stream_sid,
                new_stream_sid=event.stream_sid,
            )
            return False
        self.stream_sid = event.stream_sid
        self.call_sid = event.call_sid
        self.is_active = True
        return True

    def handle_stop(self) -> None:
        self.is_active = False

    def handle_mark(self, event: TwilioMarkEvent) -> float:
        """Returns playback round-trip time in ms, or 0 for an unknown mark."""
        sent_at = self._pending_marks.pop(event.name, None)
        if sent_at is None:
            return 0.0
        return (time.time() - sent_at) * 1000

    def create_audio_messages(self, audio_bytes: bytes) -> List[str]:
        """Chunk audio into 20ms frames (160 bytes) wrapped as media events."""
        if not self.stream_sid:
            return []
        return [create_media_message(self.stream_sid, chunk) for chunk in chunk_audio(audio_bytes, TWILIO_FRAME_SIZE)]

    def create_mark(self, name: str = END_OF_REPLY_MARK) -> str:
        if not self.stream_sid:
            return ""
        self._pending_marks[name] = time.time()
        return create_mark_message(self.stream_sid, name)

    def create_clear(self) -> str:
        if not self.stream_sid:
            return ""
        self._pending_marks.clear()
        return create_clear_message(self.stream_sid)
