"""
Deepgram Speech-to-Text streaming bridge.

- Accepts mu-law 8kHz directly from Twilio (no conversion needed)
- One persistent WebSocket per call, owned by the call session
- Demultiplexes interim results, final results, UtteranceEnd and errors into
  a listener with one method per event kind
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

import structlog
import websockets

from src.voicecore.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

# 1000 = normal closure, 1005 = closed without a status code (our own close()).
NORMAL_CLOSE_CODES = (1000, 1005)
STT_CONNECT_TIMEOUT_S = 8.0


class STTConnectionError(Exception):
    """Deepgram connection lost or reported an error mid-call."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TranscriptListener(Protocol):
    """Receiver for demultiplexed STT events."""

    async def on_partial(self, text: str) -> None: ...

    async def on_final(self, text: str) -> None: ...

    async def on_utterance_end(self) -> None: ...

    async def on_error(self, error: Exception) -> None: ...


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    partial_transcripts: int = 0
    final_transcripts: int = 0
    dropped_frames: int = 0


def build_listen_url(config: Any) -> str:
    params = {
        "model": config.deepgram_stt_model,
        "language": config.deepgram_language,
        "encoding": "mulaw",
        "sample_rate": 8000,
        "channels": 1,
        "punctuate": "true",
        "smart_format": "true",
        "interim_results": "true",
        "endpointing": 300,
        "utterance_end_ms": 1000,
    }
    return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        listener: TranscriptListener,
        config: Optional[Any] = None,
        call_sid: str = "",
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.call_sid = call_sid
        self._listener = listener
        self._ws = None
        self._is_connected = False
        self._closed = False
        self._drop_warned = False
        self._receive_task: Optional[asyncio.Task] = None
        self._metrics = STTMetrics()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True
        if self._closed:
            return False

        url = build_listen_url(self.config)
        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}

        try:
            logger.info("Connecting to Deepgram", call_sid=self.call_sid, model=self.config.deepgram_stt_model)
            ws = await websockets.connect(
                url,
                additional_headers=headers,
                open_timeout=STT_CONNECT_TIMEOUT_S,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                call_sid=self.call_sid,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        if self._closed:
            # Call ended while the handshake was in flight.
            await ws.close()
            return False

        self._ws = ws
        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", call_sid=self.call_sid)
        return True

    async def close(self) -> None:
        """Close the Deepgram connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._is_connected = False

        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", call_sid=self.call_sid, error=str(e))

        logger.info(
            "Deepgram STT closed",
            call_sid=self.call_sid,
            audio_ms=round(self._metrics.total_audio_ms, 1),
            finals=self._metrics.final_transcripts,
            dropped_frames=self._metrics.dropped_frames,
        )

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Forward a raw mu-law frame to Deepgram, or drop it if not connected."""
        if not audio_bytes:
            return

        if not self._is_connected or not self._ws:
            self._metrics.dropped_frames += 1
            if not self._drop_warned:
                self._drop_warned = True
                logger.warning(
                    "Dropping audio - Deepgram WebSocket not open",
                    call_sid=self.call_sid,
                )
            return

        try:
            self._metrics.total_audio_ms += len(audio_bytes) / 8
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", call_sid=self.call_sid, error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        ws = self._ws
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                except (TypeError, ValueError):
                    logger.warning("Invalid JSON from Deepgram", call_sid=self.call_sid)
                    continue
                try:
                    await self._handle_message(data)
                except Exception as e:
                    logger.error("Error processing Deepgram message", call_sid=self.call_sid, error=str(e))

            # Iteration ends quietly on 1000, 1001 and 1005.
            await self._on_remote_close(ws.close_code)
        except websockets.exceptions.ConnectionClosed as e:
            await self._on_remote_close(e.rcvd.code if e.rcvd is not None else None)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", call_sid=self.call_sid, error=str(e))
            if not self._closed:
                await self._listener.on_error(STTConnectionError(str(e)))
        finally:
            self._is_connected = False

    async def _on_remote_close(self, code: Optional[int]) -> None:
        if code is None:
            code = 1006
        self._is_connected = False
        if self._closed or code in NORMAL_CLOSE_CODES:
            logger.info("Deepgram connection closed", call_sid=self.call_sid, code=code)
            return
        logger.error("Deepgram connection lost during active call", call_sid=self.call_sid, code=code)
        await self._listener.on_error(
            STTConnectionError(f"Deepgram closed abnormally ({code})", code=code)
        )

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            transcript = (alternatives[0].get("transcript") or "").strip()
            if not transcript:
                return

            if data.get("is_final", False):
                self._metrics.final_transcripts += 1
                logger.debug("STT final", call_sid=self.call_sid, text=transcript[:50])
                await self._listener.on_final(transcript)
            else:
                self._metrics.partial_transcripts += 1
                await self._listener.on_partial(transcript)

        elif msg_type_norm in ("utteranceend", "utterance_end"):
            logger.debug("Utterance end detected", call_sid=self.call_sid)
            await self._listener.on_utterance_end()

        elif msg_type_norm == "error":
            message = data.get("description") or data.get("message") or "Unknown"
            logger.error("Deepgram error", call_sid=self.call_sid, error=message)
            await self._listener.on_error(STTConnectionError(str(message)))

        elif msg_type_norm == "metadata":
            logger.debug("Deepgram metadata", call_sid=self.call_sid, request_id=data.get("request_id"))


def create_stt(listener: TranscriptListener, config: Any, call_sid: str = "") -> DeepgramSTT:
    """Default STT factory used by the pipeline."""
    return DeepgramSTT(listener, config=config, call_sid=call_sid)
