from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.voicecore.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"
DEFAULT_VOICE = "aura-asteria-en"
TTS_TIMEOUT_S = 8.0

# Dashboard voice ids (ElevenLabs catalogue) and legacy short names -> Deepgram Aura model.
VOICE_MAP: dict[str, str] = {
    # American female
    "EXAVITQu4vr4xnSDxMaL": "aura-asteria-en",
    "21m00Tcm4TlvDq8ikWAM": "aura-luna-en",
    "jBpfuIE2acCO8z3wKNLl": "aura-stella-en",
    "MF3mGyEYCl7XYWbV9V6O": "aura-asteria-en",
    "AZnzlk1XvdvUeBnXmlld": "aura-stella-en",
    # American male
    "pNInz6obpgDQGcFmaJgB": "aura-orion-en",
    "yoZ06aMxZJJ28mfd3POQ": "aura-arcas-en",
    "ErXwobaYiN019PkySvjV": "aura-orion-en",
    "TxGEqnHWrfWFTfGW9XjX": "aura-orpheus-en",
    "VR6AewLTigWG4xSOukaG": "aura-angus-en",
    "CYw3kZ02Hs0563khs1Fj": "aura-perseus-en",
    # British
    "onwK4e9ZLuTAKqWW03F9": "aura-arcas-en",
    "ThT5KcBeYPX3keUQqHPh": "aura-asteria-en",
    "SOYHLrjzK2X1ezoPC6cr": "aura-angus-en",
    "oWAxZDx7w5VEj9dCyTzz": "aura-hera-en",
    # Australian
    "ZQe5CZNOzWyzPSCn5a3c": "aura-arcas-en",
    "XB0fDUnXU5powFXDhCwa": "aura-asteria-en",
    "IKne3meq5aSn9XLyUdCD": "aura-orion-en",
    # Short names
    "rachel": "aura-luna-en",
    "sarah": "aura-asteria-en",
    "adam": "aura-orion-en",
    "josh": "aura-orpheus-en",
}


class TTSError(Exception):
    """Speech synthesis failed."""
    pass


def resolve_voice(voice_id: Optional[str], default: str = DEFAULT_VOICE) -> str:
    """Map a configured voice id to a Deepgram Aura model name."""
    if not voice_id:
        return default
    if voice_id.startswith("aura-"):
        return voice_id
    return VOICE_MAP.get(voice_id) or VOICE_MAP.get(voice_id.lower()) or default


class DeepgramTTS:
    """
    Deepgram Aura text-to-speech over HTTP.

    Returns raw mu-law 8kHz (no container), the same encoding Twilio plays, so
    the bytes go straight to the framer.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(TTS_TIMEOUT_S))
        return self._client

    async def synthesize(self, text: str, *, voice: Optional[str] = None) -> bytes:
        """Synthesize `text` to mu-law 8kHz bytes."""
        if not text or not text.strip():
            return b""

        model = resolve_voice(voice, default=self.config.deepgram_tts_voice or DEFAULT_VOICE)
        params = {
            "model": model,
            "encoding": "mulaw",
            "sample_rate": 8000,
            "container": "none",
        }
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }

        started = time.time()
        try:
            resp = await self._get_client().post(
                DEEPGRAM_SPEAK_URL,
                params=params,
                headers=headers,
                json={"text": text},
                timeout=TTS_TIMEOUT_S,
            )
        except httpx.HTTPError as e:
            raise TTSError(f"Deepgram TTS request failed: {type(e).__name__}: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise TTSError(f"Deepgram TTS error {resp.status_code}: {resp.text[:200]}")

        audio = resp.content
        logger.debug(
            "TTS synthesized",
            model=model,
            chars=len(text),
            bytes=len(audio),
            elapsed_ms=round((time.time() - started) * 1000, 2),
        )
        return audio

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
