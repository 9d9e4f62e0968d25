"""
Audio framing for Twilio Media Streams.

Twilio, Deepgram STT and Deepgram TTS all speak mu-law 8kHz, so audio is
never transcoded here; it is only sliced into the 20ms frames Twilio plays.
"""

from typing import Generator

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
ULAW_SILENCE = b"\xff"


def chunk_audio(audio_bytes: bytes, chunk_size: int = TWILIO_FRAME_SIZE) -> Generator[bytes, None, None]:
    """
    Chunk audio into fixed-size frames.

    The last frame is padded with mu-law silence so every frame is exactly
    `chunk_size` bytes.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    for i in range(0, len(audio_bytes), chunk_size):
        chunk = audio_bytes[i:i + chunk_size]
        if len(chunk) < chunk_size:
            chunk = chunk + ULAW_SILENCE * (chunk_size - len(chunk))
        yield chunk


def get_audio_duration_ms(audio_bytes: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> float:
    """Duration of mu-law audio (1 byte per sample) in milliseconds."""
    if not audio_bytes:
        return 0.0
    return len(audio_bytes) / sample_rate * 1000

