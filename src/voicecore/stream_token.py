"""
Short-lived, single-use stream tokens.

The /twiml webhook issues a token and embeds it as a custom parameter on the
<Stream> instruction. Twilio echoes it back in the media stream `start` event,
which is the only proof that the WebSocket belongs to a call we answered.

Token format: `{issued_ms}.{hex hmac-sha256(secret, issued_ms)}`
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 30.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class PendingToken:
    """Server-side metadata captured when the token was issued."""
    issued_at: float
    called_number: Optional[str] = None
    caller_phone: Optional[str] = None


class StreamTokenStore:
    """
    Lock-guarded pending-token map with TTL expiry.

    One instance is shared by the webhook handler (issue) and every media
    stream connection (consume).
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("Stream token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: Dict[str, PendingToken] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _sign(self, timestamp: str) -> str:
        return hmac.new(self._secret, timestamp.encode("utf-8"), hashlib.sha256).hexdigest()

    def issue(
        self,
        called_number: Optional[str] = None,
        caller_phone: Optional[str] = None,
    ) -> str:
        """Create a new token and record it as pending."""
        now = self._clock()
        timestamp = str(int(now * 1000))
        token = f"{timestamp}.{self._sign(timestamp)}"
        with self._lock:
            self._pending[token] = PendingToken(
                issued_at=now,
                called_number=called_number,
                caller_phone=caller_phone,
            )
        return token

    def consume(self, token: Optional[str]) -> Optional[PendingToken]:
        """
        Verify a token and return its metadata.

        The token is removed from the pending set before any other check, so a
        second attempt fails even if the first one failed too.
        """
        if not token or not isinstance(token, str):
            return None

        with self._lock:
            pending = self._pending.pop(token, None)

        if pending is None:
            logger.warning("Stream token rejected", reason="unknown_or_replayed")
            return None

        if self._clock() - pending.issued_at > self.ttl_seconds:
            logger.warning("Stream token rejected", reason="expired")
            return None

        timestamp, sep, signature = token.partition(".")
        if not sep or not timestamp or not signature:
            logger.warning("Stream token rejected", reason="malformed")
            return None

        expected = self._sign(timestamp)
        if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
            logger.warning("Stream token rejected", reason="bad_signature")
            return None

        return pending

    def verify(self, token: Optional[str]) -> bool:
        """Single-use verification."""
        return self.consume(token) is not None

    def sweep(self) -> int:
        """Purge expired pending tokens. Returns the number removed."""
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            expired = [t for t, p in self._pending.items() if p.issued_at < cutoff]
            for token in expired:
                del self._pending[token]
        if expired:
            logger.debug("Swept expired stream tokens", removed=len(expired))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS) -> None:
        """Background task: sweep periodically until cancelled."""
        try:
            while True:
                await asyncio.sleep(interval_seconds)
                self.sweep()
        except asyncio.CancelledError:
            pass
