"""
Fire-and-forget call-completed notifications.

The dashboard does spam analysis, owner notifications and webhooks after a
call. The voice engine only tells it that a call ended; delivery runs in a
background task and can never block or fail call teardown.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Set

import httpx
import structlog

logger = structlog.get_logger(__name__)

NOTIFY_TIMEOUT_S = 10.0


class CallCompletedNotifier:
    def __init__(self, config: Any, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http = http_client
        self._owns_http = http_client is None
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.config.internal_api_url and self.config.internal_api_secret)

    def notify(self, payload: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule delivery and return immediately."""
        if not self.enabled:
            logger.debug("Call-completed notification skipped", reason="internal_api_not_configured")
            return None

        task = asyncio.create_task(self._send(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, payload: Dict[str, Any]) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(NOTIFY_TIMEOUT_S))

        url = f"{self.config.internal_api_url.rstrip('/')}/api/internal/call-completed"
        try:
            resp = await self._http.post(
                url,
                json=payload,
                headers={"X-Internal-Secret": self.config.internal_api_secret},
            )
            if resp.status_code >= 300:
                logger.error(
                    "Call-completed notification rejected",
                    call_id=payload.get("callId"),
                    status_code=resp.status_code,
                )
            else:
                logger.info("Call-completed notification sent", call_id=payload.get("callId"))
        except Exception as e:
            logger.error(
                "Failed to notify call completed",
                call_id=payload.get("callId"),
                error_type=type(e).__name__,
                error=str(e),
            )

    async def aclose(self) -> None:
        """Wait for in-flight notifications, then release the HTTP client."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
