"""
Warm transfer of a live call via the Twilio REST API.

The call is redirected with TwiML that announces the transfer and dials the
destination. Failures never raise: they return a callback prompt so the
caller is not left in dead air.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Optional
from xml.sax.saxutils import escape

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

logger = structlog.get_logger(__name__)

TRANSFER_TIMEOUT_S = 8.0

DEFAULT_ANNOUNCEMENT = "Please hold while I transfer your call."

MISSING_CREDENTIALS_MESSAGE = (
    "I'm sorry, I'm unable to transfer the call right now. Let me take your information instead."
)
MISSING_TARGET_MESSAGE = "I'm sorry, I don't have the information needed to transfer this call."
API_ERROR_MESSAGE = (
    "I'm sorry, I wasn't able to complete the transfer. "
    "Let me take your information and have someone call you back."
)
UNEXPECTED_ERROR_MESSAGE = (
    "I'm sorry, I'm having trouble transferring the call. Let me take your information instead."
)


@dataclass(frozen=True)
class TransferResult:
    success: bool
    message: str


def sanitize_phone(number: str) -> str:
    return re.sub(r"[^+\d]", "", number or "")


def build_transfer_twiml(announcement: Optional[str], number: str) -> str:
    say = escape(announcement or DEFAULT_ANNOUNCEMENT, {'"': "&quot;", "'": "&apos;"})
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f"<Response><Say>{say}</Say><Dial>{sanitize_phone(number)}</Dial></Response>"
    )


class CallTransferer:
    """Redirects an in-progress call to a human."""

    def __init__(self, config: Any, client: Optional[TwilioClient] = None):
        self.config = config
        self._client = client

    def _get_client(self) -> Optional[TwilioClient]:
        if self._client is None and self.config.twilio_account_sid and self.config.twilio_auth_token:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def transfer(self, call_sid: str, number: str, announcement: Optional[str]) -> TransferResult:
        client = self._get_client()
        if client is None:
            logger.error("Cannot transfer - missing Twilio credentials", call_sid=call_sid)
            return TransferResult(False, MISSING_CREDENTIALS_MESSAGE)

        if not call_sid or not sanitize_phone(number):
            return TransferResult(False, MISSING_TARGET_MESSAGE)

        twiml = build_transfer_twiml(announcement, number)

        def _update() -> None:
            client.calls(call_sid).update(twiml=twiml)

        try:
            # The Twilio SDK is synchronous.
            await asyncio.wait_for(asyncio.to_thread(_update), timeout=TRANSFER_TIMEOUT_S)
        except TwilioException as e:
            logger.error("Twilio transfer failed", call_sid=call_sid, error=str(e))
            return TransferResult(False, API_ERROR_MESSAGE)
        except Exception as e:
            logger.error("Failed to transfer call", call_sid=call_sid, error_type=type(e).__name__, error=str(e))
            return TransferResult(False, UNEXPECTED_ERROR_MESSAGE)

        logger.info("Call transferred", call_sid=call_sid, transfer_to=sanitize_phone(number))
        return TransferResult(True, announcement or DEFAULT_ANNOUNCEMENT)
