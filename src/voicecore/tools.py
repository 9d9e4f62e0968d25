"""
LLM tool definitions and dispatch.

Calendar tools are delegated to the dashboard's internal API, which returns a
caller-facing sentence. `transfer_call` is handled locally through Twilio.
Every path returns a sentence that can be spoken; errors never leak to the
caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from src.voicecore.call_context import TransferRule
from src.voicecore.transfer import CallTransferer

logger = structlog.get_logger(__name__)

TOOL_CALL_TIMEOUT_S = 8.0

CALENDAR_FUNCTIONS = (
    "get_current_datetime",
    "check_availability",
    "book_appointment",
    "cancel_appointment",
)
CALENDAR_WRITE_FUNCTIONS = ("book_appointment", "cancel_appointment")

CALENDAR_UNAVAILABLE_MESSAGE = (
    "I'm sorry, I'm unable to access the calendar system right now. "
    "Would you like me to take your information instead?"
)
CALENDAR_ERROR_MESSAGE = (
    "I'm having trouble with that right now. Would you like me to take your information instead?"
)
CALENDAR_EXCEPTION_MESSAGE = "I'm having a little trouble right now. Could you give me a moment?"
EMPTY_RESULT_MESSAGE = "The operation completed but returned no message."
NO_TRANSFER_RULES_MESSAGE = (
    "I apologize, but I'm not able to transfer your call right now. Let me take your information "
    "and have someone call you back. Can you confirm your name and phone number?"
)

CALENDAR_TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "get_current_datetime",
            "description": (
                "Get the current date and time in the business timezone. Call this before checking "
                "availability or booking an appointment so you know today's date."
            ),
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "check_availability",
            "description": "Check available appointment slots for a specific date. Returns a list of available times.",
            "parameters": {
                "type": "object",
                "properties": {
                    "date": {"type": "string", "description": "The date to check in YYYY-MM-DD format"},
                },
                "required": ["date"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "book_appointment",
            "description": (
                "Book an appointment at a specific date and time. Requires the caller's name and phone number."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "datetime": {
                        "type": "string",
                        "description": "The appointment date and time in ISO format (e.g., 2026-03-15T14:00:00)",
                    },
                    "name": {"type": "string", "description": "The caller's full name"},
                    "phone": {"type": "string", "description": "The caller's phone number"},
                    "email": {"type": "string", "description": "The caller's email address (optional)"},
                    "notes": {
                        "type": "string",
                        "description": "Any additional notes about the appointment (optional)",
                    },
                },
                "required": ["datetime", "name", "phone"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "cancel_appointment",
            "description": (
                "Cancel an existing appointment. Looks up the appointment by the caller's phone number."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "phone": {
                        "type": "string",
                        "description": "The phone number used when the appointment was booked",
                    },
                    "reason": {"type": "string", "description": "Reason for cancellation (optional)"},
                },
                "required": ["phone"],
            },
        },
    },
]

TRANSFER_TOOL_DEFINITION: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "transfer_call",
        "description": (
            "Transfer the call to a human when the AI cannot adequately help. Use this when the caller "
            "asks to speak to a person, has a complex issue, or when there's an emergency."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": (
                        "The reason for the transfer (e.g., 'caller requested human', 'emergency', "
                        "'complex question')"
                    ),
                },
                "urgency": {
                    "type": "string",
                    "enum": ["low", "medium", "high"],
                    "description": (
                        "The urgency level: low (general inquiry), medium (needs attention soon), "
                        "high (emergency/urgent)"
                    ),
                },
                "summary": {
                    "type": "string",
                    "description": "A brief summary of the conversation and what the caller needs",
                },
            },
            "required": ["reason"],
        },
    },
}


def tool_definitions(calendar_enabled: bool, has_transfer_rules: bool) -> List[Dict[str, Any]]:
    """Tools offered to the model for this call."""
    tools: List[Dict[str, Any]] = []
    if calendar_enabled:
        tools.extend(CALENDAR_TOOL_DEFINITIONS)
    if has_transfer_rules:
        tools.append(TRANSFER_TOOL_DEFINITION)
    return tools


@dataclass
class ToolContext:
    organization_id: str
    assistant_id: str
    call_sid: Optional[str] = None
    transfer_rules: List[TransferRule] = field(default_factory=list)
    test_mode: bool = False


@dataclass
class ToolResult:
    message: str
    action: Optional[str] = None  # "transfer" | "callback"
    transfer_target: Optional[str] = None


def match_transfer_rule(rules: List[TransferRule], reason: Optional[str]) -> Optional[TransferRule]:
    """
    Pick the transfer rule for a model-supplied reason.

    Keywords are checked before intent for each rule, in priority order; with
    no match the highest-priority rule wins.
    """
    if not rules:
        return None

    lower_reason = (reason or "").lower()
    for rule in rules:
        if any(k.lower() in lower_reason for k in rule.keywords if k):
            return rule
        if rule.intent and rule.intent.lower() in lower_reason:
            return rule
    return rules[0]


def transfer_announcement(rule: TransferRule, urgency: Optional[str]) -> str:
    if rule.announcement:
        return rule.announcement
    target = rule.name or "a team member"
    if urgency == "high":
        return f"I understand this is urgent. Let me connect you with {target} right away. Please hold."
    return f"Let me connect you with {target} who can better assist you. Please hold for just a moment."


def simulate_calendar_write(function_name: str, args: Dict[str, Any]) -> ToolResult:
    """Fake booking/cancellation for test calls."""
    if function_name == "book_appointment":
        return ToolResult(
            f"Appointment confirmed for {args.get('name')} at {args.get('datetime')}. "
            "A confirmation will be sent shortly."
        )
    if function_name == "cancel_appointment":
        return ToolResult(
            f"The appointment associated with {args.get('phone')} has been cancelled successfully."
        )
    return ToolResult("Done.")


class ToolDispatcher:
    """Routes tool calls requested by the LLM."""

    def __init__(
        self,
        config: Any,
        transferer: Optional[CallTransferer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.transferer = transferer or CallTransferer(config)
        self._http = http_client
        self._owns_http = http_client is None

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(TOOL_CALL_TIMEOUT_S))
        return self._http

    async def execute(self, function_name: str, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        args = args or {}
        logger.info(
            "Executing tool",
            call_sid=context.call_sid,
            tool=function_name,
            test_mode=context.test_mode,
        )

        if function_name == "transfer_call":
            return await self._execute_transfer(args, context)

        if function_name in CALENDAR_FUNCTIONS:
            if context.test_mode and function_name in CALENDAR_WRITE_FUNCTIONS:
                return simulate_calendar_write(function_name, args)
            return await self._execute_calendar(function_name, args, context)

        logger.warning("Unknown tool requested", call_sid=context.call_sid, tool=function_name)
        return ToolResult(f"Unknown function: {function_name}")

    async def _execute_calendar(
        self,
        function_name: str,
        args: Dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        if not self.config.internal_api_url or not self.config.internal_api_secret:
            return ToolResult(CALENDAR_UNAVAILABLE_MESSAGE)

        url = f"{self.config.internal_api_url.rstrip('/')}/api/internal/tool-call"
        payload = {
            "organizationId": context.organization_id,
            "assistantId": context.assistant_id,
            "functionName": function_name,
            "arguments": args,
        }

        try:
            resp = await self._get_http().post(
                url,
                json=payload,
                headers={"X-Internal-Secret": self.config.internal_api_secret},
                timeout=TOOL_CALL_TIMEOUT_S,
            )
            if resp.status_code < 200 or resp.status_code >= 300:
                logger.error(
                    "Internal tool API error",
                    call_sid=context.call_sid,
                    tool=function_name,
                    status_code=resp.status_code,
                    response=resp.text[:500],
                )
                return ToolResult(CALENDAR_ERROR_MESSAGE)

            data = resp.json()
        except Exception as e:
            logger.error(
                "Tool call failed",
                call_sid=context.call_sid,
                tool=function_name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ToolResult(CALENDAR_EXCEPTION_MESSAGE)

        message = data.get("message") if isinstance(data, dict) else None
        return ToolResult(message or EMPTY_RESULT_MESSAGE)

    async def _execute_transfer(self, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        rule = match_transfer_rule(context.transfer_rules, args.get("reason"))
        if rule is None:
            return ToolResult(NO_TRANSFER_RULES_MESSAGE)

        announcement = transfer_announcement(rule, args.get("urgency"))
        logger.info(
            "Transfer requested",
            call_sid=context.call_sid,
            target=rule.name,
            urgency=args.get("urgency"),
            reason=(args.get("reason") or "")[:100],
        )

        if not context.call_sid:
            return ToolResult(announcement, action="transfer", transfer_target=rule.phone)

        result = await self.transferer.transfer(context.call_sid, rule.phone, announcement)
        return ToolResult(
            result.message,
            action="transfer" if result.success else "callback",
            transfer_target=rule.phone,
        )

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None
