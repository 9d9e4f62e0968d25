"""
Per-call context: which organization/assistant answers a called number.

The dashboard owns this data; the voice engine only reads it through a
`CallContextProvider`. The bundled provider serves a single tenant from
environment configuration.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and helpful AI phone receptionist for {business_name}.\n\n"
    "PHONE CALL GUIDELINES:\n"
    "- Keep responses concise (1-3 sentences) - this is spoken audio\n"
    "- Ask for one piece of information at a time\n"
    "- Never use bullet points, lists or markdown\n"
    "- If you don't understand something, ask for clarification\n"
    "- When collecting a phone number, email or address, read it back to confirm"
)

NOT_CONFIGURED_MESSAGE = "Sorry, this number is not currently configured. Please try again later."

MAX_KNOWLEDGE_BASE_CHARS = 12_000
NO_KNOWLEDGE_BASE = "No additional business information provided yet."
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

SCHEDULING_TOOLS_SECTION = (
    "SCHEDULING TOOLS:\n"
    "You have access to the following scheduling functions. Use them to help callers with appointments:\n"
    "- get_current_datetime: Call this FIRST to know today's date before checking availability or booking.\n"
    "- check_availability: Check available appointment slots for a specific date (YYYY-MM-DD format).\n"
    "- book_appointment: Book an appointment. Requires datetime (ISO format), caller name, and phone number.\n"
    "- cancel_appointment: Cancel an existing appointment by the caller's phone number.\n"
    "\n"
    "SCHEDULING WORKFLOW:\n"
    "1. When a caller wants to book, first call get_current_datetime to know today's date.\n"
    "2. Ask what date they prefer, then call check_availability for that date.\n"
    "3. Present the available times and let the caller choose.\n"
    "4. Collect their name and phone number, then call book_appointment.\n"
    "5. Confirm the booking details with the caller."
)
NO_BOOKING_INSTRUCTION = (
    "You do NOT have the ability to book appointments directly. If the caller wants to schedule, "
    "collect their preferred date/time, confirm the details, and let them know someone will confirm "
    "the appointment."
)
TRANSFER_INSTRUCTION = (
    "CAPABILITIES:\n"
    "- TRANSFERS: You can transfer calls using the transfer_call function. Use it when a caller asks "
    "to speak with a person or has an issue you cannot resolve."
)


@dataclass(frozen=True)
class TransferRule:
    """Where to send a caller when the assistant hands off to a human."""
    name: str
    phone: str
    keywords: Tuple[str, ...] = ()
    intent: Optional[str] = None
    announcement: Optional[str] = None
    priority: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferRule":
        keywords = data.get("triggerKeywords") or data.get("keywords") or []
        if isinstance(keywords, str):
            keywords = [keywords]
        return cls(
            name=str(data.get("transferToName") or data.get("name") or "a team member"),
            phone=str(data.get("transferToPhone") or data.get("phone") or ""),
            keywords=tuple(str(k) for k in keywords if str(k).strip()),
            intent=data.get("triggerIntent") or data.get("intent"),
            announcement=data.get("announcementMessage") or data.get("announcement"),
            priority=int(data.get("priority") or 0),
        )


def sort_transfer_rules(rules: List[TransferRule]) -> List[TransferRule]:
    """Highest priority first; stable for equal priorities."""
    return sorted(rules, key=lambda r: r.priority, reverse=True)


def parse_transfer_rules(raw: Optional[str]) -> List[TransferRule]:
    """Parse a JSON array of transfer rules; malformed input yields no rules."""
    if not raw or not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.error("Invalid TRANSFER_RULES JSON", error=str(e))
        return []
    if not isinstance(data, list):
        logger.error("TRANSFER_RULES must be a JSON array")
        return []

    rules = []
    for item in data:
        if not isinstance(item, dict):
            continue
        rule = TransferRule.from_dict(item)
        if rule.phone:
            rules.append(rule)
    return sort_transfer_rules(rules)


@dataclass
class CallContext:
    """Everything the pipeline needs to answer a specific number."""
    organization_id: str
    organization_name: str
    assistant_id: str
    system_prompt: str
    first_message: str = ""
    voice_id: Optional[str] = None
    calendar_enabled: bool = False
    transfer_rules: List[TransferRule] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.transfer_rules = sort_transfer_rules(list(self.transfer_rules))


class CallContextProvider(Protocol):
    async def load(self, called_number: Optional[str]) -> Optional[CallContext]: ...


def build_greeting(context: CallContext) -> str:
    """Opening line for the call."""
    if context.first_message:
        return context.first_message.replace("{business_name}", context.organization_name)
    return f"Hi there! Thanks for calling {context.organization_name}. How can I help you today?"


def parse_business_hours(raw: Optional[str]) -> Dict[str, Dict[str, str]]:
    """Parse `{"monday": {"open": "09:00", "close": "17:00"}, ...}`; malformed input yields no hours."""
    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        logger.error("Invalid BUSINESS_HOURS JSON", error=str(e))
        return {}
    if not isinstance(data, dict):
        logger.error("BUSINESS_HOURS must be a JSON object")
        return {}
    return {
        str(day).lower(): hours
        for day, hours in data.items()
        if isinstance(hours, dict)
    }


def format_hour(value: str) -> str:
    """Render a 24h `HH:MM` time for speech, e.g. `17:30` -> `5:30 PM`."""
    try:
        hour, minute = (int(part) for part in str(value).split(":"))
    except ValueError:
        return str(value)
    period = "PM" if hour >= 12 else "AM"
    hour12 = hour % 12 or 12
    return f"{hour12} {period}" if minute == 0 else f"{hour12}:{minute:02d} {period}"


def build_scheduling_section(
    timezone: str = "",
    business_hours: Optional[Dict[str, Dict[str, str]]] = None,
    appointment_minutes: int = 30,
    calendar_enabled: bool = False,
) -> str:
    lines = ["TIMEZONE & SCHEDULING:"]
    if timezone:
        lines.append(f"The business is in the {timezone} timezone.")

    if business_hours:
        lines.extend(["", "Business Hours:"])
        for day in WEEKDAYS:
            hours = business_hours.get(day) or {}
            if hours.get("open") and hours.get("close"):
                lines.append(f"- {day.capitalize()}: {format_hour(hours['open'])} - {format_hour(hours['close'])}")
            else:
                lines.append(f"- {day.capitalize()}: Closed")
        lines.extend(["", "Do NOT suggest appointment times outside of these business hours."])

    if appointment_minutes and appointment_minutes != 30:
        lines.append(f"Standard appointment duration is {appointment_minutes} minutes.")

    lines.append(SCHEDULING_TOOLS_SECTION if calendar_enabled else NO_BOOKING_INSTRUCTION)
    return "\n".join(lines)


def build_system_prompt(
    template: str,
    business_name: str,
    *,
    knowledge_base: str = "",
    timezone: str = "",
    business_hours: Optional[Dict[str, Dict[str, str]]] = None,
    appointment_minutes: int = 30,
    calendar_enabled: bool = False,
    has_transfer_rules: bool = False,
) -> str:
    """
    Render the assistant's prompt for a call.

    The knowledge base fills `{knowledge_base}` or is appended, then the
    transfer and scheduling sections are added so the prompt matches the
    tools offered to the model.
    """
    kb = (knowledge_base or "").strip()
    if len(kb) > MAX_KNOWLEDGE_BASE_CHARS:
        kb = kb[:MAX_KNOWLEDGE_BASE_CHARS] + "\n\n[Knowledge base truncated for brevity]"

    prompt = template
    if "{knowledge_base}" in prompt:
        prompt = prompt.replace("{knowledge_base}", kb or NO_KNOWLEDGE_BASE)
    elif kb:
        prompt = f"{prompt}\n\nBusiness Information:\n{kb}"
    prompt = prompt.replace("{business_name}", business_name)

    sections = [prompt]
    if has_transfer_rules:
        sections.append(TRANSFER_INSTRUCTION)
    sections.append(
        build_scheduling_section(timezone, business_hours, appointment_minutes, calendar_enabled)
    )
    return "\n\n".join(sections)


class EnvCallContextProvider:
    """Single-tenant provider built from `Config`."""

    def __init__(self, config: Any):
        self.config = config
        self._rules = parse_transfer_rules(config.transfer_rules_json)
        self._business_hours = parse_business_hours(config.business_hours_json)

    async def load(self, called_number: Optional[str]) -> Optional[CallContext]:
        if not self.config.organization_id or not self.config.assistant_id:
            logger.warning("No call context configured", called_number=called_number)
            return None

        prompt = build_system_prompt(
            self.config.system_prompt or DEFAULT_SYSTEM_PROMPT,
            self.config.organization_name,
            knowledge_base=self.config.knowledge_base,
            timezone=self.config.business_timezone,
            business_hours=self._business_hours,
            appointment_minutes=self.config.appointment_duration_minutes,
            calendar_enabled=self.config.calendar_enabled,
            has_transfer_rules=bool(self._rules),
        )
        return CallContext(
            organization_id=self.config.organization_id,
            organization_name=self.config.organization_name,
            assistant_id=self.config.assistant_id,
            system_prompt=prompt,
            first_message=self.config.first_message,
            voice_id=self.config.voice_id or None,
            calendar_enabled=self.config.calendar_enabled,
            transfer_rules=list(self._rules),
        )
