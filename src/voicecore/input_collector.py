"""
Structured-input collection for spoken answers.

When the assistant has just asked for a phone number, email, name, address or
a date/time, callers pause mid-answer ("oh four one two ... three four five").
Deepgram finalizes each fragment separately, so instead of starting a turn on
every final we buffer fragments per expected input type and flush once the
text looks complete (or a hard ceiling is hit).

Pure regex, no LLM call.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Pattern, Tuple

import structlog

logger = structlog.get_logger(__name__)


class InputType(str, Enum):
    """Kind of answer the assistant is waiting for."""
    PHONE = "phone"
    EMAIL = "email"
    NAME = "name"
    ADDRESS = "address"
    DATE_TIME = "date_time"
    GENERAL = "general"


@dataclass(frozen=True)
class BufferConfig:
    """Timing for one input type."""
    debounce_ms: int
    max_wait_ms: int
    ignore_utterance_end: bool


@dataclass(frozen=True)
class ValidationResult:
    complete: bool
    reason: str = ""


# Phone numbers get the longest debounce and keep listening through Deepgram's
# UtteranceEnd because callers pause between digit groups.
BUFFER_CONFIGS: Dict[InputType, BufferConfig] = {
    InputType.PHONE: BufferConfig(debounce_ms=2000, max_wait_ms=8000, ignore_utterance_end=True),
    InputType.EMAIL: BufferConfig(debounce_ms=1500, max_wait_ms=6000, ignore_utterance_end=False),
    InputType.NAME: BufferConfig(debounce_ms=1200, max_wait_ms=4000, ignore_utterance_end=False),
    InputType.ADDRESS: BufferConfig(debounce_ms=1500, max_wait_ms=8000, ignore_utterance_end=False),
    InputType.DATE_TIME: BufferConfig(debounce_ms=1000, max_wait_ms=4000, ignore_utterance_end=False),
    InputType.GENERAL: BufferConfig(debounce_ms=400, max_wait_ms=2000, ignore_utterance_end=False),
}

SPOKEN_DIGITS: Dict[str, str] = {
    "zero": "0", "oh": "0", "o": "0",
    "one": "1", "two": "2", "three": "3", "four": "4", "five": "5",
    "six": "6", "seven": "7", "eight": "8", "nine": "9",
}

MULTIPLIERS: Dict[str, int] = {"double": 2, "triple": 3}

# Ordered (type, patterns) table; first matching type wins.
# "Is this the best phone number to reach you?" is classified as PHONE even
# though the answer is yes/no. Known over-trigger, kept as-is.
INPUT_PATTERNS: List[Tuple[InputType, List[Pattern[str]]]] = [
    (InputType.PHONE, [
        re.compile(r"phone\s*number", re.I),
        re.compile(r"contact\s*number", re.I),
        re.compile(r"mobile\s*(number|phone)?", re.I),
        re.compile(r"cell\s*(number|phone)?", re.I),
        re.compile(r"call\s*you\s*at", re.I),
        re.compile(r"reach\s*you\s*at", re.I),
        re.compile(r"best\s*number", re.I),
        re.compile(r"call\s*-?back\s*number", re.I),
        re.compile(r"number\s*(to|I|we)\s*(can|could|should)", re.I),
    ]),
    (InputType.EMAIL, [
        re.compile(r"e[\s-]?mail", re.I),
        re.compile(r"email\s*address", re.I),
    ]),
    (InputType.NAME, [
        re.compile(r"your\s*(full\s*)?name", re.I),
        re.compile(r"first\s*name", re.I),
        re.compile(r"last\s*name", re.I),
        re.compile(r"who\s*am\s*I\s*speaking", re.I),
        re.compile(r"may\s*I\s*(have|get)\s*your\s*name", re.I),
        re.compile(r"name\s*(please|for)", re.I),
        re.compile(r"spell\s*your\s*name", re.I),
    ]),
    (InputType.ADDRESS, [
        re.compile(r"address", re.I),
        re.compile(r"street\s*(name|number|address)?", re.I),
        re.compile(r"suburb", re.I),
        re.compile(r"postcode", re.I),
        re.compile(r"zip\s*code", re.I),
        re.compile(r"city\s*and\s*state", re.I),
        re.compile(r"where\s*(are\s*you|do\s*you)\s*located", re.I),
    ]),
    (InputType.DATE_TIME, [
        re.compile(r"what\s*(date|time|day)", re.I),
        re.compile(r"when\s*would", re.I),
        re.compile(r"which\s*day", re.I),
        re.compile(r"preferred\s*(date|time|day)", re.I),
        re.compile(r"what\s*time\s*(works|suits|is)", re.I),
        re.compile(r"when\s*(are|is)\s*(you|the)", re.I),
        re.compile(r"schedule\s*(for|on)", re.I),
    ]),
]

_TOKEN_SPLIT = re.compile(r"[\s,.\-]+")
_MULTIPLIER_RE = re.compile(r"\b(double|triple)\s+(\w+)", re.I)
_ASCII_DIGITS = re.compile(r"[0-9]+")

_EMAIL_AT = re.compile(r"@|\bat\b", re.I)
_EMAIL_TLD = re.compile(r"\.(com|net|org|edu|gov|io|au|uk|nz|co)(\.\w{2,3})?\b", re.I)
_EMAIL_SPOKEN_TLD = re.compile(r"\bdot\s*(com|net|org|edu|gov|io|au|uk|nz|co)\b", re.I)

_STREET_RE = re.compile(
    r"\b\d+\s+\w+\s*(street|st|road|rd|avenue|ave|drive|dr|lane|ln|place|pl|court|ct"
    r"|way|boulevard|blvd|crescent|cres|terrace|tce)\b",
    re.I,
)
_POSTCODE_RE = re.compile(r"\b\d{4}\b")

_DATE_RE = re.compile(
    r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday|tomorrow|today"
    r"|next\s+\w+|this\s+\w+|\d{1,2}(st|nd|rd|th))\b",
    re.I,
)
_TIME_RE = re.compile(
    r"(\b\d{1,2}(:\d{2})?\s*(am|pm|a\.m\.?|p\.m\.?)(?!\w)|\b\d{1,2}:\d{2}\b|\b(morning|afternoon|evening)\b)",
    re.I,
)


def extract_digits(text: str) -> str:
    """
    Extract digits from spoken text.

    Handles "0412 345 678", "oh four one two", "double five", "triple zero".
    Non-digit filler words are skipped; order is preserved.
    """
    if not text:
        return ""

    def _expand(match: re.Match[str]) -> str:
        count = MULTIPLIERS[match.group(1).lower()]
        word = match.group(2).lower()
        digit = SPOKEN_DIGITS.get(word) or (word if re.fullmatch(r"[0-9]", word) else "")
        return digit * count if digit else match.group(0)

    expanded = _MULTIPLIER_RE.sub(_expand, text.lower())

    digits: List[str] = []
    for token in _TOKEN_SPLIT.split(expanded):
        if _ASCII_DIGITS.fullmatch(token):
            digits.append(token)
        elif token in SPOKEN_DIGITS:
            digits.append(SPOKEN_DIGITS[token])
    return "".join(digits)


def classify_expected_input(prompt_text: Optional[str]) -> InputType:
    """Detect what the assistant is asking for from its last message."""
    if not prompt_text:
        return InputType.GENERAL

    for input_type, patterns in INPUT_PATTERNS:
        for pattern in patterns:
            if pattern.search(prompt_text):
                return input_type
    return InputType.GENERAL


def _validate_phone(text: str) -> ValidationResult:
    digits = extract_digits(text)
    if len(digits) in (8, 10):
        return ValidationResult(True, f"{len(digits)} digits found")
    return ValidationResult(False, f"{len(digits)} digits so far")


def _validate_email(text: str) -> ValidationResult:
    has_at = bool(_EMAIL_AT.search(text))
    has_tld = bool(_EMAIL_TLD.search(text) or _EMAIL_SPOKEN_TLD.search(text))
    if has_at and has_tld:
        return ValidationResult(True, "address and TLD found")
    if not has_at:
        return ValidationResult(False, "no @ yet")
    return ValidationResult(False, "no TLD yet")


def _validate_name(text: str) -> ValidationResult:
    words = text.split()
    if len(words) >= 2:
        return ValidationResult(True, f"{len(words)} words")
    return ValidationResult(False, f"only {len(words)} word(s)")


def _validate_address(text: str) -> ValidationResult:
    if _STREET_RE.search(text):
        return ValidationResult(True, "street address found")
    if _POSTCODE_RE.search(text):
        return ValidationResult(True, "postcode found")
    return ValidationResult(False, "no structural address elements yet")


def _validate_date_time(text: str) -> ValidationResult:
    if _DATE_RE.search(text):
        return ValidationResult(True, "date reference found")
    if _TIME_RE.search(text):
        return ValidationResult(True, "time reference found")
    return ValidationResult(False, "no date/time reference yet")


_VALIDATORS: Dict[InputType, Callable[[str], ValidationResult]] = {
    InputType.PHONE: _validate_phone,
    InputType.EMAIL: _validate_email,
    InputType.NAME: _validate_name,
    InputType.ADDRESS: _validate_address,
    InputType.DATE_TIME: _validate_date_time,
}


def _coerce_type(input_type: object) -> Optional[InputType]:
    try:
        return InputType(input_type)
    except ValueError:
        return None


def validate(input_type: object, text: str) -> ValidationResult:
    """Is the accumulated text a complete answer for this input type?"""
    validator = _VALIDATORS.get(_coerce_type(input_type))  # type: ignore[arg-type]
    if validator is None:
        return ValidationResult(True)
    return validator(text or "")


def buffer_config(input_type: object) -> BufferConfig:
    """Timing config for an input type; unknown types get the general config."""
    resolved = _coerce_type(input_type)
    if resolved is None:
        return BUFFER_CONFIGS[InputType.GENERAL]
    return BUFFER_CONFIGS[resolved]


FlushCallback = Callable[[str, InputType], Awaitable[None]]


class InputBuffer:
    """
    Accumulates final transcripts for one expected answer.

    Flush rules:
    - debounce window elapses with no new fragment and the text validates
    - end-of-utterance arrives, the type honors it and the text validates
    - the max-wait ceiling elapses (regardless of validation)
    """

    def __init__(
        self,
        on_flush: FlushCallback,
        *,
        configs: Optional[Mapping[InputType, BufferConfig]] = None,
        call_sid: str = "",
    ):
        self._on_flush = on_flush
        self._configs = dict(configs) if configs else dict(BUFFER_CONFIGS)
        self._call_sid = call_sid
        self._fragments: List[str] = []
        self._input_type = InputType.GENERAL
        self._debounce_task: Optional[asyncio.Task] = None
        self._max_wait_task: Optional[asyncio.Task] = None

    @property
    def input_type(self) -> InputType:
        return self._input_type

    @property
    def text(self) -> str:
        return " ".join(self._fragments).strip()

    @property
    def is_empty(self) -> bool:
        return not self._fragments

    @property
    def config(self) -> BufferConfig:
        return self._configs.get(self._input_type) or self._configs[InputType.GENERAL]

    async def add(self, text: str, input_type: Optional[InputType] = None) -> None:
        """Append a final transcript and re-arm the debounce timer."""
        text = (text or "").strip()
        if not text:
            return

        if not self._fragments:
            self._input_type = input_type or InputType.GENERAL
            self._max_wait_task = asyncio.create_task(
                self._flush_after(self.config.max_wait_ms / 1000, reason="max_wait", check=False)
            )

        self._fragments.append(text)

        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(
            self._flush_after(self.config.debounce_ms / 1000, reason="debounce", check=True)
        )

        logger.debug(
            "Input buffered",
            call_sid=self._call_sid,
            input_type=self._input_type.value,
            fragments=len(self._fragments),
            debounce_ms=self.config.debounce_ms,
        )

    async def utterance_end(self) -> None:
        """Early flush on Deepgram UtteranceEnd, unless this input type ignores it."""
        if not self._fragments or self.config.ignore_utterance_end:
            return
        if validate(self._input_type, self.text).complete:
            await self.flush(reason="utterance_end")

    async def flush(self, *, reason: str) -> None:
        """Hand the combined text to the flush callback and reset."""
        if not self._fragments:
            return

        text = self.text
        input_type = self._input_type
        self._cancel_timers()
        self._fragments = []
        self._input_type = InputType.GENERAL

        logger.info(
            "Input buffer flushed",
            call_sid=self._call_sid,
            input_type=input_type.value,
            reason=reason,
            chars=len(text),
        )
        await self._on_flush(text, input_type)

    def cancel(self) -> None:
        """Drop buffered text and pending timers."""
        self._cancel_timers()
        self._fragments = []
        self._input_type = InputType.GENERAL

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._debounce_task, self._max_wait_task):
            if task and task is not current and not task.done():
                task.cancel()
        self._debounce_task = None
        self._max_wait_task = None

    async def _flush_after(self, delay_s: float, *, reason: str, check: bool) -> None:
        try:
            await asyncio.sleep(delay_s)
        except asyncio.CancelledError:
            return

        if not self._fragments:
            return

        if check:
            result = validate(self._input_type, self.text)
            if not result.complete:
                # Keep waiting for more input; the max-wait ceiling still applies.
                logger.debug(
                    "Input incomplete after debounce",
                    call_sid=self._call_sid,
                    input_type=self._input_type.value,
                    reason=result.reason,
                )
                return

        await self.flush(reason=reason)
