"""
Tests for structured-input classification, validation and buffering.
"""

import asyncio

import pytest

from src.voicecore.input_collector import (
    BUFFER_CONFIGS,
    BufferConfig,
    InputBuffer,
    InputType,
    buffer_config,
    classify_expected_input,
    extract_digits,
    validate,
)


class TestExtractDigits:
    """Spoken and written digit extraction."""

    @pytest.mark.parametrize("text,expected", [
        ("0412 345 678", "0412345678"),
        ("oh four one two three four five six seven eight", "0412345678"),
        ("zero four double one", "0411"),
        ("triple zero", "000"),
        ("my number is 04 12, um, 345", "0412345"),
        ("", ""),
        ("no digits here", ""),
        ("\u0663\u0664 and \u00b2 then 5", "5"),
        ("double \u0663", ""),
    ])
    def test_extract(self, text, expected):
        assert extract_digits(text) == expected


class TestClassify:
    """Expected-input detection from the assistant's last message."""

    @pytest.mark.parametrize("prompt,expected", [
        ("What's the best phone number to reach you on?", InputType.PHONE),
        ("Could I grab your mobile?", InputType.PHONE),
        ("And what's your email address?", InputType.EMAIL),
        ("May I have your name please?", InputType.NAME),
        ("What's the street address for the job?", InputType.ADDRESS),
        ("What day works best for you?", InputType.DATE_TIME),
        ("How can I help you today?", InputType.GENERAL),
        ("", InputType.GENERAL),
        (None, InputType.GENERAL),
    ])
    def test_classify(self, prompt, expected):
        assert classify_expected_input(prompt) == expected

    def test_phone_takes_precedence(self):
        """Type order decides when several patterns match."""
        assert classify_expected_input("What's your name and phone number?") == InputType.PHONE

    def test_yes_no_phone_question_is_phone(self):
        assert classify_expected_input("Is this the best phone number to reach you?") == InputType.PHONE


class TestValidate:
    """Completeness rules per input type."""

    def test_phone_needs_eight_or_ten_digits(self):
        assert not validate(InputType.PHONE, "0412 345").complete
        assert validate(InputType.PHONE, "9876 5432").complete
        assert validate(InputType.PHONE, "0412 345 678").complete
        assert not validate(InputType.PHONE, "0412 345 6789").complete

    def test_email_needs_at_and_tld(self):
        assert not validate(InputType.EMAIL, "john smith").complete
        assert not validate(InputType.EMAIL, "john at example").complete
        assert validate(InputType.EMAIL, "john at example dot com").complete
        assert validate(InputType.EMAIL, "john@example.com.au").complete

    def test_name_needs_two_words(self):
        assert not validate(InputType.NAME, "John").complete
        assert validate(InputType.NAME, "John Smith").complete

    def test_address(self):
        assert not validate(InputType.ADDRESS, "near the park").complete
        assert validate(InputType.ADDRESS, "12 Smith Street").complete
        assert validate(InputType.ADDRESS, "Bondi 2026").complete

    def test_date_time(self):
        assert not validate(InputType.DATE_TIME, "whenever").complete
        assert validate(InputType.DATE_TIME, "next Tuesday").complete
        assert validate(InputType.DATE_TIME, "around 3pm").complete
        assert validate(InputType.DATE_TIME, "in the morning").complete

    def test_general_and_unknown_are_complete(self):
        assert validate(InputType.GENERAL, "").complete
        assert validate("something-else", "x").complete


class TestBufferConfig:
    def test_table(self):
        assert BUFFER_CONFIGS[InputType.PHONE] == BufferConfig(2000, 8000, True)
        assert BUFFER_CONFIGS[InputType.GENERAL] == BufferConfig(400, 2000, False)

    def test_only_phone_ignores_utterance_end(self):
        ignoring = [t for t, c in BUFFER_CONFIGS.items() if c.ignore_utterance_end]
        assert ignoring == [InputType.PHONE]

    def test_unknown_type_falls_back_to_general(self):
        assert buffer_config("bogus") == BUFFER_CONFIGS[InputType.GENERAL]


FAST_CONFIGS = {
    InputType.PHONE: BufferConfig(debounce_ms=30, max_wait_ms=200, ignore_utterance_end=True),
    InputType.NAME: BufferConfig(debounce_ms=30, max_wait_ms=200, ignore_utterance_end=False),
    InputType.GENERAL: BufferConfig(debounce_ms=20, max_wait_ms=100, ignore_utterance_end=False),
}


class Recorder:
    def __init__(self):
        self.flushes = []

    async def __call__(self, text, input_type):
        self.flushes.append((text, input_type))


class TestInputBuffer:
    """Debounce, max-wait and utterance-end behaviour."""

    @pytest.mark.asyncio
    async def test_general_flushes_after_debounce(self):
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("Hi, I need a quote.")
        await asyncio.sleep(0.06)

        assert recorder.flushes == [("Hi, I need a quote.", InputType.GENERAL)]
        assert buffer.is_empty

    @pytest.mark.asyncio
    async def test_phone_fragments_combine(self):
        """Fragments with pauses are joined into one flush once 10 digits are present."""
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("0412", InputType.PHONE)
        await asyncio.sleep(0.04)
        assert recorder.flushes == []  # 4 digits, incomplete after debounce

        await buffer.utterance_end()
        assert recorder.flushes == []  # phone ignores utterance end

        await buffer.add("345")
        await buffer.add("678")
        await asyncio.sleep(0.06)

        assert recorder.flushes == [("0412 345 678", InputType.PHONE)]

    @pytest.mark.asyncio
    async def test_incomplete_input_flushes_at_max_wait(self):
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("0412", InputType.PHONE)
        await asyncio.sleep(0.25)

        assert recorder.flushes == [("0412", InputType.PHONE)]

    @pytest.mark.asyncio
    async def test_utterance_end_flushes_complete_name(self):
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("John Smith", InputType.NAME)
        await buffer.utterance_end()

        assert recorder.flushes == [("John Smith", InputType.NAME)]

    @pytest.mark.asyncio
    async def test_utterance_end_keeps_incomplete_name(self):
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("John", InputType.NAME)
        await buffer.utterance_end()

        assert recorder.flushes == []
        assert buffer.text == "John"
        buffer.cancel()

    @pytest.mark.asyncio
    async def test_type_fixed_by_first_fragment(self):
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("John", InputType.NAME)
        await buffer.add("Smith", InputType.PHONE)

        assert buffer.input_type == InputType.NAME
        buffer.cancel()

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_flush(self):
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("hello")
        buffer.cancel()
        await asyncio.sleep(0.15)

        assert recorder.flushes == []
        assert buffer.is_empty

    @pytest.mark.asyncio
    async def test_blank_text_ignored(self):
        recorder = Recorder()
        buffer = InputBuffer(recorder, configs=FAST_CONFIGS)

        await buffer.add("   ")

        assert buffer.is_empty
