"""
Tests for tool definitions, dispatch and call transfer.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from twilio.base.exceptions import TwilioRestException

from src.voicecore.call_context import TransferRule
from src.voicecore.config import get_config
from src.voicecore.tools import (
    CALENDAR_ERROR_MESSAGE,
    CALENDAR_EXCEPTION_MESSAGE,
    CALENDAR_UNAVAILABLE_MESSAGE,
    NO_TRANSFER_RULES_MESSAGE,
    ToolContext,
    ToolDispatcher,
    match_transfer_rule,
    tool_definitions,
    transfer_announcement,
)
from src.voicecore.transfer import (
    API_ERROR_MESSAGE,
    MISSING_CREDENTIALS_MESSAGE,
    CallTransferer,
    TransferResult,
    build_transfer_twiml,
    sanitize_phone,
)

RULES = [
    TransferRule(name="Billing", phone="+61 2 9000 0001", keywords=("invoice", "bill"), priority=1),
    TransferRule(name="Emergencies", phone="+61 2 9000 0002", intent="emergency", priority=5),
]


@pytest.fixture
def internal_api(monkeypatch):
    monkeypatch.setenv("INTERNAL_API_URL", "https://dashboard.example.com/")
    monkeypatch.setenv("INTERNAL_API_SECRET", "internal-secret")
    get_config.cache_clear()
    return get_config()


def context(**overrides):
    values = dict(organization_id="org_123", assistant_id="asst_456", call_sid="CA1")
    values.update(overrides)
    return ToolContext(**values)


class TestToolDefinitions:
    def test_none_enabled(self):
        assert tool_definitions(False, False) == []

    def test_calendar_and_transfer(self):
        names = [t["function"]["name"] for t in tool_definitions(True, True)]
        assert names == [
            "get_current_datetime",
            "check_availability",
            "book_appointment",
            "cancel_appointment",
            "transfer_call",
        ]


class TestTransferRuleMatching:
    """Priority order, keywords, then intent."""

    def test_keyword_match(self):
        rules = sorted(RULES, key=lambda r: r.priority, reverse=True)
        assert match_transfer_rule(rules, "question about my invoice").name == "Billing"

    def test_intent_match(self):
        rules = sorted(RULES, key=lambda r: r.priority, reverse=True)
        assert match_transfer_rule(rules, "EMERGENCY leak").name == "Emergencies"

    def test_fallback_to_highest_priority(self):
        rules = sorted(RULES, key=lambda r: r.priority, reverse=True)
        assert match_transfer_rule(rules, "caller requested human").name == "Emergencies"
        assert match_transfer_rule(rules, None).name == "Emergencies"

    def test_no_rules(self):
        assert match_transfer_rule([], "anything") is None

    def test_announcement(self):
        rule = TransferRule(name="Sam", phone="+611")
        assert "urgent" in transfer_announcement(rule, "high")
        assert "Sam" in transfer_announcement(rule, "low")
        custom = TransferRule(name="Sam", phone="+611", announcement="Connecting you now.")
        assert transfer_announcement(custom, "high") == "Connecting you now."


class TestCalendarTools:
    """Calendar calls go to the dashboard's internal API."""

    @pytest.mark.asyncio
    async def test_calendar_request(self, internal_api):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["secret"] = request.headers["X-Internal-Secret"]
            seen["body"] = json.loads(request.content)
            seen["timeout"] = request.extensions["timeout"]
            return httpx.Response(200, json={"message": "We have 9am and 2pm free."})

        dispatcher = ToolDispatcher(
            internal_api, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        result = await dispatcher.execute("check_availability", {"date": "2026-03-15"}, context())

        assert result.message == "We have 9am and 2pm free."
        assert seen["url"] == "https://dashboard.example.com/api/internal/tool-call"
        assert seen["secret"] == "internal-secret"
        assert seen["body"] == {
            "organizationId": "org_123",
            "assistantId": "asst_456",
            "functionName": "check_availability",
            "arguments": {"date": "2026-03-15"},
        }
        assert max(seen["timeout"].values()) < 10

    @pytest.mark.asyncio
    async def test_calendar_not_configured(self):
        dispatcher = ToolDispatcher(get_config())
        result = await dispatcher.execute("check_availability", {"date": "2026-03-15"}, context())

        assert result.message == CALENDAR_UNAVAILABLE_MESSAGE

    @pytest.mark.asyncio
    async def test_calendar_api_error(self, internal_api):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        dispatcher = ToolDispatcher(internal_api, http_client=client)

        result = await dispatcher.execute("get_current_datetime", {}, context())
        assert result.message == CALENDAR_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_calendar_network_error(self, internal_api):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        dispatcher = ToolDispatcher(
            internal_api, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        result = await dispatcher.execute("get_current_datetime", {}, context())
        assert result.message == CALENDAR_EXCEPTION_MESSAGE

    @pytest.mark.asyncio
    async def test_test_mode_simulates_writes(self, internal_api):
        def handler(request):
            raise AssertionError("test mode must not hit the API")

        dispatcher = ToolDispatcher(
            internal_api, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
        )
        result = await dispatcher.execute(
            "book_appointment",
            {"name": "John Smith", "datetime": "2026-03-15T14:00:00", "phone": "0412345678"},
            context(test_mode=True),
        )
        assert "John Smith" in result.message
        assert "confirmed" in result.message

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await ToolDispatcher(get_config()).execute("launch_rocket", {}, context())
        assert result.message == "Unknown function: launch_rocket"


class TestTransferTool:
    @pytest.mark.asyncio
    async def test_transfer_without_rules(self):
        result = await ToolDispatcher(get_config()).execute("transfer_call", {"reason": "x"}, context())

        assert result.message == NO_TRANSFER_RULES_MESSAGE
        assert result.action is None

    @pytest.mark.asyncio
    async def test_transfer_success(self):
        transferer = MagicMock()
        transferer.transfer = AsyncMock(return_value=TransferResult(True, "Putting you through."))
        dispatcher = ToolDispatcher(get_config(), transferer=transferer)

        result = await dispatcher.execute(
            "transfer_call",
            {"reason": "invoice question"},
            context(transfer_rules=sorted(RULES, key=lambda r: r.priority, reverse=True)),
        )

        assert result.action == "transfer"
        assert result.transfer_target == "+61 2 9000 0001"
        transferer.transfer.assert_awaited_once()
        assert transferer.transfer.await_args.args[0] == "CA1"

    @pytest.mark.asyncio
    async def test_transfer_failure_offers_callback(self):
        transferer = MagicMock()
        transferer.transfer = AsyncMock(return_value=TransferResult(False, API_ERROR_MESSAGE))
        dispatcher = ToolDispatcher(get_config(), transferer=transferer)

        result = await dispatcher.execute("transfer_call", {"reason": "x"}, context(transfer_rules=RULES))

        assert result.action == "callback"
        assert result.message == API_ERROR_MESSAGE


class TestCallTransferer:
    """Twilio REST redirect."""

    def test_sanitize_phone(self):
        assert sanitize_phone("+61 (2) 9000-0001") == "+61290000001"

    def test_twiml_escapes_announcement(self):
        twiml = build_transfer_twiml('Hold <please> & "wait"', "+61 2 9000 0001")
        assert "&lt;please&gt; &amp; &quot;wait&quot;" in twiml
        assert "<Dial>+61290000001</Dial>" in twiml

    @pytest.mark.asyncio
    async def test_transfer_updates_call(self):
        client = MagicMock()
        transferer = CallTransferer(get_config(), client=client)

        result = await transferer.transfer("CA1", "+61 2 9000 0001", "One moment.")

        assert result.success
        assert result.message == "One moment."
        client.calls.assert_called_once_with("CA1")
        twiml = client.calls.return_value.update.call_args.kwargs["twiml"]
        assert "<Say>One moment.</Say>" in twiml

    @pytest.mark.asyncio
    async def test_transfer_api_error(self):
        client = MagicMock()
        client.calls.return_value.update.side_effect = TwilioRestException(400, "/Calls/CA1", "bad")
        transferer = CallTransferer(get_config(), client=client)

        result = await transferer.transfer("CA1", "+61290000001", None)

        assert not result.success
        assert result.message == API_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_missing_credentials(self, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "")
        get_config.cache_clear()

        result = await CallTransferer(get_config()).transfer("CA1", "+61290000001", None)

        assert not result.success
        assert result.message == MISSING_CREDENTIALS_MESSAGE
