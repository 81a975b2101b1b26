"""
Unit tests for senders/ modules

Tests cover:
- Sender protocol (duck typing check)
- split_message chunking
- CLISender output
- TelegramSender, WhatsAppSender and FeishuSender (token caching) against mocked HTTP APIs
- OutboundDispatcher routing, retries, subagent notifications, draining on shutdown
"""

import asyncio
import json
import time
from unittest.mock import patch

import httpx
import pytest

from config import PlatformConfig
from messages import AgentResponse, SubagentCompletedMessage
from senders import Sender, split_message
from senders.cli import CLISender
from senders.dispatch import OutboundDispatcher, format_subagent_notification
from senders.feishu import FeishuSender
from senders.telegram import TelegramSender
from senders.whatsapp import WhatsAppSender
from subagents import Subagent, SubagentState


class FakeSender:
    """Records deliveries; fails the first ``failures`` attempts."""

    name = "fake"
    capabilities = ["text"]

    def __init__(self, failures: int = 0, raises: bool = False):
        self.failures = failures
        self.raises = raises
        self.sent = []
        self.attempts = 0

    async def send(self, to: str, content: str, **kwargs) -> dict:
        self.attempts += 1
        if self.attempts <= self.failures:
            if self.raises:
                raise ConnectionError("network down")
            return {"error": "temporarily unavailable"}
        self.sent.append((to, content))
        return {"sent": True}


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def finished(state: SubagentState, **fields) -> Subagent:
    subagent = Subagent(id="s1", name="report", platform="fake", user_id="u1", task_name="shell", state=state, **fields)
    return subagent


# =============================================================================
# Sender Protocol Tests
# =============================================================================


class TestSenderProtocol:
    """Test that the Sender protocol works for duck typing."""

    @pytest.mark.parametrize("sender", [
        CLISender(),
        FakeSender(),
        TelegramSender(PlatformConfig(name="telegram")),
        WhatsAppSender(PlatformConfig(name="whatsapp")),
    ])
    def test_matches_protocol(self, sender):
        assert isinstance(sender, Sender)

    def test_non_sender_rejected(self):
        assert not isinstance(object(), Sender)


class TestSplitMessage:

    def test_short_message_untouched(self):
        assert split_message("hello", 10) == ["hello"]

    def test_prefers_newlines(self):
        assert split_message("aaaa\nbbbb\ncccc", 10) == ["aaaa\nbbbb", "cccc"]

    def test_hard_split_without_newlines(self):
        chunks = split_message("x" * 25, 10)
        assert chunks == ["x" * 10, "x" * 10, "x" * 5]


class TestCLISender:

    @pytest.mark.asyncio
    async def test_prints_reply(self):
        with patch("senders.cli.console") as console:
            result = await CLISender(prefix="Bot").send("local", "Hello!")
        console.agent.assert_called_once_with("Hello!", prefix="Bot")
        assert result == {"sent": True, "channel": "cli"}


# =============================================================================
# HTTP Senders
# =============================================================================


class TestTelegramSender:

    def config(self, **settings):
        return PlatformConfig(name="telegram", enabled=True, settings={"bot_token": "T0K", **settings})

    @pytest.mark.asyncio
    async def test_send(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 7}})

        sender = TelegramSender(self.config(), client=mock_client(handler))
        result = await sender.send("123", "hi there")

        assert result == {"sent": True, "channel": "telegram", "to": "123", "message_ids": [7]}
        assert str(requests[0].url) == "https://api.telegram.org/botT0K/sendMessage"
        assert json.loads(requests[0].content) == {"chat_id": "123", "text": "hi there"}

    @pytest.mark.asyncio
    async def test_long_message_chunked(self):
        texts = []

        def handler(request):
            texts.append(json.loads(request.content)["text"])
            return httpx.Response(200, json={"ok": True, "result": {"message_id": len(texts)}})

        sender = TelegramSender(self.config(), client=mock_client(handler))
        result = await sender.send("123", "y" * 5000)

        assert [len(t) for t in texts] == [4096, 904]
        assert result["message_ids"] == [1, 2]

    @pytest.mark.asyncio
    async def test_api_error(self):
        def handler(request):
            return httpx.Response(400, json={"ok": False, "description": "chat not found"})

        sender = TelegramSender(self.config(), client=mock_client(handler))
        assert await sender.send("999", "hi") == {"error": "Telegram API error: chat not found"}

    @pytest.mark.asyncio
    async def test_not_configured(self):
        result = await TelegramSender(PlatformConfig(name="telegram")).send("1", "hi")
        assert "not configured" in result["error"]


class TestWhatsAppSender:

    def config(self):
        return PlatformConfig(
            name="whatsapp",
            enabled=True,
            settings={"access_token": "EAAG", "phone_number_id": "555", "api_base": "https://graph.test/v18.0/"},
        )

    @pytest.mark.asyncio
    async def test_send(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.1"}]})

        sender = WhatsAppSender(self.config(), client=mock_client(handler))
        result = await sender.send("+1 555-0100", "hello")

        assert result == {"sent": True, "channel": "whatsapp", "to": "15550100", "message_ids": ["wamid.1"]}
        request = requests[0]
        assert str(request.url) == "https://graph.test/v18.0/555/messages"
        assert request.headers["authorization"] == "Bearer EAAG"
        assert json.loads(request.content)["text"] == {"body": "hello"}

    @pytest.mark.asyncio
    async def test_api_error(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "Invalid OAuth access token"}})

        sender = WhatsAppSender(self.config(), client=mock_client(handler))
        assert await sender.send("1", "x") == {"error": "WhatsApp API error: Invalid OAuth access token"}

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sender = WhatsAppSender(self.config(), client=mock_client(handler))
        assert "refused" in (await sender.send("1", "x"))["error"]


class TestFeishuSender:

    def config(self):
        return PlatformConfig(
            name="feishu",
            enabled=True,
            settings={"app_id": "cli_a1", "app_secret": "s3", "api_base": "https://feishu.test/open-apis/"},
        )

    def api(self, calls, send_status=200, send_body=None, auth_body=None):
        def handler(request):
            calls.append(request)
            if request.url.path.endswith("/tenant_access_token/internal"):
                return httpx.Response(200, json=auth_body or {"code": 0, "tenant_access_token": "t-123", "expire": 7200})
            return httpx.Response(send_status, json=send_body or {"code": 0, "data": {"message_id": "om_1"}})
        return handler

    @pytest.mark.asyncio
    async def test_send_to_user(self):
        calls = []
        sender = FeishuSender(self.config(), client=mock_client(self.api(calls)))

        result = await sender.send("ou_abc", "hello")

        assert result == {"sent": True, "channel": "feishu", "to": "ou_abc", "message_ids": ["om_1"]}
        auth, send = calls
        assert json.loads(auth.content) == {"app_id": "cli_a1", "app_secret": "s3"}
        assert send.url.path == "/open-apis/im/v1/messages"
        assert send.url.params["receive_id_type"] == "open_id"
        assert send.headers["authorization"] == "Bearer t-123"
        body = json.loads(send.content)
        assert body["receive_id"] == "ou_abc"
        assert json.loads(body["content"]) == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_group_chat_addressed_by_chat_id(self):
        calls = []
        sender = FeishuSender(self.config(), client=mock_client(self.api(calls)))
        await sender.send("oc_group", "hi all")
        assert calls[-1].url.params["receive_id_type"] == "chat_id"

    @pytest.mark.asyncio
    async def test_token_cached_until_near_expiry(self):
        calls = []
        sender = FeishuSender(self.config(), client=mock_client(self.api(calls)))

        await sender.send("ou_abc", "one")
        await sender.send("ou_abc", "two")
        assert sum("tenant_access_token" in c.url.path for c in calls) == 1

        # Inside the refresh margin a new token is fetched
        sender._token_expires_at = time.time() + 60
        await sender.send("ou_abc", "three")
        assert sum("tenant_access_token" in c.url.path for c in calls) == 2

    @pytest.mark.asyncio
    async def test_auth_failure(self):
        calls = []
        handler = self.api(calls, auth_body={"code": 10014, "msg": "app secret invalid"})
        sender = FeishuSender(self.config(), client=mock_client(handler))

        result = await sender.send("ou_abc", "hello")

        assert result == {"error": "Feishu authentication failed: app secret invalid"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_api_error(self):
        calls = []
        handler = self.api(calls, send_status=400, send_body={"code": 230001, "msg": "invalid receive_id"})
        sender = FeishuSender(self.config(), client=mock_client(handler))
        assert await sender.send("ou_abc", "x") == {"error": "Feishu API error: invalid receive_id"}

    @pytest.mark.asyncio
    async def test_not_configured(self):
        sender = FeishuSender(PlatformConfig(name="feishu", enabled=True))
        assert "not configured" in (await sender.send("ou_abc", "x"))["error"]


# =============================================================================
# Dispatcher
# =============================================================================


class TestSubagentNotification:

    def test_completed(self):
        text = format_subagent_notification(finished(SubagentState.COMPLETED, result="42 files"))
        assert text == "Background task 'report' completed.\n42 files"

    def test_long_result_truncated(self):
        text = format_subagent_notification(finished(SubagentState.COMPLETED, result="z" * 5000))
        assert text.endswith("... (truncated)")
        assert len(text) < 1700

    def test_failed(self):
        text = format_subagent_notification(finished(SubagentState.FAILED, error="Interrupted by system shutdown"))
        assert text == "Background task 'report' failed: Interrupted by system shutdown"

    def test_cancelled(self):
        assert format_subagent_notification(finished(SubagentState.CANCELLED)).endswith("was cancelled.")


class TestOutboundDispatcher:

    @pytest.mark.asyncio
    async def test_routes_by_platform(self, bus):
        fake = FakeSender()
        dispatcher = OutboundDispatcher(bus, {"fake": fake}, retry_delay=0)
        await dispatcher.start()

        await bus.publish(AgentResponse(platform="fake", user_id="u1", content="hello"))
        await bus.publish(SubagentCompletedMessage(
            subagent=finished(SubagentState.COMPLETED, result="done"), platform="fake", user_id="u1",
        ))
        bus.close()
        await dispatcher.stop()

        assert fake.sent == [("u1", "hello"), ("u1", "Background task 'report' completed.\ndone")]

    @pytest.mark.asyncio
    async def test_unknown_platform(self, bus):
        dispatcher = OutboundDispatcher(bus)
        result = await dispatcher.deliver(AgentResponse(platform="pager", user_id="u", content="x"))
        assert result == {"error": "No sender for platform 'pager'"}

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, bus):
        fake = FakeSender(failures=2)
        dispatcher = OutboundDispatcher(bus, {"fake": fake}, max_retries=2, retry_delay=0)
        result = await dispatcher.deliver(AgentResponse(platform="fake", user_id="u", content="x"))
        assert result == {"sent": True}
        assert fake.attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, bus):
        fake = FakeSender(failures=10, raises=True)
        dispatcher = OutboundDispatcher(bus, {"fake": fake}, max_retries=1, retry_delay=0)
        result = await dispatcher.deliver(AgentResponse(platform="fake", user_id="u", content="x"))
        assert result == {"error": "ConnectionError: network down"}
        assert fake.attempts == 2

    @pytest.mark.asyncio
    async def test_register(self, bus):
        dispatcher = OutboundDispatcher(bus)
        fake = FakeSender()
        dispatcher.register(fake)
        dispatcher.register(fake, platform="alias")
        assert set(dispatcher.senders) == {"fake", "alias"}

    @pytest.mark.asyncio
    async def test_stop_without_close_unsubscribes(self, bus):
        dispatcher = OutboundDispatcher(bus, {"fake": FakeSender()})
        await dispatcher.start()
        assert bus.subscriber_count(AgentResponse) == 1

        await asyncio.wait_for(dispatcher.stop(), timeout=1)
        assert bus.subscriber_count(AgentResponse) == 0
