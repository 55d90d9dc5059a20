"""
Tests for gateway/platforms/telegram.py.

The Bot API is replaced by an in-memory fake passed in as the transport, so
no network access is needed.
"""

import asyncio

import pytest
from telegram import User
from telegram.error import BadRequest, RetryAfter

from gateway.platforms import telegram as telegram_module
from gateway.platforms.base import AccountSnapshot, GatewayContext, MessageType, OutboundContext, PollInput
from gateway.platforms.http import TransportError
from gateway.platforms.telegram import TelegramBotApi, create_telegram_plugin, normalize_target, update_to_inbound


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeTelegramApi:
    """Records every call; getUpdates drains ``updates`` then runs ``on_idle``."""

    def __init__(self, updates=None):
        self.calls = []
        self.updates = list(updates or [])
        self.errors = {}
        self.on_idle = None

    async def call(self, token, method, payload=None, timeout_s=30):
        self.calls.append((method, dict(payload or {})))
        pending = self.errors.get(method)
        if pending:
            raise pending.pop(0)
        if method == "getMe":
            return {"id": 7, "username": "oni_bot", "first_name": "Oni", "can_read_all_group_messages": False}
        if method == "getUpdates":
            if self.updates:
                return [self.updates.pop(0)]
            if self.on_idle is not None:
                self.on_idle()
            await asyncio.sleep(0)
            return []
        if method == "sendPoll":
            return {"message_id": 11, "poll": {"id": "p1"}}
        return {"message_id": len(self.calls)}


CFG = {"channels": {"telegram": {"botToken": "123:abc"}}}


def _update(update_id, text, chat_type="private", chat_id=42, sender_id=42, **extra):
    message = {
        "message_id": update_id * 10,
        "chat": {"id": chat_id, "type": chat_type, "title": "Team" if chat_type != "private" else None},
        "from": {"id": sender_id, "first_name": "Ada", "last_name": "L"},
        "text": text,
    }
    message.update(extra)
    return {"update_id": update_id, "message": message}


def _ctx(plugin, **kwargs):
    account = plugin.config.resolve_account(CFG, None)
    return OutboundContext(cfg=CFG, channel="telegram", account=account, **kwargs)


# ---------------------------------------------------------------------------
# Targets and inbound conversion
# ---------------------------------------------------------------------------

class TestTargets:
    @pytest.mark.parametrize("value,expected", [
        ("123", "123"),
        ("-1001234", "-1001234"),
        ("telegram:123", "123"),
        ("tg:@some_user", "@some_user"),
        ("some_user", "@some_user"),
        ("!!", ""),
    ])
    def test_normalize_target(self, value, expected):
        assert normalize_target(value) == expected


class TestUpdateToInbound:
    def test_private_message(self):
        msg = update_to_inbound(_update(1, "hello"), "default")
        assert msg.channel == "telegram"
        assert msg.sender_id == "42"
        assert msg.sender_name == "Ada L"
        assert msg.chat_type == "direct"
        assert msg.message_id == "10"
        assert msg.message_type == MessageType.TEXT

    def test_group_mention(self):
        msg = update_to_inbound(_update(2, "hey @Oni_Bot look", chat_type="supergroup", chat_id=-100), "default",
                                bot_username="oni_bot")
        assert msg.chat_type == "group"
        assert msg.chat_id == "-100"
        assert msg.was_mentioned is True

    def test_reply_to_bot_counts_as_mention(self):
        update = _update(3, "sure", chat_type="group", chat_id=-5,
                         reply_to_message={"from": {"username": "oni_bot"}})
        assert update_to_inbound(update, "default", bot_username="oni_bot").was_mentioned is True

    def test_command_type(self):
        assert update_to_inbound(_update(4, "/new"), "default").message_type == MessageType.COMMAND

    def test_thread_id(self):
        msg = update_to_inbound(_update(5, "x", chat_type="supergroup", message_thread_id=9), "default")
        assert msg.thread_id == "9"

    def test_non_message_updates_ignored(self):
        assert update_to_inbound({"update_id": 6, "edited_message": {}}, "default") is None
        assert update_to_inbound(_update(7, ""), "default") is None


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------

class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_text_payload(self):
        api = FakeTelegramApi()
        plugin = create_telegram_plugin(api)
        result = await plugin.outbound.send_text(_ctx(plugin, to="42", text="hi", reply_to="10", thread_id="3"))
        assert result.ok
        method, payload = api.calls[0]
        assert method == "sendMessage"
        assert payload == {
            "chat_id": "42",
            "text": "hi",
            "parse_mode": "Markdown",
            "reply_to_message_id": 10,
            "message_thread_id": 3,
        }

    @pytest.mark.asyncio
    async def test_markdown_failure_retries_as_plain_text(self):
        api = FakeTelegramApi()
        api.errors["sendMessage"] = [TransportError("Bad Request: can't parse entities", status=400)]
        plugin = create_telegram_plugin(api)
        result = await plugin.outbound.send_text(_ctx(plugin, to="42", text="*broken"))
        assert result.ok
        assert len(api.calls) == 2
        assert "parse_mode" not in api.calls[1][1]

    @pytest.mark.asyncio
    async def test_other_failures_become_results(self):
        api = FakeTelegramApi()
        api.errors["sendMessage"] = [TransportError("Forbidden: bot was blocked", status=403)]
        plugin = create_telegram_plugin(api)
        result = await plugin.outbound.send_text(_ctx(plugin, to="42", text="hi"))
        assert result.ok is False
        assert "blocked" in result.error
        assert len(api.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        api = FakeTelegramApi()
        plugin = create_telegram_plugin(api)
        account = plugin.config.resolve_account({}, None)
        result = await plugin.outbound.send_text(OutboundContext(cfg={}, channel="telegram", account=account,
                                                                 to="42", text="hi"))
        assert result.error == "missing bot token"
        assert api.calls == []

    @pytest.mark.asyncio
    async def test_media_picks_photo_or_document(self):
        api = FakeTelegramApi()
        plugin = create_telegram_plugin(api)
        await plugin.outbound.send_media(_ctx(plugin, to="42", media_url="https://x/cat.PNG?s=1", text="cat"))
        await plugin.outbound.send_media(_ctx(plugin, to="42", media_url="https://x/report.pdf"))
        assert api.calls[0][0] == "sendPhoto"
        assert api.calls[0][1]["caption"] == "cat"
        assert api.calls[1][0] == "sendDocument"

    @pytest.mark.asyncio
    async def test_poll(self):
        api = FakeTelegramApi()
        plugin = create_telegram_plugin(api)
        result = await plugin.outbound.send_poll(_ctx(plugin, to="42"),
                                                 PollInput(question="Lunch?", options=["a", "b"], max_selections=2))
        assert result.meta == {"pollId": "p1"}
        assert api.calls[0][1]["allows_multiple_answers"] is True
        assert api.calls[0][1]["options"] == ["a", "b"]


# ---------------------------------------------------------------------------
# Status and lifecycle
# ---------------------------------------------------------------------------

class TestStatus:
    @pytest.mark.asyncio
    async def test_probe_ok(self):
        plugin = create_telegram_plugin(FakeTelegramApi())
        account = plugin.config.resolve_account(CFG, None)
        probe = await plugin.status.probe_account(account, 1000, CFG)
        assert probe["ok"] is True
        assert probe["bot"]["username"] == "oni_bot"

    @pytest.mark.asyncio
    async def test_probe_failure(self):
        api = FakeTelegramApi()
        api.errors["getMe"] = [TransportError("Unauthorized", status=401)]
        plugin = create_telegram_plugin(api)
        probe = await plugin.status.probe_account(plugin.config.resolve_account(CFG, None), 1000, CFG)
        assert probe == {"ok": False, "error": "Unauthorized", "status": 401}

    def test_status_issues(self):
        plugin = create_telegram_plugin(FakeTelegramApi())
        snapshots = [AccountSnapshot(
            account_id="default",
            configured=True,
            probe={"ok": False, "error": "Unauthorized"},
            audit={"privacyMode": True, "groupPolicy": "allowlist"},
        )]
        kinds = [issue.kind for issue in plugin.status.collect_status_issues(snapshots)]
        assert kinds == ["auth", "intent"]


class TestGatewayLoop:
    @pytest.mark.asyncio
    async def test_polls_until_abort(self):
        api = FakeTelegramApi(updates=[_update(1, "hello"), {"update_id": 2, "edited_message": {}}, _update(3, "again")])
        plugin = create_telegram_plugin(api)
        received = []

        async def on_message(msg):
            received.append(msg)

        ctx = GatewayContext(
            cfg=CFG,
            account=plugin.config.resolve_account(CFG, None),
            abort_event=asyncio.Event(),
            on_message=on_message,
            status=AccountSnapshot(account_id="default"),
        )
        api.on_idle = ctx.abort_event.set
        await asyncio.wait_for(plugin.gateway.start_account(ctx), timeout=5)

        assert [m.text for m in received] == ["hello", "again"]
        offsets = [payload.get("offset") for method, payload in api.calls if method == "getUpdates"]
        assert offsets[:4] == [None, 2, 3, 4]
        assert ctx.status.connected is False
        assert ctx.status.extra["bot"] == "@oni_bot"

    @pytest.mark.asyncio
    async def test_poll_error_records_last_error(self):
        api = FakeTelegramApi()
        api.errors["getUpdates"] = [TransportError("Conflict", status=409, retry_after=0.01)]
        plugin = create_telegram_plugin(api)
        ctx = GatewayContext(
            cfg=CFG,
            account=plugin.config.resolve_account(CFG, None),
            abort_event=asyncio.Event(),
            status=AccountSnapshot(account_id="default"),
        )
        seen_errors = []
        original = ctx.set_status

        def track(**changes):
            if changes.get("last_error"):
                seen_errors.append(changes["last_error"])
            return original(**changes)

        ctx.set_status = track
        api.on_idle = ctx.abort_event.set
        await asyncio.wait_for(plugin.gateway.start_account(ctx), timeout=5)
        assert seen_errors == ["Conflict"]

    @pytest.mark.asyncio
    async def test_startup_handshake_failure_is_retried(self, monkeypatch):
        monkeypatch.setattr(telegram_module, "MAX_BACKOFF_S", 0.01)
        api = FakeTelegramApi(updates=[_update(1, "hello")])
        api.errors["getMe"] = [TransportError("network unreachable")]
        plugin = create_telegram_plugin(api)
        received = []

        async def on_message(msg):
            received.append(msg)

        ctx = GatewayContext(
            cfg=CFG,
            account=plugin.config.resolve_account(CFG, None),
            abort_event=asyncio.Event(),
            on_message=on_message,
            status=AccountSnapshot(account_id="default"),
        )
        api.on_idle = ctx.abort_event.set
        await asyncio.wait_for(plugin.gateway.start_account(ctx), timeout=5)

        methods = [method for method, _ in api.calls]
        assert methods[:3] == ["getMe", "getMe", "getUpdates"]
        assert [m.text for m in received] == ["hello"]
        assert ctx.status.extra["bot"] == "@oni_bot"
        assert ctx.status.last_error is None

    @pytest.mark.asyncio
    async def test_abort_during_handshake_backoff(self):
        api = FakeTelegramApi()
        api.errors["getMe"] = [TransportError("network unreachable")]
        plugin = create_telegram_plugin(api)
        ctx = GatewayContext(
            cfg=CFG,
            account=plugin.config.resolve_account(CFG, None),
            abort_event=asyncio.Event(),
            status=AccountSnapshot(account_id="default"),
        )
        task = asyncio.ensure_future(plugin.gateway.start_account(ctx))
        await asyncio.sleep(0.05)
        ctx.abort_event.set()
        await asyncio.wait_for(task, timeout=5)
        assert [method for method, _ in api.calls] == ["getMe"]
        assert ctx.status.last_error == "network unreachable"
        assert ctx.status.connected is False


# ---------------------------------------------------------------------------
# Bot API transport
# ---------------------------------------------------------------------------

class StubBot:
    """Stands in for ``telegram.Bot``; records keyword arguments per method."""

    def __init__(self):
        self.calls = []
        self.errors = {}

    def _record(self, name, kwargs):
        self.calls.append((name, kwargs))
        pending = self.errors.get(name)
        if pending:
            raise pending.pop(0)

    async def get_me(self, **kwargs):
        self._record("get_me", kwargs)
        return User(id=7, first_name="Oni", is_bot=True, username="oni_bot")

    async def get_updates(self, **kwargs):
        self._record("get_updates", kwargs)
        return ()

    async def send_message(self, **kwargs):
        self._record("send_message", kwargs)
        return {"message_id": 5}


class TestTelegramBotApi:
    def _api(self):
        api = TelegramBotApi()
        bot = StubBot()
        api.bots["123:abc"] = bot
        return api, bot

    @pytest.mark.asyncio
    async def test_results_become_plain_dicts(self):
        api, bot = self._api()
        me = await api.call("123:abc", "getMe", timeout_s=5)
        assert me["username"] == "oni_bot"
        assert bot.calls == [("get_me", {"read_timeout": 5})]
        assert await api.call("123:abc", "getUpdates", {"timeout": 25}) == []
        assert bot.calls[1] == ("get_updates", {"timeout": 25})

    @pytest.mark.asyncio
    async def test_library_errors_become_transport_errors(self):
        api, bot = self._api()
        bot.errors["send_message"] = [BadRequest("Can't parse entities"), RetryAfter(3)]
        with pytest.raises(TransportError) as excinfo:
            await api.call("123:abc", "sendMessage", {"chat_id": "42", "text": "*x"})
        assert excinfo.value.status == 400
        assert "parse" in str(excinfo.value).lower()

        with pytest.raises(TransportError) as excinfo:
            await api.call("123:abc", "sendMessage", {"chat_id": "42", "text": "x"})
        assert excinfo.value.status == 429
        assert excinfo.value.retry_after == 3

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        api, _ = self._api()
        with pytest.raises(TransportError):
            await api.call("123:abc", "banChatMember", {})

    def test_one_bot_per_token(self):
        api = TelegramBotApi()
        first = api.bot_for("123:abc")
        assert api.bot_for("123:abc") is first
        assert api.bot_for("456:def") is not first


class TestPluginShape:
    def test_capabilities(self):
        plugin = create_telegram_plugin(FakeTelegramApi())
        described = plugin.describe()
        assert described["aliases"] == ["tg"]
        assert described["textChunkLimit"] == 4000
        assert described["pollMaxOptions"] == 10
        assert "gateway" in described["capabilities"]
        assert "resolver" not in described["capabilities"]
