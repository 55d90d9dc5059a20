"""Tests for gateway/platforms/discord.py with a fake REST transport."""

import pytest

from gateway.platforms.base import AccountSnapshot, OutboundContext, PollInput
from gateway.platforms.discord import create_discord_plugin, normalize_allow_entry, normalize_target
from gateway.platforms.http import TransportError

USER_ID = "123456789012345678"
CHANNEL_ID = "223456789012345678"


class FakeDiscordApi:
    def __init__(self, app_flags=1 << 18):
        self.calls = []
        self.errors = {}
        self.app_flags = app_flags

    async def request(self, token, method, path, payload=None, timeout_s=30):
        self.calls.append((method, path, payload))
        if self.errors.get(path):
            raise self.errors[path].pop(0)
        if path == "/users/@me/channels":
            return {"id": "999999999999999999"}
        if path == "/users/@me":
            return {"id": "42", "username": "oni"}
        if path == "/applications/@me":
            return {"flags": self.app_flags}
        return {"id": "555"}


def _cfg(**section):
    data = {"token": "bot-token"}
    data.update(section)
    return {"channels": {"discord": data}}


def _ctx(plugin, cfg, to, text="hi", **kwargs):
    return OutboundContext(cfg=cfg, channel="discord", account=plugin.config.resolve_account(cfg, None),
                           to=to, text=text, **kwargs)


class TestNormalize:
    def test_targets(self):
        assert normalize_target(CHANNEL_ID) == f"channel:{CHANNEL_ID}"
        assert normalize_target(f"discord:user:{USER_ID}") == f"user:{USER_ID}"
        assert normalize_target(f"<@!{USER_ID}>") == f"user:{USER_ID}"
        assert normalize_target("general") == ""

    def test_allow_entries(self):
        assert normalize_allow_entry(f"<@{USER_ID}>") == USER_ID
        assert normalize_allow_entry(f"user:{USER_ID}") == USER_ID
        assert normalize_allow_entry("Ada#0001") == "ada#0001"


class TestOutbound:
    @pytest.mark.asyncio
    async def test_channel_message_with_reply(self):
        api = FakeDiscordApi()
        plugin = create_discord_plugin(api)
        result = await plugin.outbound.send_text(_ctx(plugin, _cfg(), f"channel:{CHANNEL_ID}", reply_to="77"))
        assert result.ok and result.message_id == "555"
        method, path, body = api.calls[0]
        assert path == f"/channels/{CHANNEL_ID}/messages"
        assert body["message_reference"] == {"message_id": "77", "fail_if_not_exists": False}

    @pytest.mark.asyncio
    async def test_dm_opens_channel_first(self):
        api = FakeDiscordApi()
        plugin = create_discord_plugin(api)
        result = await plugin.outbound.send_text(_ctx(plugin, _cfg(), f"user:{USER_ID}"))
        assert [c[1] for c in api.calls] == ["/users/@me/channels", "/channels/999999999999999999/messages"]
        assert result.meta == {"channelId": "999999999999999999"}

    @pytest.mark.asyncio
    async def test_thread_overrides_target(self):
        api = FakeDiscordApi()
        plugin = create_discord_plugin(api)
        await plugin.outbound.send_text(_ctx(plugin, _cfg(), f"channel:{CHANNEL_ID}", thread_id="888"))
        assert api.calls[0][1] == "/channels/888/messages"

    @pytest.mark.asyncio
    async def test_silent_flag(self):
        api = FakeDiscordApi()
        plugin = create_discord_plugin(api)
        await plugin.outbound.send_text(_ctx(plugin, _cfg(), f"channel:{CHANNEL_ID}", silent=True))
        assert api.calls[0][2]["flags"] == 1 << 12

    @pytest.mark.asyncio
    async def test_error_is_result(self):
        api = FakeDiscordApi()
        api.errors[f"/channels/{CHANNEL_ID}/messages"] = [TransportError("Missing Access", status=403)]
        plugin = create_discord_plugin(api)
        result = await plugin.outbound.send_text(_ctx(plugin, _cfg(), f"channel:{CHANNEL_ID}"))
        assert (result.ok, result.error) == (False, "Missing Access")

    @pytest.mark.asyncio
    async def test_poll(self):
        api = FakeDiscordApi()
        plugin = create_discord_plugin(api)
        poll = PollInput(question="Lunch?", options=["pizza", "sushi"], max_selections=2)
        await plugin.outbound.send_poll(_ctx(plugin, _cfg(), f"channel:{CHANNEL_ID}", text=""), poll)
        body = api.calls[0][2]["poll"]
        assert body["question"] == {"text": "Lunch?"}
        assert body["duration"] == 24
        assert body["allow_multiselect"] is True

    def test_limits(self):
        described = create_discord_plugin(FakeDiscordApi()).describe()
        assert described["textChunkLimit"] == 2000
        assert described["pollMaxOptions"] == 10


class TestStatus:
    @pytest.mark.asyncio
    async def test_probe_and_intent_audit(self):
        plugin = create_discord_plugin(FakeDiscordApi(app_flags=0))
        cfg = _cfg()
        account = plugin.config.resolve_account(cfg, None)
        probe = await plugin.status.probe_account(account, 1000, cfg)
        assert probe["bot"] == {"id": "42", "username": "oni"}
        audit = await plugin.status.audit_account(account, 1000, cfg, probe=probe)
        assert audit == {"ok": False, "messageContentIntent": False}

    @pytest.mark.asyncio
    async def test_limited_intent_counts(self):
        plugin = create_discord_plugin(FakeDiscordApi(app_flags=1 << 19))
        cfg = _cfg()
        audit = await plugin.status.audit_account(plugin.config.resolve_account(cfg, None), 1000, cfg)
        assert audit["ok"] is True

    def test_intent_issue(self):
        plugin = create_discord_plugin(FakeDiscordApi())
        issues = plugin.status.collect_status_issues([
            AccountSnapshot(account_id="default", configured=True, probe={"ok": True},
                            audit={"messageContentIntent": False}),
        ])
        assert [i.kind for i in issues] == ["intent"]


class TestOwners:
    def test_allow_from_fallback(self):
        plugin = create_discord_plugin(FakeDiscordApi())
        cfg = _cfg(allowFrom=[f"<@{USER_ID}>", "*"])
        assert plugin.elevated.allow_from_fallback(cfg, None) == [USER_ID]
        assert plugin.elevated.allow_from_fallback(_cfg(), None) is None

    @pytest.mark.asyncio
    async def test_notify_approval_dms_sender(self):
        api = FakeDiscordApi()
        plugin = create_discord_plugin(api)
        await plugin.pairing.notify_approval(_cfg(), USER_ID)
        assert api.calls[0] == ("POST", "/users/@me/channels", {"recipient_id": USER_ID})
        assert "approved" in api.calls[1][2]["content"]

    @pytest.mark.asyncio
    async def test_notify_without_token_raises(self, monkeypatch):
        monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)
        plugin = create_discord_plugin(FakeDiscordApi())
        with pytest.raises(TransportError):
            await plugin.pairing.notify_approval({}, USER_ID)
