"""Tests for gateway/platforms/whatsapp.py against a fake bridge."""

import asyncio

import pytest

from gateway.platforms.base import AccountSnapshot, GatewayContext, MessageType, OutboundContext, PollInput
from gateway.platforms.http import TransportError
from gateway.platforms.whatsapp import bridge_message_to_inbound, create_whatsapp_plugin, normalize_target


class FakeBridge:
    def __init__(self, queue=None):
        self.calls = []
        self.errors = {}
        self.queue = list(queue or [])
        self.health = {"ok": True, "linked": True, "me": "+15550001111"}

    async def call(self, bridge_url, method, path, payload=None, params=None, timeout_s=30):
        self.calls.append((method, path, payload or params))
        if self.errors.get(path):
            raise self.errors[path].pop(0)
        if path == "/health":
            return self.health
        if path == "/messages":
            batch, self.queue = self.queue, []
            return batch
        if path == "/login/qr/start":
            return {"qrDataUrl": "data:image/png;base64,AAAA"}
        if path == "/login/qr/wait":
            return {"connected": True}
        if path == "/logout":
            return {"loggedOut": True}
        return {"messageId": "wamid.1"}


def _cfg(tmp_path, **section):
    data = {"authDir": str(tmp_path / "auth"), "bridgeUrl": "http://bridge:3000"}
    data.update(section)
    return {"channels": {"whatsapp": data}}


def _ctx(plugin, cfg, to="+15550002222", text="hi", **kwargs):
    return OutboundContext(cfg=cfg, channel="whatsapp", account=plugin.config.resolve_account(cfg, None),
                           to=to, text=text, **kwargs)


class TestNormalize:
    def test_phone_numbers(self):
        assert normalize_target("whatsapp:+1 (555) 000-1111") == "+15550001111"
        assert normalize_target("wa:15550001111") == "+15550001111"
        assert normalize_target("12345") == ""

    def test_jids_pass_through(self):
        assert normalize_target("12036302@g.us") == "12036302@g.us"
        assert normalize_target("15550001111@s.whatsapp.net") == "15550001111@s.whatsapp.net"


class TestInbound:
    def test_text_message(self):
        message = bridge_message_to_inbound({
            "body": "hello", "senderId": "15550001111@s.whatsapp.net", "chatId": "12036302@g.us",
            "isGroup": True, "mentionedMe": True, "messageId": "m1",
        }, "default")
        assert message.chat_type == "group"
        assert message.was_mentioned is True
        assert message.sender_id == "15550001111@s.whatsapp.net"

    def test_media_types(self):
        def kind(media_type):
            data = {"senderId": "+15550001111", "hasMedia": True, "mediaType": media_type}
            return bridge_message_to_inbound(data, "default").message_type

        assert kind("image/jpeg") == MessageType.PHOTO
        assert kind("video/mp4") == MessageType.VIDEO
        assert kind("ptt") == MessageType.VOICE
        assert kind("application/pdf") == MessageType.DOCUMENT

    def test_empty_entries_skipped(self):
        assert bridge_message_to_inbound({"senderId": "+15550001111", "body": ""}, "default") is None
        assert bridge_message_to_inbound({"body": "orphan"}, "default") is None


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_text_with_reply(self, tmp_path):
        bridge = FakeBridge()
        plugin = create_whatsapp_plugin(bridge)
        result = await plugin.outbound.send_text(_ctx(plugin, _cfg(tmp_path), reply_to="m1"))
        assert (result.ok, result.message_id) == (True, "wamid.1")
        assert bridge.calls[0] == ("POST", "/send", {
            "accountId": "default", "chatId": "+15550002222", "message": "hi", "replyTo": "m1",
        })

    @pytest.mark.asyncio
    async def test_send_media_and_poll(self, tmp_path):
        bridge = FakeBridge()
        plugin = create_whatsapp_plugin(bridge)
        cfg = _cfg(tmp_path)
        await plugin.outbound.send_media(_ctx(plugin, cfg, text="", media_url="https://x/y.jpg"))
        assert bridge.calls[0][2]["caption"] is None
        await plugin.outbound.send_poll(_ctx(plugin, cfg, text=""),
                                        PollInput(question="Lunch?", options=["a", "b"], max_selections=1))
        assert bridge.calls[1][1] == "/poll"
        assert bridge.calls[1][2]["selectableCount"] == 1

    @pytest.mark.asyncio
    async def test_bridge_error_is_result(self, tmp_path):
        bridge = FakeBridge()
        bridge.errors["/send"] = [TransportError("not connected", status=409)]
        plugin = create_whatsapp_plugin(bridge)
        result = await plugin.outbound.send_text(_ctx(plugin, _cfg(tmp_path)))
        assert (result.ok, result.error) == (False, "not connected")

    def test_describe(self):
        described = create_whatsapp_plugin(FakeBridge()).describe()
        assert described["deliveryMode"] == "gateway"
        assert described["pollMaxOptions"] == 12


class TestStatus:
    @pytest.mark.asyncio
    async def test_probe(self, tmp_path):
        bridge = FakeBridge()
        plugin = create_whatsapp_plugin(bridge)
        cfg = _cfg(tmp_path)
        account = plugin.config.resolve_account(cfg, None)
        assert (await plugin.status.probe_account(account, 1000, cfg))["linked"] is True
        bridge.errors["/health"] = [TransportError("connection refused")]
        probe = await plugin.status.probe_account(account, 1000, cfg)
        assert probe == {"ok": False, "error": "bridge unreachable: connection refused"}

    def test_issues(self):
        plugin = create_whatsapp_plugin(FakeBridge())
        issues = plugin.status.collect_status_issues([
            AccountSnapshot(account_id="default", probe={"ok": False, "error": "down"}),
            AccountSnapshot(account_id="work", probe={"ok": True, "linked": False}),
            AccountSnapshot(account_id="home", probe={"ok": True, "linked": True}),
        ])
        assert [(i.account_id, i.kind) for i in issues] == [("default", "runtime"), ("work", "auth")]

    @pytest.mark.asyncio
    async def test_configured_means_linked(self, tmp_path):
        plugin = create_whatsapp_plugin(FakeBridge())
        cfg = _cfg(tmp_path)
        account = plugin.config.resolve_account(cfg, None)
        assert await plugin.config.is_configured(account, cfg) is False
        (tmp_path / "auth").mkdir()
        (tmp_path / "auth" / "creds.json").write_text("{}")
        assert await plugin.config.is_configured(account, cfg) is True

    @pytest.mark.asyncio
    async def test_check_ready(self, tmp_path):
        plugin = create_whatsapp_plugin(FakeBridge())
        cfg = _cfg(tmp_path)
        assert await plugin.heartbeat.check_ready(cfg) == {"ok": False, "reason": "not linked"}
        (tmp_path / "auth").mkdir()
        (tmp_path / "auth" / "creds.json").write_text("{}")
        assert await plugin.heartbeat.check_ready(cfg) == {"ok": True, "reason": "ok"}
        assert (await plugin.heartbeat.check_ready(_cfg(tmp_path, enabled=False)))["reason"] == "disabled"


class TestGatewayLifecycle:
    @pytest.mark.asyncio
    async def test_poll_loop_emits_until_aborted(self, tmp_path):
        bridge = FakeBridge(queue=[
            {"body": "hi", "senderId": "+15550001111", "chatId": "+15550001111"},
            {"body": ""},
            "garbage",
        ])
        plugin = create_whatsapp_plugin(bridge)
        cfg = _cfg(tmp_path)
        abort = asyncio.Event()
        received = []

        async def on_message(message):
            received.append(message)
            abort.set()

        account = plugin.config.resolve_account(cfg, None)
        ctx = GatewayContext(cfg=cfg, account=account, abort_event=abort, on_message=on_message,
                             status=AccountSnapshot(account_id="default"))
        await asyncio.wait_for(plugin.gateway.start_account(ctx), timeout=5)
        assert [m.text for m in received] == ["hi"]
        assert ctx.status.connected is False

    @pytest.mark.asyncio
    async def test_qr_login(self, tmp_path):
        bridge = FakeBridge()
        plugin = create_whatsapp_plugin(bridge)
        cfg = _cfg(tmp_path)
        started = await plugin.gateway.login_with_qr_start("default", False, 1000, cfg)
        assert started.qr_data_url.startswith("data:image/png")
        assert bridge.calls[0][2]["authDir"] == str(tmp_path / "auth")
        waited = await plugin.gateway.login_with_qr_wait("default", 1000, cfg)
        assert (waited.connected, waited.message) == (True, "Linked")

    @pytest.mark.asyncio
    async def test_logout_clears_auth_dir(self, tmp_path):
        bridge = FakeBridge()
        plugin = create_whatsapp_plugin(bridge)
        cfg = _cfg(tmp_path)
        (tmp_path / "auth").mkdir()
        (tmp_path / "auth" / "creds.json").write_text("{}")
        result = await plugin.gateway.logout_account(cfg, plugin.config.resolve_account(cfg, None))
        assert (result.cleared, result.logged_out) == (True, True)
        assert not (tmp_path / "auth").exists()

    @pytest.mark.asyncio
    async def test_logout_survives_bridge_down(self, tmp_path):
        bridge = FakeBridge()
        bridge.errors["/logout"] = [TransportError("connection refused")]
        plugin = create_whatsapp_plugin(bridge)
        cfg = _cfg(tmp_path)
        result = await plugin.gateway.logout_account(cfg, plugin.config.resolve_account(cfg, None))
        assert (result.cleared, result.logged_out, result.message) == (False, False, "No local session")
