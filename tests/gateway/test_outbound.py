"""
Tests for gateway/outbound.py - target resolution, chunking and delivery.
"""

from unittest.mock import MagicMock

import pytest

from gateway.errors import ConfigError
from gateway.outbound import OutboundRouter
from gateway.platforms.base import (
    ChannelPlugin,
    DeliveryResult,
    OutboundAdapter,
    PollInput,
    ReplyPayload,
    chunk_text,
    default_resolve_target,
    make_section_config_adapter,
)
from gateway.platforms.registry import ChannelRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class RecordingSender:
    def __init__(self, fail_on=None, raise_on=None):
        self.sent = []
        self.fail_on = fail_on
        self.raise_on = raise_on

    async def send_text(self, ctx):
        self.sent.append(("text", ctx.to, ctx.text, ctx.reply_to))
        if self.raise_on is not None and len(self.sent) == self.raise_on:
            raise RuntimeError("socket closed")
        if self.fail_on is not None and len(self.sent) == self.fail_on:
            return DeliveryResult(ok=False, channel="echo", error="rate limited")
        return DeliveryResult(ok=True, channel="echo", message_id=str(len(self.sent)))

    async def send_media(self, ctx):
        self.sent.append(("media", ctx.to, ctx.media_url, ctx.text))
        return DeliveryResult(ok=True, channel="echo", message_id=str(len(self.sent)))

    async def send_poll(self, ctx, poll):
        self.sent.append(("poll", ctx.to, poll.question))
        return DeliveryResult(ok=True, channel="echo")


def _router(sender, delivery_mode="direct", limit=10, manager=None, media=True):
    outbound = OutboundAdapter(
        delivery_mode=delivery_mode,
        chunker=chunk_text,
        text_chunk_limit=limit,
        poll_max_options=3,
        resolve_target=default_resolve_target(lambda v: v if v.isdigit() else ""),
        send_text=sender.send_text,
        send_media=sender.send_media if media else None,
        send_poll=sender.send_poll,
    )
    registry = ChannelRegistry()
    registry.register(ChannelPlugin(
        id="echo",
        label="Echo",
        config=make_section_config_adapter("echo"),
        outbound=outbound,
    ))
    return OutboundRouter(registry, manager)


CFG = {"channels": {"echo": {"defaultTo": "99"}}}


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------

class TestResolveTarget:
    def test_explicit_target(self):
        router = _router(RecordingSender())
        assert router.resolve_target(CFG, "echo", "12").to == "12"

    def test_default_to_fallback(self):
        router = _router(RecordingSender())
        assert router.resolve_target(CFG, "echo", None).to == "99"

    def test_no_target_and_no_default(self):
        router = _router(RecordingSender())
        resolution = router.resolve_target({}, "echo", "")
        assert resolution.ok is False
        assert "defaultTo" in resolution.error

    def test_invalid_target(self):
        router = _router(RecordingSender())
        assert router.resolve_target(CFG, "echo", "abc").ok is False

    def test_unknown_channel_raises(self):
        with pytest.raises(ConfigError):
            _router(RecordingSender()).resolve_target(CFG, "fax", "1")


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class TestDeliver:
    @pytest.mark.asyncio
    async def test_long_text_is_chunked_and_only_first_chunk_replies(self):
        sender = RecordingSender()
        router = _router(sender)
        results = await router.deliver(CFG, "echo", "12", ReplyPayload(text="aaaa bbbb cccc dddd"), reply_to="m1")
        assert [r.ok for r in results] == [True, True]
        assert [s[2] for s in sender.sent] == ["aaaa bbbb", "cccc dddd"]
        assert [s[3] for s in sender.sent] == ["m1", None]
        assert all(r.chunks == 2 for r in results)

    @pytest.mark.asyncio
    async def test_stops_after_failed_chunk(self):
        sender = RecordingSender(fail_on=1)
        results = await _router(sender).deliver(CFG, "echo", "12", ReplyPayload(text="aaaa bbbb cccc dddd"))
        assert len(results) == 1
        assert results[0].error == "rate limited"

    @pytest.mark.asyncio
    async def test_provider_exception_becomes_failed_result(self):
        sender = RecordingSender(raise_on=1)
        results = await _router(sender).deliver(CFG, "echo", "12", ReplyPayload(text="hi"))
        assert results[0].ok is False
        assert results[0].error == "socket closed"

    @pytest.mark.asyncio
    async def test_exception_mid_chunks_keeps_sent_results(self):
        sender = RecordingSender(raise_on=2)
        results = await _router(sender).deliver(CFG, "echo", "12",
                                                ReplyPayload(text="aaaa bbbb cccc dddd eeee ffff"))
        assert [r.ok for r in results] == [True, False]
        assert results[0].message_id == "1"
        assert results[1].error == "socket closed"
        assert len(sender.sent) == 2

    @pytest.mark.asyncio
    async def test_disabled_account(self):
        sender = RecordingSender()
        cfg = {"channels": {"echo": {"enabled": False}}}
        results = await _router(sender).deliver(cfg, "echo", "12", ReplyPayload(text="hi"))
        assert "disabled" in results[0].error
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_invalid_target_sends_nothing(self):
        sender = RecordingSender()
        results = await _router(sender).deliver(CFG, "echo", "abc", ReplyPayload(text="hi"))
        assert results[0].ok is False
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_media_carries_caption_once(self):
        sender = RecordingSender()
        payload = ReplyPayload(text="look", media_urls=["https://x/1.png", "https://x/2.png"])
        results = await _router(sender).deliver(CFG, "echo", "12", payload)
        assert len(results) == 2
        assert sender.sent == [
            ("media", "12", "https://x/1.png", "look"),
            ("media", "12", "https://x/2.png", ""),
        ]

    @pytest.mark.asyncio
    async def test_media_unsupported(self):
        sender = RecordingSender()
        payload = ReplyPayload(text="look", media_urls=["https://x/1.png"])
        results = await _router(sender, media=False).deliver(CFG, "echo", "12", payload)
        assert "cannot send media" in results[0].error

    @pytest.mark.asyncio
    async def test_gateway_mode_requires_running_account(self):
        sender = RecordingSender()
        manager = MagicMock()
        manager.is_running.return_value = False
        results = await _router(sender, delivery_mode="gateway", manager=manager).deliver(
            CFG, "echo", "12", ReplyPayload(text="hi"))
        assert results[0].error == "not connected"

        manager.is_running.return_value = True
        results = await _router(sender, delivery_mode="gateway", manager=manager).deliver(
            CFG, "echo", "12", ReplyPayload(text="hi"))
        assert results[0].ok

    @pytest.mark.asyncio
    async def test_empty_payload_sends_nothing(self):
        sender = RecordingSender()
        assert await _router(sender).deliver(CFG, "echo", "12", ReplyPayload()) == []


class TestPolls:
    @pytest.mark.asyncio
    async def test_too_few_options(self):
        result = await _router(RecordingSender()).send_poll(CFG, "echo", "12", PollInput(question="q", options=["a"]))
        assert result.ok is False

    @pytest.mark.asyncio
    async def test_too_many_options(self):
        poll = PollInput(question="q", options=["a", "b", "c", "d"])
        result = await _router(RecordingSender()).send_poll(CFG, "echo", "12", poll)
        assert "at most 3" in result.error

    @pytest.mark.asyncio
    async def test_sends_poll(self):
        sender = RecordingSender()
        result = await _router(sender).send_poll(CFG, "echo", None, PollInput(question="q", options=["a", "b"]))
        assert result.ok
        assert sender.sent == [("poll", "99", "q")]

    @pytest.mark.asyncio
    async def test_channel_without_polls(self):
        registry = ChannelRegistry()
        registry.register(ChannelPlugin(id="plain", label="Plain", outbound=OutboundAdapter()))
        with pytest.raises(ConfigError):
            await OutboundRouter(registry).send_poll({}, "plain", "1", PollInput(question="q", options=["a", "b"]))
