"""
Tests for gateway/manager.py - per-account task lifecycle.
"""

import asyncio

import pytest

from gateway.manager import ChannelManager, account_key
from gateway.platforms.base import ChannelPlugin, GatewayAdapter, InboundMessage, make_section_config_adapter
from gateway.platforms.registry import ChannelRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class FakeLifecycle:
    """start_account emits one message then idles until aborted (or crashes)."""

    def __init__(self, crash=False, ignore_abort=False):
        self.started = []
        self.stopped = []
        self.crash = crash
        self.ignore_abort = ignore_abort

    async def start_account(self, ctx):
        self.started.append(ctx.account_id)
        ctx.set_status(connected=True)
        if self.crash:
            raise RuntimeError("token revoked")
        await ctx.emit(InboundMessage(channel="echo", sender_id="1", text="hi", account_id=ctx.account_id))
        if self.ignore_abort:
            await asyncio.sleep(3600)
        await ctx.abort_event.wait()

    async def stop_account(self, ctx):
        self.stopped.append(ctx.account_id)


def _manager(lifecycle, on_message=None):
    registry = ChannelRegistry()
    registry.register(ChannelPlugin(
        id="echo",
        label="Echo",
        aliases=("ec",),
        config=make_section_config_adapter("echo", credential_keys=("token",)),
        gateway=GatewayAdapter(start_account=lifecycle.start_account, stop_account=lifecycle.stop_account),
    ))
    return ChannelManager(registry, on_message=on_message)


CFG = {"channels": {"echo": {"token": "t", "accounts": {"one": {}, "two": {"enabled": False}, "three": {"token": ""}}}}}


class TestStart:
    @pytest.mark.asyncio
    async def test_start_all_skips_disabled_and_unconfigured(self):
        lifecycle = FakeLifecycle()
        manager = _manager(lifecycle)
        started = await manager.start_all(CFG)
        await asyncio.sleep(0)
        try:
            assert started == ["echo:one"]
            assert manager.is_running("echo", "one")
            assert not manager.is_running("echo", "two")
            assert manager.get_snapshot("echo", "two").enabled is False
            assert manager.get_snapshot("echo", "three").configured is False
        finally:
            await manager.stop_all(grace_s=1)

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        lifecycle = FakeLifecycle()
        manager = _manager(lifecycle)
        cfg = {"channels": {"echo": {"token": "t"}}}
        assert await manager.start_account(cfg, "echo")
        assert await manager.start_account(cfg, "ec")
        await asyncio.sleep(0)
        await manager.stop_all(grace_s=1)
        assert lifecycle.started == ["default"]

    @pytest.mark.asyncio
    async def test_messages_reach_handler(self):
        received = []

        async def on_message(msg):
            received.append(msg.text)

        manager = _manager(FakeLifecycle(), on_message=on_message)
        await manager.start_account({"channels": {"echo": {"token": "t"}}}, "echo")
        await asyncio.sleep(0.01)
        await manager.stop_all(grace_s=1)
        assert received == ["hi"]


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_records_snapshot(self):
        lifecycle = FakeLifecycle()
        manager = _manager(lifecycle)
        cfg = {"channels": {"echo": {"token": "t"}}}
        await manager.start_account(cfg, "echo")
        await asyncio.sleep(0)
        assert manager.get_snapshot("echo").connected is True

        assert await manager.stop_account("echo", grace_s=1)
        snap = manager.get_snapshot("echo")
        assert snap.running is False
        assert snap.connected is False
        assert snap.last_stopped_at is not None
        assert lifecycle.stopped == ["default"]

    @pytest.mark.asyncio
    async def test_stop_unknown_account(self):
        assert await _manager(FakeLifecycle()).stop_account("echo", "ghost") is False

    @pytest.mark.asyncio
    async def test_stuck_task_is_cancelled_after_grace(self):
        manager = _manager(FakeLifecycle(ignore_abort=True))
        await manager.start_account({"channels": {"echo": {"token": "t"}}}, "echo")
        await asyncio.sleep(0)
        assert await manager.stop_account("echo", grace_s=0.05)
        assert not manager.is_running("echo")

    @pytest.mark.asyncio
    async def test_no_starts_while_shutting_down(self):
        manager = _manager(FakeLifecycle())
        await manager.stop_all()
        assert await manager.start_account({"channels": {"echo": {"token": "t"}}}, "echo") is False


class TestCrash:
    @pytest.mark.asyncio
    async def test_crash_is_isolated_and_recorded(self):
        manager = _manager(FakeLifecycle(crash=True))
        await manager.start_account({"channels": {"echo": {"token": "t"}}}, "echo")
        for _ in range(10):
            await asyncio.sleep(0)
        snap = manager.get_snapshot("echo")
        assert snap.last_error == "token revoked"
        assert snap.running is False
        assert not manager.is_running("echo")

    def test_account_key(self):
        assert account_key("echo", None) == "echo:default"
        assert account_key("echo", "Work") == "echo:work"
