"""
Channel lifecycle manager.

Runs one asyncio task per started account. Each task gets its own abort
event; stopping an account sets the event, gives the adapter a grace
period to wind down and only then cancels the task. A task that crashes
records ``last_error`` on its snapshot without touching other accounts.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from gateway.accounts import normalize_account_id
from gateway.platforms.base import AccountSnapshot, GatewayContext, InboundHandler, ChannelPlugin, maybe_await
from gateway.platforms.registry import ChannelRegistry

logger = logging.getLogger(__name__)

DEFAULT_GRACE_S = 5.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def account_key(channel: str, account_id: Optional[str]) -> str:
    return f"{channel}:{normalize_account_id(account_id)}"


@dataclass
class _AccountRuntime:
    plugin: ChannelPlugin
    ctx: GatewayContext
    task: asyncio.Task


class ChannelManager:
    def __init__(self, registry: ChannelRegistry, on_message: Optional[InboundHandler] = None):
        self.registry = registry
        self.on_message = on_message
        self._runtimes: Dict[str, _AccountRuntime] = {}
        self._snapshots: Dict[str, AccountSnapshot] = {}
        self._shutting_down = False

    async def start_all(self, cfg: Dict[str, Any]) -> List[str]:
        """Start every enabled, configured account whose channel has a gateway lifecycle."""
        self._shutting_down = False
        started = []
        for plugin in self.registry.list():
            if plugin.gateway is None or plugin.gateway.start_account is None or plugin.config is None:
                continue
            for account_id in plugin.config.list_account_ids(cfg):
                if await self.start_account(cfg, plugin.id, account_id):
                    started.append(account_key(plugin.id, account_id))
        return started

    async def start_account(self, cfg: Dict[str, Any], channel: str, account_id: Optional[str] = None) -> bool:
        plugin = self.registry.require(channel)
        if plugin.gateway is None or plugin.gateway.start_account is None or plugin.config is None:
            return False
        if self._shutting_down:
            return False

        account = plugin.config.resolve_account(cfg, account_id)
        key = account_key(plugin.id, account.account_id)
        if self.is_running(plugin.id, account.account_id):
            return True

        snapshot = AccountSnapshot(account_id=account.account_id, name=account.name, enabled=account.enabled)
        if not account.enabled:
            self._snapshots[key] = snapshot
            return False
        configured = True
        if plugin.config.is_configured is not None:
            configured = bool(await maybe_await(plugin.config.is_configured(account, cfg)))
        if not configured:
            self._snapshots[key] = snapshot.merged(configured=False)
            logger.info("Skipping %s: not configured", key)
            return False

        ctx = GatewayContext(
            cfg=cfg,
            account=account,
            abort_event=asyncio.Event(),
            on_message=self.on_message,
            status=snapshot.merged(configured=True, running=True, last_started_at=_now_ms(), last_error=None),
        )
        task = asyncio.create_task(self._run(key, plugin, ctx), name=f"channel:{key}")
        self._runtimes[key] = _AccountRuntime(plugin=plugin, ctx=ctx, task=task)
        logger.info("Started channel account %s", key)
        return True

    async def _run(self, key: str, plugin: ChannelPlugin, ctx: GatewayContext) -> None:
        try:
            await plugin.gateway.start_account(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Channel account %s failed: %s", key, e, exc_info=True)
            ctx.set_status(last_error=str(e))
        finally:
            ctx.set_status(running=False, connected=False, last_stopped_at=_now_ms())
            self._snapshots[key] = ctx.status

    async def stop_account(self, channel: str, account_id: Optional[str] = None,
                           grace_s: float = DEFAULT_GRACE_S) -> bool:
        plugin = self.registry.require(channel)
        key = account_key(plugin.id, account_id)
        runtime = self._runtimes.pop(key, None)
        if runtime is None:
            return False

        runtime.ctx.abort_event.set()
        stop = runtime.plugin.gateway.stop_account if runtime.plugin.gateway else None
        if stop is not None:
            try:
                await asyncio.wait_for(stop(runtime.ctx), timeout=grace_s)
            except asyncio.TimeoutError:
                logger.warning("stop_account for %s timed out after %.1fs", key, grace_s)
            except Exception as e:
                logger.warning("stop_account for %s failed: %s", key, e)

        done, _ = await asyncio.wait({runtime.task}, timeout=grace_s)
        if not done:
            logger.warning("Channel account %s did not stop within %.1fs; cancelling", key, grace_s)
            runtime.task.cancel()
            try:
                await runtime.task
            except asyncio.CancelledError:
                pass
        self._snapshots[key] = runtime.ctx.status.merged(running=False, connected=False)
        logger.info("Stopped channel account %s", key)
        return True

    async def stop_all(self, grace_s: float = DEFAULT_GRACE_S) -> None:
        self._shutting_down = True
        # Signal everyone first so accounts wind down in parallel
        for runtime in self._runtimes.values():
            runtime.ctx.abort_event.set()
        keys = list(self._runtimes)
        await asyncio.gather(*(
            self.stop_account(key.split(":", 1)[0], key.split(":", 1)[1], grace_s) for key in keys
        ))

    def is_running(self, channel: str, account_id: Optional[str] = None) -> bool:
        canonical = self.registry.normalize_channel_id(channel) or channel
        runtime = self._runtimes.get(account_key(canonical, account_id))
        return runtime is not None and not runtime.task.done()

    def get_snapshot(self, channel: str, account_id: Optional[str] = None) -> Optional[AccountSnapshot]:
        canonical = self.registry.normalize_channel_id(channel) or channel
        key = account_key(canonical, account_id)
        runtime = self._runtimes.get(key)
        if runtime is not None:
            return runtime.ctx.status
        return self._snapshots.get(key)

    def snapshots(self) -> Dict[str, AccountSnapshot]:
        result = dict(self._snapshots)
        for key, runtime in self._runtimes.items():
            result[key] = runtime.ctx.status
        return result
