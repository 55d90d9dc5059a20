"""
Outbound routing.

Picks the channel plugin for a target, checks the account and delivery
mode, splits text to the provider's size limit and sends it. Provider
failures come back as DeliveryResult(ok=False); only configuration
mistakes (unknown channel, channel without outbound support) raise.
"""

import logging
from typing import Any, Dict, List, Optional

from gateway.accounts import ChannelAccount, normalize_account_id, normalize_allow_entries
from gateway.errors import ConfigError
from gateway.platforms.base import (
    ChannelPlugin,
    DeliveryResult,
    OutboundContext,
    PollInput,
    ReplyPayload,
    TargetResolution,
    chunk_text,
)
from gateway.platforms.registry import ChannelRegistry

logger = logging.getLogger(__name__)


class OutboundRouter:
    def __init__(self, registry: ChannelRegistry, manager: Any = None):
        self.registry = registry
        self.manager = manager

    def _plugin(self, channel: str) -> ChannelPlugin:
        plugin = self.registry.require(channel)
        if plugin.outbound is None:
            raise ConfigError(f"Channel '{plugin.id}' does not support outbound delivery")
        return plugin

    def _account(self, plugin: ChannelPlugin, cfg: Dict[str, Any], account_id: Optional[str]) -> ChannelAccount:
        if plugin.config is None or plugin.config.resolve_account is None:
            return ChannelAccount(channel_id=plugin.id, account_id=normalize_account_id(account_id))
        if account_id is None and plugin.config.default_account_id is not None:
            account_id = plugin.config.default_account_id(cfg)
        return plugin.config.resolve_account(cfg, account_id)

    def resolve_target(self, cfg: Dict[str, Any], channel: str, to: Optional[str],
                       account_id: Optional[str] = None) -> TargetResolution:
        """Validate a destination; an empty ``to`` falls back to the account's defaultTo."""
        plugin = self._plugin(channel)
        account = self._account(plugin, cfg, account_id)
        target = to if to not in (None, "") else account.default_to
        if target in (None, ""):
            return TargetResolution(ok=False, error=f"No target given and {plugin.id}:{account.account_id} has no defaultTo")
        allow = normalize_allow_entries(account.allow_from)
        if plugin.outbound.resolve_target is not None:
            return plugin.outbound.resolve_target(cfg, str(target), allow, account.account_id)
        return TargetResolution(ok=True, to=str(target).strip())

    def _delivery_blocked(self, plugin: ChannelPlugin, account: ChannelAccount) -> Optional[str]:
        mode = plugin.outbound.delivery_mode
        if mode == "direct":
            return None
        running = self.manager is not None and self.manager.is_running(plugin.id, account.account_id)
        if mode == "gateway" and not running:
            return "not connected"
        return None

    def _failed(self, plugin: ChannelPlugin, error: str) -> List[DeliveryResult]:
        return [DeliveryResult(ok=False, channel=plugin.id, error=error, chunks=0)]

    def chunk(self, plugin: ChannelPlugin, text: str) -> List[str]:
        outbound = plugin.outbound
        if not text:
            return []
        if not outbound.text_chunk_limit:
            return [text]
        chunker = outbound.chunker or chunk_text
        return chunker(text, outbound.text_chunk_limit)

    async def deliver(
        self,
        cfg: Dict[str, Any],
        channel: str,
        to: Optional[str],
        payload: ReplyPayload,
        account_id: Optional[str] = None,
        reply_to: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> List[DeliveryResult]:
        """Send one reply; returns one result per provider call made."""
        plugin = self._plugin(channel)
        account = self._account(plugin, cfg, account_id)

        if not account.enabled:
            return self._failed(plugin, f"account {plugin.id}:{account.account_id} is disabled")

        target = self.resolve_target(cfg, plugin.id, to, account.account_id)
        if not target.ok:
            return self._failed(plugin, target.error or "invalid target")

        blocked = self._delivery_blocked(plugin, account)
        if blocked:
            return self._failed(plugin, blocked)

        outbound = plugin.outbound
        base = dict(
            cfg=cfg,
            channel=plugin.id,
            account=account,
            to=target.to,
            reply_to=reply_to or payload.reply_to,
            thread_id=thread_id or payload.thread_id,
        )

        results: List[DeliveryResult] = []
        try:
            if outbound.send_payload is not None:
                return [await outbound.send_payload(OutboundContext(text=payload.text, **base), payload)]

            caption_used = False
            if payload.media_urls:
                if outbound.send_media is None:
                    return self._failed(plugin, f"Channel '{plugin.id}' cannot send media")
                for index, url in enumerate(payload.media_urls):
                    caption = payload.text if index == 0 else ""
                    result = await outbound.send_media(OutboundContext(text=caption, media_url=url, **base))
                    results.append(result)
                    if not result.ok:
                        return results
                caption_used = bool(payload.text)

            if payload.text and not caption_used:
                if outbound.send_text is None:
                    return self._failed(plugin, f"Channel '{plugin.id}' cannot send text")
                chunks = self.chunk(plugin, payload.text)
                for index, chunk in enumerate(chunks):
                    ctx = OutboundContext(text=chunk, **base)
                    if index > 0:
                        # Only the first chunk replies to the original message
                        ctx.reply_to = None
                    result = await outbound.send_text(ctx)
                    result.chunks = len(chunks)
                    results.append(result)
                    if not result.ok:
                        break
            return results
        except Exception as e:
            logger.error("Delivery to %s:%s failed: %s", plugin.id, account.account_id, e, exc_info=True)
            # Keep what already went out; the failure is the last entry
            return results + self._failed(plugin, str(e))

    async def send_poll(
        self,
        cfg: Dict[str, Any],
        channel: str,
        to: Optional[str],
        poll: PollInput,
        account_id: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> DeliveryResult:
        plugin = self._plugin(channel)
        outbound = plugin.outbound
        if outbound.send_poll is None:
            raise ConfigError(f"Channel '{plugin.id}' does not support polls")
        if len(poll.options) < 2:
            return DeliveryResult(ok=False, channel=plugin.id, error="A poll needs at least 2 options", chunks=0)
        if outbound.poll_max_options is not None and len(poll.options) > outbound.poll_max_options:
            return DeliveryResult(
                ok=False,
                channel=plugin.id,
                error=f"{plugin.label} polls allow at most {outbound.poll_max_options} options",
                chunks=0,
            )

        account = self._account(plugin, cfg, account_id)
        if not account.enabled:
            return self._failed(plugin, f"account {plugin.id}:{account.account_id} is disabled")[0]
        target = self.resolve_target(cfg, plugin.id, to, account.account_id)
        if not target.ok:
            return self._failed(plugin, target.error or "invalid target")[0]
        blocked = self._delivery_blocked(plugin, account)
        if blocked:
            return self._failed(plugin, blocked)[0]
        try:
            return await outbound.send_poll(
                OutboundContext(cfg=cfg, channel=plugin.id, account=account, to=target.to, thread_id=thread_id),
                poll,
            )
        except Exception as e:
            logger.error("Poll to %s:%s failed: %s", plugin.id, account.account_id, e, exc_info=True)
            return self._failed(plugin, str(e))[0]
