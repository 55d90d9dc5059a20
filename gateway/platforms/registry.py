"""
Channel registry.

Maps a channel id (or alias) to its ChannelPlugin for the gateway's
lifetime. The registry never calls provider code itself, so it never
retries: whatever an adapter returns is what the caller sees.
"""

import logging
from typing import Any, Dict, List, Optional

from gateway.errors import ConfigError
from gateway.platforms.base import ChannelPlugin

logger = logging.getLogger(__name__)


def normalize_channel_id(value: Optional[str]) -> str:
    return (value or "").strip().lower()


class ChannelRegistry:
    def __init__(self):
        self._plugins: Dict[str, ChannelPlugin] = {}
        self._aliases: Dict[str, str] = {}

    def register(self, plugin: ChannelPlugin) -> ChannelPlugin:
        channel_id = normalize_channel_id(plugin.id)
        if not channel_id:
            raise ValueError("Channel plugin id is empty")
        if channel_id in self._plugins or channel_id in self._aliases:
            raise ValueError(f"Channel '{channel_id}' is already registered")
        for alias in plugin.aliases:
            alias_id = normalize_channel_id(alias)
            if alias_id in self._plugins or self._aliases.get(alias_id, channel_id) != channel_id:
                raise ValueError(f"Channel alias '{alias_id}' is already registered")
        self._plugins[channel_id] = plugin
        for alias in plugin.aliases:
            self._aliases[normalize_channel_id(alias)] = channel_id
        logger.debug("Registered channel %s (%s)", channel_id, ", ".join(plugin.capabilities()))
        return plugin

    def normalize_channel_id(self, value: Optional[str]) -> Optional[str]:
        """Canonical id for ``value`` (aliases resolved), or None when unknown."""
        key = normalize_channel_id(value)
        if key in self._plugins:
            return key
        return self._aliases.get(key)

    def get(self, channel_id: Optional[str]) -> Optional[ChannelPlugin]:
        canonical = self.normalize_channel_id(channel_id)
        return self._plugins.get(canonical) if canonical else None

    def require(self, channel_id: Optional[str]) -> ChannelPlugin:
        plugin = self.get(channel_id)
        if plugin is None:
            known = ", ".join(sorted(self._plugins)) or "none"
            raise ConfigError(f"Unknown channel '{channel_id}' (known: {known})")
        return plugin

    def list(self) -> List[ChannelPlugin]:
        return [self._plugins[k] for k in sorted(self._plugins)]

    def ids(self) -> List[str]:
        return sorted(self._plugins)

    def capabilities(self, channel_id: str) -> Dict[str, Any]:
        return self.require(channel_id).describe()

    def __contains__(self, channel_id: object) -> bool:
        return isinstance(channel_id, str) and self.get(channel_id) is not None

    def __len__(self) -> int:
        return len(self._plugins)


def build_default_registry(transports: Optional[Dict[str, Any]] = None) -> ChannelRegistry:
    """
    Registry holding the built-in channels.

    ``transports`` maps a channel id to a transport object that replaces the
    default HTTP transport (tests pass in fakes here).
    """
    from gateway.platforms.discord import create_discord_plugin
    from gateway.platforms.slack import create_slack_plugin
    from gateway.platforms.telegram import create_telegram_plugin
    from gateway.platforms.whatsapp import create_whatsapp_plugin

    transports = transports or {}
    registry = ChannelRegistry()
    registry.register(create_telegram_plugin(transports.get("telegram")))
    registry.register(create_slack_plugin(transports.get("slack")))
    registry.register(create_discord_plugin(transports.get("discord")))
    registry.register(create_whatsapp_plugin(transports.get("whatsapp")))
    return registry
