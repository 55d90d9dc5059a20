"""
Channel plugin interface.

A channel is a bundle of optional capabilities rather than a subclass of a
common adapter base: a push-only channel only fills ``outbound`` and
``status``, a chat app with QR login fills nearly all of them. Every
capability is a small dataclass of callables; a field left as None means
"not supported".

Callables that talk to a provider are coroutines. Callables that only look
at config are plain functions and must not perform I/O.
"""

import asyncio
import inspect
import os
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from gateway import accounts as account_store
from gateway.accounts import ChannelAccount

AllowEntry = Union[str, int]
ConfigTree = Dict[str, Any]


async def maybe_await(value: Any) -> Any:
    """Resolve ``value`` when an adapter returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


# =============================================================================
# Shared types
# =============================================================================

class MessageType(Enum):
    """Types of incoming messages."""
    TEXT = "text"
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    DOCUMENT = "document"
    STICKER = "sticker"
    COMMAND = "command"  # /command style


@dataclass
class InboundMessage:
    """
    Incoming message from a provider.

    Normalized representation that all channel plugins produce.
    """
    channel: str
    sender_id: str
    text: str
    account_id: str = account_store.DEFAULT_ACCOUNT_ID
    chat_type: str = "direct"  # "direct", "group", "channel"
    chat_id: Optional[str] = None
    sender_name: Optional[str] = None
    chat_name: Optional[str] = None
    thread_id: Optional[str] = None
    message_id: Optional[str] = None
    was_mentioned: bool = False
    message_type: MessageType = MessageType.TEXT
    media_urls: List[str] = field(default_factory=list)
    raw: Any = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def is_direct(self) -> bool:
        return self.chat_type == "direct"

    @property
    def reply_target(self) -> str:
        """Where a reply goes: the chat for groups, the sender for DMs."""
        return str(self.chat_id or self.sender_id)

    def is_command(self) -> bool:
        """Check if this is a command message (e.g., /new, /reset)."""
        return self.text.startswith("/")

    def get_command(self) -> Optional[str]:
        """Extract command name if this is a command message."""
        if not self.is_command():
            return None
        parts = self.text.split(maxsplit=1)
        # Telegram appends @botname to commands in groups
        return parts[0][1:].split("@", 1)[0].lower() if parts else None

    def get_command_args(self) -> str:
        if not self.is_command():
            return self.text
        parts = self.text.split(maxsplit=1)
        return parts[1] if len(parts) > 1 else ""


@dataclass
class SetupInput:
    """Operator input for ``channels add`` (every field optional)."""
    name: Optional[str] = None
    token: Optional[str] = None
    token_file: Optional[str] = None
    bot_token: Optional[str] = None
    app_token: Optional[str] = None
    use_env: bool = False
    allow_from: Optional[List[AllowEntry]] = None
    group_policy: Optional[str] = None
    dm_policy: Optional[str] = None
    default_to: Optional[str] = None
    auth_dir: Optional[str] = None
    bridge_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SetupInput":
        known = {f.name for f in fields(cls)}
        aliases = {
            "tokenFile": "token_file",
            "botToken": "bot_token",
            "appToken": "app_token",
            "useEnv": "use_env",
            "allowFrom": "allow_from",
            "groupPolicy": "group_policy",
            "dmPolicy": "dm_policy",
            "defaultTo": "default_to",
            "authDir": "auth_dir",
            "bridgeUrl": "bridge_url",
        }
        kwargs = {}
        for key, value in (data or {}).items():
            name = aliases.get(key, key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


@dataclass
class AccountSnapshot:
    """Redacted, reportable view of one account. Never holds credential values."""
    account_id: str
    name: Optional[str] = None
    enabled: bool = True
    configured: bool = False
    running: bool = False
    connected: Optional[bool] = None
    token_source: Optional[str] = None
    mode: Optional[str] = None
    dm_policy: Optional[str] = None
    allow_from: List[str] = field(default_factory=list)
    last_started_at: Optional[int] = None
    last_stopped_at: Optional[int] = None
    last_error: Optional[str] = None
    probe: Optional[Dict[str, Any]] = None
    audit: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def merged(self, **changes: Any) -> "AccountSnapshot":
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update({k: v for k, v in changes.items() if k in data})
        return AccountSnapshot(**data)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "accountId": self.account_id,
            "name": self.name,
            "enabled": self.enabled,
            "configured": self.configured,
            "running": self.running,
            "connected": self.connected,
            "tokenSource": self.token_source,
            "mode": self.mode,
            "dmPolicy": self.dm_policy,
            "allowFrom": list(self.allow_from),
            "lastStartedAt": self.last_started_at,
            "lastStoppedAt": self.last_stopped_at,
            "lastError": self.last_error,
            "probe": self.probe,
            "audit": self.audit,
        }
        result.update(self.extra)
        return result


@dataclass
class StatusIssue:
    channel: str
    account_id: str
    kind: str  # "config", "auth", "runtime", "permissions", "intent"
    message: str
    fix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "accountId": self.account_id,
            "kind": self.kind,
            "message": self.message,
            "fix": self.fix,
        }


@dataclass
class DirectoryEntry:
    kind: str  # "user", "group", "channel"
    id: str
    name: Optional[str] = None
    handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.id, "name": self.name, "handle": self.handle}


@dataclass
class ResolveResult:
    input: str
    resolved: bool
    id: Optional[str] = None
    name: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"input": self.input, "resolved": self.resolved, "id": self.id, "name": self.name, "note": self.note}


@dataclass
class TargetResolution:
    """Outcome of validating a destination: ``to`` when ok, ``error`` otherwise."""
    ok: bool
    to: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeliveryResult:
    """Result of one provider send. Failures are values, not exceptions."""
    ok: bool
    channel: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    chunks: int = 1
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ok": self.ok,
            "channel": self.channel,
            "messageId": self.message_id,
            "error": self.error,
            "chunks": self.chunks,
        }
        if self.meta:
            result["meta"] = dict(self.meta)
        return result


@dataclass
class ReplyPayload:
    text: str = ""
    media_urls: List[str] = field(default_factory=list)
    reply_to: Optional[str] = None
    thread_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.media_urls


@dataclass
class OutboundContext:
    """Everything a send callable needs for one message."""
    cfg: ConfigTree
    channel: str
    account: ChannelAccount
    to: str
    text: str = ""
    media_url: Optional[str] = None
    reply_to: Optional[str] = None
    thread_id: Optional[str] = None
    silent: bool = False

    @property
    def account_id(self) -> str:
        return self.account.account_id


@dataclass
class PollInput:
    question: str
    options: List[str]
    max_selections: int = 1
    duration_hours: Optional[int] = None


@dataclass
class GroupContext:
    cfg: ConfigTree
    account: ChannelAccount
    group_id: str
    sender_id: Optional[str] = None


@dataclass
class DmPolicy:
    policy: str
    allow_from: List[str] = field(default_factory=list)
    approve_hint: Optional[str] = None


@dataclass
class SecurityContext:
    cfg: ConfigTree
    account: ChannelAccount


InboundHandler = Callable[[InboundMessage], Awaitable[Any]]


@dataclass
class GatewayContext:
    """
    Per-account runtime handle given to ``GatewayAdapter.start_account``.

    ``abort_event`` is set when the account must stop; long-running loops
    check it between provider calls.
    """
    cfg: ConfigTree
    account: ChannelAccount
    abort_event: asyncio.Event
    on_message: Optional[InboundHandler] = None
    status: AccountSnapshot = None

    @property
    def account_id(self) -> str:
        return self.account.account_id

    def get_status(self) -> AccountSnapshot:
        return self.status

    def set_status(self, **changes: Any) -> AccountSnapshot:
        self.status = self.status.merged(**changes)
        return self.status

    async def emit(self, message: InboundMessage) -> None:
        if self.on_message is not None:
            await self.on_message(message)


@dataclass
class QrStartResult:
    message: str
    qr_data_url: Optional[str] = None


@dataclass
class QrWaitResult:
    connected: bool
    message: str


@dataclass
class LogoutResult:
    cleared: bool
    logged_out: bool = False
    message: Optional[str] = None


# =============================================================================
# Capabilities
# =============================================================================

@dataclass
class SetupAdapter:
    apply_account_config: Optional[Callable[[ConfigTree, str, SetupInput], ConfigTree]] = None
    validate_input: Optional[Callable[[ConfigTree, str, SetupInput], Optional[str]]] = None
    resolve_account_id: Optional[Callable[[ConfigTree, Optional[str]], str]] = None
    apply_account_name: Optional[Callable[[ConfigTree, str, Optional[str]], ConfigTree]] = None


@dataclass
class ConfigAdapter:
    list_account_ids: Optional[Callable[[ConfigTree], List[str]]] = None
    resolve_account: Optional[Callable[[ConfigTree, Optional[str]], ChannelAccount]] = None
    default_account_id: Optional[Callable[[ConfigTree], str]] = None
    set_account_enabled: Optional[Callable[[ConfigTree, str, bool], ConfigTree]] = None
    delete_account: Optional[Callable[[ConfigTree, str], ConfigTree]] = None
    is_enabled: Optional[Callable[[ChannelAccount, ConfigTree], bool]] = None
    disabled_reason: Optional[Callable[[ChannelAccount, ConfigTree], str]] = None
    # May return a bool or an awaitable bool (e.g. checking a credential file)
    is_configured: Optional[Callable[[ChannelAccount, ConfigTree], Any]] = None
    unconfigured_reason: Optional[Callable[[ChannelAccount, ConfigTree], str]] = None
    describe_account: Optional[Callable[[ChannelAccount, ConfigTree], AccountSnapshot]] = None
    resolve_allow_from: Optional[Callable[[ConfigTree, Optional[str]], List[AllowEntry]]] = None
    format_allow_from: Optional[Callable[[ConfigTree, Optional[str], List[AllowEntry]], List[str]]] = None
    resolve_default_to: Optional[Callable[[ConfigTree, Optional[str]], Optional[str]]] = None


@dataclass
class GroupAdapter:
    resolve_require_mention: Optional[Callable[[GroupContext], Optional[bool]]] = None
    resolve_group_intro_hint: Optional[Callable[[GroupContext], Optional[str]]] = None
    resolve_tool_policy: Optional[Callable[[GroupContext], Optional[Dict[str, Any]]]] = None


@dataclass
class OutboundAdapter:
    delivery_mode: str = "direct"  # "direct", "gateway", "hybrid"
    chunker: Optional[Callable[[str, int], List[str]]] = None
    chunker_mode: str = "text"  # "text" or "markdown"
    text_chunk_limit: Optional[int] = None
    poll_max_options: Optional[int] = None
    resolve_target: Optional[Callable[[ConfigTree, Optional[str], List[str], Optional[str]], TargetResolution]] = None
    send_payload: Optional[Callable[[OutboundContext, ReplyPayload], Awaitable[DeliveryResult]]] = None
    send_text: Optional[Callable[[OutboundContext], Awaitable[DeliveryResult]]] = None
    send_media: Optional[Callable[[OutboundContext], Awaitable[DeliveryResult]]] = None
    send_poll: Optional[Callable[[OutboundContext, PollInput], Awaitable[DeliveryResult]]] = None


@dataclass
class StatusAdapter:
    probe_account: Optional[Callable[[ChannelAccount, int, ConfigTree], Awaitable[Dict[str, Any]]]] = None
    audit_account: Optional[Callable[..., Awaitable[Dict[str, Any]]]] = None
    build_account_snapshot: Optional[Callable[..., Any]] = None
    collect_status_issues: Optional[Callable[[List[AccountSnapshot]], List[StatusIssue]]] = None
    build_channel_summary: Optional[Callable[..., Any]] = None


@dataclass
class GatewayAdapter:
    start_account: Optional[Callable[[GatewayContext], Awaitable[Any]]] = None
    stop_account: Optional[Callable[[GatewayContext], Awaitable[None]]] = None
    login_with_qr_start: Optional[Callable[..., Awaitable[QrStartResult]]] = None
    login_with_qr_wait: Optional[Callable[..., Awaitable[QrWaitResult]]] = None
    logout_account: Optional[Callable[[ConfigTree, ChannelAccount], Awaitable[LogoutResult]]] = None


@dataclass
class AuthAdapter:
    login: Optional[Callable[..., Awaitable[None]]] = None


@dataclass
class HeartbeatAdapter:
    check_ready: Optional[Callable[[ConfigTree, Optional[str]], Awaitable[Dict[str, Any]]]] = None
    resolve_recipients: Optional[Callable[..., Dict[str, Any]]] = None


@dataclass
class DirectoryAdapter:
    self_entry: Optional[Callable[[ConfigTree, Optional[str]], Awaitable[Optional[DirectoryEntry]]]] = None
    list_peers: Optional[Callable[..., Awaitable[List[DirectoryEntry]]]] = None
    list_groups: Optional[Callable[..., Awaitable[List[DirectoryEntry]]]] = None
    list_group_members: Optional[Callable[..., Awaitable[List[DirectoryEntry]]]] = None


@dataclass
class ResolverAdapter:
    # (cfg, account_id, inputs, kind) -> results; kind is "user" or "group"
    resolve_targets: Optional[Callable[[ConfigTree, Optional[str], List[str], str], Awaitable[List[ResolveResult]]]] = None


@dataclass
class ElevatedAdapter:
    allow_from_fallback: Optional[Callable[[ConfigTree, Optional[str]], Optional[List[AllowEntry]]]] = None


@dataclass
class CommandAdapter:
    enforce_owner_for_commands: bool = False
    skip_when_config_empty: bool = False


@dataclass
class SecurityAdapter:
    resolve_dm_policy: Optional[Callable[[SecurityContext], Optional[DmPolicy]]] = None
    collect_warnings: Optional[Callable[[SecurityContext], Any]] = None


@dataclass
class PairingAdapter:
    id_label: str = "userId"
    normalize_allow_entry: Optional[Callable[[str], str]] = None
    notify_approval: Optional[Callable[[ConfigTree, str], Awaitable[None]]] = None


CAPABILITY_NAMES = (
    "setup",
    "config",
    "group",
    "outbound",
    "status",
    "gateway",
    "auth",
    "heartbeat",
    "directory",
    "resolver",
    "elevated",
    "commands",
    "security",
    "pairing",
)


@dataclass
class ChannelPlugin:
    """Capability bundle registered for one channel id."""
    id: str
    label: str
    aliases: Sequence[str] = ()
    meta: Dict[str, Any] = field(default_factory=dict)
    setup: Optional[SetupAdapter] = None
    config: Optional[ConfigAdapter] = None
    group: Optional[GroupAdapter] = None
    outbound: Optional[OutboundAdapter] = None
    status: Optional[StatusAdapter] = None
    gateway: Optional[GatewayAdapter] = None
    auth: Optional[AuthAdapter] = None
    heartbeat: Optional[HeartbeatAdapter] = None
    directory: Optional[DirectoryAdapter] = None
    resolver: Optional[ResolverAdapter] = None
    elevated: Optional[ElevatedAdapter] = None
    commands: Optional[CommandAdapter] = None
    security: Optional[SecurityAdapter] = None
    pairing: Optional[PairingAdapter] = None

    def capabilities(self) -> List[str]:
        return [name for name in CAPABILITY_NAMES if getattr(self, name) is not None]

    def describe(self) -> Dict[str, Any]:
        outbound = self.outbound
        return {
            "id": self.id,
            "label": self.label,
            "aliases": list(self.aliases),
            "capabilities": self.capabilities(),
            "deliveryMode": outbound.delivery_mode if outbound else None,
            "textChunkLimit": outbound.text_chunk_limit if outbound else None,
            "pollMaxOptions": outbound.poll_max_options if outbound else None,
            "meta": dict(self.meta),
        }


# =============================================================================
# Chunking
# =============================================================================

def chunk_text(content: str, limit: int) -> List[str]:
    """
    Split a long message into chunks of at most ``limit`` characters.

    Splits at the last newline inside the window, else at the last space,
    else hard at ``limit``.
    """
    if limit <= 0:
        raise ValueError("chunk limit must be positive")
    if len(content) <= limit:
        return [content] if content else []

    chunks = []
    while content:
        if len(content) <= limit:
            chunks.append(content)
            break

        # Try to split at a newline
        split_idx = content.rfind("\n", 0, limit)
        if split_idx <= 0:
            # No newline, split at space
            split_idx = content.rfind(" ", 0, limit)
        if split_idx <= 0:
            # No space either, hard split
            split_idx = limit

        chunks.append(content[:split_idx])
        content = content[split_idx:].lstrip()

    return chunks


_FENCE_PREFIXES = ("```", "~~~")


def _fence_marker(line: str) -> Optional[str]:
    stripped = line.lstrip()
    for prefix in _FENCE_PREFIXES:
        if stripped.startswith(prefix):
            return prefix
    return None


def chunk_markdown(content: str, limit: int) -> List[str]:
    """
    Split markdown so that fenced code blocks stay balanced.

    A chunk that ends inside a fence gets a closing fence, and the next
    chunk reopens it with the original opener (language tag included).
    Indentation inside code blocks is kept.
    """
    if limit <= 0:
        raise ValueError("chunk limit must be positive")
    if len(content) <= limit:
        return [content] if content else []

    chunks: List[str] = []
    lines: List[str] = []
    size = 0
    fence: Optional[str] = None  # opener line of the fence we are inside

    def closer_len(opener: Optional[str]) -> int:
        return len(_fence_marker(opener)) + 1 if opener else 0

    def flush() -> None:
        nonlocal size
        body = "\n".join(lines)
        if fence:
            body += "\n" + _fence_marker(fence)
        if body.strip():
            chunks.append(body)
        lines.clear()
        size = 0
        if fence:
            lines.append(fence)
            size = len(fence)

    def add(line: str, needed_after: int) -> None:
        nonlocal size
        if lines and size + 1 + len(line) + needed_after > limit:
            flush()
        size += (1 if lines else 0) + len(line)
        lines.append(line)

    for line in content.split("\n"):
        marker = _fence_marker(line)
        if marker is None:
            reopen = len(fence) + 1 if fence else 0
            max_piece = max(1, limit - reopen - closer_len(fence))
            for piece in chunk_text(line, max_piece) if len(line) > max_piece else [line]:
                add(piece, closer_len(fence))
            continue

        next_fence = fence
        if fence is None:
            next_fence = line.strip()
        elif marker == _fence_marker(fence):
            next_fence = None
        add(line, closer_len(next_fence))
        fence = next_fence

    if lines and lines != [fence]:
        body = "\n".join(lines)
        if body.strip():
            chunks.append(body)
    return chunks


# =============================================================================
# Section-backed adapter builders
# =============================================================================

def _token_source(section: Dict[str, Any], credential_keys: Sequence[str],
                  env_keys: Sequence[str], account_id: str) -> Optional[str]:
    """Where a credential comes from, as an opaque reference (never the value)."""
    for key in credential_keys:
        value = section.get(key)
        if isinstance(value, str) and value.strip():
            return f"config:{key}"
        file_value = section.get(f"{key}File")
        if isinstance(file_value, str) and file_value.strip():
            return f"file:{file_value.strip()}"
    if account_id == account_store.DEFAULT_ACCOUNT_ID:
        for env_name in env_keys:
            if os.getenv(env_name, "").strip():
                return f"env:{env_name}"
    return None


def read_credential(account: ChannelAccount, key: str, env_name: Optional[str] = None) -> Optional[str]:
    """
    Resolve a credential value for a transport.

    Order: inline config value, then ``<key>File`` contents, then the env var
    (default account only).
    """
    section = account.config or {}
    value = section.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    file_value = section.get(f"{key}File")
    if isinstance(file_value, str) and file_value.strip():
        try:
            with open(os.path.expanduser(file_value.strip()), "r", encoding="utf-8") as f:
                text = f.read().strip()
            return text or None
        except OSError:
            return None
    if env_name and account.account_id == account_store.DEFAULT_ACCOUNT_ID:
        env_value = os.getenv(env_name, "").strip()
        if env_value:
            return env_value
    return None


def make_section_config_adapter(
    channel_id: str,
    credential_keys: Sequence[str] = (),
    env_keys: Sequence[str] = (),
    normalize_allow_entry: Optional[Callable[[str], str]] = None,
    is_configured: Optional[Callable[[ChannelAccount, ConfigTree], Any]] = None,
    unconfigured_reason: str = "missing credentials",
) -> ConfigAdapter:
    """
    ConfigAdapter backed by ``channels.<channel_id>`` in the config tree.

    By default an account counts as configured when any of
    ``credential_keys`` resolves (inline value, ``<key>File`` or env var).
    """

    def resolve_account(cfg: ConfigTree, account_id: Optional[str] = None) -> ChannelAccount:
        account_id = account_store.normalize_account_id(account_id)
        section = account_store.resolve_account_section(cfg, channel_id, account_id)
        return account_store.account_from_section(
            channel_id,
            account_id,
            section,
            credentials_ref=_token_source(section, credential_keys, env_keys, account_id),
        )

    def default_account_id(cfg: ConfigTree) -> str:
        ids = account_store.list_account_ids(cfg, channel_id)
        if account_store.DEFAULT_ACCOUNT_ID in ids:
            return account_store.DEFAULT_ACCOUNT_ID
        return ids[0]

    def _is_configured(account: ChannelAccount, cfg: ConfigTree) -> Any:
        if is_configured is not None:
            return is_configured(account, cfg)
        return account.credentials_ref is not None

    def format_allow_from(cfg: ConfigTree, account_id: Optional[str], allow_from: List[AllowEntry]) -> List[str]:
        entries = account_store.normalize_allow_entries(allow_from)
        if normalize_allow_entry is not None:
            entries = [normalize_allow_entry(e) if e != "*" else e for e in entries]
        return entries

    def describe_account(account: ChannelAccount, cfg: ConfigTree) -> AccountSnapshot:
        return AccountSnapshot(
            account_id=account.account_id,
            name=account.name,
            enabled=account.enabled,
            configured=account.credentials_ref is not None,
            token_source=account.credentials_ref.split(":", 1)[0] if account.credentials_ref else None,
            dm_policy=account.dm_policy,
            allow_from=format_allow_from(cfg, account.account_id, account.allow_from),
        )

    return ConfigAdapter(
        list_account_ids=lambda cfg: account_store.list_account_ids(cfg, channel_id),
        resolve_account=resolve_account,
        default_account_id=default_account_id,
        set_account_enabled=lambda cfg, account_id, enabled: account_store.set_account_enabled(
            cfg, channel_id, account_id, enabled
        ),
        delete_account=lambda cfg, account_id: account_store.delete_account(cfg, channel_id, account_id),
        is_enabled=lambda account, cfg: account.enabled,
        disabled_reason=lambda account, cfg: "disabled in config",
        is_configured=_is_configured,
        unconfigured_reason=lambda account, cfg: unconfigured_reason,
        describe_account=describe_account,
        resolve_allow_from=lambda cfg, account_id: list(resolve_account(cfg, account_id).allow_from),
        format_allow_from=format_allow_from,
        resolve_default_to=lambda cfg, account_id: resolve_account(cfg, account_id).default_to,
    )


# SetupInput field -> config key written into the account section
DEFAULT_SETUP_FIELDS = {
    "name": "name",
    "allow_from": "allowFrom",
    "group_policy": "groupPolicy",
    "dm_policy": "dmPolicy",
    "default_to": "defaultTo",
}


def make_section_setup_adapter(
    channel_id: str,
    field_map: Optional[Dict[str, str]] = None,
    validate: Optional[Callable[[ConfigTree, str, SetupInput], Optional[str]]] = None,
) -> SetupAdapter:
    """
    SetupAdapter that copies non-empty SetupInput fields into the account
    section. ``field_map`` adds channel-specific credential fields on top of
    the common ones.
    """
    mapping = dict(DEFAULT_SETUP_FIELDS)
    mapping.update(field_map or {})

    def apply_account_config(cfg: ConfigTree, account_id: str, setup: SetupInput) -> ConfigTree:
        patch: Dict[str, Any] = {"enabled": True}
        for attr, key in mapping.items():
            value = getattr(setup, attr, None)
            if value is None or value == "" or value == []:
                continue
            patch[key] = list(value) if isinstance(value, (list, tuple)) else value
        return account_store.apply_account_patch(cfg, channel_id, account_id, patch)

    def apply_account_name(cfg: ConfigTree, account_id: str, name: Optional[str]) -> ConfigTree:
        return account_store.apply_account_patch(cfg, channel_id, account_id, {"name": name or None})

    def validate_input(cfg: ConfigTree, account_id: str, setup: SetupInput) -> Optional[str]:
        if setup.group_policy is not None and setup.group_policy not in account_store.GROUP_POLICIES:
            return f"groupPolicy must be one of {', '.join(account_store.GROUP_POLICIES)}"
        if setup.dm_policy is not None and setup.dm_policy not in account_store.DM_POLICIES:
            return f"dmPolicy must be one of {', '.join(account_store.DM_POLICIES)}"
        if validate is not None:
            return validate(cfg, account_id, setup)
        return None

    return SetupAdapter(
        apply_account_config=apply_account_config,
        validate_input=validate_input,
        resolve_account_id=lambda cfg, account_id: account_store.normalize_account_id(account_id),
        apply_account_name=apply_account_name,
    )


def default_resolve_target(
    normalize: Optional[Callable[[str], str]] = None,
) -> Callable[[ConfigTree, Optional[str], List[str], Optional[str]], TargetResolution]:
    """Trim the destination and apply a channel-specific normalizer."""

    def resolve_target(cfg: ConfigTree, to: Optional[str], allow_from: List[str],
                       account_id: Optional[str]) -> TargetResolution:
        text = str(to).strip() if to is not None else ""
        if not text:
            return TargetResolution(ok=False, error="missing target")
        if normalize is not None:
            text = normalize(text)
            if not text:
                return TargetResolution(ok=False, error=f"invalid target: {to}")
        return TargetResolution(ok=True, to=text)

    return resolve_target


def make_dm_security_adapter(channel_id: str) -> SecurityAdapter:
    """SecurityAdapter reading dmPolicy/groupPolicy straight from the account."""

    def resolve_dm_policy(ctx: SecurityContext) -> Optional[DmPolicy]:
        account = ctx.account
        return DmPolicy(
            policy=account.dm_policy,
            allow_from=account_store.normalize_allow_entries(account.allow_from),
            approve_hint=f"oni pairing approve {channel_id} <code>",
        )

    def collect_warnings(ctx: SecurityContext) -> List[str]:
        account = ctx.account
        allow = account_store.normalize_allow_entries(account.allow_from)
        warnings = []
        if account.dm_policy == "open" and "*" not in allow:
            warnings.append(
                f"{channel_id}:{account.account_id} dmPolicy is 'open': anyone who finds the bot can DM it"
            )
        if account.dm_policy == "allowlist" and not allow:
            warnings.append(
                f"{channel_id}:{account.account_id} dmPolicy is 'allowlist' but allowFrom is empty: all DMs are dropped"
            )
        if account.group_policy == "open":
            warnings.append(
                f"{channel_id}:{account.account_id} groupPolicy is 'open': any group can trigger the agent"
            )
        return warnings

    return SecurityAdapter(resolve_dm_policy=resolve_dm_policy, collect_warnings=collect_warnings)


def resolve_heartbeat_recipients(
    resolve_account: Callable[[ConfigTree, Optional[str]], ChannelAccount],
) -> Callable[..., Dict[str, Any]]:
    """Recipients for a liveness ping: explicit target, all allow-listed senders, or defaultTo."""

    def resolve_recipients(cfg: ConfigTree, to: Optional[str] = None, send_all: bool = False,
                           account_id: Optional[str] = None) -> Dict[str, Any]:
        if to:
            return {"recipients": [str(to)], "source": "flag"}
        account = resolve_account(cfg, account_id)
        if send_all:
            entries = [e for e in account_store.normalize_allow_entries(account.allow_from) if e != "*"]
            return {"recipients": entries, "source": "allowFrom"}
        if account.default_to:
            return {"recipients": [account.default_to], "source": "defaultTo"}
        return {"recipients": [], "source": "none"}

    return resolve_recipients


def group_section(account: ChannelAccount, group_id: str) -> Dict[str, Any]:
    """``groups.<id>`` merged over ``groups."*"`` from the account section."""
    groups = (account.config or {}).get("groups")
    if not isinstance(groups, dict):
        return {}
    merged: Dict[str, Any] = {}
    for key in ("*", str(group_id)):
        entry = groups.get(key)
        if isinstance(entry, dict):
            merged.update(entry)
    return merged


def make_group_adapter(channel_label: str, default_require_mention: bool = True) -> GroupAdapter:
    def resolve_require_mention(ctx: GroupContext) -> Optional[bool]:
        value = group_section(ctx.account, ctx.group_id).get("requireMention")
        return value if isinstance(value, bool) else default_require_mention

    def resolve_group_intro_hint(ctx: GroupContext) -> Optional[str]:
        section = group_section(ctx.account, ctx.group_id)
        if isinstance(section.get("systemPrompt"), str):
            return section["systemPrompt"]
        return f"You are replying in a {channel_label} group chat ({ctx.group_id}). Keep replies short."

    def resolve_tool_policy(ctx: GroupContext) -> Optional[Dict[str, Any]]:
        tools = group_section(ctx.account, ctx.group_id).get("tools")
        return dict(tools) if isinstance(tools, dict) else None

    return GroupAdapter(
        resolve_require_mention=resolve_require_mention,
        resolve_group_intro_hint=resolve_group_intro_hint,
        resolve_tool_policy=resolve_tool_policy,
    )


async def wait_or_abort(abort_event: asyncio.Event, delay_s: float) -> bool:
    """Sleep up to ``delay_s``; returns True when the abort event fired first."""
    try:
        await asyncio.wait_for(abort_event.wait(), timeout=delay_s)
        return True
    except asyncio.TimeoutError:
        return abort_event.is_set()
